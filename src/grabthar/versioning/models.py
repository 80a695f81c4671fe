"""Data models for version resolution."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, Optional


class Stability(Enum):
    """Operator verdict on a published version."""
    STABLE = "stable"
    UNSTABLE = "unstable"


class StabilityMap:
    """Runtime-mutable stability verdicts, shared by every poller of one watcher.

    Versions without an entry are assumed stable.
    """

    def __init__(self) -> None:
        self._verdicts: Dict[str, Stability] = {}

    def mark_stable(self, version: str) -> None:
        """Record ``version`` as safe to run."""
        self._verdicts[version] = Stability.STABLE

    def mark_unstable(self, version: str) -> None:
        """Record ``version`` as unsafe to run."""
        self._verdicts[version] = Stability.UNSTABLE

    def get(self, version: str) -> Stability:
        return self._verdicts.get(version, Stability.STABLE)

    def is_unstable(self, version: str) -> bool:
        return self.get(version) is Stability.UNSTABLE

    def clear(self) -> None:
        self._verdicts.clear()

    def __iter__(self) -> Iterator[str]:
        return iter(self._verdicts)

    def __len__(self) -> int:
        return len(self._verdicts)


@dataclass(frozen=True)
class ResolvedVersion:
    """Resolution outcome: the version to run and the one to roll back to."""
    version: str
    previous_version: Optional[str]
