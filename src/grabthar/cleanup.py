"""Periodic removal of old live module and staging directories."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, Union

from .common.fs import remove_tree
from .common.logging_utils import extra_context
from .constants import Constants

PathLike = Union[str, Path]


class CleanupTask:
    """Deletes child directories whose mtime is older than ``threshold``.

    Paths passed to ``save`` are never removed; the watcher saves every
    directory it has handed to callers. With ``pattern`` set, only children
    whose names match it are considered.
    """

    def __init__(
        self,
        dirs: Iterable[PathLike],
        interval: float = Constants.CLEAN_INTERVAL,
        threshold: float = Constants.CLEAN_THRESHOLD,
        on_error: Optional[Callable[[BaseException], None]] = None,
        logger: Optional[logging.Logger] = None,
        pattern: Optional["re.Pattern[str]"] = None,
    ):
        self._dirs: List[Path] = [Path(d) for d in dirs]
        self._pattern = pattern
        self._interval = interval
        self._threshold = threshold
        self._on_error = on_error
        self._logger = logger or logging.getLogger(__name__)
        self._saved: Set[Path] = set()
        self._task: Optional["asyncio.Task[None]"] = None

    def save(self, path: PathLike) -> None:
        """Protect ``path`` from removal."""
        self._saved.add(Path(path).resolve())

    def start(self) -> "CleanupTask":
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep()
            except Exception as exc:  # pylint: disable=broad-exception-caught
                if self._on_error is not None:
                    self._on_error(exc)
                else:
                    self._logger.exception(
                        "Cleanup sweep failed",
                        extra=extra_context(event="cleanup_error", component="cleanup"),
                    )

    def _is_protected(self, path: Path) -> bool:
        return any(saved == path or path in saved.parents for saved in self._saved)

    async def sweep(self) -> List[Path]:
        """Run one pass now and return the removed paths."""
        return await asyncio.to_thread(self._sweep)

    def _sweep(self) -> List[Path]:
        removed: List[Path] = []
        cutoff = time.time() - self._threshold
        for directory in self._dirs:
            if not directory.is_dir():
                continue
            for child in directory.iterdir():
                if not child.is_dir() or child.name.startswith("."):
                    continue
                if self._pattern is not None and not self._pattern.match(child.name):
                    continue
                if self._is_protected(child.resolve()):
                    continue
                try:
                    if child.stat().st_mtime >= cutoff:
                        continue
                    remove_tree(child)
                except OSError as exc:
                    self._logger.warning(
                        "Could not remove %s: %s",
                        child,
                        exc,
                        extra=extra_context(event="cleanup_skip", component="cleanup", target=str(child)),
                    )
                    continue
                removed.append(child)
                self._logger.info(
                    "Removed stale directory %s",
                    child,
                    extra=extra_context(event="cleanup_removed", component="cleanup", target=str(child)),
                )
        return removed
