"""Data models handed to callers of the watcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class DependencyDetails:
    """An installed dependency of a live module."""

    version: str
    path: Path


@dataclass(frozen=True)
class ModuleDetails:
    """One poll cycle's view of an installed live module.

    Never mutated after it is handed out; a caller holding an old instance
    keeps a stale but consistent snapshot.
    """

    node_modules_path: Path
    module_path: Path
    version: str
    previous_version: Optional[str]
    dependencies: Mapping[str, DependencyDetails] = field(default_factory=lambda: MappingProxyType({}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeModulesPath": str(self.node_modules_path),
            "modulePath": str(self.module_path),
            "version": self.version,
            "previousVersion": self.previous_version,
            "dependencies": {
                name: {"version": dep.version, "path": str(dep.path)}
                for name, dep in self.dependencies.items()
            },
        }
