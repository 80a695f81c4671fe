"""Loading code and data out of installed live modules.

Installed packages are plain directories, so "importing" one means loading a
Python file (or package ``__init__.py``) through importlib, or parsing a JSON
file. Dependency lookup mirrors ``node_modules`` resolution: nearest nested
``node_modules`` first, then each ancestor's.
"""

from __future__ import annotations

import importlib.util
import json
import sys
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, Iterator, Optional, Protocol, Union, runtime_checkable

from .common.fs import sanitize
from .constants import Constants
from .exceptions import ModuleLoadError

PathLike = Union[str, Path]


@runtime_checkable
class ModuleLoader(Protocol):
    """Loads whatever lives at a filesystem path inside an installed module."""

    def load(self, path: Path) -> Any:
        """Return the loaded object for ``path``."""


def candidate_dirs(module_path: PathLike, dependency: str, recorded: Optional[PathLike] = None) -> Iterator[Path]:
    """Directories that may hold ``dependency``, in lookup order."""
    seen = set()
    module_path = Path(module_path)
    ordered = [Path(recorded)] if recorded is not None else []
    for ancestor in (module_path, *module_path.parents):
        if ancestor.name == Constants.NODE_MODULES:
            continue
        ordered.append(ancestor.joinpath(Constants.NODE_MODULES, *dependency.split("/")))
    for candidate in ordered:
        if candidate not in seen:
            seen.add(candidate)
            yield candidate


def resolve_dependency_dir(module_path: PathLike, dependency: str, recorded: Optional[PathLike] = None) -> Path:
    """First existing directory for ``dependency``.

    Raises:
        ModuleLoadError: When no candidate exists.
    """
    for candidate in candidate_dirs(module_path, dependency, recorded):
        if candidate.is_dir():
            return candidate
    raise ModuleLoadError(f"Can not find dependency {dependency} from {module_path}")


class PythonModuleLoader:
    """Default loader: Python sources via importlib, JSON via ``json``.

    Loaded Python modules are cached by absolute path; live module
    directories are version-scoped so a path always holds the same code.
    """

    def __init__(self) -> None:
        self._modules: Dict[Path, ModuleType] = {}

    def load(self, path: PathLike) -> Any:
        path = Path(path).resolve()
        if path.is_dir():
            return self._load_directory(path)
        if path.is_file():
            return self._load_file(path)
        with_suffix = path.with_name(path.name + ".py")
        if with_suffix.is_file():
            return self._load_python(with_suffix)
        raise ModuleLoadError(f"Nothing to load at {path}")

    def _load_directory(self, path: Path) -> Any:
        init = path / "__init__.py"
        if init.is_file():
            return self._load_python(init, package_dir=path)
        manifest = path / Constants.PACKAGE_JSON
        if manifest.is_file():
            main = json.loads(manifest.read_text(encoding="utf-8")).get("main")
            if main:
                return self.load(path / main)
        raise ModuleLoadError(f"{path} has neither __init__.py nor a main entry in {Constants.PACKAGE_JSON}")

    def _load_file(self, path: Path) -> Any:
        if path.suffix == ".json":
            try:
                return json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ModuleLoadError(f"Invalid JSON in {path}: {exc}") from exc
        if path.suffix == ".py":
            return self._load_python(path)
        raise ModuleLoadError(f"Do not know how to load {path}")

    def _load_python(self, path: Path, package_dir: Optional[Path] = None) -> ModuleType:
        cached = self._modules.get(path)
        if cached is not None:
            return cached

        module_name = f"grabthar_live_{sanitize(str(path.with_suffix('')))}"
        spec = importlib.util.spec_from_file_location(
            module_name,
            path,
            submodule_search_locations=[str(package_dir)] if package_dir is not None else None,
        )
        if spec is None or spec.loader is None:
            raise ModuleLoadError(f"Can not create import spec for {path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            sys.modules.pop(module_name, None)
            raise ModuleLoadError(f"Failed to import {path}: {exc}") from exc
        self._modules[path] = module
        return module

    def clear(self) -> None:
        """Forget cached modules so the next load re-executes them."""
        for module in self._modules.values():
            sys.modules.pop(module.__name__, None)
        self._modules.clear()
