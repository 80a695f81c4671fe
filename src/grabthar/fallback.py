"""Local fallback: describe a copy of the module already installed on the host."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Optional, Union

from .common.logging_utils import extra_context
from .constants import Constants
from .exceptions import ModuleLoadError
from .loader import resolve_dependency_dir
from .models import DependencyDetails, ModuleDetails

logger = logging.getLogger(__name__)


def _read_manifest(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ModuleLoadError(f"Can not read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ModuleLoadError(f"{path} is not a JSON object")
    return data


def find_local_module(name: str, root: Optional[Union[str, Path]] = None) -> Path:
    """Walk up from ``root`` to the nearest ``node_modules/{name}`` with a manifest.

    Raises:
        ModuleLoadError: When no ancestor holds an installation.
    """
    start = Path(root) if root is not None else Path(os.getcwd())
    start = start.resolve()
    for ancestor in (start, *start.parents):
        if ancestor.name == Constants.NODE_MODULES:
            continue
        module_path = ancestor.joinpath(Constants.NODE_MODULES, *name.split("/"))
        if (module_path / Constants.PACKAGE_JSON).is_file():
            return module_path
    raise ModuleLoadError(f"Can not find a local installation of {name} from {start}")


def get_fallback(name: str, root: Optional[Union[str, Path]] = None) -> ModuleDetails:
    """Build ModuleDetails for a local installation of ``name``.

    Dependency versions come from the installed dependency manifests;
    dependencies that are not installed locally are left out.
    """
    module_path = find_local_module(name, root)
    manifest = _read_manifest(module_path / Constants.PACKAGE_JSON)
    version = manifest.get("version")
    if not isinstance(version, str):
        raise ModuleLoadError(f"Local installation of {name} at {module_path} has no version")

    dependencies: Dict[str, DependencyDetails] = {}
    for dependency in manifest.get("dependencies") or {}:
        try:
            dependency_path = resolve_dependency_dir(module_path, dependency)
            dependency_manifest = _read_manifest(dependency_path / Constants.PACKAGE_JSON)
        except ModuleLoadError as exc:
            logger.warning(
                "Skipping dependency %s of local %s: %s",
                dependency,
                name,
                exc,
                extra=extra_context(event="fallback_dependency_missing", component="fallback", package=name),
            )
            continue
        dependencies[dependency] = DependencyDetails(
            version=str(dependency_manifest.get("version", "")),
            path=dependency_path,
        )

    node_modules_path = module_path.parent
    if "/" in name:
        node_modules_path = node_modules_path.parent
    return ModuleDetails(
        node_modules_path=node_modules_path,
        module_path=module_path,
        version=version,
        previous_version=version,
        dependencies=MappingProxyType(dependencies),
    )
