"""Installation of live modules and the directory lock guarding it."""

from .lock import LockService
from .pipeline import (
    Installer,
    live_modules_root,
    module_prefix,
    package_directory,
    rewrite_tarball_origin,
    validate_dependency_versions,
)

__all__ = [
    "Installer",
    "LockService",
    "live_modules_root",
    "module_prefix",
    "package_directory",
    "rewrite_tarball_origin",
    "validate_dependency_versions",
]
