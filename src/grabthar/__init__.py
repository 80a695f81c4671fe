"""grabthar: keep a registry package's live version installed in a running process."""

from .cleanup import CleanupTask
from .config import WatcherConfig
from .exceptions import (
    AmbiguousTag,
    GrabtharError,
    InstallError,
    InvalidDependencyVersion,
    LiveModuleUnavailable,
    LockTimeout,
    ModuleLoadError,
    NoEligibleVersions,
    NoFallback,
    NoTagFound,
    RegistryError,
    VersionResolutionError,
)
from .install import Installer, LockService
from .loader import ModuleLoader, PythonModuleLoader
from .models import DependencyDetails, ModuleDetails
from .poller import Poller
from .registry import PackageMetadata, RegistryClient
from .versioning import StabilityMap, resolve
from .watcher import Watcher, poll

__version__ = "0.1.0"

__all__ = [
    "AmbiguousTag",
    "CleanupTask",
    "DependencyDetails",
    "GrabtharError",
    "InstallError",
    "Installer",
    "InvalidDependencyVersion",
    "LiveModuleUnavailable",
    "LockService",
    "LockTimeout",
    "ModuleDetails",
    "ModuleLoadError",
    "ModuleLoader",
    "NoEligibleVersions",
    "NoFallback",
    "NoTagFound",
    "PackageMetadata",
    "Poller",
    "PythonModuleLoader",
    "RegistryClient",
    "RegistryError",
    "StabilityMap",
    "VersionResolutionError",
    "Watcher",
    "WatcherConfig",
    "poll",
    "resolve",
]
