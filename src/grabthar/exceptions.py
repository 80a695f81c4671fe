"""Error taxonomy for live module synchronization."""

from __future__ import annotations

from typing import Optional


class GrabtharError(Exception):
    """Base class for every error raised by grabthar."""


class RegistryError(GrabtharError):
    """Registry metadata could not be fetched or was malformed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class VersionResolutionError(GrabtharError):
    """No usable version could be derived from the registry metadata."""


class NoTagFound(VersionResolutionError):
    """The requested dist-tag is not present."""


class NoEligibleVersions(VersionResolutionError):
    """No published version passes the eligibility filters."""


class NoFallback(VersionResolutionError):
    """The tagged version is unstable and nothing can replace it."""


class InstallError(GrabtharError):
    """A package could not be placed into its live module directory."""


class InvalidDependencyVersion(InstallError):
    """A dependency is pinned to something other than a strict X.Y.Z version."""


class LockTimeout(GrabtharError):
    """Waiting for a directory lock exceeded the allowed time."""


class AmbiguousTag(GrabtharError):
    """The caller must say which dist-tag to read."""


class ModuleLoadError(GrabtharError):
    """Code or data could not be loaded from an installed module."""


class LiveModuleUnavailable(GrabtharError):
    """Both the live poll result and the local fallback failed."""

    def __init__(self, live_error: BaseException, fallback_error: BaseException):
        super().__init__(
            f"{type(live_error).__name__}: {live_error}\n\n"
            f"Fallback failed:\n\n{type(fallback_error).__name__}: {fallback_error}"
        )
        self.live_error = live_error
        self.fallback_error = fallback_error
