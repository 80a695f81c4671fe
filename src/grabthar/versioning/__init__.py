"""Version resolution for live modules."""

from .models import ResolvedVersion, Stability, StabilityMap
from .resolver import eligible_versions, is_strict_semver, resolve

__all__ = [
    "ResolvedVersion",
    "Stability",
    "StabilityMap",
    "eligible_versions",
    "is_strict_semver",
    "resolve",
]
