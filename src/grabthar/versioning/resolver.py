"""Live version resolution with stability rollback.

Given a package document, a dist-tag and the operator's stability verdicts,
pick the version to run and a safe previous version. Candidates are fenced to
the tagged version's major line and never newer than the tagged version, so
marking a release unstable rolls every watcher back to the last good release
without republishing anything.
"""

import re
from typing import List, Optional

import semantic_version

from ..constants import Constants
from ..exceptions import NoEligibleVersions, NoFallback, NoTagFound
from ..registry.models import PackageMetadata
from .models import ResolvedVersion, StabilityMap

_STRICT_SEMVER = re.compile(Constants.STRICT_SEMVER_PATTERN)


def is_strict_semver(version: str) -> bool:
    """True for plain ``X.Y.Z`` versions (no pre-release or build suffix)."""
    return isinstance(version, str) and bool(_STRICT_SEMVER.match(version))


def eligible_versions(
    metadata: PackageMetadata, current_version: str, stability: StabilityMap
) -> List[semantic_version.Version]:
    """Strict versions on the current major line, not newer than it and not unstable.

    Returned highest first.
    """
    current = semantic_version.Version(current_version)
    candidates = []
    for raw in metadata.versions:
        if not is_strict_semver(raw):
            continue
        try:
            version = semantic_version.Version(raw)
        except ValueError:
            continue
        if version.major != current.major or version > current:
            continue
        if stability.is_unstable(raw):
            continue
        candidates.append(version)
    candidates.sort(reverse=True)
    return candidates


def resolve(metadata: PackageMetadata, tag: str, stability: StabilityMap) -> ResolvedVersion:
    """Resolve the version to run for ``tag``.

    Args:
        metadata: Package document.
        tag: Dist-tag to follow.
        stability: Operator verdicts; unmarked versions are stable.

    Returns:
        ResolvedVersion with ``version`` and ``previous_version``.

    Raises:
        NoTagFound: ``tag`` is not published.
        NoEligibleVersions: No version passes the filters.
        NoFallback: The tagged version is unstable and nothing replaces it.
    """
    current_version = metadata.dist_tags.get(tag)
    if not current_version:
        raise NoTagFound(f"No {tag} tag found for {metadata.name}")
    try:
        current = semantic_version.Version(current_version)
    except ValueError as exc:
        raise NoEligibleVersions(
            f"{tag} tag of {metadata.name} points at invalid version {current_version}"
        ) from exc

    candidates = eligible_versions(metadata, current_version, stability)
    if not candidates:
        raise NoEligibleVersions(f"No eligible versions found for {metadata.name}@{tag}")

    # The tagged version may have been marked unstable after filtering started.
    stable_versions = [v for v in candidates if not stability.is_unstable(str(v))]

    previous: Optional[semantic_version.Version] = next(
        (v for v in stable_versions if v < current), candidates[0]
    )
    previous_version = str(previous) if previous is not None else None

    version = current_version
    if stability.is_unstable(current_version):
        if previous_version is None:
            raise NoFallback(
                f"{metadata.name}@{current_version} is unstable and no previous version is available"
            )
        version = previous_version

    return ResolvedVersion(version=version, previous_version=previous_version)
