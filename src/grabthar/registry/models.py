"""Data models for registry metadata."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from ..constants import Constants


@dataclass(frozen=True)
class VersionInfo:
    """The parts of one published version that installation needs."""

    dependencies: Mapping[str, str] = field(default_factory=dict)
    tarball: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VersionInfo":
        """Build from a registry version document."""
        dist = data.get("dist") or {}
        return cls(
            dependencies=MappingProxyType(dict(data.get("dependencies") or {})),
            tarball=dist.get("tarball"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize back to the registry version shape."""
        dist = {"tarball": self.tarball} if self.tarball else {}
        return {"dependencies": dict(self.dependencies), "dist": dist}


@dataclass(frozen=True)
class PackageMetadata:
    """Immutable snapshot of a package document, trimmed to what is used downstream."""

    name: str
    versions: Mapping[str, VersionInfo]
    dist_tags: Mapping[str, str]
    fetched_from_cdn: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fetched_from_cdn: bool = False) -> "PackageMetadata":
        """Build from a registry package document.

        Raises:
            ValueError: If the document lacks the required fields.
        """
        if not isinstance(data, dict):
            raise ValueError("Package document is not an object")
        name = data.get("name")
        versions = data.get("versions")
        dist_tags = data.get(Constants.DIST_TAGS)
        if not isinstance(name, str) or not isinstance(versions, dict) or not isinstance(dist_tags, dict):
            raise ValueError("Package document is missing name, versions or dist-tags")
        return cls(
            name=name,
            versions=MappingProxyType(
                {version: VersionInfo.from_dict(info or {}) for version, info in versions.items()}
            ),
            dist_tags=MappingProxyType(dict(dist_tags)),
            fetched_from_cdn=fetched_from_cdn or bool(data.get("fetchedFromCDNRegistry")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the trimmed registry shape, suitable for caching."""
        return {
            "name": self.name,
            "versions": {version: info.to_dict() for version, info in self.versions.items()},
            Constants.DIST_TAGS: dict(self.dist_tags),
            "fetchedFromCDNRegistry": self.fetched_from_cdn,
        }
