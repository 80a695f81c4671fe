"""npm-protocol registry access."""

from .client import RegistryClient, cdn_info_url, info_cache_key, registry_package_url
from .models import PackageMetadata, VersionInfo

__all__ = [
    "RegistryClient",
    "PackageMetadata",
    "VersionInfo",
    "cdn_info_url",
    "info_cache_key",
    "registry_package_url",
]
