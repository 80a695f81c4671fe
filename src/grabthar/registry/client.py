"""Registry client: package metadata from an npm registry or a CDN mirror."""

from __future__ import annotations

import logging
import time
import urllib.parse
from typing import Optional

from ..common.cache import ExternalCache, MemoryCache, cache_read, cache_write, try_strategies
from ..common.fs import sanitize
from ..common.http_client import TRANSPORT_ERRORS, HttpClient
from ..common.logging_utils import extra_context, is_debug_enabled, safe_url
from ..common.memo import AsyncMemo
from ..constants import Constants
from ..exceptions import RegistryError
from .models import PackageMetadata


def info_cache_key(name: str, cdn_registry: Optional[str] = None) -> str:
    """External cache key for a package document."""
    return f"{Constants.INFO_CACHE_KEY_PREFIX}_{sanitize(name)}_{sanitize(cdn_registry or 'npm')}"


def cache_bust_bucket(now_ms: Optional[int] = None) -> int:
    """Coarse time bucket appended to CDN requests; changes once per window."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return now_ms // Constants.CDN_REGISTRY_INFO_CACHEBUST_URL_TIME


def registry_package_url(registry: str, name: str) -> str:
    """URL of a package document on the primary registry (scoped names escaped)."""
    return f"{registry.rstrip('/')}/{urllib.parse.quote(name, safe='@')}"


def cdn_info_url(cdn_registry: str, name: str, now_ms: Optional[int] = None) -> str:
    """URL of a package document on a CDN mirror."""
    name_without_scope = name.split("/")[-1]
    return (
        f"{cdn_registry.rstrip('/')}/{name_without_scope}/{Constants.CDN_REGISTRY_INFO_FILENAME}"
        f"?cache-bust={cache_bust_bucket(now_ms)}"
    )


class RegistryClient:
    """Fetches package metadata with deduplication and layered caching.

    One instance is meant to be shared per process. Strategies are tried in
    order: the external cache, a live fetch (CDN mirror first when
    configured, then the primary registry) and finally the last document
    fetched live by this process.
    """

    def __init__(
        self,
        http: Optional[HttpClient] = None,
        cache: Optional[ExternalCache] = None,
        logger: Optional[logging.Logger] = None,
        memo_ttl: float = Constants.INFO_MEMORY_CACHE_LIFETIME,
        timeout: float = Constants.REQUEST_TIMEOUT,
    ):
        """Initialize the client.

        Args:
            http: Shared HTTP client; one is created (and owned) when omitted.
            cache: Optional external cache.
            logger: Logger for events; defaults to the module logger.
            memo_ttl: Seconds identical fetches share one result.
            timeout: Request timeout used when the HTTP client is created here.
        """
        self._owns_http = http is None
        self.http = http or HttpClient(timeout=timeout)
        self._cache = cache
        self._logger = logger or logging.getLogger(__name__)
        self._backup: MemoryCache[PackageMetadata] = MemoryCache()
        self._memo: AsyncMemo[PackageMetadata] = AsyncMemo(self._fetch_info, ttl=memo_ttl)

    async def fetch_info(
        self,
        name: str,
        registry: str = Constants.NPM_REGISTRY,
        cdn_registry: Optional[str] = None,
    ) -> PackageMetadata:
        """Return the metadata for ``name``.

        Raises:
            RegistryError: When no strategy produced a document.
        """
        return await self._memo(name, registry, cdn_registry)

    async def _fetch_info(self, name: str, registry: str, cdn_registry: Optional[str]) -> PackageMetadata:
        cache_key = info_cache_key(name, cdn_registry)

        async def from_external_cache() -> Optional[PackageMetadata]:
            data = await cache_read(self._cache, cache_key)
            if not data:
                return None
            return PackageMetadata.from_dict(data)

        async def from_network() -> PackageMetadata:
            metadata = await self._fetch_live(name, registry, cdn_registry)
            self._backup.set(cache_key, metadata)
            await cache_write(self._cache, cache_key, metadata.to_dict())
            return metadata

        async def from_backup() -> Optional[PackageMetadata]:
            metadata = self._backup.get(cache_key)
            if metadata is not None:
                self._logger.warning(
                    "Serving stale metadata for %s from memory",
                    name,
                    extra=extra_context(event="registry_stale_fallback", component="registry", package=name),
                )
            return metadata

        return await try_strategies([from_external_cache, from_network, from_backup])

    async def _fetch_live(self, name: str, registry: str, cdn_registry: Optional[str]) -> PackageMetadata:
        if cdn_registry:
            metadata = await self._fetch_from_cdn(name, cdn_registry)
            if metadata is not None:
                return metadata
        return await self._fetch_from_registry(name, registry)

    async def _fetch_from_cdn(self, name: str, cdn_registry: str) -> Optional[PackageMetadata]:
        url = cdn_info_url(cdn_registry, name)
        try:
            status, data = await self.http.get_json(url, context="cdn")
        except TRANSPORT_ERRORS as exc:
            self._logger.warning(
                "CDN registry request failed: %s",
                exc,
                extra=extra_context(event="cdn_registry_error", component="registry", package=name, target=safe_url(url)),
            )
            return None

        if not 200 <= status < 300 or data is None:
            self._logger.warning(
                "CDN registry returned unusable response (status %s); falling back to registry",
                status,
                extra=extra_context(
                    event="cdn_registry_error",
                    component="registry",
                    package=name,
                    status_code=status,
                    target=safe_url(url),
                ),
            )
            return None

        try:
            metadata = PackageMetadata.from_dict(data, fetched_from_cdn=True)
        except ValueError as exc:
            self._logger.warning(
                "CDN registry returned malformed metadata: %s",
                exc,
                extra=extra_context(event="cdn_registry_error", component="registry", package=name),
            )
            return None

        if is_debug_enabled(self._logger):
            self._logger.debug(
                "Metadata served by CDN registry",
                extra=extra_context(event="cdn_registry_hit", component="registry", package=name),
            )
        return metadata

    async def _fetch_from_registry(self, name: str, registry: str) -> PackageMetadata:
        url = registry_package_url(registry, name)
        try:
            status, data = await self.http.get_json(url, context="npm")
        except TRANSPORT_ERRORS as exc:
            raise RegistryError(f"Registry request for {name} failed: {exc}") from exc

        if not 200 <= status < 300:
            raise RegistryError(f"Registry returned status {status} for {name}", status=status)
        if data is None:
            raise RegistryError(f"Registry returned an undecodable document for {name}", status=status)
        try:
            return PackageMetadata.from_dict(data)
        except ValueError as exc:
            raise RegistryError(f"Malformed metadata for {name}: {exc}", status=status) from exc

    def reset(self) -> None:
        """Drop every in-process cache entry."""
        self._memo.clear()
        self._backup.clear()

    async def close(self) -> None:
        """Release the HTTP session when this client created it."""
        if self._owns_http:
            await self.http.stop()
