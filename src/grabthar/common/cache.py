"""Cache layers: external pluggable cache, in-process backup and bounded LRU."""

from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

from .logging_utils import extra_context

T = TypeVar("T")

logger = logging.getLogger(__name__)


@runtime_checkable
class ExternalCache(Protocol):
    """Pluggable key/value cache shared outside the process (e.g. redis)."""

    async def get(self, key: str) -> Optional[str]:
        """Return the stored string or ``None`` when absent."""

    async def set(self, key: str, value: str) -> str:
        """Store ``value`` under ``key`` and return it."""


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with optional TTL."""

    value: T
    expires_at: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    def is_expired(self) -> bool:
        """Check if this entry has expired."""
        return self.expires_at is not None and time.time() > self.expires_at


class MemoryCache(Generic[T]):
    """In-process key/value store with optional per-entry TTL.

    Used as the stale backup for registry metadata, so entries never expire
    unless a TTL is given.
    """

    def __init__(self, default_ttl: Optional[float] = None):
        self._default_ttl = default_ttl
        self._cache: Dict[str, CacheEntry[T]] = {}

    def get(self, key: str) -> Optional[T]:
        """Get a value or ``None`` when missing or expired."""
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._cache[key]
            return None
        return entry.value

    def set(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        """Store a value."""
        effective_ttl = ttl if ttl is not None else self._default_ttl
        expires_at = time.time() + effective_ttl if effective_ttl is not None else None
        self._cache[key] = CacheEntry(value=value, expires_at=expires_at)

    def clear(self) -> None:
        """Clear all cached entries."""
        self._cache.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


class LRUCache(Generic[T]):
    """Bounded least-recently-used cache."""

    def __init__(self, max_entries: int):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._cache: "OrderedDict[str, T]" = OrderedDict()

    def get(self, key: str) -> Optional[T]:
        """Get a value and mark it as most recently used."""
        if key not in self._cache:
            return None
        self._cache.move_to_end(key)
        return self._cache[key]

    def set(self, key: str, value: T) -> None:
        """Store a value, evicting the least recently used entry when full."""
        self._cache[key] = value
        self._cache.move_to_end(key)
        while len(self._cache) > self._max_entries:
            self._cache.popitem(last=False)

    def clear(self) -> None:
        """Clear all cached entries."""
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: str) -> bool:
        return key in self._cache


async def try_strategies(strategies: Iterable[Callable[[], Awaitable[Optional[T]]]]) -> T:
    """Run strategies in order and return the first non-empty result.

    Raises:
        The last error raised by a strategy when none produced a result, or
        ``LookupError`` when all of them came back empty without failing.
    """
    last_error: Optional[BaseException] = None
    for strategy in strategies:
        try:
            result = await strategy()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            last_error = exc
            continue
        if result:
            return result
    if last_error is not None:
        raise last_error
    raise LookupError("No strategy produced a result")


async def cache_read(cache: Optional[ExternalCache], key: str) -> Optional[Any]:
    """Read and decode a JSON value from the external cache.

    Read failures are logged and reported as a miss.
    """
    if cache is None:
        return None
    try:
        raw = await cache.get(key)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        logger.warning(
            "External cache read failed: %s",
            exc,
            extra=extra_context(event="cache_read_error", component="cache", cache_key=key),
        )
        return None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(
            "External cache holds undecodable value",
            extra=extra_context(event="cache_decode_error", component="cache", cache_key=key),
        )
        return None


async def cache_write(cache: Optional[ExternalCache], key: str, value: Any) -> None:
    """Encode and store a JSON value in the external cache; failures are logged."""
    if cache is None or not value:
        return
    try:
        await cache.set(key, json.dumps(value))
    except Exception as exc:  # pylint: disable=broad-exception-caught
        logger.warning(
            "External cache write failed: %s",
            exc,
            extra=extra_context(event="cache_write_error", component="cache", cache_key=key),
        )
