"""TTL-aware memoization of coroutine functions.

Concurrent callers with the same arguments share one in-flight task. With a
TTL the settled result is also reused until it expires; without one the entry
is dropped as soon as the task settles. Failed tasks are never reused.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


def stable_key(*args: Any, **kwargs: Any) -> str:
    """Hash call arguments into a stable cache key.

    Raises:
        TypeError: If the arguments cannot be serialized.
    """
    try:
        payload = json.dumps([args, kwargs], sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise TypeError("Arguments not serializable -- can not be used to memoize") from exc
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class MemoEntry(Generic[T]):
    """A shared task plus its optional expiry."""

    task: "asyncio.Future[T]"
    expires_at: Optional[float] = None
    created_at: float = field(default_factory=time.monotonic)

    def is_expired(self) -> bool:
        """Check if this entry has expired."""
        return self.expires_at is not None and time.monotonic() > self.expires_at


class AsyncMemo(Generic[T]):
    """Memoize a coroutine function by its arguments."""

    def __init__(
        self,
        func: Callable[..., Awaitable[T]],
        ttl: Optional[float] = None,
        key: Callable[..., str] = stable_key,
    ):
        """Initialize the memo.

        Args:
            func: Coroutine function to wrap.
            ttl: Seconds a successful result is reused after it settles. ``None``
                shares only in-flight calls.
            key: Maps call arguments to a cache key.
        """
        self._func = func
        self._ttl = ttl
        self._key = key
        self._entries: Dict[str, MemoEntry[T]] = {}

    async def __call__(self, *args: Any, **kwargs: Any) -> T:
        key = self._key(*args, **kwargs)
        entry = self._entries.get(key)
        if entry is None or entry.is_expired():
            entry = MemoEntry(task=asyncio.ensure_future(self._func(*args, **kwargs)))
            self._entries[key] = entry
            entry.task.add_done_callback(lambda task, key=key, entry=entry: self._settled(key, entry))
        # Shielded so one cancelled caller does not cancel the shared task.
        return await asyncio.shield(entry.task)

    def _settled(self, key: str, entry: MemoEntry[T]) -> None:
        if self._entries.get(key) is not entry:
            return
        if entry.task.cancelled() or entry.task.exception() is not None or self._ttl is None:
            del self._entries[key]
            return
        entry.expires_at = time.monotonic() + self._ttl

    def clear(self) -> None:
        """Forget every entry. In-flight tasks keep running for their callers."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
