"""Cross-process directory lock backed by a timestamp file.

The lock for a directory is the file ``{directory}/.grabthar.lock``. Whoever
creates it first (``O_CREAT | O_EXCL``) holds the lock; the file holds the
acquisition time in epoch milliseconds. Waiters poll until the file is gone or
older than the staleness threshold, in which case it is treated as abandoned
by a crashed holder and reclaimed. Callers inside one process queue on an
``asyncio.Lock`` before touching the file.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar, Union

from ..common.logging_utils import extra_context, is_debug_enabled
from ..constants import Constants
from ..exceptions import LockTimeout

T = TypeVar("T")


@dataclass
class _LocalLock:
    """In-process queue for one directory and the number of tasks using it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass(frozen=True)
class _LockHandle:
    """What a holder needs to release only its own lock file."""

    path: Path
    timestamp: str
    inode: int


def _now_ms() -> int:
    return int(time.time() * 1000)


class LockService:
    """Serializes work on a directory across tasks and OS processes."""

    def __init__(
        self,
        poll_interval: float = Constants.LOCK_POLL_INTERVAL,
        stale_after: float = Constants.LOCK_STALE_AFTER,
        max_wait: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize the service.

        Args:
            poll_interval: Seconds between attempts while the lock is held elsewhere.
            stale_after: Age in seconds after which a lock file is reclaimed.
            max_wait: Optional bound on the total wait; exceeding it raises
                ``LockTimeout``. Unbounded by default since stale locks are reclaimed.
            logger: Logger for events; defaults to the module logger.
        """
        self._poll_interval = poll_interval
        self._stale_after = stale_after
        self._max_wait = max_wait
        self._logger = logger or logging.getLogger(__name__)
        self._local_locks: Dict[str, _LocalLock] = {}

    @asynccontextmanager
    async def lock(self, directory: Union[str, Path]) -> AsyncIterator[Path]:
        """Hold the lock for ``directory`` for the duration of the block."""
        directory = Path(directory).resolve()
        key = str(directory)
        local = self._local_locks.get(key)
        if local is None:
            local = self._local_locks[key] = _LocalLock()
        local.users += 1
        try:
            async with local.lock:
                handle = await self._acquire(directory)
                try:
                    yield handle.path
                finally:
                    await asyncio.to_thread(self._release, handle)
        finally:
            local.users -= 1
            if local.users == 0 and self._local_locks.get(key) is local:
                del self._local_locks[key]

    async def with_lock(self, directory: Union[str, Path], task: Callable[[], Awaitable[T]]) -> T:
        """Run ``task`` while holding the lock for ``directory`` and return its result."""
        async with self.lock(directory):
            return await task()

    def is_locked(self, directory: Union[str, Path]) -> bool:
        """True when a lock file currently exists for ``directory``."""
        return (Path(directory) / Constants.LOCK_FILENAME).exists()

    def reset(self) -> None:
        """Forget in-process lock bookkeeping. Lock files on disk are untouched."""
        self._local_locks.clear()

    async def _acquire(self, directory: Path) -> _LockHandle:
        lock_path = directory / Constants.LOCK_FILENAME
        started = time.monotonic()
        while True:
            handle = await asyncio.to_thread(self._try_create, lock_path)
            if handle is not None:
                if is_debug_enabled(self._logger):
                    self._logger.debug(
                        "Lock acquired",
                        extra=extra_context(event="lock_acquired", component="lock", target=str(lock_path)),
                    )
                return handle

            age = await asyncio.to_thread(self._lock_age, lock_path)
            if age is None:
                # Released between our attempt and the age check.
                continue
            if age > self._stale_after:
                self._logger.warning(
                    "Reclaiming stale lock %s (age %.1fs)",
                    lock_path,
                    age,
                    extra=extra_context(event="lock_reclaimed", component="lock", target=str(lock_path)),
                )
                await asyncio.to_thread(self._reclaim, lock_path)
                continue

            waited = time.monotonic() - started
            if self._max_wait is not None and waited > self._max_wait:
                raise LockTimeout(f"Timed out after {waited:.1f}s waiting for lock {lock_path}")
            await asyncio.sleep(self._poll_interval)

    @staticmethod
    def _try_create(lock_path: Path) -> Optional[_LockHandle]:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return None
        timestamp = str(_now_ms())
        try:
            os.write(fd, timestamp.encode("ascii"))
            inode = os.fstat(fd).st_ino
        finally:
            os.close(fd)
        return _LockHandle(path=lock_path, timestamp=timestamp, inode=inode)

    @staticmethod
    def _lock_age(lock_path: Path) -> Optional[float]:
        """Seconds since the lock was taken, or None when there is no lock."""
        try:
            content = lock_path.read_text(encoding="ascii").strip()
            stat = lock_path.stat()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError):
            content = ""
            try:
                stat = lock_path.stat()
            except FileNotFoundError:
                return None
        try:
            acquired_ms = int(content)
        except ValueError:
            # Holder died between creating and writing the file.
            acquired_ms = int(stat.st_mtime * 1000)
        return (_now_ms() - acquired_ms) / 1000

    @staticmethod
    def _reclaim(lock_path: Path) -> None:
        # Renaming first means only one reclaimer removes a given stale file.
        tombstone = lock_path.with_name(f"{lock_path.name}.{os.getpid()}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(lock_path, tombstone)
        except FileNotFoundError:
            return
        try:
            tombstone.unlink()
        except FileNotFoundError:
            pass

    def _release(self, handle: _LockHandle) -> None:
        try:
            current_inode = handle.path.stat().st_ino
            current = handle.path.read_text(encoding="ascii").strip()
        except FileNotFoundError:
            self._logger.warning(
                "Lock %s vanished before release",
                handle.path,
                extra=extra_context(event="lock_missing", component="lock", target=str(handle.path)),
            )
            return
        if current_inode != handle.inode or current != handle.timestamp:
            self._logger.warning(
                "Lock %s was reclaimed by another holder; leaving it in place",
                handle.path,
                extra=extra_context(event="lock_lost", component="lock", target=str(handle.path)),
            )
            return
        try:
            handle.path.unlink()
        except FileNotFoundError:
            pass
        if is_debug_enabled(self._logger):
            self._logger.debug(
                "Lock released",
                extra=extra_context(event="lock_released", component="lock", target=str(handle.path)),
            )
