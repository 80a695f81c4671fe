"""Tests for the cross-process directory lock."""

import asyncio
import os
import time

import pytest

from grabthar.constants import Constants
from grabthar.exceptions import LockTimeout
from grabthar.install.lock import LockService


class TestLockServiceExclusion:
    def test_serializes_same_directory(self, tmp_path):
        """Critical sections on one directory never overlap."""
        events = []

        async def _run():
            service = LockService(poll_interval=0.01)

            async def _task(label):
                async def _body():
                    events.append(("enter", label))
                    await asyncio.sleep(0.02)
                    events.append(("exit", label))
                    return label
                return await service.with_lock(tmp_path, _body)

            return await asyncio.gather(*(_task(i) for i in range(4)))

        results = asyncio.run(_run())

        assert sorted(results) == [0, 1, 2, 3]
        for index in range(0, len(events), 2):
            assert events[index][0] == "enter"
            assert events[index + 1] == ("exit", events[index][1])

    def test_serializes_across_service_instances(self, tmp_path):
        """Two services (as in two processes) only share the lock file."""
        inside = []

        async def _run():
            first = LockService(poll_interval=0.01)
            second = LockService(poll_interval=0.01)

            async def _hold(service, label):
                async with service.lock(tmp_path):
                    inside.append(label)
                    assert len(inside) == 1
                    await asyncio.sleep(0.03)
                    inside.remove(label)

            await asyncio.gather(_hold(first, "a"), _hold(second, "b"))

        asyncio.run(_run())

    def test_different_directories_do_not_block(self, tmp_path):
        async def _run():
            service = LockService(poll_interval=0.01, max_wait=0.5)
            async with service.lock(tmp_path / "one"):
                async with service.lock(tmp_path / "two"):
                    assert service.is_locked(tmp_path / "one")
                    assert service.is_locked(tmp_path / "two")

        asyncio.run(_run())


class TestLockServiceLifecycle:
    def test_lock_file_holds_timestamp_and_is_removed(self, tmp_path):
        async def _run():
            service = LockService()
            before = int(time.time() * 1000)
            async with service.lock(tmp_path) as lock_path:
                assert lock_path == (tmp_path / Constants.LOCK_FILENAME).resolve()
                assert int(lock_path.read_text()) >= before
            assert not service.is_locked(tmp_path)

        asyncio.run(_run())

    def test_released_when_body_raises(self, tmp_path):
        async def _run():
            service = LockService()
            with pytest.raises(RuntimeError):
                async with service.lock(tmp_path):
                    raise RuntimeError("boom")
            assert not service.is_locked(tmp_path)

        asyncio.run(_run())

    def test_stale_lock_is_reclaimed(self, tmp_path):
        stale = int((time.time() - 120) * 1000)
        (tmp_path / Constants.LOCK_FILENAME).write_text(str(stale))

        async def _run():
            service = LockService(poll_interval=0.01, stale_after=60, max_wait=1)
            return await service.with_lock(tmp_path, lambda: asyncio.sleep(0, result="done"))

        assert asyncio.run(_run()) == "done"
        assert not (tmp_path / Constants.LOCK_FILENAME).exists()

    def test_unreadable_lock_uses_mtime(self, tmp_path):
        lock_file = tmp_path / Constants.LOCK_FILENAME
        lock_file.write_text("")
        old = time.time() - 120
        os.utime(lock_file, (old, old))

        async def _run():
            service = LockService(poll_interval=0.01, stale_after=60, max_wait=1)
            async with service.lock(tmp_path):
                pass

        asyncio.run(_run())

    def test_fresh_foreign_lock_times_out(self, tmp_path):
        (tmp_path / Constants.LOCK_FILENAME).write_text(str(int(time.time() * 1000)))

        async def _run():
            service = LockService(poll_interval=0.01, stale_after=60, max_wait=0.05)
            async with service.lock(tmp_path):
                pass

        with pytest.raises(LockTimeout):
            asyncio.run(_run())
        assert (tmp_path / Constants.LOCK_FILENAME).exists()

    def test_release_leaves_reclaimed_lock(self, tmp_path):
        """A holder whose lock was taken over does not delete the new owner's file."""
        async def _run():
            service = LockService()
            async with service.lock(tmp_path) as lock_path:
                lock_path.unlink()
                lock_path.write_text("999")
            assert lock_path.read_text() == "999"

        asyncio.run(_run())

    def test_reset_clears_local_table(self, tmp_path):
        async def _run():
            service = LockService()
            async with service.lock(tmp_path):
                assert service._local_locks
                service.reset()
                assert not service._local_locks
            assert not service._local_locks

        asyncio.run(_run())

    def test_idle_entries_dropped(self, tmp_path):
        async def _run():
            service = LockService(poll_interval=0.01)
            sizes = []

            async def _hold():
                async with service.lock(tmp_path):
                    sizes.append(len(service._local_locks))
                    await asyncio.sleep(0.02)

            await asyncio.gather(_hold(), _hold())
            for index in range(3):
                async with service.lock(tmp_path / str(index)):
                    pass
            return sizes, len(service._local_locks)

        sizes, remaining = asyncio.run(_run())
        assert sizes == [1, 1]
        assert remaining == 0
