"""Periodic task runner with exponential backoff and last-known-good results."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .common.logging_utils import extra_context, is_debug_enabled
from .constants import Constants

T = TypeVar("T")

ErrorHandler = Callable[[BaseException], None]


class Poller(Generic[T]):
    """Run ``handler`` repeatedly on one asyncio task.

    ``result()`` resolves to the first cycle's outcome, then only ever moves
    forward to newer successes: a failing cycle keeps the previous good value
    and doubles the wait (by ``multiplier``, up to ``max_interval``). Any
    success resets the wait to ``period``. ``stop()`` only prevents the next
    cycle; a cycle already running completes.
    """

    def __init__(
        self,
        handler: Callable[[], Awaitable[T]],
        period: float,
        on_error: Optional[ErrorHandler] = None,
        multiplier: float = Constants.POLL_BACKOFF_MULTIPLIER,
        max_interval: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if period <= 0:
            raise ValueError("period must be positive")
        if multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        self._handler = handler
        self._period = period
        self._on_error = on_error
        self._multiplier = multiplier
        self._max_interval = max_interval if max_interval is not None else period * Constants.POLL_MAX_BACKOFF_FACTOR
        self._logger = logger or logging.getLogger(__name__)

        self._running = False
        self._interval = period
        self._current_result: Optional["asyncio.Future[T]"] = None
        self._next_result: Optional["asyncio.Future[T]"] = None
        self._task: Optional["asyncio.Task[None]"] = None
        self._wake: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def interval(self) -> float:
        """Current wait between cycles."""
        return self._interval

    def start(self) -> "Poller[T]":
        """Start the loop on the running event loop. Idempotent while running."""
        if self._running:
            return self
        if self._task is not None and not self._task.done():
            # Stopped but the loop has not exited yet; keep using it.
            assert self._wake is not None
            self._running = True
            self._wake.clear()
            return self
        loop = asyncio.get_running_loop()
        self._running = True
        self._wake = asyncio.Event()
        if self._current_result is None:
            self._current_result = loop.create_future()
        self._task = loop.create_task(self._loop())
        return self

    def stop(self) -> "Poller[T]":
        """Prevent further cycles and wake the loop if it is sleeping."""
        self._running = False
        if self._wake is not None:
            self._wake.set()
        return self

    async def result(self) -> T:
        """Most recent successful result, or the first cycle's outcome.

        Raises:
            RuntimeError: If the poller was never started.
        """
        if self._current_result is None:
            raise RuntimeError("Poller has not been started")
        return await asyncio.shield(self._current_result)

    async def join(self) -> None:
        """Wait for the loop task to finish after ``stop()``."""
        if self._task is not None:
            await self._task

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            assert self._current_result is not None
            first_cycle = not self._current_result.done()
            outcome: "asyncio.Future[T]" = self._current_result if first_cycle else loop.create_future()
            self._next_result = outcome

            try:
                value = await self._handler()
            except Exception as exc:  # pylint: disable=broad-exception-caught
                outcome.set_exception(exc)
                # Marks the exception as retrieved; callers still see it via result().
                outcome.exception()
                self._interval = min(self._interval * self._multiplier, self._max_interval)
                self._report(exc)
            else:
                outcome.set_result(value)
                self._current_result = outcome
                self._interval = self._period

            if not self._running:
                break
            await self._sleep(self._interval)

    async def _sleep(self, interval: float) -> None:
        assert self._wake is not None
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    def _report(self, exc: BaseException) -> None:
        if is_debug_enabled(self._logger):
            self._logger.debug(
                "Poll cycle failed; next attempt in %ss",
                self._interval,
                extra=extra_context(event="poll_error", component="poller", error=str(exc)),
            )
        if self._on_error is None:
            return
        try:
            self._on_error(exc)
        except Exception:  # pylint: disable=broad-exception-caught
            self._logger.exception(
                "Poll error handler raised",
                extra=extra_context(event="poll_error_handler_failed", component="poller"),
            )
