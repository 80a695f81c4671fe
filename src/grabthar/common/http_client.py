"""Shared async HTTP helpers used by the registry client and the installer.

Wraps a single aiohttp session with an explicit total timeout and consistent
DEBUG traces so callers only deal with status codes and bodies.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Tuple

import aiohttp

from ..constants import Constants
from .logging_utils import Timer, extra_context, is_debug_enabled, safe_url

logger = logging.getLogger(__name__)

# Transport failures callers are expected to translate into domain errors.
TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


class HttpClient:
    """Lazily started aiohttp session with a fixed request timeout."""

    def __init__(self, timeout: float = Constants.REQUEST_TIMEOUT):
        """Initialize the client.

        Args:
            timeout: Total timeout in seconds applied to every request.
        """
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"User-Agent": "grabthar/0.1"},
            )

    async def stop(self) -> None:
        """Stop the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def get(self, url: str, *, context: str, **kwargs: Any) -> Tuple[int, bytes]:
        """Perform a GET request and return ``(status, body)``.

        Transport errors and timeouts propagate to the caller.
        """
        await self.start()
        assert self._session is not None
        safe_target = safe_url(url)
        if is_debug_enabled(logger):
            logger.debug(
                "HTTP request",
                extra=extra_context(
                    event="http_request",
                    component="http_client",
                    action="GET",
                    target=safe_target,
                    context=context,
                ),
            )
        with Timer() as t:
            async with self._session.get(url, **kwargs) as response:
                body = await response.read()
                status = response.status
        if is_debug_enabled(logger):
            logger.debug(
                "HTTP response",
                extra=extra_context(
                    event="http_response",
                    component="http_client",
                    action="GET",
                    status_code=status,
                    duration_ms=t.duration_ms(),
                    target=safe_target,
                    context=context,
                ),
            )
        return status, body

    async def get_json(self, url: str, *, context: str, **kwargs: Any) -> Tuple[int, Optional[Any]]:
        """Perform a GET request and parse a JSON body.

        Returns:
            Tuple of (status_code, parsed_json_or_none). The body is only
            parsed for 2xx responses.
        """
        status, body = await self.get(url, context=context, **kwargs)
        if not 200 <= status < 300 or not body:
            return status, None
        try:
            return status, json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            if is_debug_enabled(logger):
                logger.debug(
                    "JSON decode error",
                    extra=extra_context(
                        event="parse",
                        component="http_client",
                        action="get_json",
                        outcome="json_decode_error",
                        status_code=status,
                        target=safe_url(url),
                    ),
                )
            return status, None

    async def __aenter__(self) -> "HttpClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
