"""Shared async HTTP client used by the registry resolver and tarball fetcher.

Wraps one lazily started ``aiohttp.ClientSession`` and a priority-aware
concurrency limiter so metadata lookups and tarball transfers share the
same connection pool and network budget.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp

from constants import Constants
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer

logger = logging.getLogger(__name__)


class PriorityLimiter:
    """Bounded concurrency where waiters with a lower priority value go first.

    Equal priorities are served in arrival order.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._limit = limit
        self._active = 0
        self._waiters: List[Tuple[int, int, asyncio.Future]] = []
        self._counter = itertools.count()

    @property
    def active(self) -> int:
        """Number of slots currently held."""
        return self._active

    async def acquire(self, priority: int = 0) -> None:
        """Wait for a slot."""
        if self._active < self._limit and not self._waiters:
            self._active += 1
            return
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (priority, next(self._counter), fut))
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was handed over right before cancellation.
                self.release()
            raise

    def release(self) -> None:
        """Hand the slot to the best waiter, or free it."""
        while self._waiters:
            _, _, fut = heapq.heappop(self._waiters)
            if not fut.done():
                fut.set_result(None)
                return
        self._active -= 1

    @asynccontextmanager
    async def slot(self, priority: int = 0) -> AsyncIterator[None]:
        """Hold a slot for the duration of the block."""
        await self.acquire(priority)
        try:
            yield
        finally:
            self.release()


class HttpClient:
    """Async HTTP client with a shared session and request limiter."""

    def __init__(
        self,
        user_agent: str,
        *,
        timeout: int = Constants.REQUEST_TIMEOUT,
        network_concurrency: int = Constants.NETWORK_CONCURRENCY,
    ):
        """Initialize the client.

        Args:
            user_agent: Value sent in the User-Agent header.
            timeout: Total request timeout in seconds.
            network_concurrency: Maximum simultaneous requests.
        """
        self._user_agent = user_agent
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._network_concurrency = network_concurrency
        self._session: Optional[aiohttp.ClientSession] = None
        self.limiter = PriorityLimiter(network_concurrency)

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            connector = aiohttp.TCPConnector(limit=self._network_concurrency)
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                connector=connector,
                headers={"User-Agent": self._user_agent},
            )

    async def stop(self) -> None:
        """Stop the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    @asynccontextmanager
    async def open_response(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        priority: int = 0,
    ) -> AsyncIterator[aiohttp.ClientResponse]:
        """Open a GET response; the limiter slot is held until the block exits.

        Raises:
            aiohttp.ClientError: On connection failures.
            asyncio.TimeoutError: When the request exceeds the timeout.
        """
        if self._session is None:
            await self.start()
        assert self._session is not None
        safe_target = safe_url(url)
        async with self.limiter.slot(priority):
            if is_debug_enabled(logger):
                logger.debug(
                    "HTTP request",
                    extra=extra_context(
                        event="http_request",
                        component="http_client",
                        action="GET",
                        target=safe_target,
                        priority=priority,
                    ),
                )
            with Timer() as timer:
                async with self._session.get(url, headers=headers) as response:
                    yield response
            if is_debug_enabled(logger):
                logger.debug(
                    "HTTP response done",
                    extra=extra_context(
                        event="http_response",
                        component="http_client",
                        action="GET",
                        status_code=response.status,
                        duration_ms=timer.duration_ms(),
                        target=safe_target,
                    ),
                )

    async def get_json(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        priority: int = 0,
    ) -> Tuple[int, Optional[Any]]:
        """GET a JSON document.

        Returns:
            Tuple of (status_code, parsed_json_or_none). Non-200 responses and
            undecodable bodies yield ``None`` as the payload.
        """
        async with self.open_response(url, headers=headers, priority=priority) as response:
            status = response.status
            if status != 200:
                return status, None
            text = await response.text()
        try:
            return status, json.loads(text)
        except json.JSONDecodeError:
            logger.warning(
                "Couldn't decode JSON response",
                extra=extra_context(
                    event="parse",
                    component="http_client",
                    outcome="json_decode_error",
                    target=safe_url(url),
                ),
            )
            return status, None

    async def __aenter__(self) -> "HttpClient":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.stop()
