"""Timeout-bounded HTTP fetch with fixed-delay retry."""

import aiohttp
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field, replace
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional


logger = logging.getLogger(__name__)


class FetchError(Exception):
    """A network fetch failed (transport error or non-2xx response)."""

    def __init__(self, message: str, status: Optional[int] = None, response: Optional['FetchResponse'] = None):
        super().__init__(message)
        self.status = status
        self.response = response


class FetchTimeoutError(FetchError):
    """A single network attempt exceeded its timeout."""
    pass


@dataclass(frozen=True)
class FetchRequest:
    """An outgoing HTTP request."""
    url: str
    method: str = 'GET'
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None

    def with_header(self, name: str, value: str) -> 'FetchRequest':
        """Return a copy with the header set, unless it is already present."""
        if any(key.lower() == name.lower() for key in self.headers):
            return self
        headers = dict(self.headers)
        headers[name] = value
        return replace(self, headers=headers)


@dataclass
class FetchResponse:
    """
    A fully-read HTTP response.

    ``timestamp`` is the epoch time (seconds) the response was produced. It
    comes from the ``Date`` header when the server sends one, otherwise from
    the moment the response was received. Cache staleness is computed from it.
    """
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b''
    url: str = ''
    timestamp: float = field(default_factory=time.time)
    status_text: str = ''

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    def text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    def json(self) -> Any:
        return json.loads(self.body.decode('utf-8'))


def response_timestamp(headers: Dict[str, str], fallback: float) -> float:
    """
    Derive a response timestamp from its Date header.

    Args:
        headers: Response headers
        fallback: Epoch seconds used when the header is absent or unparseable

    Returns:
        Epoch seconds
    """
    for key, value in headers.items():
        if key.lower() == 'date':
            try:
                return parsedate_to_datetime(value).timestamp()
            except (TypeError, ValueError, IndexError) as e:
                logger.debug(f"Ignoring unparseable Date header '{value}': {e}")
            break
    return fallback


Transport = Callable[[FetchRequest], Awaitable[FetchResponse]]


class NetworkFetchHelper:
    """
    Shared network primitive for the scheduler, sync handlers and cache engine.

    Wraps an HTTP transport (aiohttp by default) with a per-attempt timeout
    guard and a fixed number of attempts separated by a fixed delay.
    """

    def __init__(
        self,
        timeout_ms: int = 5000,
        retries: int = 2,
        retry_delay_ms: int = 500,
        user_agent: Optional[str] = None,
        transport: Optional[Transport] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize fetch helper.

        Args:
            timeout_ms: Default per-attempt timeout
            retries: Number of attempts made by fetch_with_timeout
            retry_delay_ms: Fixed delay between attempts
            user_agent: Descriptive client identifier sent with every request
            transport: Coroutine performing a single HTTP exchange (defaults to aiohttp)
            clock: Source of epoch seconds for response timestamps
        """
        if retries < 1:
            raise ValueError(f"retries must be at least 1, got: {retries}")
        self.timeout_ms = timeout_ms
        self.retries = retries
        self.retry_delay_ms = retry_delay_ms
        self.user_agent = user_agent
        self.clock = clock
        self._transport = transport or self._aiohttp_transport

    async def _aiohttp_transport(self, request: FetchRequest) -> FetchResponse:
        """Perform one HTTP exchange with aiohttp and read the whole body."""
        async with aiohttp.ClientSession() as session:
            async with session.request(
                request.method,
                request.url,
                headers=request.headers,
                data=request.body
            ) as response:
                body = await response.read()
                headers = {key: value for key, value in response.headers.items()}
                logger.debug(f"Received HTTP {response.status} for {request.method} {request.url}")
                return FetchResponse(
                    status=response.status,
                    headers=headers,
                    body=body,
                    url=str(response.url),
                    timestamp=response_timestamp(headers, self.clock()),
                    status_text=response.reason or ''
                )

    def _prepare(self, request: FetchRequest) -> FetchRequest:
        if self.user_agent:
            return request.with_header('User-Agent', self.user_agent)
        return request

    async def fetch(self, request: FetchRequest) -> FetchResponse:
        """
        Perform a single attempt with no timeout guard and no status check.

        Args:
            request: Request to send

        Returns:
            The response, whatever its status

        Raises:
            FetchError: On transport failure
        """
        try:
            return await self._transport(self._prepare(request))
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(f"Request to {request.url} timed out") from e
        except (aiohttp.ClientError, OSError) as e:
            raise FetchError(f"Request to {request.url} failed: {type(e).__name__}: {e}") from e

    async def fetch_with_timeout(self, request: FetchRequest, timeout_ms: Optional[int] = None) -> FetchResponse:
        """
        Fetch with a timeout per attempt and fixed-delay retries.

        Args:
            request: Request to send
            timeout_ms: Per-attempt timeout (defaults to the helper's timeout)

        Returns:
            The first 2xx response

        Raises:
            FetchTimeoutError: If the last attempt timed out
            FetchError: If the last attempt failed or returned a non-2xx status
        """
        timeout_ms = timeout_ms if timeout_ms is not None else self.timeout_ms
        prepared = self._prepare(request)
        last_error: Optional[FetchError] = None

        for attempt in range(self.retries):
            try:
                response = await asyncio.wait_for(self._transport(prepared), timeout=timeout_ms / 1000)
                if response.ok:
                    return response
                last_error = FetchError(f"HTTP {response.status}", status=response.status, response=response)
                logger.debug(f"Attempt {attempt + 1}/{self.retries} for {request.url} returned HTTP {response.status}")
            except asyncio.TimeoutError:
                last_error = FetchTimeoutError(f"Request to {request.url} timed out after {timeout_ms}ms")
                logger.debug(f"Attempt {attempt + 1}/{self.retries} for {request.url} timed out")
            except (aiohttp.ClientError, OSError) as e:
                last_error = FetchError(f"Request to {request.url} failed: {type(e).__name__}: {e}")
                last_error.__cause__ = e
                logger.debug(f"Attempt {attempt + 1}/{self.retries} for {request.url} failed: {e}")

            if attempt < self.retries - 1:
                await asyncio.sleep(self.retry_delay_ms / 1000)

        logger.warning(f"All {self.retries} attempts failed for {request.url}: {last_error}")
        raise last_error
