"""Pytest fixtures for testing the weather resilience layer."""

import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Optional, Union

import aiohttp
import pytest

from weather_resilience.network.fetch_helper import FetchRequest, FetchResponse, NetworkFetchHelper
from weather_resilience.sync.storage import MemoryStore


# ============================================================================
# Clock
# ============================================================================

class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# Transport
# ============================================================================

Outcome = Union[FetchResponse, Exception, Callable[[FetchRequest], Any]]


class FakeTransport:
    """
    In-process HTTP transport for NetworkFetchHelper.

    Routes are matched by URL prefix (longest prefix wins). A route holds a
    list of outcomes consumed in order; the last one repeats. An outcome is a
    FetchResponse, an exception to raise, or a callable (sync or async)
    returning a FetchResponse.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.calls: List[FetchRequest] = []
        self.routes: Dict[str, List[Outcome]] = {}
        self.delay = 0.0

    def response(self, status: int = 200, body: Union[bytes, str] = b'', headers: Optional[Dict[str, str]] = None,
                 url: str = '') -> FetchResponse:
        if isinstance(body, str):
            body = body.encode('utf-8')
        return FetchResponse(status=status, headers=dict(headers or {}), body=body, url=url, timestamp=self.clock())

    def add(self, prefix: str, *outcomes: Outcome) -> None:
        self.routes[prefix] = list(outcomes)

    def add_text(self, prefix: str, text: str, status: int = 200) -> None:
        self.add(prefix, lambda request: self.response(status, text, {'Content-Type': 'text/plain'}, request.url))

    def add_json(self, prefix: str, data: Any, status: int = 200) -> None:
        self.add(
            prefix,
            lambda request: self.response(status, json.dumps(data), {'Content-Type': 'application/json'}, request.url)
        )

    def fail(self, prefix: str, error: Optional[Exception] = None) -> None:
        self.add(prefix, error or aiohttp.ClientConnectionError(f"Cannot connect to {prefix}"))

    def count(self, prefix: str = '') -> int:
        return sum(1 for request in self.calls if request.url.startswith(prefix))

    async def __call__(self, request: FetchRequest) -> FetchResponse:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

        matches = [prefix for prefix in self.routes if request.url.startswith(prefix)]
        if not matches:
            raise aiohttp.ClientConnectionError(f"No route for {request.url}")

        outcomes = self.routes[max(matches, key=len)]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]

        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            outcome = outcome(request)
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
        return outcome


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_clock():
    """Epoch clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def fake_transport(fake_clock):
    """Transport stamping responses with the fake clock."""
    return FakeTransport(clock=fake_clock)


@pytest.fixture
def fetch_helper(fake_transport, fake_clock):
    """Fetch helper with short timeouts for fast tests."""
    return NetworkFetchHelper(
        timeout_ms=200,
        retries=2,
        retry_delay_ms=10,
        user_agent='WeatherResilienceTests/1.0',
        transport=fake_transport,
        clock=fake_clock
    )


@pytest.fixture
def memory_store():
    """Empty in-memory key/value store."""
    return MemoryStore()
