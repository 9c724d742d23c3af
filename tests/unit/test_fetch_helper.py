"""Tests for NetworkFetchHelper timeout and retry behavior."""

import asyncio

import aiohttp
import pytest

from weather_resilience.network.fetch_helper import (
    FetchError,
    FetchRequest,
    FetchResponse,
    FetchTimeoutError,
    NetworkFetchHelper,
    response_timestamp,
)


URL = 'https://api.example.test/data'


def test_fetch_with_timeout_returns_first_success(fetch_helper, fake_transport):
    """A 2xx response on the first attempt is returned without retrying."""
    fake_transport.add_text(URL, 'hello')

    response = asyncio.run(fetch_helper.fetch_with_timeout(FetchRequest(URL)))

    assert response.ok
    assert response.text() == 'hello'
    assert fake_transport.count(URL) == 1


def test_user_agent_added_unless_present(fetch_helper, fake_transport):
    fake_transport.add_text(URL, 'ok')

    async def run_test():
        await fetch_helper.fetch_with_timeout(FetchRequest(URL))
        await fetch_helper.fetch_with_timeout(FetchRequest(URL, headers={'user-agent': 'Custom/2.0'}))

    asyncio.run(run_test())

    first, second = fake_transport.calls
    assert first.headers['User-Agent'] == 'WeatherResilienceTests/1.0'
    assert second.headers == {'user-agent': 'Custom/2.0'}


def test_non_2xx_is_retried_then_succeeds(fetch_helper, fake_transport):
    fake_transport.add(
        URL,
        fake_transport.response(503, 'busy'),
        fake_transport.response(200, 'recovered'),
    )

    response = asyncio.run(fetch_helper.fetch_with_timeout(FetchRequest(URL)))

    assert response.text() == 'recovered'
    assert fake_transport.count(URL) == 2


def test_last_error_raised_when_all_attempts_fail(fetch_helper, fake_transport):
    fake_transport.add(
        URL,
        aiohttp.ClientConnectionError('refused'),
        fake_transport.response(502, 'bad gateway'),
    )

    with pytest.raises(FetchError) as exc_info:
        asyncio.run(fetch_helper.fetch_with_timeout(FetchRequest(URL)))

    assert exc_info.value.status == 502
    assert exc_info.value.response.text() == 'bad gateway'
    assert fake_transport.count(URL) == 2


def test_each_attempt_is_timeout_bounded(fake_transport):
    async def slow(request):
        await asyncio.sleep(1.0)
        return fake_transport.response(200, 'late')

    fake_transport.add(URL, slow)
    helper = NetworkFetchHelper(timeout_ms=30, retries=3, retry_delay_ms=5, transport=fake_transport)

    async def run_test():
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(FetchTimeoutError):
            await helper.fetch_with_timeout(FetchRequest(URL))
        return loop.time() - started

    elapsed = asyncio.run(run_test())

    assert fake_transport.count(URL) == 3
    assert elapsed < 0.5


def test_per_call_timeout_overrides_default(fetch_helper, fake_transport):
    async def slow(request):
        await asyncio.sleep(0.1)
        return fake_transport.response(200, 'slow but fine')

    fake_transport.add(URL, slow)

    with pytest.raises(FetchTimeoutError):
        asyncio.run(fetch_helper.fetch_with_timeout(FetchRequest(URL), timeout_ms=20))

    response = asyncio.run(fetch_helper.fetch_with_timeout(FetchRequest(URL), timeout_ms=500))
    assert response.text() == 'slow but fine'


def test_fetch_is_single_attempt_without_status_check(fetch_helper, fake_transport):
    fake_transport.add(URL, fake_transport.response(404, 'missing'))

    response = asyncio.run(fetch_helper.fetch(FetchRequest(URL)))

    assert response.status == 404
    assert not response.ok
    assert fake_transport.count(URL) == 1


def test_fetch_wraps_transport_errors(fetch_helper, fake_transport):
    fake_transport.fail(URL)

    with pytest.raises(FetchError) as exc_info:
        asyncio.run(fetch_helper.fetch(FetchRequest(URL)))

    assert exc_info.value.status is None
    assert isinstance(exc_info.value.__cause__, aiohttp.ClientConnectionError)


def test_retries_must_be_positive():
    with pytest.raises(ValueError):
        NetworkFetchHelper(retries=0)


def test_response_timestamp_prefers_date_header():
    headers = {'date': 'Wed, 21 Oct 2015 07:28:00 GMT'}
    assert response_timestamp(headers, fallback=1.0) == 1445412480.0
    assert response_timestamp({'Date': 'not a date'}, fallback=42.0) == 42.0
    assert response_timestamp({}, fallback=7.0) == 7.0


def test_response_helpers():
    response = FetchResponse(status=200, headers={'Content-Type': 'application/json'}, body=b'{"a": 1}')
    assert response.header('content-type') == 'application/json'
    assert response.header('X-Missing', 'none') == 'none'
    assert response.json() == {'a': 1}


def test_with_header_keeps_existing_value():
    request = FetchRequest(URL, headers={'Accept': 'text/html'})
    assert request.with_header('accept', 'application/json') is request
    updated = request.with_header('X-Trace', 'abc')
    assert updated.headers == {'Accept': 'text/html', 'X-Trace': 'abc'}
    assert request.headers == {'Accept': 'text/html'}
