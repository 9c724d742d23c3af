"""Integration tests for the scheduled weather clients and their offline fallback."""

import asyncio

import pytest

from weather_resilience.network import ConnectivityMonitor
from weather_resilience.scheduler import Priority, QueueConfig, RequestScheduler
from weather_resilience.sync import (
    MutationHandlerRegistry,
    MutationType,
    OfflineSyncQueue,
    OfflineWeatherStore,
    UpstreamSyncHandlers,
)
from weather_resilience.weather import (
    FORECAST_URL,
    GEOCODING_REVERSE_URL,
    GEOCODING_SEARCH_URL,
    ForecastClient,
    GeocodingClient,
    WeatherServiceError,
)


FORECAST = {'current_weather': {'temperature': 48.1}, 'hourly': {}, 'daily': {}}


@pytest.fixture
def scheduler():
    return RequestScheduler(QueueConfig(max_concurrent=2, min_delay_ms=0, batch_window_ms=5), name="test")


@pytest.fixture
def offline_store(memory_store, fake_clock):
    return OfflineWeatherStore(memory_store, clock=fake_clock)


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(initially_online=False)


@pytest.fixture
def sync_queue(memory_store, fetch_helper, offline_store, connectivity, fake_clock):
    registry = UpstreamSyncHandlers(fetch_helper, offline_store).register_all(MutationHandlerRegistry())
    return OfflineSyncQueue(memory_store, registry, connectivity=connectivity, clock=fake_clock)


def test_forecast_success(fetch_helper, fake_transport, scheduler, sync_queue):
    fake_transport.add_json(FORECAST_URL, FORECAST)
    client = ForecastClient(fetch_helper, scheduler, sync_queue=sync_queue)

    data = asyncio.run(client.get_forecast(47.6, -122.3, 'Seattle'))

    assert data == FORECAST
    assert sync_queue.get_pending() == []


def test_forecast_failure_queues_weather_update(fetch_helper, fake_transport, scheduler, sync_queue):
    fake_transport.fail(FORECAST_URL)
    client = ForecastClient(fetch_helper, scheduler, sync_queue=sync_queue)

    with pytest.raises(WeatherServiceError, match='Seattle'):
        asyncio.run(client.get_forecast(47.6, -122.3, 'Seattle'))

    pending = sync_queue.get_pending()
    assert len(pending) == 1
    assert pending[0].type is MutationType.WEATHER_UPDATE
    assert pending[0].payload == {'city_name': 'Seattle', 'latitude': 47.6, 'longitude': -122.3}
    assert pending[0].priority is Priority.HIGH


def test_queued_update_replays_when_back_online(
    fetch_helper, fake_transport, scheduler, sync_queue, connectivity, offline_store
):
    """A forecast that failed offline is fetched and cached after connectivity returns."""
    fake_transport.fail(FORECAST_URL)
    client = ForecastClient(fetch_helper, scheduler, sync_queue=sync_queue)

    async def run_test():
        with pytest.raises(WeatherServiceError):
            await client.get_forecast(59.9, 10.7, 'Oslo')
        fake_transport.add_json(FORECAST_URL, FORECAST)
        connectivity.set_online(True)
        for _ in range(50):
            await asyncio.sleep(0.01)
            if not sync_queue.get_pending() and not sync_queue.is_processing:
                break

    asyncio.run(run_test())

    assert sync_queue.get_pending() == []
    assert offline_store.get_weather_data('Oslo')['data'] == FORECAST


def test_get_forecasts_reports_per_location(fetch_helper, fake_transport, scheduler, sync_queue):
    def respond(request):
        if 'latitude=0' in request.url:
            return fake_transport.response(502, 'bad gateway', url=request.url)
        return fake_transport.response(200, '{"hourly": {}}', url=request.url)

    fake_transport.add(FORECAST_URL, respond)
    client = ForecastClient(fetch_helper, scheduler, sync_queue=sync_queue)

    results = asyncio.run(client.get_forecasts([
        {'latitude': 51.5, 'longitude': -0.1, 'city_name': 'London'},
        {'latitude': 0, 'longitude': 0},
    ]))

    assert results[0] == {'hourly': {}}
    assert isinstance(results[1], WeatherServiceError)
    pending = sync_queue.get_pending()
    assert [m.priority for m in pending] == [Priority.LOW]


def test_search_sends_user_agent(fetch_helper, fake_transport, scheduler):
    fake_transport.add_json(GEOCODING_SEARCH_URL, [{'display_name': 'Lima, Peru', 'lat': '-12.0', 'lon': '-77.0'}])
    client = GeocodingClient(fetch_helper, scheduler, user_agent='WeatherApp/2.0 (ops@example.com)')

    results = asyncio.run(client.search('  Lima '))

    assert results[0]['display_name'] == 'Lima, Peru'
    request = fake_transport.calls[0]
    assert request.headers['User-Agent'] == 'WeatherApp/2.0 (ops@example.com)'
    assert 'q=Lima&' in request.url
    assert 'limit=5' in request.url


def test_search_rejects_empty_query(fetch_helper, fake_transport, scheduler):
    client = GeocodingClient(fetch_helper, scheduler)

    with pytest.raises(WeatherServiceError):
        asyncio.run(client.search('   '))
    assert fake_transport.calls == []


def test_search_failure_queues_city_search(fetch_helper, fake_transport, scheduler, sync_queue):
    fake_transport.fail(GEOCODING_SEARCH_URL)
    client = GeocodingClient(fetch_helper, scheduler, sync_queue=sync_queue)

    with pytest.raises(WeatherServiceError):
        asyncio.run(client.search('Quito'))

    pending = sync_queue.get_pending()
    assert pending[0].type is MutationType.CITY_SEARCH
    assert pending[0].payload == {'query': 'Quito'}


def test_reverse_geocoding(fetch_helper, fake_transport, scheduler, sync_queue):
    fake_transport.add_json(GEOCODING_REVERSE_URL, {'display_name': 'Bergen, Vestland, Norway'})
    client = GeocodingClient(fetch_helper, scheduler, sync_queue=sync_queue)

    location = asyncio.run(client.reverse(60.39, 5.32))

    assert location == {
        'name': 'Bergen',
        'latitude': 60.39,
        'longitude': 5.32,
        'display_name': 'Bergen, Vestland, Norway',
    }


def test_reverse_failure_queues_location_fetch(fetch_helper, fake_transport, scheduler, sync_queue):
    fake_transport.fail(GEOCODING_REVERSE_URL)
    client = GeocodingClient(fetch_helper, scheduler, sync_queue=sync_queue)

    with pytest.raises(WeatherServiceError):
        asyncio.run(client.reverse(60.39, 5.32))

    pending = sync_queue.get_pending()
    assert pending[0].type is MutationType.LOCATION_FETCH
    assert pending[0].priority is Priority.MEDIUM
