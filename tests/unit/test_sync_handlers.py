"""Tests for the mutation handler registry, upstream handlers and offline stores."""

import asyncio
import json
from pathlib import Path

import pytest

from weather_resilience.sync import (
    JsonFileStore,
    MemoryStore,
    MutationHandlerRegistry,
    MutationType,
    OfflineWeatherStore,
    PendingMutation,
    SyncHandlerFailure,
    UpstreamSyncHandlers,
)
from weather_resilience.weather.endpoints import FORECAST_URL, GEOCODING_REVERSE_URL, GEOCODING_SEARCH_URL


@pytest.fixture
def offline_store(memory_store, fake_clock):
    return OfflineWeatherStore(memory_store, max_recent_cities=3, clock=fake_clock)


@pytest.fixture
def handlers(fetch_helper, offline_store):
    return UpstreamSyncHandlers(fetch_helper, offline_store)


def test_registry_lookup_by_enum_or_tag():
    async def handler(payload):
        return True

    registry = MutationHandlerRegistry()
    registry.register('city-search', handler)

    assert registry.get(MutationType.CITY_SEARCH) is handler
    assert registry.get('city-search') is handler
    assert registry.get(MutationType.WEATHER_UPDATE) is None
    assert registry.get('favorite-toggle') is None
    assert registry.registered_types() == [MutationType.CITY_SEARCH]

    with pytest.raises(ValueError):
        registry.register('favorite-toggle', handler)


def test_register_all_covers_every_type(handlers):
    registry = handlers.register_all(MutationHandlerRegistry())
    assert set(registry.registered_types()) == set(MutationType)


def test_weather_update_stores_forecast(handlers, fake_transport, offline_store, fake_clock):
    forecast = {'current_weather': {'temperature': 61.2}, 'hourly': {}, 'daily': {}}
    fake_transport.add_json(FORECAST_URL, forecast)

    result = asyncio.run(handlers.process_weather_update(
        {'city_name': 'Seattle', 'latitude': 47.6, 'longitude': -122.3}
    ))

    assert result is True
    request = fake_transport.calls[0]
    assert 'latitude=47.6' in request.url
    assert 'current_weather=true' in request.url
    stored = offline_store.get_weather_data('seattle')
    assert stored['data'] == forecast
    assert stored['cached_at'] == fake_clock()


def test_weather_update_non_2xx_is_failure(handlers, fake_transport, offline_store):
    fake_transport.add_json(FORECAST_URL, {'error': True}, status=500)

    with pytest.raises(SyncHandlerFailure, match='Weather API error: 500'):
        asyncio.run(handlers.process_weather_update({'city_name': 'Oslo', 'latitude': 59.9, 'longitude': 10.7}))

    assert offline_store.get_weather_data('Oslo') is None


def test_weather_update_requires_coordinates(handlers, fake_transport):
    with pytest.raises(SyncHandlerFailure):
        asyncio.run(handlers.process_weather_update({'city_name': 'Nowhere'}))
    assert fake_transport.calls == []


def test_city_search_caches_first_hit(handlers, fake_transport, offline_store):
    fake_transport.add_json(GEOCODING_SEARCH_URL, [
        {'lat': '48.8566', 'lon': '2.3522', 'display_name': 'Paris, France'},
        {'lat': '33.66', 'lon': '-95.55', 'display_name': 'Paris, Texas'},
    ])

    assert asyncio.run(handlers.process_city_search({'query': 'Paris'})) is True

    request = fake_transport.calls[0]
    assert 'q=Paris' in request.url
    assert request.headers['User-Agent'] == 'WeatherResilienceTests/1.0'
    recent = offline_store.get_recent_cities()
    assert recent[0]['name'] == 'Paris'
    assert recent[0]['latitude'] == pytest.approx(48.8566)


def test_city_search_without_results_succeeds(handlers, fake_transport, offline_store):
    fake_transport.add_json(GEOCODING_SEARCH_URL, [])

    assert asyncio.run(handlers.process_city_search({'query': 'Atlantis'})) is True
    assert offline_store.get_recent_cities() == []


def test_city_search_transport_error_propagates(handlers, fake_transport):
    fake_transport.fail(GEOCODING_SEARCH_URL)

    with pytest.raises(Exception):
        asyncio.run(handlers.process_city_search({'query': 'Paris'}))


def test_location_fetch_uses_first_display_name_part(handlers, fake_transport, offline_store):
    fake_transport.add_json(GEOCODING_REVERSE_URL, {'display_name': 'Kyoto, Kyoto Prefecture, Japan'})

    assert asyncio.run(handlers.process_location_fetch({'latitude': 35.01, 'longitude': 135.77})) is True
    assert offline_store.get_recent_cities()[0]['name'] == 'Kyoto'


def test_location_fetch_falls_back_to_current_location(handlers, fake_transport, offline_store):
    fake_transport.add_json(GEOCODING_REVERSE_URL, {})

    asyncio.run(handlers.process_location_fetch({'latitude': 0, 'longitude': 0}))

    assert offline_store.get_recent_cities()[0]['name'] == 'Current Location'


def test_recent_cities_deduplicated_and_capped(offline_store, fake_clock):
    for name in ('Paris', 'Rome', 'Oslo', 'paris', 'Lima'):
        offline_store.cache_recent_city(name, 1.0, 2.0)
        fake_clock.advance(1)

    names = [city['name'] for city in offline_store.get_recent_cities()]

    assert names == ['Lima', 'paris', 'Oslo']


def test_pending_mutation_round_trip_keeps_unknown_type():
    mutation = PendingMutation.from_dict({
        'id': 'sync_1_x', 'type': 'future-type', 'payload': {'a': 1}, 'timestamp': 10, 'priority': 'LOW',
    })

    assert mutation.type == 'future-type'
    assert mutation.to_dict()['type'] == 'future-type'
    assert mutation.to_dict()['priority'] == 'low'

    with pytest.raises(ValueError):
        PendingMutation.from_dict({'id': 'x', 'type': 'city-search', 'timestamp': 1, 'retry_count': -1})


def test_memory_store_basics():
    store = MemoryStore({'a': '1'})
    store.set('b', '2')
    store.delete('a')
    store.delete('missing')

    assert store.get('a') is None
    assert store.get('b') == '2'


def test_json_file_store_persists_across_instances(tmp_path):
    state_file = tmp_path / 'state' / 'pending.json'
    store = JsonFileStore(str(state_file))
    store.set('weather-pending-sync', '[]')
    store.set('other', 'value')
    store.delete('other')

    reloaded = JsonFileStore(str(state_file))

    assert reloaded.get('weather-pending-sync') == '[]'
    assert reloaded.get('other') is None
    assert json.loads(state_file.read_text()) == {'weather-pending-sync': '[]'}
    assert not Path(str(state_file) + '.tmp').exists()


def test_json_file_store_starts_fresh_on_corrupt_file(tmp_path):
    state_file = tmp_path / 'pending.json'
    state_file.write_text('{broken')

    store = JsonFileStore(str(state_file))

    assert store.get('weather-pending-sync') is None
    store.set('weather-pending-sync', '[]')
    assert JsonFileStore(str(state_file)).get('weather-pending-sync') == '[]'
