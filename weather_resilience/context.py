"""Application context - builds and wires every component from configuration."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from weather_resilience.cache.engine import CacheStrategyEngine
from weather_resilience.cache.rules import build_api_rules
from weather_resilience.cache.storage import CacheStorage
from weather_resilience.config.config_loader import Config
from weather_resilience.network.connectivity import ConnectivityMonitor
from weather_resilience.network.fetch_helper import NetworkFetchHelper, Transport
from weather_resilience.scheduler.request_scheduler import (
    RequestScheduler,
    create_forecast_scheduler,
    create_geocoding_scheduler,
)
from weather_resilience.sync.handlers import MutationHandlerRegistry, UpstreamSyncHandlers
from weather_resilience.sync.offline_store import OfflineWeatherStore
from weather_resilience.sync.offline_sync_queue import OfflineSyncQueue
from weather_resilience.sync.storage import JsonFileStore, KeyValueStore, MemoryStore
from weather_resilience.weather.clients import ForecastClient, GeocodingClient


logger = logging.getLogger(__name__)


@dataclass
class ApplicationContext:
    """Every long-lived component, explicitly constructed and shared."""
    config: Config
    fetch_helper: NetworkFetchHelper
    geocoding_scheduler: RequestScheduler
    forecast_scheduler: RequestScheduler
    store: KeyValueStore
    offline_store: OfflineWeatherStore
    connectivity: ConnectivityMonitor
    handlers: MutationHandlerRegistry
    sync_queue: OfflineSyncQueue
    cache_engine: CacheStrategyEngine
    geocoding: GeocodingClient
    forecast: ForecastClient

    @property
    def schedulers(self) -> Dict[str, RequestScheduler]:
        return {
            self.geocoding_scheduler.name: self.geocoding_scheduler,
            self.forecast_scheduler.name: self.forecast_scheduler,
        }


def create_application_context(
    config: Config,
    transport: Optional[Transport] = None,
    store: Optional[KeyValueStore] = None,
    background_sync: Optional[Any] = None
) -> ApplicationContext:
    """
    Create every component based on configuration.

    Args:
        config: Loaded configuration
        transport: Optional HTTP transport replacing aiohttp (tests)
        store: Optional key/value store replacing the configured one
        background_sync: Optional platform background-sync hook

    Returns:
        Wired ApplicationContext
    """
    network = config.network
    upstream = config.upstream
    sync_config = config.sync
    cache_config = config.cache
    connectivity_config = config.connectivity

    fetch_helper = NetworkFetchHelper(
        timeout_ms=network['timeout_ms'],
        retries=network['retries'],
        retry_delay_ms=network['retry_delay_ms'],
        user_agent=network.get('user_agent'),
        transport=transport
    )

    geocoding_scheduler = create_geocoding_scheduler(config.schedulers.get('geocoding'))
    forecast_scheduler = create_forecast_scheduler(config.schedulers.get('forecast'))

    if store is None:
        storage_file = sync_config.get('storage_file')
        if storage_file:
            logger.info(f"Persisting offline sync state to {storage_file}")
            store = JsonFileStore(storage_file)
        else:
            logger.info("No sync storage file configured, offline state kept in memory")
            store = MemoryStore()

    offline_store = OfflineWeatherStore(store)

    connectivity = ConnectivityMonitor(
        fetch_helper=fetch_helper,
        probe_url=connectivity_config.get('probe_url'),
        initially_online=connectivity_config.get('assume_online', True),
        probe_timeout_ms=network['timeout_ms']
    )

    handlers = UpstreamSyncHandlers(
        fetch_helper,
        offline_store,
        forecast_url=upstream['forecast_url'],
        search_url=upstream['geocoding_search_url'],
        reverse_url=upstream['geocoding_reverse_url']
    ).register_all(MutationHandlerRegistry())

    sync_queue = OfflineSyncQueue(
        store,
        handlers,
        connectivity=connectivity,
        max_retry_count=sync_config['max_retry_count'],
        storage_key=sync_config['storage_key'],
        order_within_priority=sync_config['order_within_priority'],
        background_sync=background_sync
    )

    cache_engine = CacheStrategyEngine(
        fetch_helper,
        storage=CacheStorage(cache_config.get('storage_dir')),
        version=cache_config['version'],
        origin=cache_config['origin'],
        static_urls=cache_config['static_urls'],
        api_rules=build_api_rules(
            upstream['forecast_url'],
            upstream['geocoding_search_url'],
            upstream['geocoding_reverse_url']
        ),
        intercept_api=cache_config['intercept_api'],
        stale_timeout_ms=network['stale_timeout_ms'],
        geocoding_search_url=upstream['geocoding_search_url']
    )

    geocoding = GeocodingClient(
        fetch_helper,
        geocoding_scheduler,
        search_url=upstream['geocoding_search_url'],
        reverse_url=upstream['geocoding_reverse_url'],
        user_agent=network.get('user_agent'),
        sync_queue=sync_queue
    )
    forecast = ForecastClient(
        fetch_helper,
        forecast_scheduler,
        forecast_url=upstream['forecast_url'],
        sync_queue=sync_queue
    )

    logger.info("Application context created")
    return ApplicationContext(
        config=config,
        fetch_helper=fetch_helper,
        geocoding_scheduler=geocoding_scheduler,
        forecast_scheduler=forecast_scheduler,
        store=store,
        offline_store=offline_store,
        connectivity=connectivity,
        handlers=handlers,
        sync_queue=sync_queue,
        cache_engine=cache_engine,
        geocoding=geocoding,
        forecast=forecast
    )
