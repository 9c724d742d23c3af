"""Mutation handler registry and the default upstream replay handlers."""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from weather_resilience.network.fetch_helper import FetchRequest, FetchResponse, NetworkFetchHelper
from weather_resilience.sync.offline_store import OfflineWeatherStore
from weather_resilience.sync.sync_types import MutationType, SyncHandlerFailure
from weather_resilience.weather.endpoints import (
    FORECAST_URL,
    GEOCODING_REVERSE_URL,
    GEOCODING_SEARCH_URL,
    build_forecast_url,
    build_reverse_url,
    build_search_url,
    city_name_from_reverse,
)


logger = logging.getLogger(__name__)


MutationHandler = Callable[[Dict[str, Any]], Awaitable[bool]]


class MutationHandlerRegistry:
    """Maps each mutation type to the coroutine that replays it."""

    def __init__(self):
        self._handlers: Dict[MutationType, MutationHandler] = {}

    def register(self, mutation_type: Union[MutationType, str], handler: MutationHandler) -> None:
        """
        Register (or replace) the handler for a mutation type.

        Args:
            mutation_type: Mutation type or its tag
            handler: Coroutine function taking the payload, returning True on success

        Raises:
            ValueError: If the tag is not a known mutation type
        """
        resolved = MutationType.parse(mutation_type)
        if not isinstance(resolved, MutationType):
            raise ValueError(f"Unknown mutation type: {mutation_type!r}")
        if resolved in self._handlers:
            logger.info(f"Replacing handler for {resolved.value}")
        self._handlers[resolved] = handler

    def get(self, mutation_type: Union[MutationType, str]) -> Optional[MutationHandler]:
        """Get the handler for a type, or None if unregistered or unknown."""
        resolved = MutationType.parse(mutation_type)
        if not isinstance(resolved, MutationType):
            return None
        return self._handlers.get(resolved)

    def registered_types(self) -> List[MutationType]:
        return list(self._handlers)


class UpstreamSyncHandlers:
    """
    Replays offline mutations against the forecast and geocoding APIs.

    Each handler performs one fetch and writes the result to the offline
    weather store. A transport error or non-2xx response raises
    SyncHandlerFailure so the queue retries the mutation.
    """

    def __init__(
        self,
        fetch_helper: NetworkFetchHelper,
        offline_store: OfflineWeatherStore,
        forecast_url: str = FORECAST_URL,
        search_url: str = GEOCODING_SEARCH_URL,
        reverse_url: str = GEOCODING_REVERSE_URL
    ):
        self.fetch_helper = fetch_helper
        self.offline_store = offline_store
        self.forecast_url = forecast_url
        self.search_url = search_url
        self.reverse_url = reverse_url

    def register_all(self, registry: MutationHandlerRegistry) -> MutationHandlerRegistry:
        """Register the three default handlers and return the registry."""
        registry.register(MutationType.WEATHER_UPDATE, self.process_weather_update)
        registry.register(MutationType.CITY_SEARCH, self.process_city_search)
        registry.register(MutationType.LOCATION_FETCH, self.process_location_fetch)
        return registry

    async def _fetch_json(self, url: str, api_name: str) -> Any:
        response: FetchResponse = await self.fetch_helper.fetch(FetchRequest(url))
        if not response.ok:
            raise SyncHandlerFailure(f"{api_name} error: {response.status}")
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SyncHandlerFailure(f"{api_name} returned invalid JSON: {e}")

    @staticmethod
    def _coordinates(payload: Dict[str, Any]) -> tuple:
        try:
            return float(payload['latitude']), float(payload['longitude'])
        except (KeyError, TypeError, ValueError) as e:
            raise SyncHandlerFailure(f"Payload missing valid latitude/longitude: {e}")

    async def process_weather_update(self, payload: Dict[str, Any]) -> bool:
        """
        Fetch the forecast for a city and cache it offline.

        Args:
            payload: {city_name, latitude, longitude}
        """
        latitude, longitude = self._coordinates(payload)
        city_name = payload.get('city_name') or f"{latitude:.4f},{longitude:.4f}"

        weather_data = await self._fetch_json(
            build_forecast_url(latitude, longitude, self.forecast_url), "Weather API"
        )
        self.offline_store.cache_weather_data(city_name, weather_data)
        return True

    async def process_city_search(self, payload: Dict[str, Any]) -> bool:
        """
        Geocode a search query and cache the best match as a recent city.

        Args:
            payload: {query}
        """
        query = payload.get('query')
        if not query:
            raise SyncHandlerFailure("City search payload missing query")

        results = await self._fetch_json(build_search_url(query, 5, self.search_url), "Geocoding API")
        if isinstance(results, list) and results:
            best = results[0]
            try:
                self.offline_store.cache_recent_city(query, float(best['lat']), float(best['lon']))
            except (KeyError, TypeError, ValueError) as e:
                raise SyncHandlerFailure(f"Geocoding result missing coordinates: {e}")
        else:
            logger.info(f"City search for '{query}' returned no results")
        return True

    async def process_location_fetch(self, payload: Dict[str, Any]) -> bool:
        """
        Reverse-geocode coordinates and cache the city name.

        Args:
            payload: {latitude, longitude}
        """
        latitude, longitude = self._coordinates(payload)
        location = await self._fetch_json(
            build_reverse_url(latitude, longitude, self.reverse_url), "Reverse geocoding"
        )
        city_name = city_name_from_reverse(location if isinstance(location, dict) else {})
        self.offline_store.cache_recent_city(city_name, latitude, longitude)
        return True
