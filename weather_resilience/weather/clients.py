"""Forecast and geocoding clients that go through the request schedulers."""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from weather_resilience.network.fetch_helper import FetchError, FetchRequest, NetworkFetchHelper
from weather_resilience.scheduler.priority import Priority
from weather_resilience.scheduler.request_scheduler import RequestScheduler
from weather_resilience.sync.sync_types import MutationType
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


class WeatherServiceError(Exception):
    """Weather service error exception."""
    pass


class _ScheduledClient:
    """Shared plumbing: scheduled fetches and offline fallback."""

    def __init__(
        self,
        fetch_helper: NetworkFetchHelper,
        scheduler: RequestScheduler,
        sync_queue=None
    ):
        self.fetch_helper = fetch_helper
        self.scheduler = scheduler
        self.sync_queue = sync_queue

    async def _get_json(self, url: str, headers: Optional[Dict[str, str]] = None) -> Any:
        response = await self.fetch_helper.fetch_with_timeout(FetchRequest(url, headers=dict(headers or {})))
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise WeatherServiceError(f"Invalid JSON from {url}: {e}")

    def _queue_for_sync(
        self,
        mutation_type: MutationType,
        payload: Dict[str, Any],
        priority: Union[Priority, str]
    ) -> None:
        if self.sync_queue is None:
            return
        mutation = self.sync_queue.queue_mutation(mutation_type, payload, priority)
        logger.info(f"Queued {mutation_type.value} for offline sync ({mutation.id})")


class GeocodingClient(_ScheduledClient):
    """
    City search and reverse geocoding against Nominatim.

    Nominatim's usage policy allows about one request per second and requires
    a descriptive User-Agent, so every call goes through the geocoding
    scheduler and carries the configured agent string.
    """

    def __init__(
        self,
        fetch_helper: NetworkFetchHelper,
        scheduler: RequestScheduler,
        search_url: str = GEOCODING_SEARCH_URL,
        reverse_url: str = GEOCODING_REVERSE_URL,
        user_agent: Optional[str] = None,
        sync_queue=None
    ):
        """
        Initialize geocoding client.

        Args:
            fetch_helper: Shared fetch helper
            scheduler: Geocoding request scheduler
            search_url: Forward geocoding endpoint
            reverse_url: Reverse geocoding endpoint
            user_agent: Descriptive User-Agent (defaults to the fetch helper's)
            sync_queue: Optional OfflineSyncQueue used when the network fails
        """
        super().__init__(fetch_helper, scheduler, sync_queue)
        self.search_url = search_url
        self.reverse_url = reverse_url
        self.user_agent = user_agent or fetch_helper.user_agent

    def _headers(self) -> Dict[str, str]:
        return {'User-Agent': self.user_agent} if self.user_agent else {}

    async def search(
        self,
        query: str,
        limit: int = 5,
        priority: Union[Priority, str] = Priority.HIGH
    ) -> List[Dict[str, Any]]:
        """
        Search cities by name.

        Args:
            query: Free-text city query
            limit: Maximum number of results
            priority: Scheduling priority (user-typed searches are high)

        Returns:
            List of Nominatim result objects

        Raises:
            WeatherServiceError: If the request failed
        """
        query = (query or '').strip()
        if not query:
            raise WeatherServiceError("Search query must not be empty")

        url = build_search_url(query, limit, self.search_url)
        logger.info(f"Searching cities for '{query}'")

        try:
            results = await self.scheduler.enqueue(
                f"search:{query}",
                lambda: self._get_json(url, self._headers()),
                priority
            )
        except FetchError as e:
            logger.error(f"City search for '{query}' failed: {e}")
            self._queue_for_sync(MutationType.CITY_SEARCH, {'query': query}, priority)
            raise WeatherServiceError(f"City search failed: {e}") from e

        if not isinstance(results, list):
            raise WeatherServiceError(f"Unexpected geocoding response type: {type(results).__name__}")
        logger.debug(f"City search for '{query}' returned {len(results)} result(s)")
        return results

    async def reverse(
        self,
        latitude: float,
        longitude: float,
        priority: Union[Priority, str] = Priority.MEDIUM
    ) -> Dict[str, Any]:
        """
        Resolve coordinates to a city.

        Args:
            latitude: Latitude
            longitude: Longitude
            priority: Scheduling priority

        Returns:
            Dictionary with name, latitude, longitude and display_name

        Raises:
            WeatherServiceError: If the request failed
        """
        url = build_reverse_url(latitude, longitude, self.reverse_url)

        try:
            location = await self.scheduler.enqueue(
                f"reverse:{latitude:.4f},{longitude:.4f}",
                lambda: self._get_json(url, self._headers()),
                priority
            )
        except FetchError as e:
            logger.error(f"Reverse geocoding of ({latitude}, {longitude}) failed: {e}")
            self._queue_for_sync(
                MutationType.LOCATION_FETCH,
                {'latitude': latitude, 'longitude': longitude},
                priority
            )
            raise WeatherServiceError(f"Reverse geocoding failed: {e}") from e

        location = location if isinstance(location, dict) else {}
        return {
            'name': city_name_from_reverse(location),
            'latitude': latitude,
            'longitude': longitude,
            'display_name': location.get('display_name'),
        }


class ForecastClient(_ScheduledClient):
    """Forecast retrieval from Open-Meteo through the forecast scheduler."""

    def __init__(
        self,
        fetch_helper: NetworkFetchHelper,
        scheduler: RequestScheduler,
        forecast_url: str = FORECAST_URL,
        sync_queue=None
    ):
        super().__init__(fetch_helper, scheduler, sync_queue)
        self.forecast_url = forecast_url

    def _executor(self, latitude: float, longitude: float):
        url = build_forecast_url(latitude, longitude, self.forecast_url)
        return lambda: self._get_json(url)

    def _on_failure(
        self,
        error: FetchError,
        latitude: float,
        longitude: float,
        city_name: Optional[str],
        priority: Union[Priority, str]
    ) -> WeatherServiceError:
        label = city_name or f"({latitude}, {longitude})"
        logger.error(f"Forecast request for {label} failed: {error}")
        self._queue_for_sync(
            MutationType.WEATHER_UPDATE,
            {'city_name': city_name, 'latitude': latitude, 'longitude': longitude},
            priority
        )
        return WeatherServiceError(f"Failed to fetch weather data for {label}: {error}")

    async def get_forecast(
        self,
        latitude: float,
        longitude: float,
        city_name: Optional[str] = None,
        priority: Union[Priority, str] = Priority.HIGH
    ) -> Dict[str, Any]:
        """
        Get current, hourly and daily forecast for a location.

        Args:
            latitude: Latitude
            longitude: Longitude
            city_name: Display name used for logs and offline sync
            priority: Scheduling priority

        Returns:
            Open-Meteo forecast JSON

        Raises:
            WeatherServiceError: If the request failed or returned no data
        """
        logger.info(f"Requesting forecast for {city_name or f'({latitude}, {longitude})'}")
        try:
            data = await self.scheduler.enqueue(
                f"forecast:{latitude:.4f},{longitude:.4f}",
                self._executor(latitude, longitude),
                priority
            )
        except FetchError as e:
            raise self._on_failure(e, latitude, longitude, city_name, priority) from e

        if not data:
            raise WeatherServiceError("Empty response from weather API")
        return data

    async def get_forecasts(
        self,
        locations: Iterable[Dict[str, Any]],
        priority: Union[Priority, str] = Priority.LOW
    ) -> List[Union[Dict[str, Any], Exception]]:
        """
        Fetch forecasts for several locations as one batch.

        Args:
            locations: Dicts with latitude, longitude and optional city_name
            priority: Scheduling priority for the whole batch

        Returns:
            One entry per location: the forecast JSON or the exception
            (WeatherServiceError for network failures)
        """
        locations = list(locations)
        requests = [
            (
                f"forecast:{loc['latitude']:.4f},{loc['longitude']:.4f}",
                self._executor(loc['latitude'], loc['longitude'])
            )
            for loc in locations
        ]
        outcomes = await self.scheduler.batch(requests, priority)

        results = []
        for loc, outcome in zip(locations, outcomes):
            if isinstance(outcome, FetchError):
                outcome = self._on_failure(outcome, loc['latitude'], loc['longitude'], loc.get('city_name'), priority)
            results.append(outcome)

        failures = sum(1 for outcome in results if isinstance(outcome, Exception))
        logger.info(f"Batch forecast complete: {len(results) - failures} succeeded, {failures} failed")
        return results
