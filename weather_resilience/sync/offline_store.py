"""Offline weather store for data fetched while replaying mutations."""

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from weather_resilience.sync.storage import KeyValueStore


logger = logging.getLogger(__name__)


class OfflineWeatherStore:
    """
    Persists the last known weather per city and the recently used cities.

    Everything lives in a KeyValueStore as JSON so the application can still
    show something after a restart without connectivity.
    """

    WEATHER_KEY_PREFIX = "offline-weather:"
    RECENT_CITIES_KEY = "offline-recent-cities"

    def __init__(self, store: KeyValueStore, max_recent_cities: int = 10, clock: Callable[[], float] = time.time):
        """
        Initialize offline weather store.

        Args:
            store: Backing key/value store
            max_recent_cities: Maximum number of recent cities kept
            clock: Source of epoch seconds
        """
        self.store = store
        self.max_recent_cities = max_recent_cities
        self.clock = clock

    def _read_json(self, key: str, default: Any) -> Any:
        raw = self.store.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Ignoring corrupt offline data under '{key}': {e}")
            return default

    @staticmethod
    def _city_key(city_name: str) -> str:
        return f"{OfflineWeatherStore.WEATHER_KEY_PREFIX}{city_name.strip().lower()}"

    def cache_weather_data(self, city_name: str, weather_data: Dict[str, Any]) -> None:
        """
        Store the latest forecast for a city.

        Args:
            city_name: City display name
            weather_data: Forecast JSON from the upstream API
        """
        entry = {
            'city_name': city_name,
            'data': weather_data,
            'cached_at': self.clock(),
        }
        self.store.set(self._city_key(city_name), json.dumps(entry))
        logger.info(f"Cached offline weather data for {city_name}")

    def get_weather_data(self, city_name: str) -> Optional[Dict[str, Any]]:
        """
        Get the stored forecast entry for a city.

        Returns:
            Dictionary with city_name, data and cached_at, or None
        """
        entry = self._read_json(self._city_key(city_name), None)
        return entry if isinstance(entry, dict) else None

    def cache_recent_city(self, name: str, latitude: float, longitude: float) -> None:
        """
        Record a city as most recently used, de-duplicated by name.

        Args:
            name: City display name
            latitude: City latitude
            longitude: City longitude
        """
        cities = [city for city in self.get_recent_cities() if city.get('name', '').lower() != name.lower()]
        cities.insert(0, {
            'name': name,
            'latitude': latitude,
            'longitude': longitude,
            'last_accessed': self.clock(),
        })
        del cities[self.max_recent_cities:]
        self.store.set(self.RECENT_CITIES_KEY, json.dumps(cities))
        logger.info(f"Cached recent city {name} ({latitude}, {longitude})")

    def get_recent_cities(self) -> List[Dict[str, Any]]:
        """Get recent cities, most recent first."""
        cities = self._read_json(self.RECENT_CITIES_KEY, [])
        if not isinstance(cities, list):
            return []
        return [city for city in cities if isinstance(city, dict)]
