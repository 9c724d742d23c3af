"""Upstream weather API package."""

from .clients import ForecastClient, GeocodingClient, WeatherServiceError
from .endpoints import FORECAST_URL, GEOCODING_REVERSE_URL, GEOCODING_SEARCH_URL

__all__ = [
    'ForecastClient',
    'GeocodingClient',
    'WeatherServiceError',
    'FORECAST_URL',
    'GEOCODING_REVERSE_URL',
    'GEOCODING_SEARCH_URL',
]
