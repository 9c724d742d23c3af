"""URL builders for the upstream forecast and geocoding APIs."""

from urllib.parse import urlencode


FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
GEOCODING_SEARCH_URL = "https://nominatim.openstreetmap.org/search"
GEOCODING_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"


def build_forecast_url(latitude: float, longitude: float, base_url: str = FORECAST_URL) -> str:
    """Open-Meteo request for current, hourly and daily data."""
    params = {
        'latitude': latitude,
        'longitude': longitude,
        'current_weather': 'true',
        'hourly': 'temperature_2m,weather_code,relative_humidity_2m,wind_speed_10m',
        'daily': 'temperature_2m_max,temperature_2m_min,weather_code,precipitation_sum',
        'temperature_unit': 'fahrenheit',
        'timezone': 'auto',
    }
    return f"{base_url}?{urlencode(params)}"


def build_search_url(query: str, limit: int = 5, base_url: str = GEOCODING_SEARCH_URL) -> str:
    params = {'q': query, 'format': 'json', 'limit': limit}
    return f"{base_url}?{urlencode(params)}"


def build_reverse_url(latitude: float, longitude: float, base_url: str = GEOCODING_REVERSE_URL) -> str:
    params = {'lat': latitude, 'lon': longitude, 'format': 'json'}
    return f"{base_url}?{urlencode(params)}"


def city_name_from_reverse(location: dict) -> str:
    """First comma-separated part of Nominatim's display_name."""
    display_name = (location or {}).get('display_name') or ''
    name = display_name.split(',')[0].strip()
    return name or 'Current Location'
