"""Static cache rule table and request classification."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Pattern, Tuple

from weather_resilience.weather.endpoints import FORECAST_URL, GEOCODING_REVERSE_URL, GEOCODING_SEARCH_URL


DAY_MS = 24 * 60 * 60 * 1000

BUCKET_STATIC = 'static'
BUCKET_API = 'api'
BUCKET_SEARCH = 'search'
BUCKET_IMAGES = 'images'
BUCKET_CSS_CORE = 'css-core'
BUCKET_CSS_CONDITIONAL = 'css-conditional'
BUCKET_JS_CHUNKS = 'js-chunks'

BUCKET_TYPES = (
    BUCKET_STATIC,
    BUCKET_API,
    BUCKET_SEARCH,
    BUCKET_IMAGES,
    BUCKET_CSS_CORE,
    BUCKET_CSS_CONDITIONAL,
    BUCKET_JS_CHUNKS,
)

STATIC_EXTENSIONS = ('.css', '.js', '.svg', '.ico')
IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.gif', '.webp', '.svg')


class CacheStrategy(Enum):
    """How a classified request is served."""
    CACHE_FIRST = "CacheFirst"
    STALE_WHILE_REVALIDATE = "StaleWhileRevalidate"
    NETWORK_FIRST = "NetworkFirst"


@dataclass(frozen=True)
class CacheRule:
    """
    One entry of the rule table.

    Attributes:
        name: Rule identifier used in logs
        patterns: Regular expressions searched in the request path (or URL for API rules)
        bucket: Bucket type the matching responses are stored in
        strategy: Strategy applied to matching requests
        max_age_ms: Age after which a cached response is considered expired
    """
    name: str
    patterns: Tuple[Pattern, ...]
    bucket: str
    strategy: CacheStrategy
    max_age_ms: int

    def matches(self, value: str) -> bool:
        return any(pattern.search(value) for pattern in self.patterns)


def _compile(*expressions: str) -> Tuple[Pattern, ...]:
    return tuple(re.compile(expression) for expression in expressions)


# Order matters: the first matching rule wins.
CSS_RULES = (
    CacheRule(
        name='css-core',
        patterns=_compile(r'index-[a-zA-Z0-9]+\.css$'),
        bucket=BUCKET_CSS_CORE,
        strategy=CacheStrategy.CACHE_FIRST,
        max_age_ms=365 * DAY_MS,
    ),
    CacheRule(
        name='css-conditional',
        patterns=_compile(
            r'horrorTheme-[a-zA-Z0-9]+\.css$',
            r'ios-hig-enhancements-[a-zA-Z0-9]+\.css$',
            r'enhancedMobile-[a-zA-Z0-9]+\.css$',
            r'responsive-layout-[a-zA-Z0-9]+\.css$',
        ),
        bucket=BUCKET_CSS_CONDITIONAL,
        strategy=CacheStrategy.STALE_WHILE_REVALIDATE,
        max_age_ms=7 * DAY_MS,
    ),
)

JS_RULES = (
    CacheRule(
        name='js-vendor',
        patterns=_compile(r'vendor-[a-zA-Z0-9]+\.js$'),
        bucket=BUCKET_JS_CHUNKS,
        strategy=CacheStrategy.CACHE_FIRST,
        max_age_ms=30 * DAY_MS,
    ),
    CacheRule(
        name='js-app',
        patterns=_compile(r'index-[a-zA-Z0-9]+\.js$'),
        bucket=BUCKET_JS_CHUNKS,
        strategy=CacheStrategy.STALE_WHILE_REVALIDATE,
        max_age_ms=DAY_MS,
    ),
    CacheRule(
        name='js-chunks',
        patterns=_compile(
            r'weather-core-[a-zA-Z0-9]+\.js$',
            r'haptic-features-[a-zA-Z0-9]+\.js$',
            r'ui-utils-[a-zA-Z0-9]+\.js$',
        ),
        bucket=BUCKET_JS_CHUNKS,
        strategy=CacheStrategy.STALE_WHILE_REVALIDATE,
        max_age_ms=7 * DAY_MS,
    ),
)

ASSET_RULES = CSS_RULES + JS_RULES

MAP_TILES_PATTERN = r'^https://.+\.tile\.openstreetmap\.org/'


def build_api_rules(
    forecast_url: str = FORECAST_URL,
    search_url: str = GEOCODING_SEARCH_URL,
    reverse_url: str = GEOCODING_REVERSE_URL
) -> Tuple[CacheRule, ...]:
    """
    Build NetworkFirst rules for the upstream APIs.

    Args:
        forecast_url: Forecast endpoint
        search_url: Geocoding search endpoint
        reverse_url: Reverse geocoding endpoint

    Returns:
        Rules matched against the full request URL
    """
    def prefix(url: str) -> Pattern:
        return re.compile('^' + re.escape(url))

    return (
        CacheRule('api-weather', (prefix(forecast_url),), BUCKET_API, CacheStrategy.NETWORK_FIRST, DAY_MS),
        CacheRule(
            'api-geocoding',
            (prefix(search_url), prefix(reverse_url)),
            BUCKET_API,
            CacheStrategy.NETWORK_FIRST,
            DAY_MS,
        ),
        CacheRule('api-tiles', _compile(MAP_TILES_PATTERN), BUCKET_API, CacheStrategy.NETWORK_FIRST, 7 * DAY_MS),
    )


def classify(path: str, rules: Iterable[CacheRule] = ASSET_RULES) -> Optional[CacheRule]:
    """
    Find the first rule matching a request path.

    Args:
        path: URL path, e.g. '/assets/index-a1b2c3.css'
        rules: Ordered rule table

    Returns:
        The first matching rule, or None
    """
    for rule in rules:
        if rule.matches(path):
            return rule
    return None


def is_static_asset(path: str) -> bool:
    return path.endswith(STATIC_EXTENSIONS) or '/assets/' in path


def is_image(path: str) -> bool:
    return path.endswith(IMAGE_EXTENSIONS)


def bucket_names(version: str) -> Dict[str, str]:
    """Versioned bucket name per bucket type, e.g. 'weather-static-v2.0.0'."""
    return {bucket_type: f"weather-{bucket_type}-{version}" for bucket_type in BUCKET_TYPES}
