"""Resource cache package."""

from .rules import (
    ASSET_RULES,
    BUCKET_TYPES,
    CSS_RULES,
    JS_RULES,
    CacheRule,
    CacheStrategy,
    bucket_names,
    build_api_rules,
    classify,
)
from .storage import CacheBucket, CacheEntry, CacheStorage
from .engine import CacheStrategyEngine, CacheUnavailableError

__all__ = [
    'ASSET_RULES',
    'BUCKET_TYPES',
    'CSS_RULES',
    'JS_RULES',
    'CacheRule',
    'CacheStrategy',
    'bucket_names',
    'build_api_rules',
    'classify',
    'CacheBucket',
    'CacheEntry',
    'CacheStorage',
    'CacheStrategyEngine',
    'CacheUnavailableError',
]
