"""Network primitives package."""

from .fetch_helper import (
    FetchError,
    FetchRequest,
    FetchResponse,
    FetchTimeoutError,
    NetworkFetchHelper,
)
from .connectivity import ConnectivityMonitor

__all__ = [
    'FetchError',
    'FetchRequest',
    'FetchResponse',
    'FetchTimeoutError',
    'NetworkFetchHelper',
    'ConnectivityMonitor',
]
