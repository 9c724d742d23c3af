"""Weather resilience layer: request scheduling, offline sync and asset caching."""

from .version import __version__

__all__ = ['__version__']
