"""Status endpoints package."""

from .status_server import StatusServer

__all__ = ['StatusServer']
