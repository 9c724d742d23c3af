"""Request scheduler package."""

from .priority import Priority
from .request_scheduler import (
    QueueClearedError,
    QueueConfig,
    QueueFullError,
    QueuedRequest,
    RequestScheduler,
    SchedulerStats,
    create_forecast_scheduler,
    create_geocoding_scheduler,
)

__all__ = [
    'Priority',
    'QueueClearedError',
    'QueueConfig',
    'QueueFullError',
    'QueuedRequest',
    'RequestScheduler',
    'SchedulerStats',
    'create_forecast_scheduler',
    'create_geocoding_scheduler',
]
