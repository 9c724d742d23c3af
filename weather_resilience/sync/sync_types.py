"""Types for the offline sync queue."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Union

from weather_resilience.scheduler.priority import Priority


class SyncHandlerFailure(Exception):
    """A single attempt to replay a mutation failed; it will be retried up to the bound."""
    pass


class SyncExhaustedError(Exception):
    """A mutation was dropped after reaching the retry bound. Reported, never raised."""
    pass


class MutationType(Enum):
    """Kinds of offline mutation replayed when connectivity returns."""
    WEATHER_UPDATE = "weather-update"
    CITY_SEARCH = "city-search"
    LOCATION_FETCH = "location-fetch"

    @classmethod
    def parse(cls, value: Union['MutationType', str]) -> Union['MutationType', str]:
        """
        Convert a type tag to a MutationType.

        Unknown tags (for example written by a newer release) are returned
        unchanged so they survive a load/save cycle and fail through the
        generic retry path.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return str(value)


@dataclass
class PendingMutation:
    """A mutation waiting to be replayed. Serialized wholesale to persistence."""
    id: str
    type: Union[MutationType, str]
    payload: Dict[str, Any]
    timestamp: int  # epoch milliseconds
    retry_count: int = 0
    priority: Priority = Priority.MEDIUM

    @property
    def type_tag(self) -> str:
        return self.type.value if isinstance(self.type, MutationType) else self.type

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'id': self.id,
            'type': self.type_tag,
            'payload': self.payload,
            'timestamp': self.timestamp,
            'retry_count': self.retry_count,
            'priority': self.priority.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingMutation':
        """
        Create from dictionary.

        Raises:
            KeyError, TypeError, ValueError: If the entry is malformed
        """
        retry_count = int(data.get('retry_count', 0))
        if retry_count < 0:
            raise ValueError(f"retry_count must be non-negative, got: {retry_count}")
        payload = data.get('payload') or {}
        if not isinstance(payload, dict):
            raise TypeError(f"payload must be an object, got: {type(payload).__name__}")
        return cls(
            id=str(data['id']),
            type=MutationType.parse(data['type']),
            payload=payload,
            timestamp=int(data['timestamp']),
            retry_count=retry_count,
            priority=Priority.parse(data.get('priority', Priority.MEDIUM.value)),
        )


@dataclass
class SyncResult:
    """
    Outcome of one processing pass.

    failed counts mutations dropped after exhausting their retries, one per
    entry in errors. Failed attempts that stay queued are not counted.
    """
    success: bool
    processed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'processed': self.processed,
            'failed': self.failed,
            'errors': list(self.errors),
        }
