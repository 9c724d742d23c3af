"""Priority classes shared by the request scheduler and the offline sync queue."""

from enum import Enum
from typing import Union


class Priority(Enum):
    """Priority class for pending work. Lower rank is served first."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: Union['Priority', str]) -> 'Priority':
        """
        Convert a priority name (case-insensitive) or member to a Priority.

        Args:
            value: Priority member or one of 'high', 'medium', 'low'

        Returns:
            Priority member

        Raises:
            ValueError: If the value is not a known priority
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Invalid priority: {value!r} (expected one of high, medium, low)")


_PRIORITY_RANK = {
    Priority.HIGH: 0,
    Priority.MEDIUM: 1,
    Priority.LOW: 2,
}
