"""Date windows for cube queries.

DateRange is a closed interval of calendar days over a cube's period
dimension. Trailing windows are the DAU/MAU shape: the `days` days
ending on (and including) `end`.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from distinct_cube.errors import InvalidConfig


@dataclass(frozen=True, slots=True)
class DateRange:
    """Closed interval [start, end] of dates.

    Both endpoints are inclusive, so DateRange(d, d) is one day.
    """
    start: date
    end: date

    def __post_init__(self) -> None:
        for name in ("start", "end"):
            value = getattr(self, name)
            if isinstance(value, datetime):
                object.__setattr__(self, name, value.date())
        if self.start > self.end:
            raise InvalidConfig(f"start ({self.start}) must be <= end ({self.end})")

    @classmethod
    def trailing(cls, end: date, days: int) -> DateRange:
        """The `days`-day window ending on `end` (days=30 for MAU)."""
        if days < 1:
            raise InvalidConfig(f"days must be >= 1, got {days}")
        return cls(end - timedelta(days=days - 1), end)

    def contains(self, value: Any) -> bool:
        """Whether a period value falls in the window. UNKNOWN never does."""
        if isinstance(value, datetime):
            value = value.date()
        elif not isinstance(value, date):
            return False
        return self.start <= value <= self.end

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1
