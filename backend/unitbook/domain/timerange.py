from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .errors import InvalidWindowError


@dataclass(frozen=True, order=True)
class TimeRange:
    """Half-open interval [start, end) between two timezone-aware instants."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise InvalidWindowError("range endpoints must be timezone-aware")
        if self.end <= self.start:
            raise InvalidWindowError("range end must be after its start")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "TimeRange") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    def isoformat(self) -> tuple[str, str]:
        """UTC string form bound into signed offers; must round-trip exactly."""
        return (
            self.start.astimezone(timezone.utc).isoformat(),
            self.end.astimezone(timezone.utc).isoformat(),
        )


def validate_window(start: datetime, end: datetime, *, max_span: timedelta) -> TimeRange:
    window = TimeRange(start, end)
    if window.duration > max_span:
        raise InvalidWindowError(f"range cannot exceed {max_span.days} days")
    return window
