from __future__ import annotations

from bisect import bisect_right
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from .timerange import TimeRange


@dataclass(frozen=True)
class DensityInterval:
    interval: TimeRange
    booked_count: int


@dataclass(frozen=True)
class DensityTimeline:
    window: TimeRange
    intervals: list[DensityInterval]
    total_capacity: int

    def count_at(self, instant: datetime) -> int:
        starts = [item.interval.start for item in self.intervals]
        idx = bisect_right(starts, instant) - 1
        if idx < 0 or not self.intervals[idx].interval.contains(instant):
            raise ValueError("instant outside the timeline window")
        return self.intervals[idx].booked_count


def booking_density(window: TimeRange, slots: Iterable[TimeRange], total_capacity: int) -> DensityTimeline:
    """Sweep confirmed booking slots into a piecewise-constant occupancy timeline.

    Slots not overlapping the window are ignored. Every instant of the window is
    covered by exactly one output interval, zero-count stretches included.
    """
    at_start = 0
    deltas: dict[datetime, int] = defaultdict(int)
    for slot in slots:
        if not slot.overlaps(window):
            continue
        if slot.start <= window.start:
            at_start += 1
        else:
            deltas[slot.start] += 1
        if slot.end < window.end:
            deltas[slot.end] -= 1

    change_points = sorted(deltas)
    boundaries = [window.start, *change_points, window.end]
    intervals: list[DensityInterval] = []
    running = at_start
    for idx in range(len(boundaries) - 1):
        intervals.append(
            DensityInterval(interval=TimeRange(boundaries[idx], boundaries[idx + 1]), booked_count=running)
        )
        if idx < len(change_points):
            running += deltas[change_points[idx]]
    return DensityTimeline(window=window, intervals=intervals, total_capacity=total_capacity)


def sample_density(timeline: DensityTimeline, step: timedelta) -> list[DensityInterval]:
    """Fixed-width slices, each carrying the count of the interval covering its start."""
    if step <= timedelta(0):
        raise ValueError("step must be positive")
    slices: list[DensityInterval] = []
    cursor = timeline.window.start
    while cursor < timeline.window.end:
        upper = min(cursor + step, timeline.window.end)
        slices.append(DensityInterval(interval=TimeRange(cursor, upper), booked_count=timeline.count_at(cursor)))
        cursor = upper
    return slices
