"""Remaining capacity per unit per fixed-width bucket.

The PostgreSQL repository answers this with one set-oriented query. The
functions here compute the same rows from in-memory snapshots of units,
blackouts and confirmed bookings, and provide the bucket arithmetic shared by
both paths.
"""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, Sequence

from .timerange import TimeRange

BUCKET_WIDTH = timedelta(minutes=30)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class BucketRemaining:
    bucket: TimeRange
    unit_id: int
    remaining_capacity: int


@dataclass(frozen=True)
class UnitCapacity:
    unit_id: int
    capacity: int
    active: bool = True


@dataclass(frozen=True)
class UnitInterval:
    """A blackout period or a confirmed booking slot on one unit."""

    unit_id: int
    interval: TimeRange


def snap_to_bucket(instant: datetime, width: timedelta = BUCKET_WIDTH) -> datetime:
    offset = (instant - _EPOCH) // width
    return _EPOCH + offset * width


def iter_buckets(window: TimeRange, width: timedelta = BUCKET_WIDTH) -> Iterator[TimeRange]:
    cursor = snap_to_bucket(window.start, width)
    while cursor < window.end:
        yield TimeRange(cursor, cursor + width)
        cursor += width


class _OverlapCounter:
    """Counts intervals overlapping a query range in O(log n).

    overlap(q) = #(start < q.end) - #(end <= q.start), valid because every
    interval ending at or before q.start also starts before q.end.
    """

    def __init__(self, intervals: Iterable[TimeRange]) -> None:
        items = list(intervals)
        self._starts = sorted(i.start for i in items)
        self._ends = sorted(i.end for i in items)

    def count(self, query: TimeRange) -> int:
        return bisect_left(self._starts, query.end) - bisect_right(self._ends, query.start)


def remaining_by_bucket(
    window: TimeRange,
    units: Sequence[UnitCapacity],
    blackouts: Iterable[UnitInterval],
    bookings: Iterable[UnitInterval],
    *,
    width: timedelta = BUCKET_WIDTH,
) -> list[BucketRemaining]:
    blackouts_by_unit: dict[int, list[TimeRange]] = defaultdict(list)
    for item in blackouts:
        blackouts_by_unit[item.unit_id].append(item.interval)
    bookings_by_unit: dict[int, list[TimeRange]] = defaultdict(list)
    for item in bookings:
        bookings_by_unit[item.unit_id].append(item.interval)

    active_units = sorted((u for u in units if u.active), key=lambda u: u.unit_id)
    counters = {
        unit.unit_id: (
            _OverlapCounter(blackouts_by_unit[unit.unit_id]),
            _OverlapCounter(bookings_by_unit[unit.unit_id]),
        )
        for unit in active_units
    }

    rows: list[BucketRemaining] = []
    for bucket in iter_buckets(window, width):
        for unit in active_units:
            blackout_counter, booking_counter = counters[unit.unit_id]
            if blackout_counter.count(bucket) > 0:
                continue
            remaining = unit.capacity - booking_counter.count(bucket)
            if remaining > 0:
                rows.append(BucketRemaining(bucket=bucket, unit_id=unit.unit_id, remaining_capacity=remaining))
    return rows
