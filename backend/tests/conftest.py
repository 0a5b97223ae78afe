import asyncio
import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Iterable

import pytest
from sqlalchemy.dialects.postgresql import Range

from unitbook.domain.capabilities import Capability, UserContext
from unitbook.domain.capacity import BUCKET_WIDTH, BucketRemaining, UnitCapacity, UnitInterval, remaining_by_bucket
from unitbook.domain.errors import InsufficientCreditsError, LaneTakenError, SlotUnavailableError
from unitbook.domain.reconciliation import Reconciliation, UsageTotals
from unitbook.domain.timerange import TimeRange
from unitbook.models import Booking, BookingStatus, CreditKind, CreditTransaction, Unit, UsageReport

T0 = datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc)


@dataclass
class Store:
    """Shared in-memory state behind the fake repositories."""

    units: dict[int, Unit] = field(default_factory=dict)
    blackouts: list[UnitInterval] = field(default_factory=list)
    bookings: list[Booking] = field(default_factory=list)
    balances: dict[int, int] = field(default_factory=dict)
    transactions: list[CreditTransaction] = field(default_factory=list)
    totals: dict[int, UsageTotals] = field(default_factory=dict)
    reports: list[UsageReport] = field(default_factory=list)
    users: dict[str, int] = field(default_factory=dict)

    def add_unit(self, unit_id: int, capacity: int, *, active: bool = True) -> Unit:
        unit = Unit(id=unit_id, name=f"unit-{unit_id}", capacity=capacity, active=active)
        self.units[unit_id] = unit
        return unit

    def confirmed(self) -> list[Booking]:
        return [b for b in self.bookings if b.status == BookingStatus.CONFIRMED]


def _interval(booking: Booking) -> TimeRange:
    return TimeRange(booking.starts_at, booking.ends_at)


class FakeUnitRepo:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def get_active(self, unit_id: int) -> Unit | None:
        unit = self.store.units.get(unit_id)
        if unit is None or not unit.active:
            return None
        return unit

    async def has_blackout(self, unit_id: int, interval: TimeRange) -> bool:
        return any(b.unit_id == unit_id and b.interval.overlaps(interval) for b in self.store.blackouts)

    async def remaining_capacity(
        self,
        window: TimeRange,
        *,
        unit_id: int | None = None,
        width: timedelta = BUCKET_WIDTH,
    ) -> Iterable[BucketRemaining]:
        units = [
            UnitCapacity(unit_id=u.id, capacity=u.capacity, active=u.active)
            for u in self.store.units.values()
            if unit_id is None or u.id == unit_id
        ]
        bookings = [UnitInterval(b.unit_id, _interval(b)) for b in self.store.confirmed()]
        return remaining_by_bucket(window, units, self.store.blackouts, bookings, width=width)


class FakeBookingRepo:
    """Emulates the per-lane exclusion constraint and the unique offer id."""

    def __init__(self, store: Store) -> None:
        self.store = store
        self._next_id = 1

    async def occupied_lanes(self, unit_id: int, interval: TimeRange) -> set[int]:
        return {
            b.lane for b in self.store.confirmed() if b.unit_id == unit_id and _interval(b).overlaps(interval)
        }

    async def offer_redeemed(self, offer_id: str) -> bool:
        return any(b.offer_id == offer_id for b in self.store.bookings)

    async def create(
        self,
        *,
        user_id: int,
        unit_id: int,
        lane: int,
        interval: TimeRange,
        offer_id: str | None = None,
    ) -> Booking:
        # Yield so concurrent callers interleave between their reads and this write.
        await asyncio.sleep(0)
        if offer_id is not None and any(b.offer_id == offer_id for b in self.store.bookings):
            raise SlotUnavailableError("offer already redeemed")
        for other in self.store.confirmed():
            if other.unit_id == unit_id and other.lane == lane and _interval(other).overlaps(interval):
                raise LaneTakenError(f"lane {lane} taken")
        booking = Booking(
            id=self._next_id,
            user_id=user_id,
            unit_id=unit_id,
            lane=lane,
            slot=Range(interval.start, interval.end, bounds="[)"),
            status=BookingStatus.CONFIRMED,
            offer_id=offer_id,
            created_at=T0,
        )
        self._next_id += 1
        self.store.bookings.append(booking)
        return booking

    async def cancel_confirmed(self, booking_id: int, user_id: int) -> Booking | None:
        for booking in self.store.bookings:
            if booking.id == booking_id and booking.user_id == user_id and booking.status == BookingStatus.CONFIRMED:
                booking.status = BookingStatus.CANCELLED
                return booking
        return None

    async def confirmed_slots(self, unit_id: int, window: TimeRange) -> list[TimeRange]:
        return [
            _interval(b) for b in self.store.confirmed() if b.unit_id == unit_id and _interval(b).overlaps(window)
        ]

    async def list_by_user(
        self,
        user_id: int,
        *,
        ending_after: datetime | None = None,
        overlapping: TimeRange | None = None,
    ) -> list[Booking]:
        rows = [b for b in self.store.confirmed() if b.user_id == user_id]
        if ending_after is not None:
            rows = [b for b in rows if b.ends_at > ending_after]
        if overlapping is not None:
            rows = [b for b in rows if _interval(b).overlaps(overlapping)]
        return sorted(rows, key=lambda b: b.starts_at)


class FakeCreditRepo:
    """Rejects any append that would leave the balance negative, like the check constraint."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def balance(self, user_id: int) -> int:
        return self.store.balances.get(user_id, 0)

    async def append(
        self,
        *,
        user_id: int,
        amount_cents: int,
        kind: CreditKind,
        currency: str,
        note: str | None = None,
        booking_id: int | None = None,
        payment_id: str | None = None,
    ) -> tuple[CreditTransaction, int]:
        new_balance = self.store.balances.get(user_id, 0) + amount_cents
        if new_balance < 0:
            raise InsufficientCreditsError("insufficient credits")
        tx = CreditTransaction(
            id=len(self.store.transactions) + 1,
            user_id=user_id,
            amount_cents=amount_cents,
            currency=currency,
            kind=kind,
            booking_id=booking_id,
            payment_id=payment_id,
            note=note,
            created_at=T0,
        )
        self.store.transactions.append(tx)
        self.store.balances[user_id] = new_balance
        return tx, new_balance

    async def list_transactions(self, user_id: int, *, limit: int = 20) -> list[CreditTransaction]:
        rows = [tx for tx in self.store.transactions if tx.user_id == user_id]
        return list(reversed(rows))[:limit]


class FakeUsageRepo:
    def __init__(self, store: Store) -> None:
        self.store = store

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        saved = (
            dict(self.store.totals),
            list(self.store.reports),
            dict(self.store.balances),
            list(self.store.transactions),
        )
        try:
            yield None
        except Exception:
            totals, reports, balances, transactions = saved
            self.store.totals = totals
            self.store.reports = reports
            self.store.balances = balances
            self.store.transactions = transactions
            raise

    async def resolve_user(self, user_ref: str) -> int | None:
        return self.store.users.get(user_ref)

    async def get_totals_for_update(self, user_id: int) -> UsageTotals | None:
        return self.store.totals.get(user_id)

    async def save_totals(self, user_id: int, totals: UsageTotals, *, reported_at: datetime) -> None:
        self.store.totals[user_id] = copy.copy(totals)

    async def record_report(
        self,
        *,
        user_id: int,
        copies: int,
        stencils: int,
        reconciliation: Reconciliation,
        reported_at: datetime,
        raw_data: str | None = None,
    ) -> UsageReport:
        report = UsageReport(
            id=len(self.store.reports) + 1,
            user_id=user_id,
            reported_copies=copies,
            reported_stencils=stencils,
            billed_copies=reconciliation.copies.billable,
            billed_stencils=reconciliation.stencils.billable,
            copies_reset=reconciliation.copies.reset,
            stencils_reset=reconciliation.stencils.reset,
            reported_at=reported_at,
            raw_data=raw_data,
        )
        self.store.reports.append(report)
        return report


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list = []

    def publish(self, event: object) -> None:
        self.events.append(event)


@pytest.fixture
def store() -> Store:
    return Store()


@pytest.fixture
def unit_repo(store: Store) -> FakeUnitRepo:
    return FakeUnitRepo(store)


@pytest.fixture
def booking_repo(store: Store) -> FakeBookingRepo:
    return FakeBookingRepo(store)


@pytest.fixture
def credit_repo(store: Store) -> FakeCreditRepo:
    return FakeCreditRepo(store)


@pytest.fixture
def usage_repo(store: Store) -> FakeUsageRepo:
    return FakeUsageRepo(store)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def member() -> UserContext:
    return UserContext(user_id=7, code="4711", capabilities=frozenset({Capability.BOOK}))
