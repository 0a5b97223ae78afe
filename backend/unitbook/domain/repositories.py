from __future__ import annotations

from datetime import datetime, timedelta
from typing import AsyncContextManager, Iterable, Protocol

from ..models import Booking, CreditKind, CreditTransaction, Unit, UsageReport
from .capacity import BUCKET_WIDTH, BucketRemaining
from .reconciliation import Reconciliation, UsageTotals
from .timerange import TimeRange


class UnitRepository(Protocol):
    async def get_active(self, unit_id: int) -> Unit | None: ...

    async def has_blackout(self, unit_id: int, interval: TimeRange) -> bool: ...

    async def remaining_capacity(
        self,
        window: TimeRange,
        *,
        unit_id: int | None = None,
        width: timedelta = BUCKET_WIDTH,
    ) -> Iterable[BucketRemaining]: ...


class BookingRepository(Protocol):
    async def occupied_lanes(self, unit_id: int, interval: TimeRange) -> set[int]: ...

    async def offer_redeemed(self, offer_id: str) -> bool: ...

    async def create(
        self,
        *,
        user_id: int,
        unit_id: int,
        lane: int,
        interval: TimeRange,
        offer_id: str | None = None,
    ) -> Booking: ...

    async def cancel_confirmed(self, booking_id: int, user_id: int) -> Booking | None: ...

    async def confirmed_slots(self, unit_id: int, window: TimeRange) -> list[TimeRange]: ...

    async def list_by_user(
        self,
        user_id: int,
        *,
        ending_after: datetime | None = None,
        overlapping: TimeRange | None = None,
    ) -> list[Booking]: ...


class CreditRepository(Protocol):
    async def balance(self, user_id: int) -> int: ...

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
    ) -> tuple[CreditTransaction, int]: ...

    async def list_transactions(self, user_id: int, *, limit: int = 20) -> list[CreditTransaction]: ...


class UsageRepository(Protocol):
    def savepoint(self) -> AsyncContextManager[object]: ...

    async def resolve_user(self, user_ref: str) -> int | None: ...

    async def get_totals_for_update(self, user_id: int) -> UsageTotals | None: ...

    async def save_totals(self, user_id: int, totals: UsageTotals, *, reported_at: datetime) -> None: ...

    async def record_report(
        self,
        *,
        user_id: int,
        copies: int,
        stencils: int,
        reconciliation: Reconciliation,
        reported_at: datetime,
        raw_data: str | None = None,
    ) -> UsageReport: ...
