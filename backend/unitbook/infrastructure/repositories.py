from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import AsyncContextManager, List, Optional

from sqlalchemy import Select, func, select, text, update
from sqlalchemy.dialects.postgresql import Range, insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.capacity import BUCKET_WIDTH, BucketRemaining
from ..domain.errors import InsufficientCreditsError, LaneTakenError, SlotUnavailableError
from ..domain.reconciliation import Reconciliation, UsageTotals
from ..domain.repositories import BookingRepository, CreditRepository, UnitRepository, UsageRepository
from ..domain.timerange import TimeRange
from ..models import (
    Blackout,
    Booking,
    BookingStatus,
    CreditBalance,
    CreditKind,
    CreditTransaction,
    Unit,
    UsageLastSeenTotals,
    UsageReport,
    User,
)

# Buckets are every width-aligned step whose start lies in [snapped start, window end).
_REMAINING_CAPACITY_SQL = text(
    """
WITH params AS (
  SELECT
    CAST(:win_start AS timestamptz) AS win_start,
    CAST(:win_end AS timestamptz)   AS win_end,
    CAST(:width_secs AS integer)    AS width_secs,
    CAST(:unit_id AS integer)       AS only_unit
),
aligned AS (
  SELECT
    to_timestamp(floor(extract(epoch FROM p.win_start) / p.width_secs) * p.width_secs) AS aligned_start,
    p.win_end,
    make_interval(secs => p.width_secs) AS width,
    p.only_unit
  FROM params p
),
buckets AS (
  SELECT tstzrange(gs, gs + a.width, '[)') AS bucket, a.only_unit
  FROM aligned a
  CROSS JOIN LATERAL generate_series(
      a.aligned_start,
      a.win_end - INTERVAL '1 microsecond',
      a.width) AS gs
),
usable_buckets AS (
  SELECT b.bucket, u.id AS unit_id, u.capacity
  FROM buckets b
  CROSS JOIN units u
  WHERE u.active
    AND (b.only_unit IS NULL OR u.id = b.only_unit)
    AND NOT EXISTS (
      SELECT 1 FROM blackouts bo
      WHERE bo.unit_id = u.id AND bo.period && b.bucket
    )
),
booking_counts AS (
  SELECT ub.bucket, ub.unit_id, ub.capacity, COUNT(bk.id) AS overlap_count
  FROM usable_buckets ub
  LEFT JOIN bookings bk
         ON bk.unit_id = ub.unit_id
        AND bk.status = 'confirmed'
        AND bk.slot && ub.bucket
  GROUP BY ub.bucket, ub.unit_id, ub.capacity
)
SELECT
  lower(bucket)              AS bucket_start,
  upper(bucket)              AS bucket_end,
  unit_id,
  capacity - overlap_count   AS remaining_capacity
FROM booking_counts
WHERE capacity - overlap_count > 0
ORDER BY bucket_start, unit_id
"""
)


def _range(interval: TimeRange) -> Range[datetime]:
    return Range(interval.start, interval.end, bounds="[)")


def _violates(exc: IntegrityError, constraint: str) -> bool:
    return constraint in str(exc.orig)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlAlchemyUnitRepository(UnitRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_active(self, unit_id: int) -> Unit | None:
        result = await self.session.scalar(select(Unit).where(Unit.id == unit_id, Unit.active.is_(True)))
        return result if isinstance(result, Unit) else None

    async def has_blackout(self, unit_id: int, interval: TimeRange) -> bool:
        stmt = select(Blackout.id).where(
            Blackout.unit_id == unit_id,
            Blackout.period.overlaps(_range(interval)),
        )
        return await self.session.scalar(stmt.limit(1)) is not None

    async def remaining_capacity(
        self,
        window: TimeRange,
        *,
        unit_id: int | None = None,
        width: timedelta = BUCKET_WIDTH,
    ) -> List[BucketRemaining]:
        rows = await self.session.execute(
            _REMAINING_CAPACITY_SQL,
            {
                "win_start": window.start,
                "win_end": window.end,
                "width_secs": int(width.total_seconds()),
                "unit_id": unit_id,
            },
        )
        return [
            BucketRemaining(
                bucket=TimeRange(row.bucket_start, row.bucket_end),
                unit_id=int(row.unit_id),
                remaining_capacity=int(row.remaining_capacity),
            )
            for row in rows.all()
        ]


class SqlAlchemyBookingRepository(BookingRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _confirmed_overlapping(self, unit_id: int, interval: TimeRange) -> Select:
        return select(Booking).where(
            Booking.unit_id == unit_id,
            Booking.status == BookingStatus.CONFIRMED,
            Booking.slot.overlaps(_range(interval)),
        )

    async def occupied_lanes(self, unit_id: int, interval: TimeRange) -> set[int]:
        stmt = select(Booking.lane).where(
            Booking.unit_id == unit_id,
            Booking.status == BookingStatus.CONFIRMED,
            Booking.slot.overlaps(_range(interval)),
        )
        return {int(lane) for lane in (await self.session.scalars(stmt)).all()}

    async def offer_redeemed(self, offer_id: str) -> bool:
        stmt = select(Booking.id).where(Booking.offer_id == offer_id)
        return await self.session.scalar(stmt) is not None

    async def create(
        self,
        *,
        user_id: int,
        unit_id: int,
        lane: int,
        interval: TimeRange,
        offer_id: str | None = None,
    ) -> Booking:
        booking = Booking(
            user_id=user_id,
            unit_id=unit_id,
            lane=lane,
            slot=_range(interval),
            status=BookingStatus.CONFIRMED,
            offer_id=offer_id,
            created_at=_utcnow(),
        )
        try:
            async with self.session.begin_nested():
                self.session.add(booking)
                await self.session.flush()
        except IntegrityError as exc:
            if _violates(exc, "no_overlap_per_unit_lane"):
                raise LaneTakenError(f"lane {lane} taken on unit {unit_id}") from exc
            if _violates(exc, "uq_bookings_offer"):
                raise SlotUnavailableError("offer already redeemed") from exc
            raise
        return booking

    async def cancel_confirmed(self, booking_id: int, user_id: int) -> Booking | None:
        stmt = (
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.user_id == user_id,
                Booking.status == BookingStatus.CONFIRMED,
            )
            .values(status=BookingStatus.CANCELLED)
            .returning(Booking)
        )
        result = await self.session.scalar(stmt)
        return result if isinstance(result, Booking) else None

    async def confirmed_slots(self, unit_id: int, window: TimeRange) -> list[TimeRange]:
        stmt = self._confirmed_overlapping(unit_id, window).order_by(func.lower(Booking.slot))
        bookings = (await self.session.scalars(stmt)).all()
        return [TimeRange(b.slot.lower, b.slot.upper) for b in bookings]

    async def list_by_user(
        self,
        user_id: int,
        *,
        ending_after: datetime | None = None,
        overlapping: TimeRange | None = None,
    ) -> list[Booking]:
        stmt = select(Booking).where(
            Booking.user_id == user_id,
            Booking.status == BookingStatus.CONFIRMED,
        )
        if ending_after is not None:
            stmt = stmt.where(func.upper(Booking.slot) > ending_after)
        if overlapping is not None:
            stmt = stmt.where(Booking.slot.overlaps(_range(overlapping)))
        stmt = stmt.order_by(func.lower(Booking.slot))
        return list((await self.session.scalars(stmt)).all())


class SqlAlchemyCreditRepository(CreditRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def balance(self, user_id: int) -> int:
        stmt = select(CreditBalance.balance_cents).where(CreditBalance.user_id == user_id)
        return int(await self.session.scalar(stmt) or 0)

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
        now = _utcnow()
        transaction = CreditTransaction(
            user_id=user_id,
            amount_cents=amount_cents,
            currency=currency,
            kind=kind,
            booking_id=booking_id,
            payment_id=payment_id,
            note=note,
            created_at=now,
        )
        # The upsert takes the balance row lock, serialising concurrent writers for this user.
        upsert = (
            pg_insert(CreditBalance)
            .values(user_id=user_id, balance_cents=amount_cents, updated_at=now)
            .on_conflict_do_update(
                index_elements=[CreditBalance.user_id],
                set_={
                    "balance_cents": CreditBalance.balance_cents + amount_cents,
                    "updated_at": now,
                },
            )
            .returning(CreditBalance.balance_cents)
        )
        try:
            async with self.session.begin_nested():
                self.session.add(transaction)
                await self.session.flush()
                balance = int(await self.session.scalar(upsert) or 0)
        except IntegrityError as exc:
            if _violates(exc, "chk_credit_balance_non_negative"):
                raise InsufficientCreditsError(f"insufficient credits (user_id={user_id})") from exc
            raise
        return transaction, balance

    async def list_transactions(self, user_id: int, *, limit: int = 20) -> list[CreditTransaction]:
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
        )
        return list((await self.session.scalars(stmt)).all())


class SqlAlchemyUsageRepository(UsageRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def savepoint(self) -> AsyncContextManager[object]:
        return self.session.begin_nested()

    async def resolve_user(self, user_ref: str) -> int | None:
        column = User.email if "@" in user_ref else User.name
        stmt = select(User.id).where(column == user_ref).order_by(User.id).limit(1)
        result = await self.session.scalar(stmt)
        return int(result) if result is not None else None

    async def get_totals_for_update(self, user_id: int) -> UsageTotals | None:
        stmt = select(UsageLastSeenTotals).where(UsageLastSeenTotals.user_id == user_id).with_for_update()
        row: Optional[UsageLastSeenTotals] = await self.session.scalar(stmt)
        if row is None:
            return None
        return UsageTotals(
            last_seen_copies=row.last_seen_copies,
            last_seen_stencils=row.last_seen_stencils,
            cumulative_copies_billed=row.cumulative_copies_billed,
            cumulative_stencils_billed=row.cumulative_stencils_billed,
        )

    async def save_totals(self, user_id: int, totals: UsageTotals, *, reported_at: datetime) -> None:
        values = {
            "last_seen_copies": totals.last_seen_copies,
            "last_seen_stencils": totals.last_seen_stencils,
            "cumulative_copies_billed": totals.cumulative_copies_billed,
            "cumulative_stencils_billed": totals.cumulative_stencils_billed,
            "last_report_at": reported_at,
            "updated_at": _utcnow(),
        }
        stmt = (
            pg_insert(UsageLastSeenTotals)
            .values(user_id=user_id, **values)
            .on_conflict_do_update(index_elements=[UsageLastSeenTotals.user_id], set_=values)
        )
        await self.session.execute(stmt)

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
        self.session.add(report)
        await self.session.flush()
        return report
