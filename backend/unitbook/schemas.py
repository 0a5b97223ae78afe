from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_serializer

from .domain.capacity import BucketRemaining
from .domain.density import DensityTimeline
from .domain.offers import SignedOffer
from .domain.timerange import TimeRange
from .models import Booking, BookingStatus, CreditKind, CreditTransaction
from .usecases.usage import UsageOutcome


class SlotRange(BaseModel):
    start: datetime
    end: datetime

    @field_serializer("start", "end")
    def _ser_datetime(self, dt: datetime) -> str:
        return dt.astimezone(timezone.utc).isoformat()

    @classmethod
    def from_range(cls, interval: TimeRange) -> "SlotRange":
        return cls(start=interval.start, end=interval.end)

    def to_range(self) -> TimeRange:
        return TimeRange(self.start, self.end)


class CapacityRead(BaseModel):
    slot: SlotRange
    unit_id: int
    remaining_capacity: int

    @classmethod
    def from_row(cls, row: BucketRemaining) -> "CapacityRead":
        return cls(slot=SlotRange.from_range(row.bucket), unit_id=row.unit_id, remaining_capacity=row.remaining_capacity)


class OfferRead(BaseModel):
    slot: SlotRange
    unit_id: int
    price: int
    signature: str
    expires_at: datetime

    @field_serializer("expires_at")
    def _ser_datetime(self, dt: datetime) -> str:
        return dt.astimezone(timezone.utc).isoformat()

    @classmethod
    def from_offer(cls, offer: SignedOffer) -> "OfferRead":
        return cls(
            slot=SlotRange.from_range(offer.interval),
            unit_id=offer.unit_id,
            price=offer.price,
            signature=offer.signature,
            expires_at=offer.expires_at,
        )


class OfferRedeem(BaseModel):
    slot: SlotRange
    unit_id: int
    price: int = Field(ge=0)
    signature: str = Field(min_length=1)


class CustomBookingCreate(BaseModel):
    unit_id: int
    slot: SlotRange


class BookingRead(BaseModel):
    booking_id: int
    unit_id: int
    user_id: int
    slot: SlotRange
    status: BookingStatus

    @classmethod
    def from_db(cls, *, booking: Booking) -> "BookingRead":
        return cls(
            booking_id=booking.id,
            unit_id=booking.unit_id,
            user_id=booking.user_id,
            slot=SlotRange(start=booking.starts_at, end=booking.ends_at),
            status=booking.status,
        )


class CancelResult(BaseModel):
    cancelled: bool


class DensityIntervalRead(BaseModel):
    slot: SlotRange
    booked_count: int


class DensityRead(BaseModel):
    unit_id: int
    requested: SlotRange
    total_capacity: int
    intervals: List[DensityIntervalRead]

    @classmethod
    def from_timeline(cls, *, unit_id: int, timeline: DensityTimeline) -> "DensityRead":
        return cls(
            unit_id=unit_id,
            requested=SlotRange.from_range(timeline.window),
            total_capacity=timeline.total_capacity,
            intervals=[
                DensityIntervalRead(slot=SlotRange.from_range(item.interval), booked_count=item.booked_count)
                for item in timeline.intervals
            ],
        )


class CreditTransactionRead(BaseModel):
    transaction_id: int
    amount_cents: int
    currency: str
    kind: CreditKind
    booking_id: Optional[int] = None
    payment_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime

    @field_serializer("created_at")
    def _ser_datetime(self, dt: datetime) -> str:
        return dt.astimezone(timezone.utc).isoformat()

    @classmethod
    def from_db(cls, *, transaction: CreditTransaction) -> "CreditTransactionRead":
        return cls(
            transaction_id=transaction.id,
            amount_cents=transaction.amount_cents,
            currency=transaction.currency,
            kind=transaction.kind,
            booking_id=transaction.booking_id,
            payment_id=transaction.payment_id,
            note=transaction.note,
            created_at=transaction.created_at,
        )


class CreditAccountRead(BaseModel):
    balance_cents: int
    transactions: List[CreditTransactionRead]


class CreditAppend(BaseModel):
    user_id: int
    amount_cents: int
    kind: CreditKind = CreditKind.PURCHASE
    note: Optional[str] = None
    payment_id: Optional[str] = None


class CreditAppendResult(BaseModel):
    transaction: CreditTransactionRead
    balance_cents: int


class UsageRecordIn(BaseModel):
    user_ref: str = Field(min_length=1)
    # Left untyped so one malformed counter rejects its record, not the batch.
    copies: Any = None
    stencils: Any = None
    raw_data: Optional[str] = None


class UsageBatchIn(BaseModel):
    reported_at: Optional[datetime] = None
    records: List[UsageRecordIn]


class UsageOutcomeRead(BaseModel):
    user_ref: str
    user_id: Optional[int]
    accepted: bool
    billed_copies: int = 0
    billed_stencils: int = 0
    copies_reset: bool = False
    stencils_reset: bool = False
    charge_cents: int = 0
    reason: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: UsageOutcome) -> "UsageOutcomeRead":
        result = outcome.reconciliation
        return cls(
            user_ref=outcome.user_ref,
            user_id=outcome.user_id,
            accepted=outcome.accepted,
            billed_copies=result.copies.billable if result else 0,
            billed_stencils=result.stencils.billable if result else 0,
            copies_reset=result.copies.reset if result else False,
            stencils_reset=result.stencils.reset if result else False,
            charge_cents=outcome.charge_cents,
            reason=outcome.reason,
        )
