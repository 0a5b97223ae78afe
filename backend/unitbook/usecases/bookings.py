import logging
from datetime import datetime, timedelta

from ..domain.capabilities import UserContext
from ..domain.capacity import BUCKET_WIDTH
from ..domain.errors import LaneTakenError, SlotUnavailableError, UnitUnavailableError
from ..domain.notifications import AccessEvent, AccessEventKind, AccessNotifier, notify_best_effort
from ..domain.offers import OfferSigner
from ..domain.repositories import BookingRepository, CreditRepository, UnitRepository
from ..domain.services import LaneSnapshot, ensure_bookable_balance, free_lanes
from ..domain.timerange import TimeRange, validate_window
from ..models import Booking, CreditKind, Unit
from ..utils.time import utcnow

logger = logging.getLogger(__name__)


async def _require_bookable_balance(credit_repo: CreditRepository, user_id: int) -> None:
    ensure_bookable_balance(await credit_repo.balance(user_id))


async def _claim_lane(
    booking_repo: BookingRepository,
    *,
    unit: Unit,
    interval: TimeRange,
    user_id: int,
    blacked_out: bool,
    offer_id: str | None = None,
) -> Booking:
    occupied = await booking_repo.occupied_lanes(unit.id, interval)
    snapshot = LaneSnapshot(
        active=unit.active,
        capacity=unit.capacity,
        blacked_out=blacked_out,
        occupied_lanes=frozenset(occupied),
    )
    for lane in free_lanes(snapshot):
        try:
            return await booking_repo.create(
                user_id=user_id,
                unit_id=unit.id,
                lane=lane,
                interval=interval,
                offer_id=offer_id,
            )
        except LaneTakenError:
            logger.info("lane %s on unit %s taken concurrently, trying next", lane, unit.id)
    raise SlotUnavailableError("slot no longer available")


async def redeem_offer(
    unit_repo: UnitRepository,
    booking_repo: BookingRepository,
    credit_repo: CreditRepository,
    signer: OfferSigner,
    notifier: AccessNotifier,
    *,
    user: UserContext,
    interval: TimeRange,
    unit_id: int,
    price: int,
    signature: str,
    currency: str,
    width: timedelta = BUCKET_WIDTH,
) -> Booking:
    await _require_bookable_balance(credit_repo, user.user_id)
    offer = signer.verify(interval, unit_id, price, signature)

    unit = await unit_repo.get_active(offer.unit_id)
    if unit is None:
        raise UnitUnavailableError("unit not found or inactive")
    if await booking_repo.offer_redeemed(offer.offer_id):
        raise SlotUnavailableError("slot no longer available")

    # Capacity is re-derived now, not trusted from quote time.
    rows = await unit_repo.remaining_capacity(offer.interval, unit_id=unit.id, width=width)
    remaining = next(
        (
            row.remaining_capacity
            for row in rows
            if row.unit_id == unit.id and row.bucket.start == offer.interval.start
        ),
        0,
    )
    if remaining <= 0:
        raise SlotUnavailableError("slot no longer available")

    booking = await _claim_lane(
        booking_repo,
        unit=unit,
        interval=offer.interval,
        user_id=user.user_id,
        blacked_out=False,
        offer_id=offer.offer_id,
    )
    if offer.price > 0:
        await credit_repo.append(
            user_id=user.user_id,
            amount_cents=-offer.price,
            kind=CreditKind.BOOKING_CHARGE,
            currency=currency,
            note=f"Booking of unit {unit.id}",
            booking_id=booking.id,
        )
    notify_best_effort(notifier, AccessEvent(AccessEventKind.ADD_ACCESS, user.code, offer.interval))
    return booking


async def book_custom_range(
    unit_repo: UnitRepository,
    booking_repo: BookingRepository,
    credit_repo: CreditRepository,
    notifier: AccessNotifier,
    *,
    user: UserContext,
    unit_id: int,
    start: datetime,
    end: datetime,
    max_span: timedelta,
) -> Booking:
    await _require_bookable_balance(credit_repo, user.user_id)
    interval = validate_window(start, end, max_span=max_span)

    unit = await unit_repo.get_active(unit_id)
    if unit is None:
        raise UnitUnavailableError("unit not found or inactive")
    blacked_out = await unit_repo.has_blackout(unit.id, interval)

    booking = await _claim_lane(
        booking_repo,
        unit=unit,
        interval=interval,
        user_id=user.user_id,
        blacked_out=blacked_out,
    )
    notify_best_effort(notifier, AccessEvent(AccessEventKind.ADD_ACCESS, user.code, interval))
    return booking


async def cancel_booking(
    booking_repo: BookingRepository,
    notifier: AccessNotifier,
    *,
    booking_id: int,
    user: UserContext,
) -> Booking | None:
    """Cancel a confirmed booking owned by the user; None when there was nothing to cancel."""
    booking = await booking_repo.cancel_confirmed(booking_id, user.user_id)
    if booking is None:
        return None
    interval = TimeRange(booking.starts_at, booking.ends_at)
    notify_best_effort(notifier, AccessEvent(AccessEventKind.REMOVE_ACCESS, user.code, interval))
    return booking


async def list_user_bookings(
    booking_repo: BookingRepository,
    *,
    user_id: int,
    upcoming_only: bool = True,
    now: datetime | None = None,
) -> list[Booking]:
    ending_after = (now or utcnow()) if upcoming_only else None
    return await booking_repo.list_by_user(user_id, ending_after=ending_after)


async def list_user_bookings_in_range(
    booking_repo: BookingRepository,
    *,
    user_id: int,
    start: datetime,
    end: datetime,
    max_span: timedelta,
) -> list[Booking]:
    window = validate_window(start, end, max_span=max_span)
    return await booking_repo.list_by_user(user_id, overlapping=window)
