from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..deps import get_access_notifier, get_current_user, get_offer_signer, get_session, require_capability
from ..domain.capabilities import Capability, UserContext
from ..domain.errors import (
    InsufficientCreditsError,
    InvalidOfferError,
    InvalidWindowError,
    SlotUnavailableError,
    UnitUnavailableError,
)
from ..domain.notifications import AccessNotifier
from ..domain.offers import OfferSigner
from ..infrastructure.repositories import (
    SqlAlchemyBookingRepository,
    SqlAlchemyCreditRepository,
    SqlAlchemyUnitRepository,
)
from ..models import Booking, BookingStatus
from ..schemas import BookingRead, CancelResult, CustomBookingCreate, OfferRedeem
from ..usecases import bookings as booking_usecase
from ..utils.audit_log import emit_audit_log

router = APIRouter(prefix="", tags=["bookings"])


def _emit_created(booking: Booking, user_id: int, source: str) -> None:
    try:
        emit_audit_log(
            action="booking.created",
            initiator="user",
            user_id=user_id,
            booking_id=booking.id,
            unit_id=booking.unit_id,
            starts_at=booking.starts_at,
            ends_at=booking.ends_at,
            status_to=BookingStatus.CONFIRMED,
            extra={"source": source, "lane": booking.lane},
        )
    except RuntimeError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed")


@router.post("/bookings/offer", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
async def redeem_offer(
    payload: OfferRedeem,
    session: AsyncSession = Depends(get_session),
    user: UserContext = Depends(require_capability(Capability.BOOK)),
    signer: OfferSigner = Depends(get_offer_signer),
    notifier: AccessNotifier = Depends(get_access_notifier),
) -> BookingRead:
    settings = get_settings()
    unit_repo = SqlAlchemyUnitRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    credit_repo = SqlAlchemyCreditRepository(session)
    async with session.begin():
        try:
            booking = await booking_usecase.redeem_offer(
                unit_repo,
                booking_repo,
                credit_repo,
                signer,
                notifier,
                user=user,
                interval=payload.slot.to_range(),
                unit_id=payload.unit_id,
                price=payload.price,
                signature=payload.signature,
                currency=settings.currency,
                width=timedelta(minutes=settings.bucket_minutes),
            )
        except InsufficientCreditsError as exc:
            raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(exc))
        except (InvalidOfferError, InvalidWindowError) as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        except UnitUnavailableError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="unit not found or inactive")
        except SlotUnavailableError:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="slot no longer available")
        _emit_created(booking, user.user_id, "offer")

    return BookingRead.from_db(booking=booking)


@router.post("/bookings/custom", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
async def book_custom_range(
    payload: CustomBookingCreate,
    session: AsyncSession = Depends(get_session),
    user: UserContext = Depends(require_capability(Capability.BOOK)),
    notifier: AccessNotifier = Depends(get_access_notifier),
) -> BookingRead:
    settings = get_settings()
    unit_repo = SqlAlchemyUnitRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    credit_repo = SqlAlchemyCreditRepository(session)
    async with session.begin():
        try:
            booking = await booking_usecase.book_custom_range(
                unit_repo,
                booking_repo,
                credit_repo,
                notifier,
                user=user,
                unit_id=payload.unit_id,
                start=payload.slot.start,
                end=payload.slot.end,
                max_span=timedelta(days=settings.max_window_days),
            )
        except InsufficientCreditsError as exc:
            raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(exc))
        except InvalidWindowError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        except UnitUnavailableError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        except SlotUnavailableError:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="slot no longer available")
        _emit_created(booking, user.user_id, "custom")

    return BookingRead.from_db(booking=booking)


@router.get("/me/bookings", response_model=List[BookingRead])
async def list_my_bookings(
    include_past: bool = Query(default=False),
    start: Optional[datetime] = Query(default=None, description="Window start (ISO 8601 with offset)"),
    end: Optional[datetime] = Query(default=None, description="Window end (ISO 8601 with offset)"),
    session: AsyncSession = Depends(get_session),
    user: UserContext = Depends(get_current_user),
) -> list[BookingRead]:
    booking_repo = SqlAlchemyBookingRepository(session)
    if start is None and end is None:
        bookings = await booking_usecase.list_user_bookings(
            booking_repo,
            user_id=user.user_id,
            upcoming_only=not include_past,
        )
        return [BookingRead.from_db(booking=booking) for booking in bookings]

    if start is None or end is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start and end must be given together")
    try:
        bookings = await booking_usecase.list_user_bookings_in_range(
            booking_repo,
            user_id=user.user_id,
            start=start,
            end=end,
            max_span=timedelta(days=get_settings().max_window_days),
        )
    except InvalidWindowError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return [BookingRead.from_db(booking=booking) for booking in bookings]


@router.post("/me/bookings/{booking_id}/cancel", response_model=CancelResult)
async def cancel_booking(
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user: UserContext = Depends(get_current_user),
    notifier: AccessNotifier = Depends(get_access_notifier),
) -> CancelResult:
    booking_repo = SqlAlchemyBookingRepository(session)
    async with session.begin():
        cancelled = await booking_usecase.cancel_booking(
            booking_repo,
            notifier,
            booking_id=booking_id,
            user=user,
        )
        if cancelled is not None:
            try:
                emit_audit_log(
                    action="booking.cancelled",
                    initiator="user",
                    user_id=user.user_id,
                    booking_id=cancelled.id,
                    unit_id=cancelled.unit_id,
                    starts_at=cancelled.starts_at,
                    ends_at=cancelled.ends_at,
                    status_from=BookingStatus.CONFIRMED,
                    status_to=BookingStatus.CANCELLED,
                )
            except RuntimeError:
                raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed")

    return CancelResult(cancelled=cancelled is not None)
