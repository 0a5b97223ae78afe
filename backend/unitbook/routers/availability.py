from datetime import datetime, timedelta
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..deps import get_current_user, get_offer_signer, get_pricing_policy, get_session
from ..domain.errors import InvalidWindowError, UnitUnavailableError
from ..domain.offers import OfferSigner, PricingPolicy
from ..infrastructure.repositories import SqlAlchemyBookingRepository, SqlAlchemyUnitRepository
from ..schemas import CapacityRead, DensityRead, OfferRead
from ..usecases import availability as availability_usecase

router = APIRouter(prefix="", tags=["availability"], dependencies=[Depends(get_current_user)])


def _max_span() -> timedelta:
    return timedelta(days=get_settings().max_window_days)


def _bucket_width() -> timedelta:
    return timedelta(minutes=get_settings().bucket_minutes)


@router.get("/availability", response_model=List[CapacityRead])
async def list_availability(
    start: datetime = Query(..., description="Window start (ISO 8601 with offset)"),
    end: datetime = Query(..., description="Window end (ISO 8601 with offset)"),
    session: AsyncSession = Depends(get_session),
) -> list[CapacityRead]:
    unit_repo = SqlAlchemyUnitRepository(session)
    try:
        rows = await availability_usecase.list_remaining_capacity(
            unit_repo,
            start=start,
            end=end,
            max_span=_max_span(),
            width=_bucket_width(),
        )
    except InvalidWindowError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return [CapacityRead.from_row(row) for row in rows]


@router.get("/offers", response_model=List[OfferRead])
async def list_offers(
    start: datetime = Query(..., description="Window start (ISO 8601 with offset)"),
    end: datetime = Query(..., description="Window end (ISO 8601 with offset)"),
    session: AsyncSession = Depends(get_session),
    signer: OfferSigner = Depends(get_offer_signer),
    pricing: PricingPolicy = Depends(get_pricing_policy),
) -> list[OfferRead]:
    unit_repo = SqlAlchemyUnitRepository(session)
    try:
        offers = await availability_usecase.issue_offers(
            unit_repo,
            signer,
            pricing,
            start=start,
            end=end,
            max_span=_max_span(),
            width=_bucket_width(),
        )
    except InvalidWindowError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return [OfferRead.from_offer(offer) for offer in offers]


@router.get("/units/{unit_id}/density", response_model=DensityRead)
async def get_density(
    unit_id: int = Path(..., ge=1),
    start: datetime = Query(..., description="Day start (ISO 8601 with offset)"),
    end: datetime = Query(..., description="Day end (ISO 8601 with offset)"),
    session: AsyncSession = Depends(get_session),
) -> DensityRead:
    unit_repo = SqlAlchemyUnitRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        timeline = await availability_usecase.unit_density(
            unit_repo,
            booking_repo,
            unit_id=unit_id,
            start=start,
            end=end,
            max_span=_max_span(),
        )
    except InvalidWindowError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except UnitUnavailableError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unit not found or inactive")
    return DensityRead.from_timeline(unit_id=unit_id, timeline=timeline)
