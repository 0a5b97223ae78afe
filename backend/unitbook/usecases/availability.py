from datetime import datetime, timedelta
from typing import List

from ..domain.capacity import BUCKET_WIDTH, BucketRemaining
from ..domain.density import DensityTimeline, booking_density
from ..domain.errors import UnitUnavailableError
from ..domain.offers import OfferSigner, PricingPolicy, SignedOffer
from ..domain.repositories import BookingRepository, UnitRepository
from ..domain.timerange import validate_window
from ..utils.time import utcnow


async def list_remaining_capacity(
    unit_repo: UnitRepository,
    *,
    start: datetime,
    end: datetime,
    max_span: timedelta,
    width: timedelta = BUCKET_WIDTH,
) -> List[BucketRemaining]:
    window = validate_window(start, end, max_span=max_span)
    rows = await unit_repo.remaining_capacity(window, width=width)
    return [row for row in rows if row.remaining_capacity > 0]


async def issue_offers(
    unit_repo: UnitRepository,
    signer: OfferSigner,
    pricing: PricingPolicy,
    *,
    start: datetime,
    end: datetime,
    max_span: timedelta,
    width: timedelta = BUCKET_WIDTH,
    now: datetime | None = None,
) -> List[SignedOffer]:
    now = now or utcnow()
    rows = await list_remaining_capacity(unit_repo, start=start, end=end, max_span=max_span, width=width)
    offers: List[SignedOffer] = []
    for row in rows:
        # Buckets that already started are never offered.
        if row.bucket.start <= now:
            continue
        price = pricing.price(row.bucket, row.unit_id)
        offers.append(signer.sign(row.bucket, row.unit_id, price))
    return offers


async def unit_density(
    unit_repo: UnitRepository,
    booking_repo: BookingRepository,
    *,
    unit_id: int,
    start: datetime,
    end: datetime,
    max_span: timedelta,
) -> DensityTimeline:
    window = validate_window(start, end, max_span=max_span)
    unit = await unit_repo.get_active(unit_id)
    if unit is None:
        raise UnitUnavailableError("unit not found or inactive")
    slots = await booking_repo.confirmed_slots(unit_id, window)
    return booking_density(window, slots, unit.capacity)
