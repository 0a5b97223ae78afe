from datetime import timedelta
from typing import AsyncIterator, Awaitable, Callable

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import async_session
from .domain.capabilities import Capability, UserContext, user_context
from .domain.notifications import AccessNotifier, NullAccessNotifier
from .domain.offers import FlatRatePricing, OfferSigner, PeakHourPricing, PricingPolicy
from .models import User
from .utils.auth import decode_access_token


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    authorization: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> UserContext:
    if authorization is None:
        raise _unauthorized("Authorization header required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _unauthorized("Bearer token required")

    settings = get_settings()
    try:
        user_id = decode_access_token(token, secret=settings.auth_secret, algorithms=[settings.auth_algorithm])
    except ValueError as exc:
        raise _unauthorized("invalid or expired token") from exc

    try:
        user = await session.scalar(select(User).where(User.id == user_id))
        context = user_context(user) if isinstance(user, User) else None
    except ProgrammingError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="user store unavailable") from exc
    finally:
        # The route shares this session and opens its own transaction with session.begin().
        await session.rollback()
    if context is None:
        raise _unauthorized("user not found")
    return context


def require_capability(capability: Capability) -> Callable[..., Awaitable[UserContext]]:
    async def _require(user: UserContext = Depends(get_current_user)) -> UserContext:
        if not user.can(capability):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"missing capability: {capability.value}")
        return user

    return _require


def get_offer_signer() -> OfferSigner:
    settings = get_settings()
    return OfferSigner(
        settings.offer_secret,
        ttl=timedelta(minutes=settings.offer_ttl_minutes),
        algorithm=settings.auth_algorithm,
    )


def get_pricing_policy() -> PricingPolicy:
    settings = get_settings()
    if settings.pricing_policy == "peak":
        return PeakHourPricing(
            base_cents=settings.slot_price_cents,
            multiplier=settings.peak_multiplier,
            peak_start_hour=settings.peak_start_hour,
            peak_end_hour=settings.peak_end_hour,
        )
    return FlatRatePricing(settings.slot_price_cents)


def get_access_notifier(request: Request) -> AccessNotifier:
    return getattr(request.app.state, "access_notifier", None) or NullAccessNotifier()
