from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

import jwt
from jwt import InvalidTokenError

from .errors import InvalidOfferError
from .timerange import TimeRange

OFFER_TOKEN_TYPE = "slot_offer"


class PricingPolicy(Protocol):
    def price(self, interval: TimeRange, unit_id: int) -> int: ...


@dataclass(frozen=True)
class FlatRatePricing:
    price_cents: int

    def price(self, interval: TimeRange, unit_id: int) -> int:
        return self.price_cents


@dataclass(frozen=True)
class PeakHourPricing:
    base_cents: int
    multiplier: float = 1.5
    peak_start_hour: int = 18
    peak_end_hour: int = 21
    tz: Any = timezone.utc

    def price(self, interval: TimeRange, unit_id: int) -> int:
        hour = interval.start.astimezone(self.tz).hour
        if self.peak_start_hour <= hour < self.peak_end_hour:
            return int(self.base_cents * self.multiplier)
        return self.base_cents


@dataclass(frozen=True)
class SignedOffer:
    interval: TimeRange
    unit_id: int
    price: int
    signature: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class VerifiedOffer:
    offer_id: str
    interval: TimeRange
    unit_id: int
    price: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OfferSigner:
    """Issues and verifies time-limited, tamper-evident slot offers.

    The token binds the type tag, both interval endpoints in their UTC string
    form, the unit, the price and the expiry. Verification compares every bound
    field with what the client hands back.
    """

    def __init__(
        self,
        secret: str,
        *,
        ttl: timedelta = timedelta(minutes=15),
        algorithm: str = "HS256",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._secret = secret
        self._ttl = ttl
        self._algorithm = algorithm
        self._clock = clock

    def sign(self, interval: TimeRange, unit_id: int, price: int) -> SignedOffer:
        issued_at = self._clock().replace(microsecond=0)
        expires_at = issued_at + self._ttl
        start, end = interval.isoformat()
        payload = {
            "typ": OFFER_TOKEN_TYPE,
            "jti": uuid.uuid4().hex,
            "slot": {"start": start, "end": end},
            "unit_id": unit_id,
            "price": price,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)
        return SignedOffer(
            interval=interval,
            unit_id=unit_id,
            price=price,
            signature=token,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def verify(self, interval: TimeRange, unit_id: int, price: int, signature: str) -> VerifiedOffer:
        try:
            # Expiry is checked against the injected clock below, not the wall clock.
            payload = jwt.decode(
                signature,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False, "verify_iat": False, "require": ["exp", "jti"]},
            )
        except InvalidTokenError as exc:
            raise InvalidOfferError("invalid offer signature") from exc

        if payload.get("typ") != OFFER_TOKEN_TYPE:
            raise InvalidOfferError("token is not a slot offer")
        slot = payload.get("slot") or {}
        start, end = interval.isoformat()
        if slot.get("start") != start or slot.get("end") != end:
            raise InvalidOfferError("offer interval does not match")
        if payload.get("unit_id") != unit_id:
            raise InvalidOfferError("offer unit does not match")
        if payload.get("price") != price:
            raise InvalidOfferError("offer price does not match")
        if self._clock().timestamp() > payload["exp"]:
            raise InvalidOfferError("offer expired")
        return VerifiedOffer(offer_id=str(payload["jti"]), interval=interval, unit_id=unit_id, price=price)
