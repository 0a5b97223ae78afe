from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Optional

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import TSTZRANGE, ExcludeConstraint, Range
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql.sqltypes import BigInteger, Boolean, DateTime, Integer, String, Text


class Base(DeclarativeBase):
    pass


class BookingStatus(StrEnum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class CreditKind(StrEnum):
    PURCHASE = "purchase"
    USAGE_CHARGE = "usage_charge"
    BOOKING_CHARGE = "booking_charge"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


def _str_enum(enum_cls: type[StrEnum]) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda cls: [e.value for e in cls],
        native_enum=False,
    )


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("email", name="uq_users_email"),
        UniqueConstraint("phone_e164", name="uq_users_phone"),
        UniqueConstraint("code", name="uq_users_code"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone_e164: Mapped[str] = mapped_column(String(20), nullable=False)
    # Opaque code handed to the door controller with access events.
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    trained: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    credit_manager: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Unit(Base):
    __tablename__ = "units"
    __table_args__ = (CheckConstraint("capacity >= 1", name="chk_units_capacity"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    bookings: Mapped[list["Booking"]] = relationship(back_populates="unit")
    blackouts: Mapped[list["Blackout"]] = relationship(back_populates="unit")


class Blackout(Base):
    __tablename__ = "blackouts"
    __table_args__ = (
        ExcludeConstraint(
            ("unit_id", "="),
            ("period", "&&"),
            using="gist",
            name="blackout_no_overlap",
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    unit_id: Mapped[int] = mapped_column(ForeignKey("units.id", ondelete="CASCADE"), nullable=False)
    period: Mapped[Range[datetime]] = mapped_column(TSTZRANGE, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    unit: Mapped["Unit"] = relationship(back_populates="blackouts")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("lane >= 0", name="chk_bookings_lane"),
        UniqueConstraint("offer_id", name="uq_bookings_offer"),
        # A unit of capacity N is N lanes; a lane never holds two overlapping confirmed bookings.
        ExcludeConstraint(
            ("unit_id", "="),
            ("lane", "="),
            ("slot", "&&"),
            using="gist",
            where=text("status = 'confirmed'"),
            name="no_overlap_per_unit_lane",
        ),
        Index("idx_bookings_user", "user_id"),
        Index("idx_bookings_unit", "unit_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    unit_id: Mapped[int] = mapped_column(ForeignKey("units.id", ondelete="CASCADE"), nullable=False)
    lane: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    slot: Mapped[Range[datetime]] = mapped_column(TSTZRANGE, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        _str_enum(BookingStatus),
        nullable=False,
        default=BookingStatus.CONFIRMED,
    )
    offer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    unit: Mapped["Unit"] = relationship(back_populates="bookings")

    @property
    def starts_at(self) -> datetime:
        return self.slot.lower

    @property
    def ends_at(self) -> datetime:
        return self.slot.upper


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (Index("idx_credit_tx_user", "user_id"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    kind: Mapped[CreditKind] = mapped_column(_str_enum(CreditKind), nullable=False)
    booking_id: Mapped[Optional[int]] = mapped_column(ForeignKey("bookings.id"), nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CreditBalance(Base):
    __tablename__ = "credit_balances"
    __table_args__ = (CheckConstraint("balance_cents >= 0", name="chk_credit_balance_non_negative"),)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class UsageLastSeenTotals(Base):
    __tablename__ = "usage_last_seen_totals"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    last_seen_copies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_seen_stencils: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cumulative_copies_billed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cumulative_stencils_billed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_report_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class UsageReport(Base):
    __tablename__ = "usage_reports"
    __table_args__ = (Index("idx_usage_reports_user", "user_id"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    reported_copies: Mapped[int] = mapped_column(Integer, nullable=False)
    reported_stencils: Mapped[int] = mapped_column(Integer, nullable=False)
    billed_copies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    billed_stencils: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    copies_reset: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    stencils_reset: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reported_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    raw_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
