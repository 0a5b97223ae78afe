import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List

from ..domain.errors import InsufficientCreditsError, MalformedUsageRecordError
from ..domain.reconciliation import Reconciliation, UsageTotals, reconcile, usage_charge_cents
from ..domain.repositories import CreditRepository, UsageRepository
from ..models import CreditKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageRates:
    copy_price_cents: int
    stencil_price_cents: int
    currency: str = "USD"


@dataclass(frozen=True)
class UsageRecord:
    """One user's cumulative counters as delivered by the report parser."""

    user_ref: str
    copies: object
    stencils: object
    raw_data: str | None = None


@dataclass(frozen=True)
class UsageOutcome:
    user_ref: str
    user_id: int | None
    accepted: bool
    reconciliation: Reconciliation | None = None
    charge_cents: int = 0
    reason: str | None = None


def _parse_counter(name: str, value: object) -> int:
    if isinstance(value, bool):
        raise MalformedUsageRecordError(f"{name} must be an integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise MalformedUsageRecordError(f"{name} must be a non-negative integer, got {value!r}")
    if parsed < 0:
        raise MalformedUsageRecordError(f"{name} must be a non-negative integer, got {value!r}")
    return parsed


def _charge_note(copies: int, stencils: int, rates: UsageRates) -> str:
    copy_cents = copies * rates.copy_price_cents
    stencil_cents = stencils * rates.stencil_price_cents
    return (
        f"Usage charges: {copies} copies (${copy_cents / 100:.2f}), "
        f"{stencils} stencils (${stencil_cents / 100:.2f})"
    )


async def ingest_usage_report(
    usage_repo: UsageRepository,
    credit_repo: CreditRepository,
    *,
    user_id: int,
    copies: int,
    stencils: int,
    rates: UsageRates,
    reported_at: datetime,
    raw_data: str | None = None,
) -> tuple[Reconciliation, int]:
    """Bill the unbilled part of one cumulative report and store the new totals.

    Re-delivering the same counters bills nothing the second time.
    """
    previous = await usage_repo.get_totals_for_update(user_id) or UsageTotals()
    result = reconcile(copies, stencils, previous)

    billed_copies = result.copies.billable
    billed_stencils = result.stencils.billable
    charge = usage_charge_cents(
        billed_copies,
        billed_stencils,
        copy_price_cents=rates.copy_price_cents,
        stencil_price_cents=rates.stencil_price_cents,
    )
    if charge > 0:
        await credit_repo.append(
            user_id=user_id,
            amount_cents=-charge,
            kind=CreditKind.USAGE_CHARGE,
            currency=rates.currency,
            note=_charge_note(billed_copies, billed_stencils, rates),
        )

    await usage_repo.save_totals(user_id, result.totals, reported_at=reported_at)
    await usage_repo.record_report(
        user_id=user_id,
        copies=copies,
        stencils=stencils,
        reconciliation=result,
        reported_at=reported_at,
        raw_data=raw_data,
    )
    return result, charge


async def ingest_usage_batch(
    usage_repo: UsageRepository,
    credit_repo: CreditRepository,
    records: Iterable[UsageRecord],
    *,
    rates: UsageRates,
    reported_at: datetime,
) -> List[UsageOutcome]:
    """Reconcile every record independently; a bad record never aborts the batch."""
    outcomes: List[UsageOutcome] = []
    for record in records:
        user_id: int | None = None
        try:
            copies = _parse_counter("copies", record.copies)
            stencils = _parse_counter("stencils", record.stencils)
            user_id = await usage_repo.resolve_user(record.user_ref)
            if user_id is None:
                raise MalformedUsageRecordError(f"unknown user {record.user_ref!r}")
            async with usage_repo.savepoint():
                result, charge = await ingest_usage_report(
                    usage_repo,
                    credit_repo,
                    user_id=user_id,
                    copies=copies,
                    stencils=stencils,
                    rates=rates,
                    reported_at=reported_at,
                    raw_data=record.raw_data,
                )
        except (MalformedUsageRecordError, InsufficientCreditsError) as exc:
            logger.warning("usage record for %r rejected: %s", record.user_ref, exc)
            outcomes.append(UsageOutcome(user_ref=record.user_ref, user_id=user_id, accepted=False, reason=str(exc)))
            continue
        if result.any_reset:
            logger.info(
                "usage counter reset for user %s (copies_reset=%s, stencils_reset=%s)",
                user_id,
                result.copies.reset,
                result.stencils.reset,
            )
        outcomes.append(
            UsageOutcome(
                user_ref=record.user_ref,
                user_id=user_id,
                accepted=True,
                reconciliation=result,
                charge_cents=charge,
            )
        )
    return outcomes
