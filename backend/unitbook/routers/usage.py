from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..deps import get_session, require_capability
from ..domain.capabilities import Capability
from ..infrastructure.repositories import SqlAlchemyCreditRepository, SqlAlchemyUsageRepository
from ..schemas import UsageBatchIn, UsageOutcomeRead
from ..usecases import usage as usage_usecase
from ..usecases.usage import UsageOutcome, UsageRates, UsageRecord
from ..utils.audit_log import emit_audit_log
from ..utils.time import to_utc, utcnow

router = APIRouter(
    prefix="/usage",
    tags=["usage"],
    dependencies=[Depends(require_capability(Capability.MANAGE_CREDITS))],
)


def _audit_outcome(outcome: UsageOutcome) -> None:
    result = outcome.reconciliation
    if not outcome.accepted or result is None:
        emit_audit_log(
            action="usage.rejected",
            initiator="system",
            user_id=outcome.user_id,
            message=outcome.reason,
            extra={"user_ref": outcome.user_ref},
        )
        return
    if result.any_reset:
        emit_audit_log(
            action="usage.counter_reset",
            initiator="system",
            user_id=outcome.user_id,
            extra={
                "copies_reset": result.copies.reset,
                "stencils_reset": result.stencils.reset,
            },
        )
    emit_audit_log(
        action="usage.billed",
        initiator="system",
        user_id=outcome.user_id,
        amount_cents=-outcome.charge_cents,
        extra={
            "billed_copies": result.copies.billable,
            "billed_stencils": result.stencils.billable,
        },
    )


@router.post("/reports", response_model=List[UsageOutcomeRead])
async def ingest_usage_reports(
    payload: UsageBatchIn,
    session: AsyncSession = Depends(get_session),
) -> list[UsageOutcomeRead]:
    settings = get_settings()
    try:
        reported_at = to_utc(payload.reported_at) if payload.reported_at else utcnow()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    rates = UsageRates(
        copy_price_cents=settings.copy_price_cents,
        stencil_price_cents=settings.stencil_price_cents,
        currency=settings.currency,
    )
    records = [
        UsageRecord(user_ref=item.user_ref, copies=item.copies, stencils=item.stencils, raw_data=item.raw_data)
        for item in payload.records
    ]
    usage_repo = SqlAlchemyUsageRepository(session)
    credit_repo = SqlAlchemyCreditRepository(session)
    async with session.begin():
        outcomes = await usage_usecase.ingest_usage_batch(
            usage_repo,
            credit_repo,
            records,
            rates=rates,
            reported_at=reported_at,
        )
        try:
            for outcome in outcomes:
                _audit_outcome(outcome)
        except RuntimeError:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed")

    return [UsageOutcomeRead.from_outcome(outcome) for outcome in outcomes]
