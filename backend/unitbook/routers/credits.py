from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..deps import get_current_user, get_session, require_capability
from ..domain.capabilities import Capability, UserContext
from ..domain.errors import InsufficientCreditsError
from ..infrastructure.repositories import SqlAlchemyCreditRepository
from ..schemas import CreditAccountRead, CreditAppend, CreditAppendResult, CreditTransactionRead
from ..usecases import credits as credit_usecase
from ..utils.audit_log import emit_audit_log

router = APIRouter(prefix="", tags=["credits"])


@router.get("/me/credits", response_model=CreditAccountRead)
async def get_my_credits(
    limit: int = Query(default=20, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
    user: UserContext = Depends(get_current_user),
) -> CreditAccountRead:
    credit_repo = SqlAlchemyCreditRepository(session)
    balance, transactions = await credit_usecase.get_account(credit_repo, user_id=user.user_id, limit=limit)
    return CreditAccountRead(
        balance_cents=balance,
        transactions=[CreditTransactionRead.from_db(transaction=tx) for tx in transactions],
    )


@router.post("/credits", response_model=CreditAppendResult, status_code=status.HTTP_201_CREATED)
async def append_credit(
    payload: CreditAppend,
    session: AsyncSession = Depends(get_session),
    admin: UserContext = Depends(require_capability(Capability.MANAGE_CREDITS)),
) -> CreditAppendResult:
    credit_repo = SqlAlchemyCreditRepository(session)
    async with session.begin():
        try:
            transaction, balance = await credit_usecase.append_credit(
                credit_repo,
                user_id=payload.user_id,
                amount_cents=payload.amount_cents,
                kind=payload.kind,
                currency=get_settings().currency,
                note=payload.note,
                payment_id=payload.payment_id,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        except InsufficientCreditsError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
        try:
            emit_audit_log(
                action="credit.appended",
                initiator="admin",
                user_id=payload.user_id,
                amount_cents=payload.amount_cents,
                extra={"kind": payload.kind, "balance_cents": balance, "by_user_id": admin.user_id},
            )
        except RuntimeError:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed")

    return CreditAppendResult(transaction=CreditTransactionRead.from_db(transaction=transaction), balance_cents=balance)
