from ..domain.repositories import CreditRepository
from ..models import CreditKind, CreditTransaction


async def append_credit(
    credit_repo: CreditRepository,
    *,
    user_id: int,
    amount_cents: int,
    kind: CreditKind,
    currency: str,
    note: str | None = None,
    payment_id: str | None = None,
    booking_id: int | None = None,
) -> tuple[CreditTransaction, int]:
    """Append one signed transaction; returns it with the resulting balance.

    Raises InsufficientCreditsError (and nothing is written) when the balance
    would go negative.
    """
    if amount_cents == 0:
        raise ValueError("amount_cents must be non-zero")
    if kind == CreditKind.PURCHASE and amount_cents < 0:
        raise ValueError("purchases must credit the account")
    if kind in (CreditKind.USAGE_CHARGE, CreditKind.BOOKING_CHARGE) and amount_cents > 0:
        raise ValueError("charges must debit the account")
    return await credit_repo.append(
        user_id=user_id,
        amount_cents=amount_cents,
        kind=kind,
        currency=currency,
        note=note,
        booking_id=booking_id,
        payment_id=payment_id,
    )


async def get_account(
    credit_repo: CreditRepository,
    *,
    user_id: int,
    limit: int = 20,
) -> tuple[int, list[CreditTransaction]]:
    balance = await credit_repo.balance(user_id)
    transactions = await credit_repo.list_transactions(user_id, limit=limit)
    return balance, transactions
