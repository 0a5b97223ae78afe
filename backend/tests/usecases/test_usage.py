from datetime import datetime, timezone

import pytest
from unitbook.domain.reconciliation import UsageTotals
from unitbook.models import CreditKind
from unitbook.usecases import usage as uc
from unitbook.usecases.usage import UsageRates, UsageRecord

REPORTED_AT = datetime(2030, 1, 31, 23, 0, tzinfo=timezone.utc)
RATES = UsageRates(copy_price_cents=10, stencil_price_cents=150)


async def _ingest(usage_repo, credit_repo, *records: UsageRecord):
    return await uc.ingest_usage_batch(usage_repo, credit_repo, list(records), rates=RATES, reported_at=REPORTED_AT)


@pytest.fixture
def funded(store):
    store.users.update({"ada@example.org": 1, "grace": 2})
    store.balances.update({1: 10_000, 2: 10_000})
    return store


@pytest.mark.asyncio
async def test_first_report_bills_everything(funded, usage_repo, credit_repo) -> None:
    [outcome] = await _ingest(usage_repo, credit_repo, UsageRecord("ada@example.org", 30, 2))

    assert outcome.accepted
    assert outcome.charge_cents == 30 * 10 + 2 * 150
    assert funded.balances[1] == 10_000 - 600
    tx = funded.transactions[-1]
    assert tx.kind == CreditKind.USAGE_CHARGE
    assert tx.amount_cents == -600
    assert funded.totals[1] == UsageTotals(30, 2, 30, 2)


@pytest.mark.asyncio
async def test_redelivery_bills_nothing(funded, usage_repo, credit_repo) -> None:
    await _ingest(usage_repo, credit_repo, UsageRecord("grace", 50, 5))
    [again] = await _ingest(usage_repo, credit_repo, UsageRecord("grace", 50, 5))

    assert again.accepted
    assert again.charge_cents == 0
    assert len(funded.transactions) == 1
    assert len(funded.reports) == 2


@pytest.mark.asyncio
async def test_counter_reset_bills_post_reset_reading(funded, usage_repo, credit_repo) -> None:
    funded.totals[1] = UsageTotals(100, 0, 100, 0)
    [outcome] = await _ingest(usage_repo, credit_repo, UsageRecord("ada@example.org", 40, 0))

    assert outcome.reconciliation.copies.reset
    assert outcome.reconciliation.copies.billable == 40
    assert outcome.charge_cents == 400
    assert funded.reports[-1].copies_reset is True


@pytest.mark.asyncio
async def test_malformed_record_does_not_abort_batch(funded, usage_repo, credit_repo) -> None:
    outcomes = await _ingest(
        usage_repo,
        credit_repo,
        UsageRecord("ada@example.org", "lots", 0),
        UsageRecord("nobody@example.org", 1, 1),
        UsageRecord("grace", -3, 0),
        UsageRecord("grace", "12", 1),
    )

    assert [o.accepted for o in outcomes] == [False, False, False, True]
    assert outcomes[1].reason and "unknown user" in outcomes[1].reason
    assert outcomes[3].reconciliation.copies.billable == 12
    assert 1 not in funded.totals


@pytest.mark.asyncio
async def test_overdrawing_charge_rejects_record_and_keeps_totals(funded, usage_repo, credit_repo) -> None:
    funded.balances[2] = 50
    funded.totals[2] = UsageTotals(10, 0, 10, 0)
    outcomes = await _ingest(
        usage_repo,
        credit_repo,
        UsageRecord("grace", 20, 0),
        UsageRecord("ada@example.org", 1, 0),
    )

    assert [o.accepted for o in outcomes] == [False, True]
    assert funded.balances[2] == 50
    assert funded.totals[2] == UsageTotals(10, 0, 10, 0)
    assert [r.user_id for r in funded.reports] == [1]
