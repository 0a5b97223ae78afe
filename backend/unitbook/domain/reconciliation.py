from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class CounterState:
    last_seen: int
    billed: int


@dataclass(frozen=True)
class CounterDelta:
    billable: int
    reset: bool
    state: CounterState


@dataclass(frozen=True)
class UsageTotals:
    last_seen_copies: int = 0
    last_seen_stencils: int = 0
    cumulative_copies_billed: int = 0
    cumulative_stencils_billed: int = 0


@dataclass(frozen=True)
class Reconciliation:
    copies: CounterDelta
    stencils: CounterDelta

    @property
    def totals(self) -> UsageTotals:
        return UsageTotals(
            last_seen_copies=self.copies.state.last_seen,
            last_seen_stencils=self.stencils.state.last_seen,
            cumulative_copies_billed=self.copies.state.billed,
            cumulative_stencils_billed=self.stencils.state.billed,
        )

    @property
    def any_reset(self) -> bool:
        return self.copies.reset or self.stencils.reset


def reconcile_counter(reported: int, previous: CounterState) -> CounterDelta:
    """Turn one cumulative counter reading into the amount to bill now.

    A reading below the last one means the device counter was reset: whatever
    was seen but not billed before the reset is billed together with the whole
    post-reset reading. Billed totals live in the current counter frame.
    """
    if reported < 0:
        raise ValueError("counter readings cannot be negative")
    if reported >= previous.last_seen:
        billable = reported - previous.last_seen
        return CounterDelta(
            billable=billable,
            reset=False,
            state=CounterState(last_seen=reported, billed=previous.billed + billable),
        )
    unbilled = max(previous.last_seen - previous.billed, 0)
    return CounterDelta(
        billable=unbilled + reported,
        reset=True,
        state=CounterState(last_seen=reported, billed=reported),
    )


def reconcile(copies: int, stencils: int, previous: UsageTotals) -> Reconciliation:
    return Reconciliation(
        copies=reconcile_counter(
            copies, CounterState(previous.last_seen_copies, previous.cumulative_copies_billed)
        ),
        stencils=reconcile_counter(
            stencils, CounterState(previous.last_seen_stencils, previous.cumulative_stencils_billed)
        ),
    )


def usage_charge_cents(copies: int, stencils: int, *, copy_price_cents: int, stencil_price_cents: int) -> int:
    return copies * copy_price_cents + stencils * stencil_price_cents
