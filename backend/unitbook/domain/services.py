from dataclasses import dataclass

from .errors import InsufficientCreditsError, SlotUnavailableError, UnitUnavailableError


@dataclass(frozen=True)
class LaneSnapshot:
    active: bool
    capacity: int
    blacked_out: bool
    occupied_lanes: frozenset[int]


def ensure_bookable_balance(balance_cents: int) -> None:
    if balance_cents < 0:
        raise InsufficientCreditsError("negative credit balance, please top up before booking")


def free_lanes(snapshot: LaneSnapshot) -> list[int]:
    """
    Pure validation: ensures the unit is usable for the interval.
    Returns the lanes without an overlapping confirmed booking, lowest first.
    Raises domain errors otherwise.
    """
    if not snapshot.active:
        raise UnitUnavailableError("unit not found or inactive")
    if snapshot.blacked_out:
        raise UnitUnavailableError("unit is blacked out for this period")

    lanes = [lane for lane in range(snapshot.capacity) if lane not in snapshot.occupied_lanes]
    if not lanes:
        raise SlotUnavailableError("slot no longer available")
    return lanes
