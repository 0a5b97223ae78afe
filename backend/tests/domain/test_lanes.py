import pytest
from unitbook.domain.errors import InsufficientCreditsError, SlotUnavailableError, UnitUnavailableError
from unitbook.domain.services import LaneSnapshot, ensure_bookable_balance, free_lanes


def test_rejects_when_unit_inactive() -> None:
    snap = LaneSnapshot(active=False, capacity=2, blacked_out=False, occupied_lanes=frozenset())
    with pytest.raises(UnitUnavailableError):
        free_lanes(snap)


def test_rejects_when_blacked_out() -> None:
    snap = LaneSnapshot(active=True, capacity=2, blacked_out=True, occupied_lanes=frozenset())
    with pytest.raises(UnitUnavailableError):
        free_lanes(snap)


def test_rejects_when_every_lane_occupied() -> None:
    snap = LaneSnapshot(active=True, capacity=2, blacked_out=False, occupied_lanes=frozenset({0, 1}))
    with pytest.raises(SlotUnavailableError):
        free_lanes(snap)


def test_returns_free_lanes_lowest_first() -> None:
    snap = LaneSnapshot(active=True, capacity=4, blacked_out=False, occupied_lanes=frozenset({0, 2}))
    assert free_lanes(snap) == [1, 3]


def test_zero_balance_may_book_negative_may_not() -> None:
    ensure_bookable_balance(0)
    with pytest.raises(InsufficientCreditsError):
        ensure_bookable_balance(-500)
