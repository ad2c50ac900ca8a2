import pytest

from apps.orders.domain import OrderStatus, can_transition

S = OrderStatus

LEGAL = {
    (S.PLACED, S.PAYED),
    (S.PLACED, S.CANCELED),
    (S.PAYED, S.DELIVERING),
    (S.PAYED, S.DELIVERED),
    (S.PAYED, S.CANCELED),
    (S.DELIVERING, S.DELIVERED),
    (S.DELIVERING, S.CANCELED),
}


@pytest.mark.parametrize("src", list(S))
@pytest.mark.parametrize("dst", list(S))
def test_transition_table(src, dst):
    assert can_transition(src, dst) is ((src, dst) in LEGAL)


def test_terminal_statuses():
    assert {s for s in S if s.is_terminal} == {S.DELIVERED, S.CANCELED}


def test_accepts_raw_values():
    assert can_transition("PLACED", S.PAYED)
