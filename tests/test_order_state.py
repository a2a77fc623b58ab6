# tests/test_order_state.py
import pytest

from trading.enums import OrderStatus as S
from trading.order_state import TRANSITIONS, can_transition, is_terminal, resolve_path


@pytest.mark.parametrize("current,target", [
    (S.NEW, S.SUBMITTED),
    (S.SUBMITTED, S.OPEN),
    (S.SUBMITTED, S.REJECTED),
    (S.OPEN, S.PARTIALLY_FILLED),
    (S.OPEN, S.FILLED),
    (S.OPEN, S.CANCELLED),
    (S.OPEN, S.MODIFY_PENDING),
    (S.PARTIALLY_FILLED, S.PARTIALLY_FILLED),
    (S.PARTIALLY_FILLED, S.FILLED),
    (S.PARTIALLY_FILLED, S.CANCELLED),
    (S.MODIFY_PENDING, S.OPEN),
    (S.MODIFY_PENDING, S.REJECTED),
])
def test_allowed_edges(current, target):
    assert can_transition(current, target)
    assert resolve_path(current, target) == [target]


@pytest.mark.parametrize("current,target", [
    (S.NEW, S.OPEN),
    (S.OPEN, S.SUBMITTED),
    (S.OPEN, S.REJECTED),
    (S.PARTIALLY_FILLED, S.OPEN),
    (S.PARTIALLY_FILLED, S.MODIFY_PENDING),
    (S.MODIFY_PENDING, S.MODIFY_PENDING),
])
def test_forbidden_edges(current, target):
    assert not can_transition(current, target)
    assert resolve_path(current, target) is None


@pytest.mark.parametrize("terminal", [S.FILLED, S.CANCELLED, S.REJECTED])
def test_terminal_states_have_no_exit(terminal):
    assert is_terminal(terminal)
    assert TRANSITIONS[terminal] == frozenset()
    for target in S:
        assert resolve_path(terminal, target) is None


def test_every_status_in_table():
    assert set(TRANSITIONS) == set(S)


@pytest.mark.parametrize("target", [S.PARTIALLY_FILLED, S.FILLED, S.CANCELLED])
def test_fill_or_cancel_before_ack_goes_through_open(target):
    assert resolve_path(S.SUBMITTED, target) == [S.OPEN, target]
    assert resolve_path(S.MODIFY_PENDING, target) == [S.OPEN, target]


def test_no_implicit_path_from_new():
    assert resolve_path(S.NEW, S.FILLED) is None
