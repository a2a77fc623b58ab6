# trading/order_state.py
"""
Order lifecycle transition table.

    NEW -> SUBMITTED -> {OPEN, REJECTED}
    OPEN -> {PARTIALLY_FILLED, FILLED, CANCELLED, MODIFY_PENDING}
    PARTIALLY_FILLED -> {PARTIALLY_FILLED, FILLED, CANCELLED}
    MODIFY_PENDING -> {OPEN, REJECTED}

FILLED, CANCELLED and REJECTED are terminal.
"""
from typing import Dict, FrozenSet, List, Optional

from trading.enums import OrderStatus as S
from trading.models import TERMINAL_STATUSES

TRANSITIONS: Dict[S, FrozenSet[S]] = {
    S.NEW: frozenset({S.SUBMITTED}),
    S.SUBMITTED: frozenset({S.OPEN, S.REJECTED}),
    S.OPEN: frozenset({S.PARTIALLY_FILLED, S.FILLED, S.CANCELLED, S.MODIFY_PENDING}),
    S.PARTIALLY_FILLED: frozenset({S.PARTIALLY_FILLED, S.FILLED, S.CANCELLED}),
    S.MODIFY_PENDING: frozenset({S.OPEN, S.REJECTED}),
    S.FILLED: frozenset(),
    S.CANCELLED: frozenset(),
    S.REJECTED: frozenset(),
}

# States the venue can only have reached after accepting the order.
_IMPLIES_ACCEPTED = frozenset({S.PARTIALLY_FILLED, S.FILLED, S.CANCELLED})


def is_terminal(status: S) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: S, target: S) -> bool:
    return target in TRANSITIONS[current]


def resolve_path(current: S, target: S) -> Optional[List[S]]:
    """
    Edges to walk from `current` to `target`, or None when the move is illegal.

    A fill/cancel reported for an order still SUBMITTED (or MODIFY_PENDING)
    proves the venue accepted it, so the path goes through OPEN. Every step
    is itself a legal edge.
    """
    if can_transition(current, target):
        return [target]
    if (
        target in _IMPLIES_ACCEPTED
        and current in (S.SUBMITTED, S.MODIFY_PENDING)
        and can_transition(current, S.OPEN)
        and can_transition(S.OPEN, target)
    ):
        return [S.OPEN, target]
    return None
