"""Order status state machine."""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from backend.db.enums import OrderStatus
from order_engine.errors import LedgerInvariantError

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.FILLED, OrderStatus.FAILED, OrderStatus.CANCELLED}
)
ACTIVE_STATUSES: frozenset[OrderStatus] = frozenset(set(OrderStatus) - TERMINAL_STATUSES)
CANCELLABLE_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.PENDING, OrderStatus.SIGNED, OrderStatus.SUBMITTED, OrderStatus.CONFIRMED}
)
EXCHANGE_TRACKED_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.SUBMITTED, OrderStatus.CONFIRMED}
)

# A fill may be observed before the exchange acknowledgement is, hence submitted -> filled.
ALLOWED_TRANSITIONS: Mapping[OrderStatus, frozenset[OrderStatus]] = MappingProxyType(
    {
        OrderStatus.PENDING: frozenset({OrderStatus.SIGNED, OrderStatus.FAILED, OrderStatus.CANCELLED}),
        OrderStatus.SIGNED: frozenset({OrderStatus.SUBMITTED, OrderStatus.FAILED, OrderStatus.CANCELLED}),
        OrderStatus.SUBMITTED: frozenset(
            {OrderStatus.CONFIRMED, OrderStatus.FILLED, OrderStatus.FAILED, OrderStatus.CANCELLED}
        ),
        OrderStatus.CONFIRMED: frozenset({OrderStatus.FILLED, OrderStatus.FAILED, OrderStatus.CANCELLED}),
        OrderStatus.FILLED: frozenset(),
        OrderStatus.FAILED: frozenset(),
        OrderStatus.CANCELLED: frozenset(),
    }
)


def is_terminal(status: OrderStatus) -> bool:
    """Return True when no further transition is permitted."""
    return status in TERMINAL_STATUSES


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Return True when current -> target is an edge of the machine."""
    return target in ALLOWED_TRANSITIONS[current]


def assert_transition(current: OrderStatus, target: OrderStatus) -> None:
    """Raise LedgerInvariantError for an edge outside the machine."""
    if not can_transition(current, target):
        raise LedgerInvariantError(
            f"Illegal order status transition {current.value} -> {target.value}."
        )


def sources_for(target: OrderStatus) -> frozenset[OrderStatus]:
    """Return every status that may legally move to target."""
    return frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets)
