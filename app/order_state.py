"""
Order lifecycle state machine. Status only moves forward; there is no way back to Pending.
"""
from enum import Enum

from app.errors import InvalidInput, InvalidTransition


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


TERMINAL_STATES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Current status -> allowed next status
VALID_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),  # terminal
    OrderStatus.CANCELLED: frozenset(),  # terminal
}


def is_valid_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """True if new is allowed after current."""
    return new in VALID_TRANSITIONS.get(current, frozenset())


def parse_status(value: str) -> OrderStatus:
    """Case-insensitive lookup; unknown names are client errors."""
    for status in OrderStatus:
        if status.value.lower() == str(value).strip().lower():
            return status
    raise InvalidInput(f"Unknown order status: {value!r}")


def ensure_transition(current: OrderStatus, new: OrderStatus) -> None:
    if new is OrderStatus.PENDING:
        raise InvalidInput("Orders cannot be moved back to Pending")
    if not is_valid_transition(current, new):
        raise InvalidTransition(current.value, new.value)
