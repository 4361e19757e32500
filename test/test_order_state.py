from decimal import Decimal

import pytest

from app.errors import InvalidInput, InvalidTransition
from app.models import Order
from app.order_state import OrderStatus, ensure_transition, is_valid_transition, parse_status


def test_forward_transitions_are_valid():
    assert is_valid_transition(OrderStatus.PENDING, OrderStatus.PROCESSING)
    assert is_valid_transition(OrderStatus.PROCESSING, OrderStatus.COMPLETED)
    assert is_valid_transition(OrderStatus.PROCESSING, OrderStatus.CANCELLED)
    assert is_valid_transition(OrderStatus.PENDING, OrderStatus.CANCELLED)


def test_terminal_states_allow_nothing():
    for terminal in (OrderStatus.COMPLETED, OrderStatus.CANCELLED):
        for status in OrderStatus:
            assert not is_valid_transition(terminal, status)


def test_back_to_pending_is_invalid_input():
    with pytest.raises(InvalidInput):
        ensure_transition(OrderStatus.PROCESSING, OrderStatus.PENDING)


def test_backwards_move_is_invalid_transition():
    with pytest.raises(InvalidTransition) as excinfo:
        ensure_transition(OrderStatus.COMPLETED, OrderStatus.PROCESSING)
    assert excinfo.value.current == "Completed"


def test_parse_status_ignores_case():
    assert parse_status("cancelled") is OrderStatus.CANCELLED
    with pytest.raises(InvalidInput):
        parse_status("Shipped")


def test_leaving_pending_stamps_processed_date():
    order = Order(id="o", customer_name="A", product_name="B", quantity=1, total_price=Decimal("1"))
    assert order.processed_date is None

    order.transition(OrderStatus.PROCESSING)

    assert order.status is OrderStatus.PROCESSING
    assert order.processed_date is not None
