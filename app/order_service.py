"""
Manual order status changes (operational tooling). Always re-reads the order and
writes back with the version it just read; a concurrent writer turns into Conflict.
"""
import logging

from app.errors import InvalidInput
from app.metrics import order_status_updates_total
from app.models import Order
from app.order_state import OrderStatus, parse_status
from app.store import OrderStore

logger = logging.getLogger(__name__)


async def update_order_status(store: OrderStore, order_id: str, status: str) -> Order:
    if not order_id:
        raise InvalidInput("orderId is required")
    new_status = parse_status(status)
    if new_status is OrderStatus.PENDING:
        raise InvalidInput("Orders cannot be moved back to Pending")

    order = await store.get(order_id)
    order.transition(new_status)
    order.concurrency_token = await store.update(order, order.concurrency_token)
    order_status_updates_total.labels(status=new_status.value).inc()
    logger.info("Order %s status updated to %s", order.id, order.status.value)
    return order


def matches_search(order: Order, search_term: str) -> bool:
    """Case-insensitive substring match on customer name, order id or status."""
    term = search_term.lower()
    return (
        term in order.customer_name.lower()
        or term in order.id.lower()
        or term in order.status.value.lower()
    )
