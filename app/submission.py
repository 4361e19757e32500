"""
Order submission: validate, assign identity, enqueue. No store write here; the
worker owns first persistence, so a new order is briefly not queryable.
"""
import logging
from decimal import Decimal
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.codec import encode_order
from app.config import settings
from app.errors import InvalidInput
from app.metrics import orders_submitted_total
from app.models import MAX_QUANTITY, PARTITION_GROUP, Order, new_order_id, utcnow
from app.order_state import OrderStatus
from app.queue import QueueChannel

logger = logging.getLogger(__name__)


class OrderRequest(BaseModel):
    """Client payload. Identity, status and timestamps are not accepted from clients."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    customer_name: str | None = None
    product_name: str | None = None
    quantity: int | None = None
    total_price: Decimal | None = None


class SubmissionResult(NamedTuple):
    order_id: str
    status: OrderStatus


def validate_request(request: OrderRequest) -> None:
    """Reject anything the order store could not hold as given."""
    problems = []
    for field, value in (("customerName", request.customer_name), ("productName", request.product_name)):
        if not (value or "").strip():
            problems.append(f"{field} is required")
        elif "\x00" in value:
            problems.append(f"{field} must not contain NUL characters")
    if request.quantity is None or request.quantity <= 0:
        problems.append("quantity must be a positive integer")
    elif request.quantity > MAX_QUANTITY:
        problems.append(f"quantity must be at most {MAX_QUANTITY}")
    if request.total_price is None or not request.total_price.is_finite() or request.total_price < 0:
        problems.append("totalPrice must be zero or more")
    if problems:
        raise InvalidInput("Invalid order data: " + "; ".join(problems))


class OrderSubmitter:
    def __init__(self, channel: QueueChannel, queue_name: str = settings.order_queue_name):
        self.channel = channel
        self.queue_name = queue_name

    async def submit(self, request: OrderRequest) -> SubmissionResult:
        validate_request(request)
        order = Order(
            id=new_order_id(),
            partition_group=PARTITION_GROUP,
            customer_name=request.customer_name,
            product_name=request.product_name,
            quantity=request.quantity,
            total_price=request.total_price,
            status=OrderStatus.PENDING,
            order_date=utcnow(),
        )
        await self.channel.enqueue(self.queue_name, encode_order(order))
        orders_submitted_total.inc()
        logger.info("Order %s queued for %s", order.id, order.customer_name)
        return SubmissionResult(order.id, order.status)
