"""
Order entity. Identity is the composite key (partition_group, id); the store owns
concurrency_token and echoes it back on every read.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel

from app.order_state import OrderStatus, ensure_transition

PARTITION_GROUP = "Orders"
ANY_VERSION = "*"  # wildcard concurrency token: overwrite whatever is stored
MAX_QUANTITY = 2**63 - 1  # BIGINT

Price = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_order_id() -> str:
    return str(uuid.uuid4())


class OrderKey(NamedTuple):
    partition_group: str
    id: str


class Order(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    partition_group: str = PARTITION_GROUP
    customer_name: str
    product_name: str
    quantity: int = Field(le=MAX_QUANTITY)
    total_price: Price
    status: OrderStatus = OrderStatus.PENDING
    order_date: datetime = Field(default_factory=utcnow)
    processed_date: datetime | None = None
    concurrency_token: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _status_any_case(cls, value):
        if isinstance(value, str):
            for status in OrderStatus:
                if status.value.lower() == value.strip().lower():
                    return status
        return value

    @property
    def key(self) -> OrderKey:
        return OrderKey(self.partition_group, self.id)

    def transition(self, status: OrderStatus, at: datetime | None = None) -> None:
        """Move forward in the lifecycle; leaving Pending stamps processed_date."""
        ensure_transition(self.status, status)
        self.status = status
        self.processed_date = at or utcnow()
