"""
Order store contract: keyed by (partition_group, id), optimistic concurrency via
an opaque version token. Backend: in-memory or Postgres (db.PostgresOrderStore).
"""
import bisect
import threading
import uuid
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable

from app.config import Settings, settings
from app.errors import AlreadyExists, Conflict, NotFound
from app.models import ANY_VERSION, PARTITION_GROUP, Order, OrderKey

OrderPredicate = Callable[[Order], bool]


def new_version() -> str:
    return uuid.uuid4().hex


class OrderStore(ABC):
    @abstractmethod
    async def get(self, order_id: str, partition_group: str = PARTITION_GROUP) -> Order:
        """Current record with its concurrency_token set. Raises NotFound."""

    @abstractmethod
    async def put(self, order: Order) -> str:
        """Insert; returns the new version. Raises AlreadyExists on key collision."""

    @abstractmethod
    async def update(self, order: Order, expected_version: str) -> str:
        """
        Replace the stored record if its version still equals expected_version
        (ANY_VERSION skips the check). Returns the new version.
        Raises Conflict on mismatch and NotFound if the record is absent.
        """

    @abstractmethod
    def list(
        self,
        customer_name: str | None = None,
        predicate: OrderPredicate | None = None,
        partition_group: str = PARTITION_GROUP,
    ) -> AsyncIterator[Order]:
        """
        Lazily iterate orders. customer_name is an equality filter evaluated by the
        backend; predicate is applied to every row that comes back.
        """

    async def close(self) -> None:
        return None


class InMemoryOrderStore(OrderStore):
    def __init__(self, page_size: int = 100):
        self.page_size = page_size
        self._lock = threading.Lock()
        self._rows: dict[OrderKey, Order] = {}
        # sorted ids per partition group; rows are never deleted
        self._ids: dict[str, list[str]] = {}

    def _stored(self, order: Order, version: str) -> Order:
        return order.model_copy(update={"concurrency_token": version}, deep=True)

    async def get(self, order_id: str, partition_group: str = PARTITION_GROUP) -> Order:
        with self._lock:
            row = self._rows.get(OrderKey(partition_group, order_id))
            if row is None:
                raise NotFound(order_id)
            return row.model_copy(deep=True)

    async def put(self, order: Order) -> str:
        key = order.key
        version = new_version()
        with self._lock:
            if key in self._rows:
                raise AlreadyExists(order.id)
            self._rows[key] = self._stored(order, version)
            bisect.insort(self._ids.setdefault(order.partition_group, []), order.id)
        return version

    async def update(self, order: Order, expected_version: str) -> str:
        key = order.key
        version = new_version()
        with self._lock:
            row = self._rows.get(key)
            if row is None:
                raise NotFound(order.id)
            if expected_version != ANY_VERSION and row.concurrency_token != expected_version:
                raise Conflict(order.id)
            self._rows[key] = self._stored(order, version)
        return version

    async def list(
        self,
        customer_name: str | None = None,
        predicate: OrderPredicate | None = None,
        partition_group: str = PARTITION_GROUP,
    ) -> AsyncIterator[Order]:
        last_id = ""
        while True:
            page = []
            with self._lock:
                ids = self._ids.get(partition_group, [])
                i = bisect.bisect_right(ids, last_id)
                while i < len(ids) and len(page) < self.page_size:
                    last_id = ids[i]
                    row = self._rows[OrderKey(partition_group, last_id)]
                    if customer_name is None or row.customer_name == customer_name:
                        page.append(row.model_copy(deep=True))
                    i += 1
                exhausted = i >= len(ids)
            for row in page:
                if predicate is None or predicate(row):
                    yield row
            if exhausted:
                return


def build_order_store(config: Settings = settings) -> OrderStore:
    if config.store_backend == "postgres":
        from app.db import PostgresOrderStore
        return PostgresOrderStore(config)
    return InMemoryOrderStore(page_size=config.store_page_size)
