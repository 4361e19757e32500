"""
Async Postgres order store: one `orders` table keyed by (partition_group, id).
The table is created on first use. Column types hold anything an Order
validates (unbounded text, BIGINT quantity, unscaled NUMERIC price).
Every write stamps a fresh version; conditional updates compare it in the
WHERE clause so the check-and-set is a single statement.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from app.config import Settings, settings
from app.errors import AlreadyExists, Conflict, NotFound, StoreUnavailable
from app.models import ANY_VERSION, PARTITION_GROUP, Order
from app.order_state import OrderStatus
from app.store import OrderPredicate, OrderStore, new_version

logger = logging.getLogger(__name__)

UNAVAILABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.TooManyConnectionsError,
)

COLUMNS = (
    "partition_group, id, customer_name, product_name, quantity, total_price, "
    "status, order_date, processed_date, version"
)


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                partition_group TEXT NOT NULL,
                id TEXT NOT NULL,
                customer_name TEXT NOT NULL,
                product_name TEXT NOT NULL,
                quantity BIGINT NOT NULL,
                total_price NUMERIC NOT NULL,
                status VARCHAR(20) NOT NULL,
                order_date TIMESTAMPTZ NOT NULL,
                processed_date TIMESTAMPTZ,
                version VARCHAR(64) NOT NULL,
                PRIMARY KEY (partition_group, id)
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_customer_name
            ON orders(partition_group, customer_name);
        """)


def _row_to_order(row: asyncpg.Record) -> Order:
    return Order(
        id=row["id"],
        partition_group=row["partition_group"],
        customer_name=row["customer_name"],
        product_name=row["product_name"],
        quantity=row["quantity"],
        total_price=row["total_price"],
        status=OrderStatus(row["status"]),
        order_date=row["order_date"],
        processed_date=row["processed_date"],
        concurrency_token=row["version"],
    )


class PostgresOrderStore(OrderStore):
    def __init__(self, config: Settings = settings):
        self.database_url = config.database_url
        self.page_size = config.store_page_size
        self._pool: asyncpg.Pool | None = None
        self._init_lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            async with self._init_lock:
                if self._pool is None:
                    pool = await asyncpg.create_pool(
                        self.database_url,
                        min_size=1,
                        max_size=5,
                        command_timeout=60,
                    )
                    await init_schema(pool)
                    logger.info("Order store ready (table orders)")
                    self._pool = pool
        return self._pool

    @asynccontextmanager
    async def _connection(self):
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                yield conn
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailable(f"Order store unavailable: {e}") from e

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get(self, order_id: str, partition_group: str = PARTITION_GROUP) -> Order:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {COLUMNS} FROM orders WHERE partition_group = $1 AND id = $2;",
                partition_group,
                order_id,
            )
        if row is None:
            raise NotFound(order_id)
        return _row_to_order(row)

    async def put(self, order: Order) -> str:
        version = new_version()
        async with self._connection() as conn:
            try:
                await conn.execute(
                    f"""
                    INSERT INTO orders ({COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10);
                    """,
                    order.partition_group,
                    order.id,
                    order.customer_name,
                    order.product_name,
                    order.quantity,
                    order.total_price,
                    order.status.value,
                    order.order_date,
                    order.processed_date,
                    version,
                )
            except UniqueViolationError:
                raise AlreadyExists(order.id)
        return version

    async def update(self, order: Order, expected_version: str) -> str:
        version = new_version()
        async with self._connection() as conn:
            updated = await conn.fetchval(
                """
                UPDATE orders
                SET customer_name = $3, product_name = $4, quantity = $5, total_price = $6,
                    status = $7, order_date = $8, processed_date = $9, version = $10
                WHERE partition_group = $1 AND id = $2 AND ($11 = '*' OR version = $11)
                RETURNING version;
                """,
                order.partition_group,
                order.id,
                order.customer_name,
                order.product_name,
                order.quantity,
                order.total_price,
                order.status.value,
                order.order_date,
                order.processed_date,
                version,
                expected_version or ANY_VERSION,
            )
            if updated is None:
                exists = await conn.fetchval(
                    "SELECT 1 FROM orders WHERE partition_group = $1 AND id = $2;",
                    order.partition_group,
                    order.id,
                )
                if exists is None:
                    raise NotFound(order.id)
                raise Conflict(order.id)
        return version

    async def list(
        self,
        customer_name: str | None = None,
        predicate: OrderPredicate | None = None,
        partition_group: str = PARTITION_GROUP,
    ) -> AsyncIterator[Order]:
        # Keyset pagination: each page is one statement, so one consistent snapshot.
        last_id = ""
        while True:
            async with self._connection() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {COLUMNS} FROM orders
                    WHERE partition_group = $1 AND id > $2
                      AND ($3::text IS NULL OR customer_name = $3)
                    ORDER BY id
                    LIMIT $4;
                    """,
                    partition_group,
                    last_id,
                    customer_name,
                    self.page_size,
                )
            if not rows:
                return
            for row in rows:
                order = _row_to_order(row)
                if predicate is None or predicate(order):
                    yield order
            last_id = rows[-1]["id"]
