"""PostgresOrderStore against a live database. Set DATABASE_URL to run."""
import asyncio
import os
import uuid
from decimal import Decimal

import pytest

from app.config import Settings
from app.db import PostgresOrderStore
from app.errors import AlreadyExists, Conflict, NotFound
from app.models import ANY_VERSION, Order
from app.order_state import OrderStatus

pytestmark = pytest.mark.skipif(not os.environ.get("DATABASE_URL"), reason="DATABASE_URL not set")


@pytest.fixture()
def group():
    # one partition group per test keeps runs apart in a shared database
    return f"test-{uuid.uuid4().hex}"


def _run(scenario):
    async def with_store():
        store = PostgresOrderStore(Settings(database_url=os.environ["DATABASE_URL"], store_page_size=2))
        try:
            return await scenario(store)
        finally:
            await store.close()

    return asyncio.run(with_store())


def _order(group: str, order_id: str, customer: str = "Alice", **overrides) -> Order:
    fields = dict(
        id=order_id,
        partition_group=group,
        customer_name=customer,
        product_name="Widget",
        quantity=1,
        total_price=Decimal("5"),
    )
    fields.update(overrides)
    return Order(**fields)


def test_put_get_and_duplicate_insert(group):
    async def scenario(store):
        version = await store.put(_order(group, "o1"))
        stored = await store.get("o1", group)
        with pytest.raises(AlreadyExists):
            await store.put(_order(group, "o1"))
        return version, stored

    version, stored = _run(scenario)
    assert stored.concurrency_token == version
    assert stored.customer_name == "Alice"
    assert stored.status is OrderStatus.PENDING


def test_wide_values_round_trip_unchanged(group):
    order = _order(group, "wide", "A" * 300, quantity=2**31, total_price=Decimal("12345678901234.5678"))

    async def scenario(store):
        await store.put(order)
        return await store.get("wide", group)

    stored = _run(scenario)
    assert stored.customer_name == "A" * 300
    assert stored.quantity == 2**31
    assert stored.total_price == Decimal("12345678901234.5678")


def test_update_checks_version(group):
    async def scenario(store):
        first = await store.put(_order(group, "o1"))
        order = await store.get("o1", group)
        order.transition(OrderStatus.PROCESSING)
        second = await store.update(order, first)
        with pytest.raises(Conflict):
            await store.update(order, first)
        third = await store.update(order, ANY_VERSION)
        with pytest.raises(NotFound):
            await store.update(_order(group, "missing"), ANY_VERSION)
        with pytest.raises(NotFound):
            await store.get("missing", group)
        return first, second, third, await store.get("o1", group)

    first, second, third, stored = _run(scenario)
    assert len({first, second, third}) == 3
    assert stored.concurrency_token == third
    assert stored.status is OrderStatus.PROCESSING


def test_list_pages_by_key_with_customer_filter(group):
    async def scenario(store):
        for i, customer in enumerate(["Alice", "Bob", "Alice", "Carol", "Alice"]):
            await store.put(_order(group, f"o{i}", customer))
        everything = [o.id async for o in store.list(partition_group=group)]
        alices = [o.id async for o in store.list(customer_name="Alice", partition_group=group)]
        odd = [o.id async for o in store.list(predicate=lambda o: int(o.id[1:]) % 2 == 1, partition_group=group)]
        return everything, alices, odd

    everything, alices, odd = _run(scenario)
    assert everything == ["o0", "o1", "o2", "o3", "o4"]
    assert alices == ["o0", "o2", "o4"]
    assert odd == ["o1", "o3"]
