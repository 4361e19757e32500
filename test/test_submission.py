import asyncio
from decimal import Decimal

import pytest

from app.codec import decode_order
from app.errors import InvalidInput
from app.order_state import OrderStatus
from app.submission import OrderRequest, OrderSubmitter

QUEUE = "order-processing"


def _request(**overrides) -> OrderRequest:
    fields = dict(customerName="Alice", productName="Widget", quantity=2, totalPrice=19.98)
    fields.update(overrides)
    return OrderRequest.model_validate(fields)


def test_submit_enqueues_one_pending_order(channel):
    submitter = OrderSubmitter(channel, QUEUE)

    async def scenario():
        result = await submitter.submit(_request())
        lease = await channel.lease(QUEUE)
        assert await channel.lease(QUEUE) is None
        return result, lease

    result, lease = asyncio.run(scenario())
    order = decode_order(lease.message.body)
    assert result.status is OrderStatus.PENDING
    assert order.id == result.order_id
    assert order.partition_group == "Orders"
    assert order.status is OrderStatus.PENDING
    assert order.total_price == Decimal("19.98")
    assert order.processed_date is None


def test_order_ids_are_unique(channel):
    submitter = OrderSubmitter(channel, QUEUE)

    async def scenario():
        return [await submitter.submit(_request()) for _ in range(20)]

    ids = {r.order_id for r in asyncio.run(scenario())}
    assert len(ids) == 20


def test_client_supplied_identity_and_status_are_ignored(channel):
    submitter = OrderSubmitter(channel, QUEUE)
    request = _request(id="chosen-by-client", status="Completed", orderDate="2000-01-01T00:00:00Z")

    async def scenario():
        result = await submitter.submit(request)
        return result, await channel.lease(QUEUE)

    result, lease = asyncio.run(scenario())
    order = decode_order(lease.message.body)
    assert result.order_id != "chosen-by-client"
    assert order.status is OrderStatus.PENDING
    assert order.order_date.year > 2000


@pytest.mark.parametrize("overrides", [
    {"quantity": 0},
    {"quantity": -1},
    {"productName": ""},
    {"customerName": "   "},
    {"totalPrice": -0.01},
    {"productName": None},
    {"quantity": 2**63},
    {"customerName": "Ali\x00ce"},
])
def test_invalid_orders_are_rejected_without_enqueue(channel, overrides):
    submitter = OrderSubmitter(channel, QUEUE)

    async def scenario():
        with pytest.raises(InvalidInput):
            await submitter.submit(_request(**overrides))
        return await channel.depth(QUEUE)

    depth = asyncio.run(scenario())
    assert depth.waiting == 0
