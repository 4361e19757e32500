"""HTTP surface: submission, query, status update and admin endpoints."""
import asyncio

import pytest
from fastapi.testclient import TestClient

from app.codec import decode_order
from app.errors import StoreUnavailable
from app.main import create_app
from app.order_state import OrderStatus
from app.queue import InMemoryQueueChannel
from app.store import InMemoryOrderStore

ALICE = {"customerName": "Alice", "productName": "Widget", "quantity": 2, "totalPrice": 19.98}


def _submit(client, body=ALICE) -> str:
    response = client.post("/orders", json=body)
    assert response.status_code == 200
    return response.json()["orderId"]


class TestSubmitOrder:
    def test_submit_returns_pending_order_id(self, client):
        response = client.post("/orders", json=ALICE)

        assert response.status_code == 200
        data = response.json()
        assert data["orderId"]
        assert data["status"] == "Pending"

    def test_submitted_order_is_not_queryable_before_processing(self, client):
        order_id = _submit(client)

        assert client.get(f"/orders/{order_id}").status_code == 404

    @pytest.mark.parametrize("body", [
        {**ALICE, "quantity": 0},
        {**ALICE, "productName": ""},
        {"customerName": "Alice", "quantity": 1, "totalPrice": 1},
        {**ALICE, "quantity": "two"},
        {**ALICE, "quantity": 2**63},
        {**ALICE, "customerName": "Al\u0000ice"},
    ])
    def test_invalid_submission_is_400_and_not_queued(self, client, channel, body):
        response = client.post("/orders", json=body)

        assert response.status_code == 400
        assert "error" in response.json()
        assert asyncio.run(channel.depth("order-processing")).waiting == 0


class TestOrderLifecycle:
    def test_alice_order_completes(self, client, worker):
        order_id = _submit(client)

        asyncio.run(worker.process_available())
        response = client.get(f"/orders/{order_id}")

        assert response.status_code == 200
        order = response.json()
        assert order["id"] == order_id
        assert order["status"] == "Completed"
        assert order["processedDate"] is not None
        assert order["customerName"] == "Alice"
        assert order["totalPrice"] == 19.98

    def test_wide_values_are_stored_as_submitted(self, client, worker, channel):
        body = {**ALICE, "customerName": "A" * 300, "quantity": 2**31, "totalPrice": "19.999"}
        order_id = _submit(client, body)

        asyncio.run(worker.process_available())
        order = client.get(f"/orders/{order_id}").json()

        assert order["status"] == "Completed"
        assert order["customerName"] == "A" * 300
        assert order["quantity"] == 2**31
        assert order["totalPrice"] == 19.999
        assert asyncio.run(channel.depth("order-processing")).dead_lettered == 0

    def test_list_and_search(self, client, worker):
        alice = _submit(client)
        bob = _submit(client, {**ALICE, "customerName": "Bob"})
        asyncio.run(worker.process_available())

        everything = client.get("/orders").json()
        by_name = client.get("/orders", params={"searchTerm": "ALI"}).json()
        by_id = client.get("/orders", params={"searchTerm": bob[:8]}).json()
        by_status = client.get("/orders", params={"searchTerm": "completed"}).json()
        exact = client.get("/orders", params={"customerName": "Bob"}).json()

        assert {o["id"] for o in everything} == {alice, bob}
        assert [o["id"] for o in by_name] == [alice]
        assert [o["id"] for o in by_id] == [bob]
        assert len(by_status) == 2
        assert [o["id"] for o in exact] == [bob]


class TestUpdateStatus:
    def test_cancel_order_in_processing(self, client, worker):
        order_id = _submit(client)
        asyncio.run(_insert_processing(worker))

        response = client.post("/orders/status", json={"orderId": order_id, "status": "cancelled"})

        assert response.status_code == 200
        assert response.json()["orderId"] == order_id
        assert response.json()["newStatus"] == "Cancelled"
        order = client.get(f"/orders/{order_id}").json()
        assert order["status"] == "Cancelled"
        assert order["processedDate"] is not None

    def test_unknown_order_is_404_and_creates_nothing(self, client):
        response = client.post("/orders/status", json={"orderId": "nope", "status": "Cancelled"})

        assert response.status_code == 404
        assert client.get("/orders/nope").status_code == 404
        assert client.get("/orders").json() == []

    def test_back_to_pending_is_rejected(self, client, worker):
        order_id = _submit(client)
        asyncio.run(worker.process_available())

        response = client.post("/orders/status", json={"orderId": order_id, "status": "Pending"})

        assert response.status_code == 400
        assert client.get(f"/orders/{order_id}").json()["status"] == "Completed"

    def test_moving_out_of_terminal_state_is_409(self, client, worker):
        order_id = _submit(client)
        asyncio.run(worker.process_available())

        response = client.post("/orders/status", json={"orderId": order_id, "status": "Processing"})

        assert response.status_code == 409

    def test_unknown_status_is_400(self, client):
        response = client.post("/orders/status", json={"orderId": "x", "status": "Shipped"})

        assert response.status_code == 400


async def _insert_processing(worker):
    """Run steps up to the Processing insert for the next message, then hold the lease."""
    lease = await worker.channel.lease(worker.queue_name)
    order = decode_order(lease.message.body)
    order.transition(OrderStatus.PROCESSING)
    await worker.processor.store.put(order)
    return lease


class TestAdmin:
    def test_queue_status_reports_depth_and_payloads(self, client):
        _submit(client)

        data = client.get("/admin/queue").json()

        assert data["queue"] == "order-processing"
        assert data["waiting"] == 1
        assert data["inFlight"] == 0
        assert len(data["messages"]) == 1

    def test_dead_letters_can_be_replayed(self, client, channel, worker):
        asyncio.run(channel.enqueue("order-processing", "garbage"))
        asyncio.run(worker.process_available())
        assert client.get("/admin/queue").json()["deadLettered"] == 1

        response = client.post("/admin/dlq/replay")

        assert response.json() == {"status": "ok", "replayed": 1}
        data = client.get("/admin/queue").json()
        assert (data["waiting"], data["deadLettered"]) == (1, 0)


class DownStore(InMemoryOrderStore):
    async def get(self, order_id, partition_group="Orders"):
        raise StoreUnavailable("database is down")


def test_store_outage_is_503():
    client = TestClient(create_app(store=DownStore(), channel=InMemoryQueueChannel()))

    response = client.get("/orders/anything")

    assert response.status_code == 503
    assert "database is down" in response.json()["error"]


def test_health_and_metrics(client):
    _submit(client)

    assert client.get("/health").json() == {"status": "ok"}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "orders_submitted_total" in metrics.text
    assert "queue_messages_waiting 1.0" in metrics.text
