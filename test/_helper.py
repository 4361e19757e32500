"""
Shared helpers for scenario scripts run against a live stack.
Uses: API_URL from env (defaults for local docker).
"""
import json
import os
import urllib.error
import urllib.request

# Defaults for local docker compose
API_BASE = os.environ.get("API_URL", "http://localhost:8000")


def _call(method: str, path: str, body: dict | None = None, api_base: str | None = None) -> tuple[int, object]:
    """Returns (status_code, response_body). Never raises on HTTP error."""
    base = api_base or API_BASE
    req = urllib.request.Request(
        f"{base}{path}",
        data=json.dumps(body).encode() if body is not None else None,
        headers={"Content-Type": "application/json"},
        method=method,
    )
    try:
        with urllib.request.urlopen(req) as resp:
            return resp.status, json.loads(resp.read().decode())
    except urllib.error.HTTPError as e:
        raw = e.read()
        return e.code, json.loads(raw.decode()) if raw else {}


def submit_order(customer_name: str, product_name: str, quantity: int, total_price: float) -> tuple[int, dict]:
    return _call("POST", "/orders", {
        "customerName": customer_name,
        "productName": product_name,
        "quantity": quantity,
        "totalPrice": total_price,
    })


def get_order(order_id: str) -> tuple[int, dict]:
    return _call("GET", f"/orders/{order_id}")


def update_status(order_id: str, status: str) -> tuple[int, dict]:
    return _call("POST", "/orders/status", {"orderId": order_id, "status": status})


def get_queue_status() -> dict:
    _, body = _call("GET", "/admin/queue?peek=0")
    return body
