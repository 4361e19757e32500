"""
Queue payload codec: base64(UTF-8 JSON) of an order snapshot.
Field names match case-insensitively on decode so heterogeneous producers
(camelCase, PascalCase, the legacy table-entity RowKey/PartitionKey) all work.
"""
import base64
import binascii
import json
from decimal import Decimal

from pydantic import ValidationError

from app.errors import TransportDecodeError
from app.models import PARTITION_GROUP, Order, new_order_id

REQUIRED_FIELDS = ("customer_name", "product_name", "quantity", "total_price")

_FIELD_NAMES: dict[str, str] = {}
for _name in Order.model_fields:
    _FIELD_NAMES[_name] = _name
    _FIELD_NAMES[_name.replace("_", "")] = _name  # camelCase / PascalCase, lowercased
_FIELD_NAMES.update({"rowkey": "id", "orderid": "id", "partitionkey": "partition_group"})


def encode_order(order: Order) -> str:
    doc = order.model_dump(mode="json", by_alias=True, exclude={"concurrency_token"})
    # a JSON number would go through float; keep every digit of the price
    doc["totalPrice"] = format(order.total_price, "f")
    return base64.b64encode(json.dumps(doc).encode("utf-8")).decode("ascii")


def decode_order(payload: str | bytes) -> Order:
    """
    Rebuild an order from a queue payload. Missing id/partition group get
    defaults; missing business fields raise TransportDecodeError.
    """
    try:
        raw = base64.b64decode(payload, validate=True)
        data = json.loads(raw.decode("utf-8"), parse_float=Decimal)
    except (binascii.Error, ValueError) as e:
        raise TransportDecodeError(f"Malformed queue payload: {e}") from e
    if not isinstance(data, dict):
        raise TransportDecodeError("Queue payload is not a JSON object")

    fields: dict = {}
    for key, value in data.items():
        name = _FIELD_NAMES.get(str(key).lower())
        if name is None or value is None or name == "concurrency_token":
            continue
        fields[name] = value

    missing = [name for name in REQUIRED_FIELDS if name not in fields]
    if missing:
        raise TransportDecodeError(f"Queue payload missing required fields: {', '.join(missing)}")
    if not fields.get("id"):
        fields["id"] = new_order_id()
    if not fields.get("partition_group"):
        fields["partition_group"] = PARTITION_GROUP

    try:
        return Order(**fields)
    except ValidationError as e:
        raise TransportDecodeError(f"Invalid order in queue payload: {e}") from e
