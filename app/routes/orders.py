from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.deps import get_store, get_submitter
from app.order_service import matches_search, update_order_status
from app.store import OrderStore
from app.submission import OrderRequest, OrderSubmitter

router = APIRouter(prefix="/orders", tags=["orders"])


class StatusUpdateBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    order_id: str = Field(default="", description="Order to update")
    status: str = Field(default="", description="New status: Processing, Completed or Cancelled")


@router.post("")
async def submit_order(
    body: OrderRequest,
    submitter: OrderSubmitter = Depends(get_submitter),
) -> JSONResponse:
    """
    Validate and queue an order for processing. The order becomes visible to
    GET /orders/{id} only once the worker has picked it up.
    """
    result = await submitter.submit(body)
    return JSONResponse(
        status_code=200,
        content={
            "orderId": result.order_id,
            "status": result.status.value,
            "message": f"Order submitted successfully for {body.customer_name}",
        },
    )


@router.get("")
async def list_orders(
    search_term: str | None = Query(default=None, alias="searchTerm"),
    customer_name: str | None = Query(default=None, alias="customerName"),
    store: OrderStore = Depends(get_store),
) -> JSONResponse:
    predicate = None
    if search_term and search_term.strip():
        term = search_term.strip()
        predicate = lambda order: matches_search(order, term)  # noqa: E731
    orders = [
        order.model_dump(mode="json", by_alias=True)
        async for order in store.list(customer_name=customer_name or None, predicate=predicate)
    ]
    return JSONResponse(status_code=200, content=orders)


@router.post("/status")
async def update_status(
    body: StatusUpdateBody,
    store: OrderStore = Depends(get_store),
) -> JSONResponse:
    order = await update_order_status(store, body.order_id, body.status)
    return JSONResponse(
        status_code=200,
        content={
            "message": "Order status updated successfully",
            "orderId": order.id,
            "newStatus": order.status.value,
        },
    )


@router.get("/{order_id}")
async def get_order(order_id: str, store: OrderStore = Depends(get_store)) -> JSONResponse:
    order = await store.get(order_id)
    return JSONResponse(status_code=200, content=order.model_dump(mode="json", by_alias=True))
