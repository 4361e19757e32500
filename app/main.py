import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from app.config import settings
from app.errors import Conflict, InvalidInput, InvalidTransition, NotFound, StoreUnavailable
from app.metrics import (
    get_metrics_bytes,
    get_metrics_content_type,
    queue_messages_dead_lettered,
    queue_messages_in_flight,
    queue_messages_waiting,
)
from app.queue import QueueChannel, build_queue_channel
from app.routes import admin, orders
from app.store import OrderStore, build_order_store
from app.submission import OrderSubmitter

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    InvalidInput: 400,
    NotFound: 404,
    InvalidTransition: 409,
    Conflict: 409,
    StoreUnavailable: 503,
}


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(store: OrderStore | None = None, channel: QueueChannel | None = None) -> FastAPI:
    """Build the API. Backends not passed in are built from settings and closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = []
        if store is None:
            app.state.store = build_order_store(settings)
            owned.append(app.state.store)
        if channel is None:
            app.state.channel = build_queue_channel(settings)
            app.state.submitter = OrderSubmitter(app.state.channel, settings.order_queue_name)
            owned.append(app.state.channel)
        yield
        for backend in owned:
            await backend.close()

    app = FastAPI(title="Order Pipeline", lifespan=lifespan)
    if store is not None:
        app.state.store = store
    if channel is not None:
        app.state.channel = channel
        app.state.submitter = OrderSubmitter(channel, settings.order_queue_name)

    app.include_router(orders.router)
    app.include_router(admin.router)

    for error_type, status_code in ERROR_STATUS.items():
        app.add_exception_handler(
            error_type,
            lambda request, exc, status_code=status_code: _error_response(status_code, str(exc)),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(400, f"Invalid request: {exc.errors()}")

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(500, f"An unexpected server error occurred: {exc}")

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics(request: Request) -> Response:
        """Prometheus scrape endpoint: orders submitted, status updates, queue depth."""
        try:
            depth = await request.app.state.channel.depth(settings.order_queue_name)
            queue_messages_waiting.set(depth.waiting)
            queue_messages_in_flight.set(depth.in_flight)
            queue_messages_dead_lettered.set(depth.dead_lettered)
        except Exception as e:
            logger.warning("Could not read queue depth: %s", e)
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


app = create_app()
