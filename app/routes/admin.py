from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from app.config import settings
from app.deps import get_channel
from app.queue import QueueChannel, replay_dead_letters

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/dlq/replay")
async def dlq_replay(
    limit: int = Query(default=100, ge=1, le=1000),
    channel: QueueChannel = Depends(get_channel),
) -> JSONResponse:
    """
    Replay dead-lettered order messages to the order queue.
    Each dead letter is re-sent to the main queue and removed from the DLQ.
    Returns number of messages replayed.
    """
    replayed = await replay_dead_letters(channel, settings.order_queue_name, limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )


@router.get("/queue")
async def queue_status(
    peek: int = Query(default=10, ge=0, le=32),
    channel: QueueChannel = Depends(get_channel),
) -> JSONResponse:
    """Approximate queue depth plus the payloads at the head of the queue."""
    depth = await channel.depth(settings.order_queue_name)
    messages = await channel.peek(settings.order_queue_name, peek) if peek else []
    return JSONResponse(
        status_code=200,
        content={
            "queue": settings.order_queue_name,
            "waiting": depth.waiting,
            "inFlight": depth.in_flight,
            "deadLettered": depth.dead_lettered,
            "messages": messages,
        },
    )
