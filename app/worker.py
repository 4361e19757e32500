"""
Worker: lease order messages from the queue channel, drive the order through
Processing -> Completed in the order store, then acknowledge.
- A failure never completes the message: it is classified as retry (abandon with
  exponential backoff) or dead_letter (max deliveries reached, or an undecodable payload).
- Redelivery is the only retry driver; there is no retry loop inside a delivery.
- Prometheus /metrics on WORKER_METRICS_PORT (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m app.worker
"""
import asyncio
import logging
import signal
import sys
import threading
from enum import Enum
from typing import Awaitable, Callable

from app.codec import decode_order
from app.config import Settings, settings
from app.errors import AlreadyExists, OrderPipelineError, TransportDecodeError
from app.metrics import messages_dlq_total, messages_failed_total, messages_processed_total
from app.models import Order, utcnow
from app.order_state import TERMINAL_STATES, OrderStatus
from app.queue import Lease, QueueChannel, build_queue_channel
from app.store import OrderStore, build_order_store

logger = logging.getLogger(__name__)

GRACEFUL_SHUTDOWN_WAIT_SEC = 30
MAX_BACKOFF_SEC = 900

Fulfillment = Callable[[Order], Awaitable[None]]


class Outcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"  # redelivery of an order that already reached a terminal state
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


def backoff_seconds(receive_count: int) -> int:
    return min(2 ** receive_count, MAX_BACKOFF_SEC)


def simulated_fulfillment(delay_seconds: float) -> Fulfillment:
    """Stand-in for external fulfillment work."""

    async def fulfil(order: Order) -> None:
        await asyncio.sleep(delay_seconds)

    return fulfil


class OrderProcessor:
    """Handles one delivered message. Raises on any failure; never swallows."""

    def __init__(self, store: OrderStore, fulfil: Fulfillment):
        self.store = store
        self.fulfil = fulfil

    async def process(self, body: str) -> Outcome:
        order = decode_order(body)
        logger.info("Processing order %s for %s", order.id, order.customer_name)

        order.status = OrderStatus.PROCESSING
        order.processed_date = utcnow()
        try:
            version = await self.store.put(order)
            logger.info("Order %s saved as Processing", order.id)
        except AlreadyExists:
            # Redelivery after an earlier attempt got this far: continue from what is stored.
            order = await self.store.get(order.id, order.partition_group)
            if order.status in TERMINAL_STATES:
                logger.info("Order %s already %s, nothing to do", order.id, order.status.value)
                return Outcome.SKIPPED
            if order.status is OrderStatus.PENDING:
                order.transition(OrderStatus.PROCESSING)
                version = await self.store.update(order, order.concurrency_token)
            else:
                version = order.concurrency_token
            logger.info("Order %s already stored, resuming", order.id)

        await self.fulfil(order)

        order.transition(OrderStatus.COMPLETED, at=order.processed_date)
        await self.store.update(order, version)
        logger.info("Order %s processing completed", order.id)
        return Outcome.COMPLETED


class OrderWorker:
    def __init__(
        self,
        channel: QueueChannel,
        processor: OrderProcessor,
        queue_name: str = settings.order_queue_name,
        concurrency: int = settings.worker_concurrency,
        max_deliveries: int | None = settings.worker_max_deliveries,
        dead_letter_malformed: bool = settings.worker_dead_letter_malformed,
        wait_seconds: float = settings.queue_wait_seconds,
        backoff: Callable[[int], int] = backoff_seconds,
    ):
        self.channel = channel
        self.processor = processor
        self.queue_name = queue_name
        self.concurrency = concurrency
        self.max_deliveries = max_deliveries
        self.dead_letter_malformed = dead_letter_malformed
        self.wait_seconds = wait_seconds
        self.backoff = backoff

    def classify(self, error: Exception, receive_count: int) -> Outcome:
        """Decide between another delivery and the dead-letter queue."""
        if isinstance(error, TransportDecodeError):
            if self.dead_letter_malformed:
                return Outcome.DEAD_LETTER
        elif isinstance(error, OrderPipelineError) and not error.retryable:
            return Outcome.DEAD_LETTER
        if self.max_deliveries is not None and receive_count >= self.max_deliveries:
            return Outcome.DEAD_LETTER
        return Outcome.RETRY

    async def handle(self, lease: Lease) -> Outcome:
        message = lease.message
        reason = ""
        try:
            outcome = await self.processor.process(message.body)
        except Exception as e:
            messages_failed_total.labels(error=type(e).__name__).inc()
            logger.exception(
                "Failed to process message %s (receive #%d): %s", message.message_id, message.receive_count, e
            )
            outcome = self.classify(e, message.receive_count)
            reason = f"{type(e).__name__}: {e}"

        if outcome in (Outcome.COMPLETED, Outcome.SKIPPED):
            if not await self.channel.acknowledge(lease):
                logger.warning("Lease on message %s expired before ack; it will be redelivered", message.message_id)
            messages_processed_total.labels(outcome=outcome.value).inc()
        elif outcome is Outcome.DEAD_LETTER:
            if await self.channel.dead_letter(lease, reason):
                messages_dlq_total.inc()
                logger.warning("Moved message %s to DLQ after %d receive(s): %s", message.message_id, message.receive_count, reason)
            else:
                logger.warning("Lease on message %s expired before dead-lettering; it will be redelivered", message.message_id)
        else:
            delay = self.backoff(message.receive_count)
            await self.channel.abandon(lease, delay)
            logger.info("Message %s released for redelivery in %ds", message.message_id, delay)
        return outcome

    async def process_available(self, limit: int | None = None) -> list[Outcome]:
        """Handle visible messages one at a time until the queue has none left (or limit is hit)."""
        outcomes: list[Outcome] = []
        while limit is None or len(outcomes) < limit:
            lease = await self.channel.lease(self.queue_name, 0)
            if lease is None:
                break
            outcomes.append(await self.handle(lease))
        return outcomes

    async def _handle_and_release(self, lease: Lease, sem: asyncio.Semaphore) -> None:
        try:
            await self.handle(lease)
        except Exception as e:
            # settling failed (channel unreachable); the lease lapses and the message comes back
            logger.exception("Could not settle message %s: %s", lease.message.message_id, e)
        finally:
            sem.release()

    async def run(self, shutdown_event: asyncio.Event) -> None:
        sem = asyncio.Semaphore(self.concurrency)
        logger.info(
            "Listening on %s (concurrency=%d, max_deliveries=%s) ...",
            self.queue_name,
            self.concurrency,
            self.max_deliveries,
        )
        tasks: set[asyncio.Task] = set()
        try:
            while not shutdown_event.is_set():
                # only lease when a slot is free, so leases don't expire while queued locally
                await sem.acquire()
                try:
                    lease = await self.channel.lease(self.queue_name, self.wait_seconds)
                except Exception as e:
                    sem.release()
                    logger.exception("Could not lease from %s: %s", self.queue_name, e)
                    await asyncio.sleep(self.wait_seconds)
                    continue
                if lease is None:
                    sem.release()
                    continue
                t = asyncio.create_task(self._handle_and_release(lease, sem))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
        finally:
            if tasks:
                logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
                _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
                for t in pending:
                    t.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Worker stopped.")


def build_worker(
    channel: QueueChannel,
    store: OrderStore,
    config: Settings = settings,
    fulfil: Fulfillment | None = None,
) -> OrderWorker:
    processor = OrderProcessor(store, fulfil or simulated_fulfillment(config.fulfillment_delay_seconds))
    return OrderWorker(
        channel,
        processor,
        queue_name=config.order_queue_name,
        concurrency=config.worker_concurrency,
        max_deliveries=config.worker_max_deliveries,
        dead_letter_malformed=config.worker_dead_letter_malformed,
        wait_seconds=config.queue_wait_seconds,
    )


async def run_worker(shutdown_event: asyncio.Event) -> None:
    channel = build_queue_channel(settings)
    store = build_order_store(settings)
    logger.info("Backend: queue=%s store=%s", settings.queue_backend, settings.store_backend)
    try:
        await build_worker(channel, store).run(shutdown_event)
    finally:
        await channel.close()
        await store.close()


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(settings.worker_metrics_port)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", settings.worker_metrics_port)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
