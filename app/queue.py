"""
Queue channel: at-least-once transport between the submission endpoint and the worker.
Backend: in-memory, Redis (redis_client.RedisQueueChannel) or AWS SQS
(sqs_client.SqsQueueChannel), picked by settings.queue_backend.

A leased message stays invisible for the lease duration; if it is neither
acknowledged nor abandoned before then it becomes visible again and may be
redelivered to any consumer. No ordering, no deduplication.
"""
import asyncio
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from app.config import Settings, settings


def dead_letter_name(queue_name: str) -> str:
    return f"{queue_name}-dlq"


@dataclass
class QueueMessage:
    message_id: str
    body: str
    receive_count: int = 1


@dataclass
class Lease:
    queue_name: str
    message: QueueMessage
    receipt: str


@dataclass
class DeadLetter:
    message_id: str
    body: str
    receive_count: int
    reason: str
    failed_at: float = field(default_factory=time.time)
    # backend token for remove_dead_letter (DLQ list entry or SQS receipt handle)
    handle: str = ""


@dataclass
class QueueDepth:
    waiting: int
    in_flight: int
    dead_lettered: int


class QueueChannel(ABC):
    @abstractmethod
    async def enqueue(self, queue_name: str, payload: str) -> str:
        """Send payload; returns the message id."""

    @abstractmethod
    async def lease(self, queue_name: str, wait_seconds: float = 0) -> Lease | None:
        """Take the next visible message, waiting up to wait_seconds. None if nothing arrived."""

    @abstractmethod
    async def acknowledge(self, lease: Lease) -> bool:
        """Delete the message. False if the lease had already expired."""

    @abstractmethod
    async def abandon(self, lease: Lease, delay_seconds: int = 0) -> bool:
        """Give the message back, visible again after delay_seconds."""

    @abstractmethod
    async def dead_letter(self, lease: Lease, reason: str) -> bool:
        """Move the message to the queue's dead-letter destination."""

    @abstractmethod
    async def dead_letters(self, queue_name: str, limit: int = 10) -> list[DeadLetter]:
        """
        Return up to limit dead letters, oldest first, without deleting them.
        Each letter stays until remove_dead_letter is called with it.
        """

    @abstractmethod
    async def remove_dead_letter(self, queue_name: str, letter: DeadLetter) -> bool:
        """Delete one dead letter. False if it was already gone."""

    @abstractmethod
    async def depth(self, queue_name: str) -> QueueDepth:
        ...

    @abstractmethod
    async def peek(self, queue_name: str, limit: int = 10) -> list[str]:
        """Bodies of waiting messages without leasing them."""

    async def close(self) -> None:
        return None


async def replay_dead_letters(channel: QueueChannel, queue_name: str, limit: int = 100) -> int:
    """
    Re-send dead-lettered payloads to the main queue. Returns number of messages replayed.

    Each letter is sent before it is deleted, so a failed send leaves it (and
    every letter after it) in the dead-letter queue.
    """
    replayed = 0
    while replayed < limit:
        batch = await channel.dead_letters(queue_name, min(10, limit - replayed))
        if not batch:
            break
        for letter in batch:
            await channel.enqueue(queue_name, letter.body)
            await channel.remove_dead_letter(queue_name, letter)
            replayed += 1
    return replayed


@dataclass
class _Entry:
    message_id: str
    body: str
    receive_count: int = 0
    visible_at: float = 0.0
    receipt: str | None = None


class InMemoryQueueChannel(QueueChannel):
    """
    Process-local channel with real lease semantics. The clock is injectable so
    lease expiry can be exercised without sleeping. Thread-safe so an ASGI test
    client and the worker may share one instance.
    """

    def __init__(
        self,
        visibility_timeout: float = 30,
        poll_interval: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._queues: dict[str, dict[str, _Entry]] = {}
        self._order: dict[str, deque[str]] = {}
        self._dead: dict[str, list[DeadLetter]] = {}

    def _queue(self, name: str) -> dict[str, _Entry]:
        if name not in self._queues:
            self._queues[name] = {}
            self._order[name] = deque()
            self._dead[name] = []
        return self._queues[name]

    async def enqueue(self, queue_name: str, payload: str) -> str:
        message_id = uuid.uuid4().hex
        with self._lock:
            self._queue(queue_name)[message_id] = _Entry(message_id, payload)
            self._order[queue_name].append(message_id)
        return message_id

    def _try_lease(self, queue_name: str) -> Lease | None:
        with self._lock:
            entries = self._queue(queue_name)
            now = self._clock()
            order = self._order[queue_name]
            entry = next((entries[m] for m in order if entries[m].visible_at <= now), None)
            if entry is None:
                return None
            entry.receive_count += 1
            entry.receipt = uuid.uuid4().hex
            entry.visible_at = now + self.visibility_timeout
            # rotate to the back so other visible messages get a turn
            order.remove(entry.message_id)
            order.append(entry.message_id)
            message = QueueMessage(entry.message_id, entry.body, entry.receive_count)
            return Lease(queue_name, message, entry.receipt)

    async def lease(self, queue_name: str, wait_seconds: float = 0) -> Lease | None:
        deadline = time.monotonic() + wait_seconds
        while True:
            lease = self._try_lease(queue_name)
            if lease is not None or time.monotonic() >= deadline:
                return lease
            await asyncio.sleep(self.poll_interval)

    def _held(self, lease: Lease) -> _Entry | None:
        entry = self._queue(lease.queue_name).get(lease.message.message_id)
        if entry is None or entry.receipt != lease.receipt or entry.visible_at <= self._clock():
            return None
        return entry

    def _remove(self, queue_name: str, message_id: str) -> None:
        del self._queues[queue_name][message_id]
        self._order[queue_name].remove(message_id)

    async def acknowledge(self, lease: Lease) -> bool:
        with self._lock:
            if self._held(lease) is None:
                return False
            self._remove(lease.queue_name, lease.message.message_id)
        return True

    async def abandon(self, lease: Lease, delay_seconds: int = 0) -> bool:
        with self._lock:
            entry = self._held(lease)
            if entry is None:
                return False
            entry.receipt = None
            entry.visible_at = self._clock() + delay_seconds
        return True

    async def dead_letter(self, lease: Lease, reason: str) -> bool:
        with self._lock:
            entry = self._held(lease)
            if entry is None:
                return False
            self._remove(lease.queue_name, entry.message_id)
            self._dead[lease.queue_name].append(
                DeadLetter(entry.message_id, entry.body, entry.receive_count, reason, handle=entry.message_id)
            )
        return True

    async def dead_letters(self, queue_name: str, limit: int = 10) -> list[DeadLetter]:
        with self._lock:
            self._queue(queue_name)
            return list(self._dead[queue_name][:limit])

    async def remove_dead_letter(self, queue_name: str, letter: DeadLetter) -> bool:
        with self._lock:
            dead = self._dead.get(queue_name) or []
            for i, stored in enumerate(dead):
                if stored.handle == letter.handle:
                    del dead[i]
                    return True
        return False

    async def depth(self, queue_name: str) -> QueueDepth:
        with self._lock:
            entries = self._queue(queue_name)
            now = self._clock()
            in_flight = sum(1 for e in entries.values() if e.visible_at > now)
            return QueueDepth(len(entries) - in_flight, in_flight, len(self._dead[queue_name]))

    async def peek(self, queue_name: str, limit: int = 10) -> list[str]:
        with self._lock:
            entries = self._queue(queue_name)
            now = self._clock()
            bodies = [entries[m].body for m in self._order[queue_name] if entries[m].visible_at <= now]
        return bodies[:limit]


def build_queue_channel(config: Settings = settings) -> QueueChannel:
    if config.queue_backend == "sqs":
        from app.sqs_client import SqsQueueChannel
        return SqsQueueChannel(config)
    if config.queue_backend == "redis":
        from app.redis_client import RedisQueueChannel
        return RedisQueueChannel(config)
    return InMemoryQueueChannel(
        visibility_timeout=config.queue_visibility_timeout,
        poll_interval=config.queue_poll_interval,
    )
