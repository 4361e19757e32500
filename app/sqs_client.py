"""
AWS SQS queue channel. boto3 is synchronous, so every call runs in a thread.
Used when QUEUE_BACKEND=sqs. The lease receipt is the SQS ReceiptHandle and the
lease duration is the message VisibilityTimeout.
"""
import asyncio
import json
import logging
import time
from typing import Any

import boto3
from botocore.exceptions import ClientError

from app.config import Settings, settings
from app.queue import DeadLetter, Lease, QueueChannel, QueueDepth, QueueMessage, dead_letter_name

logger = logging.getLogger(__name__)

_sqs_client: Any = None

SQS_MAX_WAIT_SECONDS = 20
SQS_MAX_VISIBILITY_SECONDS = 43200


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


class SqsQueueChannel(QueueChannel):
    def __init__(self, config: Settings = settings, client: Any = None):
        self.config = config
        self.visibility_timeout = config.queue_visibility_timeout
        self._client = client
        self._urls: dict[str, str] = {}
        if config.sqs_queue_url:
            self._urls[config.order_queue_name] = config.sqs_queue_url
        if config.sqs_dlq_url:
            self._urls[dead_letter_name(config.order_queue_name)] = config.sqs_dlq_url

    @property
    def client(self):
        if self._client is None:
            self._client = _get_client()
        return self._client

    def _queue_url(self, queue_name: str) -> str:
        """Resolve (and lazily create) the queue URL for a queue name."""
        if queue_name not in self._urls:
            try:
                resp = self.client.get_queue_url(QueueName=queue_name)
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") not in ("AWS.SimpleQueueService.NonExistentQueue", "QueueDoesNotExist"):
                    raise
                logger.info("Creating SQS queue %s", queue_name)
                resp = self.client.create_queue(QueueName=queue_name)
            self._urls[queue_name] = resp["QueueUrl"]
        return self._urls[queue_name]

    def _send(self, queue_name: str, body: str) -> str:
        resp = self.client.send_message(QueueUrl=self._queue_url(queue_name), MessageBody=body)
        return resp.get("MessageId", "")

    def _receive(self, queue_name: str, wait_seconds: float) -> list[dict]:
        resp = self.client.receive_message(
            QueueUrl=self._queue_url(queue_name),
            MaxNumberOfMessages=1,
            WaitTimeSeconds=min(int(wait_seconds), SQS_MAX_WAIT_SECONDS),
            VisibilityTimeout=self.visibility_timeout,
            AttributeNames=["ApproximateReceiveCount"],
        )
        return resp.get("Messages") or []

    def _delete(self, queue_name: str, receipt_handle: str) -> bool:
        try:
            self.client.delete_message(QueueUrl=self._queue_url(queue_name), ReceiptHandle=receipt_handle)
        except ClientError as e:
            logger.warning("Could not delete message from %s: %s", queue_name, e)
            return False
        return True

    def _change_visibility(self, queue_name: str, receipt_handle: str, timeout: int) -> bool:
        try:
            self.client.change_message_visibility(
                QueueUrl=self._queue_url(queue_name),
                ReceiptHandle=receipt_handle,
                VisibilityTimeout=min(timeout, SQS_MAX_VISIBILITY_SECONDS),
            )
        except ClientError as e:
            logger.warning("Could not release message on %s: %s", queue_name, e)
            return False
        return True

    async def enqueue(self, queue_name: str, payload: str) -> str:
        return await asyncio.to_thread(self._send, queue_name, payload)

    async def lease(self, queue_name: str, wait_seconds: float = 0) -> Lease | None:
        messages = await asyncio.to_thread(self._receive, queue_name, wait_seconds)
        if not messages:
            return None
        msg = messages[0]
        attrs = msg.get("Attributes") or {}
        message = QueueMessage(
            message_id=msg.get("MessageId") or "",
            body=msg.get("Body") or "",
            receive_count=int(attrs.get("ApproximateReceiveCount", 1)),
        )
        return Lease(queue_name, message, msg.get("ReceiptHandle") or "")

    async def acknowledge(self, lease: Lease) -> bool:
        return await asyncio.to_thread(self._delete, lease.queue_name, lease.receipt)

    async def abandon(self, lease: Lease, delay_seconds: int = 0) -> bool:
        return await asyncio.to_thread(self._change_visibility, lease.queue_name, lease.receipt, delay_seconds)

    async def dead_letter(self, lease: Lease, reason: str) -> bool:
        letter = json.dumps({
            "message_id": lease.message.message_id,
            "body": lease.message.body,
            "receive_count": lease.message.receive_count,
            "reason": reason,
            "failed_at": time.time(),
        })
        await asyncio.to_thread(self._send, dead_letter_name(lease.queue_name), letter)
        return await self.acknowledge(lease)

    def _receive_dead_letters(self, queue_name: str, limit: int) -> list[DeadLetter]:
        # received letters stay hidden for the visibility timeout and come back
        # unless remove_dead_letter deletes them first
        dlq = dead_letter_name(queue_name)
        resp = self.client.receive_message(
            QueueUrl=self._queue_url(dlq),
            MaxNumberOfMessages=min(limit, 10),
            WaitTimeSeconds=0,
            VisibilityTimeout=self.visibility_timeout,
            AttributeNames=["ApproximateReceiveCount"],
        )
        letters = []
        for msg in resp.get("Messages") or []:
            body = msg.get("Body") or ""
            try:
                data = json.loads(body)
            except json.JSONDecodeError:
                data = None
            if isinstance(data, dict) and "body" in data:
                letters.append(DeadLetter(
                    message_id=data.get("message_id") or msg.get("MessageId", ""),
                    body=data["body"],
                    receive_count=int(data.get("receive_count", 0)),
                    reason=data.get("reason") or "",
                    failed_at=float(data.get("failed_at") or time.time()),
                    handle=msg["ReceiptHandle"],
                ))
            else:
                # moved by an SQS redrive policy: body is the original payload
                attrs = msg.get("Attributes") or {}
                letters.append(DeadLetter(
                    message_id=msg.get("MessageId", ""),
                    body=body,
                    receive_count=int(attrs.get("ApproximateReceiveCount", 0)),
                    reason="redrive",
                    handle=msg["ReceiptHandle"],
                ))
        return letters

    async def dead_letters(self, queue_name: str, limit: int = 10) -> list[DeadLetter]:
        return await asyncio.to_thread(self._receive_dead_letters, queue_name, limit)

    async def remove_dead_letter(self, queue_name: str, letter: DeadLetter) -> bool:
        return await asyncio.to_thread(self._delete, dead_letter_name(queue_name), letter.handle)

    def _approximate_counts(self, queue_url: str) -> tuple[int, int]:
        r = self.client.get_queue_attributes(
            QueueUrl=queue_url,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        )
        attrs = r.get("Attributes") or {}
        return (
            int(attrs.get("ApproximateNumberOfMessages", 0)),
            int(attrs.get("ApproximateNumberOfMessagesNotVisible", 0)),
        )

    async def depth(self, queue_name: str) -> QueueDepth:
        def _get():
            waiting, in_flight = self._approximate_counts(self._queue_url(queue_name))
            dead, _ = self._approximate_counts(self._queue_url(dead_letter_name(queue_name)))
            return QueueDepth(waiting, in_flight, dead)

        return await asyncio.to_thread(_get)

    async def peek(self, queue_name: str, limit: int = 10) -> list[str]:
        # SQS has no non-destructive peek; receiving would bump the receive count.
        return []
