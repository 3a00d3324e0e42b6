"""
Queue transports with at-least-once delivery.

A received message stays invisible for its visibility lease; if it is not
acknowledged before the lease runs out it is delivered again.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol
import uuid

import boto3

from . import config

logger = logging.getLogger(__name__)


@dataclass
class QueueMessage:
    message_id: str
    body: str
    receipt: str
    receive_count: int = 1


class QueueTransport(Protocol):
    def send(self, queue_name: str, payload: str) -> str:
        ...

    def receive(
        self,
        queue_name: str,
        max_messages: int = 1,
        visibility_timeout: int = 30,
        wait_seconds: int = 0,
    ) -> List[QueueMessage]:
        ...

    def ack(self, queue_name: str, message: QueueMessage) -> None:
        ...


@dataclass
class _Entry:
    message_id: str
    body: str
    receive_count: int = 0
    invisible_until: float = 0.0
    receipt: Optional[str] = None


class InMemoryQueueTransport:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._queues: Dict[str, List[_Entry]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def send(self, queue_name: str, payload: str) -> str:
        entry = _Entry(message_id=str(uuid.uuid4()), body=payload)
        with self._lock:
            self._queues.setdefault(queue_name, []).append(entry)
        return entry.message_id

    def receive(
        self,
        queue_name: str,
        max_messages: int = 1,
        visibility_timeout: int = 30,
        wait_seconds: int = 0,
    ) -> List[QueueMessage]:
        now = self._clock()
        received: List[QueueMessage] = []
        with self._lock:
            for entry in self._queues.get(queue_name, []):
                if len(received) >= max_messages:
                    break
                if entry.invisible_until > now:
                    continue
                entry.receive_count += 1
                entry.invisible_until = now + visibility_timeout
                entry.receipt = str(uuid.uuid4())
                received.append(
                    QueueMessage(
                        message_id=entry.message_id,
                        body=entry.body,
                        receipt=entry.receipt,
                        receive_count=entry.receive_count,
                    )
                )
        return received

    def ack(self, queue_name: str, message: QueueMessage) -> None:
        with self._lock:
            entries = self._queues.get(queue_name, [])
            # A stale receipt (lease expired and redelivered) must not delete the newer delivery.
            self._queues[queue_name] = [e for e in entries if e.receipt != message.receipt]

    def bodies(self, queue_name: str) -> List[str]:
        """Every message still in the queue, in flight or not."""
        with self._lock:
            return [e.body for e in self._queues.get(queue_name, [])]


def build_sqs_client(settings: Optional[config.Settings] = None):
    settings = settings or config.get_settings()
    return boto3.client("sqs", region_name=settings.aws_region, endpoint_url=settings.sqs_endpoint)


class SQSQueueTransport:
    def __init__(self, client: Any):
        self._client = client
        self._urls: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _queue_url(self, queue_name: str) -> str:
        with self._lock:
            url = self._urls.get(queue_name)
        if url is None:
            url = self._client.get_queue_url(QueueName=queue_name)["QueueUrl"]
            with self._lock:
                self._urls[queue_name] = url
        return url

    def send(self, queue_name: str, payload: str) -> str:
        resp = self._client.send_message(QueueUrl=self._queue_url(queue_name), MessageBody=payload)
        return resp["MessageId"]

    def receive(
        self,
        queue_name: str,
        max_messages: int = 1,
        visibility_timeout: int = 30,
        wait_seconds: int = 0,
    ) -> List[QueueMessage]:
        resp = self._client.receive_message(
            QueueUrl=self._queue_url(queue_name),
            MaxNumberOfMessages=max(1, min(max_messages, 10)),
            VisibilityTimeout=visibility_timeout,
            WaitTimeSeconds=max(0, min(wait_seconds, 20)),
            AttributeNames=["ApproximateReceiveCount"],
        )
        return [
            QueueMessage(
                message_id=raw["MessageId"],
                body=raw["Body"],
                receipt=raw["ReceiptHandle"],
                receive_count=int(raw.get("Attributes", {}).get("ApproximateReceiveCount", 1)),
            )
            for raw in resp.get("Messages", [])
        ]

    def ack(self, queue_name: str, message: QueueMessage) -> None:
        self._client.delete_message(QueueUrl=self._queue_url(queue_name), ReceiptHandle=message.receipt)
