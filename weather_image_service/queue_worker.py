"""
Queue consumers for the dispatcher and the item workers.

Each consumer polls one queue and hands messages to a thread pool. A
message is acknowledged only after its handler returns; a handler error
leaves it to be redelivered once its lease expires. Messages delivered more
than `max_delivery_attempts` times are moved to `<queue>-poison`, after the
consumer's `on_poison` callback has settled the job they belong to.

Run with:
    python -m weather_image_service.queue_worker {dispatch,process,all}
"""

from __future__ import annotations

import argparse
from concurrent.futures import ThreadPoolExecutor, wait
import logging
import threading
from typing import Callable, List, Optional

from . import config
from .queues import QueueMessage, QueueTransport

logger = logging.getLogger(__name__)

POISON_SUFFIX = "-poison"


class QueueConsumer:
    def __init__(
        self,
        transport: QueueTransport,
        queue_name: str,
        handler: Callable[[str], None],
        *,
        concurrency: int = 8,
        visibility_timeout: int = 300,
        wait_seconds: int = 10,
        max_delivery_attempts: int = 5,
        idle_sleep_seconds: float = 0.5,
        on_poison: Optional[Callable[[QueueMessage], None]] = None,
    ):
        self.transport = transport
        self.queue_name = queue_name
        self.poison_queue_name = queue_name + POISON_SUFFIX
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.visibility_timeout = visibility_timeout
        self.wait_seconds = wait_seconds
        self.max_delivery_attempts = max_delivery_attempts
        self.idle_sleep_seconds = idle_sleep_seconds
        self.on_poison = on_poison
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix=f"consumer-{queue_name}"
        )

    def run_once(self) -> int:
        """Receive one batch and process it; returns the number of messages received."""
        messages = self.transport.receive(
            self.queue_name,
            max_messages=self.concurrency,
            visibility_timeout=self.visibility_timeout,
            wait_seconds=self.wait_seconds,
        )
        if not messages:
            return 0
        wait([self._executor.submit(self._handle, message) for message in messages])
        return len(messages)

    def drain(self, max_batches: int = 1000) -> int:
        """Process until the queue has nothing visible left."""
        total = 0
        for _ in range(max_batches):
            received = self.run_once()
            if not received:
                break
            total += received
        return total

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info("Consuming %s with concurrency %d", self.queue_name, self.concurrency)
        while not stop_event.is_set():
            try:
                received = self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Receiving from %s failed", self.queue_name)
                received = 0
            if not received:
                stop_event.wait(self.idle_sleep_seconds)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _handle(self, message: QueueMessage) -> None:
        if message.receive_count > self.max_delivery_attempts:
            logger.error(
                "Message %s on %s delivered %d times; moving to %s",
                message.message_id,
                self.queue_name,
                message.receive_count,
                self.poison_queue_name,
            )
            if self.on_poison is not None:
                try:
                    self.on_poison(message)
                except Exception:  # noqa: BLE001
                    logger.exception("Poison callback failed for message %s on %s", message.message_id, self.queue_name)
            self.transport.send(self.poison_queue_name, message.body)
            self.transport.ack(self.queue_name, message)
            return
        try:
            self.handler(message.body)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Handler failed for message %s on %s (delivery %d); leaving it for redelivery",
                message.message_id,
                self.queue_name,
                message.receive_count,
            )
            return
        self.transport.ack(self.queue_name, message)


def build_consumers(services, role: str) -> List[QueueConsumer]:
    settings = services.settings
    common = dict(
        visibility_timeout=settings.queue_visibility_timeout_seconds,
        wait_seconds=settings.queue_wait_seconds,
        max_delivery_attempts=settings.max_delivery_attempts,
    )
    consumers: List[QueueConsumer] = []
    if role in ("dispatch", "all"):
        dispatcher = services.dispatcher()
        consumers.append(
            QueueConsumer(
                services.queue,
                settings.dispatch_queue_name,
                dispatcher.handle_message,
                concurrency=1,
                on_poison=dispatcher.handle_poison,
                **common,
            )
        )
    if role in ("process", "all"):
        worker = services.worker()
        consumers.append(
            QueueConsumer(
                services.queue,
                settings.process_item_queue_name,
                worker.handle_message,
                concurrency=settings.worker_concurrency,
                on_poison=worker.handle_poison,
                **common,
            )
        )
    return consumers


class ConsumerRunner:
    """Polls each consumer on its own thread until `stop` is called."""

    def __init__(self, consumers: List[QueueConsumer]):
        self.consumers = consumers
        self.stop_event = threading.Event()
        self.threads: List[threading.Thread] = []

    def start(self) -> None:
        self.threads = [
            threading.Thread(target=c.run_forever, args=(self.stop_event,), name=f"poll-{c.queue_name}", daemon=True)
            for c in self.consumers
        ]
        for thread in self.threads:
            thread.start()

    def is_alive(self) -> bool:
        return any(t.is_alive() for t in self.threads)

    def stop(self, timeout: float = 30) -> None:
        self.stop_event.set()
        for thread in self.threads:
            thread.join(timeout=timeout)
        for consumer in self.consumers:
            consumer.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run weather image queue consumers")
    parser.add_argument(
        "role",
        nargs="?",
        default="all",
        choices=["dispatch", "process", "all"],
        help="Which queue(s) to consume",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    from .services import get_services

    args = parse_args(argv)
    settings = config.get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    if settings.storage_backend == "memory":
        logger.warning("Memory backend queues are private to this process; the API will not feed them")

    runner = ConsumerRunner(build_consumers(get_services(), args.role))
    runner.start()
    try:
        while runner.is_alive():
            runner.stop_event.wait(1.0)
    except KeyboardInterrupt:
        logger.info("Stopping consumers")
    finally:
        runner.stop()


if __name__ == "__main__":
    main()
