"""
Wiring of stores, transports and providers for the configured backend.

`memory` keeps everything in-process (tests, local runs); `aws` uses
DynamoDB, SQS and S3-compatible storage.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging
from typing import Any, Optional

from . import config
from .compositor import CompositorOptions
from .dispatcher import Dispatcher
from .job_store import DynamoDBJobStore, InMemoryJobStore, JobStore, build_dynamodb_table
from .object_store import InMemoryObjectStore, ObjectStore, S3ObjectStore, build_s3_client
from .providers import build_providers
from .queues import InMemoryQueueTransport, QueueTransport, SQSQueueTransport, build_sqs_client
from .worker import ItemWorker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: config.Settings
    job_store: JobStore
    queue: QueueTransport
    object_store: ObjectStore
    data_provider: Any
    image_provider: Any

    def dispatcher(self) -> Dispatcher:
        return Dispatcher(self.job_store, self.data_provider, self.queue, settings=self.settings)

    def worker(self) -> ItemWorker:
        return ItemWorker(
            self.job_store,
            self.image_provider,
            self.object_store,
            settings=self.settings,
            options=CompositorOptions.from_settings(self.settings),
        )


def build_services(settings: Optional[config.Settings] = None) -> Services:
    settings = settings or config.get_settings()
    data_provider, image_provider = build_providers(settings)

    if settings.storage_backend == "aws":
        job_store: JobStore = DynamoDBJobStore(build_dynamodb_table(settings))
        queue: QueueTransport = SQSQueueTransport(build_sqs_client(settings))
        object_store: ObjectStore = S3ObjectStore(
            build_s3_client(settings),
            settings.s3_bucket_name,
            public_base_url=settings.s3_public_base_url,
        )
    else:
        job_store = InMemoryJobStore()
        queue = InMemoryQueueTransport()
        object_store = InMemoryObjectStore(settings.s3_bucket_name)

    logger.info("Services built with %s backend", settings.storage_backend)
    return Services(
        settings=settings,
        job_store=job_store,
        queue=queue,
        object_store=object_store,
        data_provider=data_provider,
        image_provider=image_provider,
    )


@lru_cache()
def get_services() -> Services:
    """Process-wide services; FastAPI dependency and worker entry point."""
    return build_services()
