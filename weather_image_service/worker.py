"""Fan-in unit: processes one work item and advances its job's progress."""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from . import config
from .compositor import CompositorOptions
from .job_store import JobStore
from .models import ItemRenderContext, WorkItemMessage
from .object_store import ObjectStore
from .pipeline import enrich_item
from .progress import AdvanceOutcome, advance_progress
from .queues import QueueMessage

logger = logging.getLogger(__name__)


class ItemWorker:
    def __init__(
        self,
        job_store: JobStore,
        image_provider,
        object_store: ObjectStore,
        settings: Optional[config.Settings] = None,
        options: Optional[CompositorOptions] = None,
    ):
        self.job_store = job_store
        self.image_provider = image_provider
        self.object_store = object_store
        self.settings = settings or config.get_settings()
        self.options = options or CompositorOptions.from_settings(self.settings)

    def handle_message(self, body: str) -> None:
        try:
            message = WorkItemMessage.model_validate_json(body)
        except ValidationError as exc:
            logger.error("Invalid work item message, dropping it: %s", exc)
            return
        self.process(message)

    def handle_poison(self, message: QueueMessage) -> Optional[AdvanceOutcome]:
        """Count a work item that exhausted its deliveries as failed so its job can finish."""
        try:
            item = WorkItemMessage.model_validate_json(message.body)
        except ValidationError:
            logger.error("Poisoned work item message %s is not a valid work item", message.message_id)
            return None
        logger.error(
            "Item %s of job %s failed after %d deliveries; counting it without a result",
            item.item_id,
            item.job_id,
            message.receive_count - 1,
        )
        return advance_progress(
            self.job_store,
            item.job_id,
            item.item_id,
            max_attempts=self.settings.job_update_max_attempts,
        )

    def process(self, message: WorkItemMessage) -> Optional[AdvanceOutcome]:
        """
        Enrich one item, then always count it.

        Item failures are logged and swallowed so the job can still complete;
        failures of the progress update itself propagate to trigger redelivery.
        """
        job_id, item_id = message.job_id, message.item_id

        record = self.job_store.get(job_id)
        if record is None:
            logger.error("Job %s not found; dropping item %s", job_id, item_id)
            return None
        if item_id in record.processed_item_ids:
            logger.info("Item %s of job %s already processed; skipping redelivery", item_id, job_id)
            return None
        if record.status.is_terminal:
            logger.info("Job %s already %s; skipping item %s", job_id, record.status.value, item_id)
            return None

        result_url: Optional[str] = None
        try:
            result_url = enrich_item(
                ItemRenderContext.from_message(message),
                message.search_keyword,
                self.image_provider,
                self.object_store,
                options=self.options,
                settings=self.settings,
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "Image processing failed for item %s (%s) in job %s; job will continue",
                item_id,
                message.item_name,
                job_id,
            )

        return advance_progress(
            self.job_store,
            job_id,
            item_id,
            result_url=result_url,
            max_attempts=self.settings.job_update_max_attempts,
        )
