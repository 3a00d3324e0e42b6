"""
Fan-out: one dispatch message becomes one work message per selected item.

The selected work items are written to the job record together with
`total_items` before anything is sent. A redelivered dispatch message for a
job that already has them re-sends the same messages; workers de-duplicate
by item id.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import ValidationError

from . import config
from .errors import ExternalServiceError, NoMatchingItemsError
from .job_store import JobStore, update_job
from .models import DispatchMessage, JobRecord, JobStatus, WorkItemMessage
from .progress import mark_failed
from .queues import QueueMessage, QueueTransport
from .selection import select_items

logger = logging.getLogger(__name__)


class Dispatcher:
    def __init__(
        self,
        job_store: JobStore,
        data_provider,
        queue: QueueTransport,
        settings: Optional[config.Settings] = None,
    ):
        self.job_store = job_store
        self.data_provider = data_provider
        self.queue = queue
        self.settings = settings or config.get_settings()

    def handle_message(self, body: str) -> None:
        try:
            message = DispatchMessage.model_validate_json(body)
        except ValidationError as exc:
            logger.error("Invalid dispatch message, dropping it: %s", exc)
            return
        self.dispatch(message)

    def handle_poison(self, message: QueueMessage) -> None:
        """Fail the job of a dispatch message that exhausted its deliveries."""
        try:
            dispatch = DispatchMessage.model_validate_json(message.body)
        except ValidationError:
            logger.error("Poisoned dispatch message %s is not a valid dispatch message", message.message_id)
            return
        attempts = max(message.receive_count - 1, 1)
        logger.error("Dispatch for job %s failed after %d attempts", dispatch.job_id, attempts)
        self._fail(dispatch.job_id, f"Dispatch failed after {attempts} attempts")

    def dispatch(self, message: DispatchMessage) -> List[WorkItemMessage]:
        """Run fan-out for one job; returns the work messages sent."""
        job_id = message.job_id
        record = self.job_store.get(job_id)
        if record is None:
            logger.error("Job %s not found in job store", job_id)
            return []
        if record.status.is_terminal:
            logger.info("Job %s already %s; ignoring dispatch", job_id, record.status.value)
            return []
        if record.work_items:
            logger.info("Job %s was already fanned out; re-sending %d work items", job_id, len(record.work_items))
            self._send(record.work_items)
            return list(record.work_items)

        record = self._update(job_id, self._to_processing)
        if record is None or record.status is not JobStatus.PROCESSING:
            return []

        fetch_limit = config.candidate_fetch_limit(
            message.max_items, bool(message.locality_filter and message.locality_filter.strip()), self.settings
        )
        try:
            candidates = self.data_provider.fetch_candidates(limit=fetch_limit)
        except ExternalServiceError as exc:
            logger.exception("Error fetching candidate items for job %s", job_id)
            self._fail(job_id, f"Error fetching weather stations: {exc}")
            return []
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error reading candidate items for job %s", job_id)
            self._fail(job_id, f"Error fetching weather stations: {exc}")
            return []

        if not candidates:
            self._fail(job_id, "No weather stations found")
            return []

        try:
            selection = select_items(
                candidates,
                message.locality_filter,
                requested_max=message.max_items,
                hard_cap=self.settings.selection_hard_cap,
                fallback_cap=self.settings.selection_fallback_cap,
                strict=self.settings.locality_strict,
            )
        except NoMatchingItemsError as exc:
            self._fail(job_id, str(exc))
            return []

        if not selection.items:
            self._fail(job_id, "No weather stations selected")
            return []

        work_items = [
            WorkItemMessage(
                job_id=job_id,
                item_id=item.id,
                item_name=item.name,
                latitude=item.latitude,
                longitude=item.longitude,
                measurement=item.measurement,
                region=item.region,
                search_keyword=message.search_keyword,
            )
            for item in selection.items
        ]

        def persist(current: JobRecord) -> Optional[JobRecord]:
            if current.status is not JobStatus.PROCESSING or current.work_items:
                return None
            current.total_items = len(work_items)
            current.work_items = work_items
            return current

        record = self._update(job_id, persist)
        if record is None or record.status is not JobStatus.PROCESSING:
            logger.info("Job %s changed state during dispatch; nothing sent", job_id)
            return []

        # Another delivery of this message may have won the write; send what was stored.
        to_send = record.work_items
        logger.info(
            "Selected %d items (%s match) for job %s. Queuing image processing tasks...",
            len(to_send),
            selection.match_kind,
            job_id,
        )
        self._send(to_send)
        logger.info("Successfully queued %d image processing tasks for job %s", len(to_send), job_id)
        return list(to_send)

    @staticmethod
    def _to_processing(current: JobRecord) -> Optional[JobRecord]:
        if current.status is not JobStatus.PENDING:
            return None
        current.status = JobStatus.PROCESSING
        return current

    def _update(self, job_id: str, mutate) -> Optional[JobRecord]:
        return update_job(self.job_store, job_id, mutate, max_attempts=self.settings.job_update_max_attempts)

    def _fail(self, job_id: str, reason: str) -> None:
        mark_failed(self.job_store, job_id, reason, max_attempts=self.settings.job_update_max_attempts)

    def _send(self, work_items: List[WorkItemMessage]) -> None:
        for item in work_items:
            self.queue.send(self.settings.process_item_queue_name, item.to_json())
