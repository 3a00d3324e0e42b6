"""
Fan-in progress aggregation on the shared job record.

Many workers of one job call `advance_progress` concurrently; each call is a
compare-and-retry update, so no increment is lost and exactly one caller
observes the transition to Completed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Optional

from .job_store import JobStore, update_job
from .models import JobRecord, JobStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass
class AdvanceOutcome:
    applied: bool
    completed: bool
    record: Optional[JobRecord]
    reason: str = ""


def advance_progress(
    store: JobStore,
    job_id: str,
    item_id: str,
    result_url: Optional[str] = None,
    now: Optional[datetime] = None,
    max_attempts: int = 50,
) -> AdvanceOutcome:
    """
    Count one processed item, keyed by `item_id` for idempotency.

    A redelivered item, a terminal job or a missing job leave the record
    untouched.
    """
    skipped = {"reason": ""}

    def mutate(record: JobRecord) -> Optional[JobRecord]:
        if record.status.is_terminal:
            skipped["reason"] = f"job already {record.status.value}"
            return None
        if item_id in record.processed_item_ids:
            skipped["reason"] = "item already counted"
            return None
        skipped["reason"] = ""
        record.processed_items += 1
        record.processed_item_ids.append(item_id)
        if result_url:
            record.result_urls.append(result_url)
        if record.total_items is not None and record.processed_items >= record.total_items:
            record.status = JobStatus.COMPLETED
            record.completed_at = now or utcnow()
        return record

    before = store.get(job_id)
    if before is None:
        logger.warning("Job %s not found; dropping progress for item %s", job_id, item_id)
        return AdvanceOutcome(applied=False, completed=False, record=None, reason="job not found")

    record = update_job(store, job_id, mutate, max_attempts=max_attempts)
    if record is None:
        logger.warning("Job %s disappeared while advancing item %s", job_id, item_id)
        return AdvanceOutcome(applied=False, completed=False, record=None, reason="job not found")

    if skipped["reason"]:
        logger.info("Progress for item %s of job %s not applied: %s", item_id, job_id, skipped["reason"])
        return AdvanceOutcome(applied=False, completed=False, record=record, reason=skipped["reason"])

    completed = record.status is JobStatus.COMPLETED
    logger.info(
        "Job %s progress %d/%s after item %s",
        job_id,
        record.processed_items,
        record.total_items,
        item_id,
    )
    if completed:
        logger.info(
            "Job %s completed. Processed %d items in %.1f seconds",
            job_id,
            record.processed_items,
            record.duration_seconds(),
        )
    return AdvanceOutcome(applied=True, completed=completed, record=record)


def mark_failed(
    store: JobStore,
    job_id: str,
    message: str,
    now: Optional[datetime] = None,
    max_attempts: int = 50,
) -> Optional[JobRecord]:
    """Move a non-terminal job to Failed with `message`."""

    def mutate(record: JobRecord) -> Optional[JobRecord]:
        if record.status.is_terminal:
            return None
        record.status = JobStatus.FAILED
        record.error_message = message
        record.completed_at = now or utcnow()
        return record

    record = update_job(store, job_id, mutate, max_attempts=max_attempts)
    if record is not None and record.status is JobStatus.FAILED:
        logger.warning("Job %s failed: %s", job_id, record.error_message)
    return record
