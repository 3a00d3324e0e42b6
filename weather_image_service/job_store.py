"""
Job record persistence with optimistic concurrency.

Every record carries a `version`. Reads return it, writes must present the
version they read and fail with `VersionConflictError` if anyone else wrote
in between. `update_job` wraps that into a reread-and-retry loop; it is the
only way job records are mutated after creation.
"""

from __future__ import annotations

from decimal import Decimal
import json
import logging
import random
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

import boto3
from botocore.exceptions import ClientError

from . import config
from .errors import JobAlreadyExistsError, JobUpdateConflictError, VersionConflictError
from .models import JobRecord

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    def create(self, record: JobRecord) -> JobRecord:
        """Persist a new record; JobAlreadyExistsError if the id is taken."""

    def get(self, job_id: str) -> Optional[JobRecord]:
        """Point read, None when unknown."""

    def conditional_update(self, job_id: str, expected_version: int, record: JobRecord) -> JobRecord:
        """Replace the record if its stored version equals `expected_version`."""

    def list_jobs(self, limit: int = 20) -> List[JobRecord]:
        """Most recent jobs first."""


class InMemoryJobStore:
    """Process-local store with the same contract as the DynamoDB one."""

    def __init__(self) -> None:
        self._records: Dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    def create(self, record: JobRecord) -> JobRecord:
        with self._lock:
            if record.job_id in self._records:
                raise JobAlreadyExistsError(f"Job {record.job_id} already exists")
            stored = record.model_copy(deep=True, update={"version": 1})
            self._records[record.job_id] = stored
            return stored.model_copy(deep=True)

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            stored = self._records.get(job_id)
            return stored.model_copy(deep=True) if stored is not None else None

    def conditional_update(self, job_id: str, expected_version: int, record: JobRecord) -> JobRecord:
        with self._lock:
            current = self._records.get(job_id)
            if current is None or current.version != expected_version:
                raise VersionConflictError(
                    f"Job {job_id} changed since version {expected_version}"
                )
            stored = record.model_copy(deep=True, update={"version": expected_version + 1})
            self._records[job_id] = stored
            return stored.model_copy(deep=True)

    def list_jobs(self, limit: int = 20) -> List[JobRecord]:
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: r.created_at, reverse=True)
            return [r.model_copy(deep=True) for r in records[:limit]]


def _decimal_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    raise TypeError(f"Unsupported type {type(value)!r}")


def _is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class DynamoDBJobStore:
    """DynamoDB table keyed by `job_id`; conditional puts on `version`."""

    def __init__(self, table: Any):
        self._table = table

    @staticmethod
    def _to_item(record: JobRecord) -> Dict[str, Any]:
        # DynamoDB rejects floats; round-trip through JSON to get Decimals.
        return json.loads(record.model_dump_json(), parse_float=Decimal)

    @staticmethod
    def _from_item(item: Dict[str, Any]) -> JobRecord:
        return JobRecord.model_validate(json.loads(json.dumps(item, default=_decimal_default)))

    def create(self, record: JobRecord) -> JobRecord:
        stored = record.model_copy(update={"version": 1})
        try:
            self._table.put_item(
                Item=self._to_item(stored),
                ConditionExpression="attribute_not_exists(job_id)",
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise JobAlreadyExistsError(f"Job {record.job_id} already exists") from exc
            raise
        logger.info("Created job record %s", record.job_id)
        return stored

    def get(self, job_id: str) -> Optional[JobRecord]:
        resp = self._table.get_item(Key={"job_id": job_id}, ConsistentRead=True)
        item = resp.get("Item")
        return self._from_item(item) if item else None

    def conditional_update(self, job_id: str, expected_version: int, record: JobRecord) -> JobRecord:
        stored = record.model_copy(update={"job_id": job_id, "version": expected_version + 1})
        try:
            self._table.put_item(
                Item=self._to_item(stored),
                ConditionExpression="#v = :expected",
                ExpressionAttributeNames={"#v": "version"},
                ExpressionAttributeValues={":expected": expected_version},
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise VersionConflictError(
                    f"Job {job_id} changed since version {expected_version}"
                ) from exc
            raise
        return stored

    def list_jobs(self, limit: int = 20) -> List[JobRecord]:
        records: List[JobRecord] = []
        kwargs: Dict[str, Any] = {}
        while True:
            resp = self._table.scan(**kwargs)
            records.extend(self._from_item(item) for item in resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]


def build_dynamodb_table(settings: Optional[config.Settings] = None):
    settings = settings or config.get_settings()
    resource = boto3.resource(
        "dynamodb",
        region_name=settings.aws_region,
        endpoint_url=settings.dynamodb_endpoint,
    )
    return resource.Table(settings.job_table_name)


def update_job(
    store: JobStore,
    job_id: str,
    mutate: Callable[[JobRecord], Optional[JobRecord]],
    max_attempts: int = 50,
) -> Optional[JobRecord]:
    """
    Read-modify-write `job_id` until the conditional write succeeds.

    `mutate` receives a private copy of the current record and returns the
    record to write, or None when no write is needed. It may run several
    times, so it must not have side effects. Returns the stored record
    (the unchanged one when `mutate` declined), or None if the job is gone.

    Raises:
        JobUpdateConflictError: every attempt lost against a concurrent writer.
    """
    for attempt in range(1, max_attempts + 1):
        current = store.get(job_id)
        if current is None:
            return None
        updated = mutate(current.model_copy(deep=True))
        if updated is None:
            return current
        try:
            return store.conditional_update(job_id, current.version, updated)
        except VersionConflictError:
            logger.debug("Version conflict on job %s (attempt %d); rereading", job_id, attempt)
            time.sleep(random.uniform(0, min(0.05, 0.002 * attempt)))
    raise JobUpdateConflictError(f"Gave up updating job {job_id} after {max_attempts} attempts")
