"""
Domain records and queue payloads.

Queue payloads travel as camelCase JSON (`model_dump_json(by_alias=True)`);
job records are stored with their snake_case field names.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class QueuePayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class DispatchMessage(QueuePayload):
    job_id: str
    search_keyword: str
    max_items: int
    locality_filter: Optional[str] = None


class WorkItemMessage(QueuePayload):
    job_id: str
    item_id: str
    item_name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    measurement: Optional[float] = None
    region: Optional[str] = None
    search_keyword: str


class JobRecord(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.PENDING
    search_keyword: str
    locality_filter: Optional[str] = None
    max_items: int
    total_items: Optional[int] = None
    processed_items: int = 0
    result_urls: List[str] = Field(default_factory=list)
    processed_item_ids: List[str] = Field(default_factory=list)
    work_items: List[WorkItemMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    version: int = 0

    def progress_percentage(self) -> int:
        if not self.total_items:
            return 0
        return int(round(self.processed_items / self.total_items * 100.0))

    def duration_seconds(self, now: Optional[datetime] = None) -> float:
        end = self.completed_at or now or utcnow()
        return (end - self.created_at).total_seconds()


@dataclass(frozen=True)
class CandidateItem:
    id: str
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    measurement: Optional[float] = None
    region: Optional[str] = None


@dataclass(frozen=True)
class ItemRenderContext:
    """What the compositor needs to label one item's image."""

    item_id: str
    name: str
    measurement: Optional[float] = None
    region: Optional[str] = None

    @classmethod
    def from_message(cls, message: WorkItemMessage) -> "ItemRenderContext":
        return cls(
            item_id=message.item_id,
            name=message.item_name,
            measurement=message.measurement,
            region=message.region,
        )
