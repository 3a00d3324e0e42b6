"""
FastAPI layer for job submission and status polling.

Endpoints:
 - GET /health
 - POST /jobs
 - GET /jobs
 - GET /jobs/{jobId}

With the memory backend the dispatch and item consumers run inside this
process for the lifetime of the app.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
import logging
from typing import List, Optional
import uuid

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from . import config
from .models import DispatchMessage, JobRecord, JobStatus
from .progress import mark_failed
from .queue_worker import ConsumerRunner, build_consumers
from .services import Services, get_services

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the queue consumers in-process when the memory backend is in use."""
    services = app.dependency_overrides.get(get_services, get_services)()
    runner = None
    if services.settings.storage_backend == "memory" and services.settings.embedded_consumers:
        runner = ConsumerRunner(build_consumers(services, "all"))
        runner.start()
        logger.info("Started %d embedded queue consumers", len(runner.consumers))

    yield

    if runner is not None:
        logger.info("Stopping embedded queue consumers")
        runner.stop()


app = FastAPI(title="Weather Image Service", version="0.1.0", lifespan=lifespan)

MAX_ITEMS_LIMIT = 100
DEFAULT_LIST_TOP = 20


class StartJobRequest(BaseModel):
    searchKeyword: str
    city: Optional[str] = None
    maxItems: int = Field(50, ge=1, le=MAX_ITEMS_LIMIT)

    @field_validator("searchKeyword")
    @classmethod
    def keyword_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("searchKeyword is required")
        return v


class StartJobResponse(BaseModel):
    jobId: str
    status: str
    message: str
    createdAt: datetime


class JobResultsResponse(BaseModel):
    jobId: str
    status: str
    totalItems: int
    processedItems: int
    progressPercentage: int
    resultUrls: List[str]
    totalImages: int
    createdAt: datetime
    completedAt: Optional[datetime] = None
    durationSeconds: float
    errorMessage: Optional[str] = None


class JobSummary(BaseModel):
    jobId: str
    status: str
    totalItems: int
    processedItems: int
    imageCount: int
    createdAt: datetime
    completedAt: Optional[datetime] = None


class JobListResponse(BaseModel):
    totalCount: int
    jobs: List[JobSummary]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())[1:])
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(status_code=400, content={"error": "; ".join(problems) or "Invalid request"})


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/jobs", status_code=202, response_model=StartJobResponse)
def start_job(body: StartJobRequest, response: Response, services: Services = Depends(get_services)):
    job_id = str(uuid.uuid4())
    city = body.city.strip() if body.city and body.city.strip() else None
    record = JobRecord(
        job_id=job_id,
        status=JobStatus.PENDING,
        search_keyword=body.searchKeyword,
        locality_filter=city,
        max_items=body.maxItems,
    )
    try:
        record = services.job_store.create(record)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to create job record: %s", exc)
        raise HTTPException(status_code=500, detail="An error occurred while starting the job") from exc
    logger.info("Created job %s (keyword=%r, city=%r, maxItems=%d)", job_id, body.searchKeyword, city, body.maxItems)

    message = DispatchMessage(
        job_id=job_id,
        search_keyword=body.searchKeyword,
        max_items=body.maxItems,
        locality_filter=city,
    )
    try:
        services.queue.send(services.settings.dispatch_queue_name, message.to_json())
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to queue dispatch for job %s: %s", job_id, exc)
        mark_failed(services.job_store, job_id, "Could not queue job for processing")
        raise HTTPException(status_code=500, detail="An error occurred while starting the job") from exc
    logger.info("Queued weather stations fetch for job %s", job_id)

    response.headers["Location"] = f"/jobs/{job_id}"
    return StartJobResponse(
        jobId=job_id,
        status=record.status.value,
        message="Job created successfully. Processing has started.",
        createdAt=record.created_at,
    )


@app.get("/jobs", response_model=JobListResponse)
def list_jobs(top: int = DEFAULT_LIST_TOP, services: Services = Depends(get_services)):
    if top <= 0 or top > MAX_ITEMS_LIMIT:
        top = DEFAULT_LIST_TOP
    records = services.job_store.list_jobs(limit=top)
    jobs = [
        JobSummary(
            jobId=r.job_id,
            status=r.status.value,
            totalItems=r.total_items or 0,
            processedItems=r.processed_items,
            imageCount=len(r.result_urls),
            createdAt=r.created_at,
            completedAt=r.completed_at,
        )
        for r in records
    ]
    logger.info("Retrieved %d jobs", len(jobs))
    return JobListResponse(totalCount=len(jobs), jobs=jobs)


@app.get("/jobs/{job_id}", response_model=JobResultsResponse)
def get_job(job_id: str, services: Services = Depends(get_services)):
    try:
        uuid.UUID(job_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="jobId must be a valid UUID") from exc

    record = services.job_store.get(job_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Job not found")

    logger.info(
        "Job %s - Status: %s, Progress: %d/%s",
        job_id,
        record.status.value,
        record.processed_items,
        record.total_items,
    )
    return JobResultsResponse(
        jobId=record.job_id,
        status=record.status.value,
        totalItems=record.total_items or 0,
        processedItems=record.processed_items,
        progressPercentage=record.progress_percentage(),
        resultUrls=list(record.result_urls),
        totalImages=len(record.result_urls),
        createdAt=record.created_at,
        completedAt=record.completed_at,
        durationSeconds=record.duration_seconds(),
        errorMessage=record.error_message,
    )
