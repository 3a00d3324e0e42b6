"""Fan-in progress aggregation under concurrency."""

from concurrent.futures import ThreadPoolExecutor

from weather_image_service.models import JobRecord, JobStatus
from weather_image_service.progress import advance_progress, mark_failed


def _start_job(job_store, total_items, job_id="job-1"):
    job_store.create(
        JobRecord(
            job_id=job_id,
            status=JobStatus.PROCESSING,
            search_keyword="clouds",
            max_items=total_items,
            total_items=total_items,
        )
    )


def test_concurrent_advances_lose_no_increment(job_store):
    total = 40
    _start_job(job_store, total)

    with ThreadPoolExecutor(max_workers=16) as pool:
        outcomes = list(
            pool.map(
                lambda i: advance_progress(job_store, "job-1", f"item-{i}", f"memory://b/{i}.jpg", max_attempts=1000),
                range(total),
            )
        )

    record = job_store.get("job-1")
    assert record.processed_items == total
    assert sorted(record.processed_item_ids) == sorted(f"item-{i}" for i in range(total))
    assert len(record.result_urls) == total
    assert record.status is JobStatus.COMPLETED
    assert record.completed_at is not None
    assert all(o.applied for o in outcomes)
    assert sum(o.completed for o in outcomes) == 1


def test_duplicate_item_is_counted_once(job_store):
    _start_job(job_store, 3)
    first = advance_progress(job_store, "job-1", "item-a", "memory://b/a.jpg")
    again = advance_progress(job_store, "job-1", "item-a", "memory://b/a-2.jpg")

    assert first.applied
    assert not again.applied
    assert again.reason == "item already counted"
    record = job_store.get("job-1")
    assert record.processed_items == 1
    assert record.result_urls == ["memory://b/a.jpg"]


def test_item_without_result_is_still_counted(job_store):
    _start_job(job_store, 1)
    outcome = advance_progress(job_store, "job-1", "item-a", None)
    assert outcome.completed
    record = job_store.get("job-1")
    assert record.processed_items == 1
    assert record.result_urls == []


def test_terminal_job_is_left_untouched(job_store):
    _start_job(job_store, 2)
    mark_failed(job_store, "job-1", "No weather stations found")
    outcome = advance_progress(job_store, "job-1", "item-a", "memory://b/a.jpg")

    assert not outcome.applied
    record = job_store.get("job-1")
    assert record.status is JobStatus.FAILED
    assert record.processed_items == 0


def test_missing_job_reports_not_found(job_store):
    outcome = advance_progress(job_store, "nope", "item-a")
    assert not outcome.applied
    assert outcome.record is None
    assert outcome.reason == "job not found"


def test_progress_before_total_is_known_never_completes(job_store):
    job_store.create(JobRecord(job_id="job-1", status=JobStatus.PROCESSING, search_keyword="x", max_items=2))
    outcome = advance_progress(job_store, "job-1", "item-a")
    assert outcome.applied
    assert not outcome.completed
    assert job_store.get("job-1").status is JobStatus.PROCESSING


def test_mark_failed_does_not_override_completed(job_store):
    _start_job(job_store, 1)
    advance_progress(job_store, "job-1", "item-a")
    record = mark_failed(job_store, "job-1", "too late")
    assert record.status is JobStatus.COMPLETED
    assert record.error_message is None


def test_progress_percentage_and_duration(job_store):
    _start_job(job_store, 3)
    advance_progress(job_store, "job-1", "item-a")
    record = job_store.get("job-1")
    assert record.progress_percentage() == 33
    assert record.duration_seconds() >= 0
