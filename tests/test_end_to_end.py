"""Full flow through the in-memory backend: submit, fan out, fan in, poll."""

from fastapi.testclient import TestClient

from weather_image_service.api import app
from weather_image_service.errors import ImageProviderError
from weather_image_service.queue_worker import build_consumers
from weather_image_service.services import get_services


def _run_consumers(services):
    consumers = build_consumers(services, "all")
    try:
        for consumer in consumers:
            consumer.wait_seconds = 0
            consumer.drain()
    finally:
        for consumer in consumers:
            consumer.close()


def test_job_completes_even_when_one_item_fails(services, fakes, image_bytes):
    services.image_provider = fakes.ImageProvider(
        [image_bytes, ImageProviderError("rate limited"), image_bytes]
    )
    services.settings = services.settings.model_copy(update={"use_placeholder_on_error": False})
    app.dependency_overrides[get_services] = lambda: services
    try:
        client = TestClient(app)
        response = client.post("/jobs", json={"searchKeyword": "clouds", "maxItems": 3})
        assert response.status_code == 202
        job_id = response.json()["jobId"]

        _run_consumers(services)

        data = client.get(f"/jobs/{job_id}").json()
    finally:
        app.dependency_overrides.clear()

    assert data["status"] == "Completed"
    assert data["totalItems"] == 3
    assert data["processedItems"] == 3
    assert data["progressPercentage"] == 100
    assert len(data["resultUrls"]) == 2
    assert data["completedAt"] is not None
    assert services.image_provider.keywords == ["clouds"] * 3
    assert len(services.object_store.objects) == 2


def test_placeholders_count_as_results(services, fakes, image_bytes):
    services.image_provider = fakes.ImageProvider([ImageProviderError("no photo")], default=image_bytes)
    app.dependency_overrides[get_services] = lambda: services
    try:
        client = TestClient(app)
        job_id = client.post("/jobs", json={"searchKeyword": "fog", "maxItems": 2}).json()["jobId"]
        _run_consumers(services)
        data = client.get(f"/jobs/{job_id}").json()
    finally:
        app.dependency_overrides.clear()

    assert data["status"] == "Completed"
    assert data["processedItems"] == 2
    assert len(data["resultUrls"]) == 2


def test_filter_that_matches_nothing_in_strict_mode_fails_job(services):
    services.settings = services.settings.model_copy(update={"locality_strict": True})
    app.dependency_overrides[get_services] = lambda: services
    try:
        client = TestClient(app)
        job_id = client.post(
            "/jobs", json={"searchKeyword": "snow", "city": "Atlantis", "maxItems": 2}
        ).json()["jobId"]
        _run_consumers(services)
        data = client.get(f"/jobs/{job_id}").json()
    finally:
        app.dependency_overrides.clear()

    assert data["status"] == "Failed"
    assert "Atlantis" in data["errorMessage"]
    assert data["processedItems"] == 0
    assert services.queue.bodies(services.settings.process_item_queue_name) == []
