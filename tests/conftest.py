"""
Shared test fixtures.

Provides: test settings, in-memory stores/transports, fake providers and an
image factory.
"""

from io import BytesIO
import threading
from types import SimpleNamespace

import pytest
from PIL import Image

from weather_image_service.compositor import CompositorOptions
from weather_image_service.config import Settings
from weather_image_service.job_store import InMemoryJobStore
from weather_image_service.models import CandidateItem
from weather_image_service.object_store import InMemoryObjectStore
from weather_image_service.queues import InMemoryQueueTransport
from weather_image_service.services import Services


class FakeDataProvider:
    def __init__(self, candidates=None, error=None):
        self.candidates = list(candidates or [])
        self.error = error
        self.calls = []

    def fetch_candidates(self, limit=None):
        self.calls.append(limit)
        if self.error is not None:
            raise self.error
        return self.candidates[:limit] if limit is not None else list(self.candidates)


class FakeImageProvider:
    """Returns queued outcomes in order; an exception outcome is raised."""

    def __init__(self, outcomes=None, default=None):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.keywords = []
        self._lock = threading.Lock()

    def fetch_image(self, keyword):
        with self._lock:
            self.keywords.append(keyword)
            outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_image_bytes(width=640, height=480, color=(30, 120, 200), fmt="JPEG"):
    buffer = BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def make_candidates(count=5):
    return [
        CandidateItem(
            id=str(6200 + i),
            name=f"Meetstation {i}",
            latitude=52.0 + i / 10,
            longitude=4.0 + i / 10,
            measurement=10.0 + i,
            region=f"Regio {i}",
        )
        for i in range(count)
    ]


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        storage_backend="memory",
        unsplash_access_key="test-key",
        image_max_width=320,
        image_max_height=240,
        placeholder_width=320,
        placeholder_height=240,
        overlay_font_size=24,
        overlay_min_font_size=10,
        watermark_text="Data: Buienradar",
        job_update_max_attempts=500,
        http_backoff_factor=0.0,
        selection_hard_cap=50,
        selection_fallback_cap=10,
    )


@pytest.fixture
def options(settings):
    return CompositorOptions.from_settings(settings)


@pytest.fixture
def image_bytes():
    return make_image_bytes()


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def queue():
    return InMemoryQueueTransport()


@pytest.fixture
def object_store():
    return InMemoryObjectStore()


@pytest.fixture
def data_provider():
    return FakeDataProvider(make_candidates(5))


@pytest.fixture
def image_provider(image_bytes):
    return FakeImageProvider(default=image_bytes)


@pytest.fixture
def services(settings, job_store, queue, object_store, data_provider, image_provider):
    return Services(
        settings=settings,
        job_store=job_store,
        queue=queue,
        object_store=object_store,
        data_provider=data_provider,
        image_provider=image_provider,
    )


@pytest.fixture
def fakes():
    """Factories for tests that need their own provider fakes or sample data."""
    return SimpleNamespace(
        DataProvider=FakeDataProvider,
        ImageProvider=FakeImageProvider,
        image_bytes=make_image_bytes,
        candidates=make_candidates,
    )
