"""Exception hierarchy shared by the dispatcher, workers and adapters."""

from __future__ import annotations

from typing import Optional


class WeatherImageError(Exception):
    """Base class for service errors."""


class ExternalServiceError(WeatherImageError):
    """An upstream HTTP call failed and will not be retried any further."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class RateLimitedError(ExternalServiceError):
    """Upstream kept rate limiting after the retry budget was spent."""


class UpstreamServerError(ExternalServiceError):
    """Upstream kept answering with 5xx after the retry budget was spent."""


class ImageProviderError(ExternalServiceError):
    """The image provider answered but gave us nothing usable."""


class JobStoreError(WeatherImageError):
    pass


class JobAlreadyExistsError(JobStoreError):
    pass


class VersionConflictError(JobStoreError):
    """The record changed between read and conditional write."""


class JobUpdateConflictError(JobStoreError):
    """Gave up on a read-modify-write after too many conflicting writers."""


class NoMatchingItemsError(WeatherImageError):
    """Strict locality filtering left nothing to process."""


class InvalidImageError(ValueError):
    """Image bytes are empty or cannot be decoded."""
