"""
Shared HTTP client for the external data and image providers.

Retries live in the transport: a `urllib3` `Retry` mounted on the session's
`HTTPAdapter` re-issues rate-limited and 5xx requests, honouring a capped
`Retry-After` and otherwise backing off with jitter. Whatever the adapter
finally hands back is mapped onto the service's error types so callers can
choose their own fallback.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from typing import Any, List, Mapping, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import InvalidHeader, MaxRetryError, ResponseError
from urllib3.util.retry import Retry

from . import config
from .errors import ExternalServiceError, RateLimitedError, UpstreamServerError

logger = logging.getLogger(__name__)

RETRY_STATUSES = frozenset([403, 429]) | frozenset(range(500, 600))


def quota_exhausted(headers: Mapping[str, str]) -> bool:
    # Unsplash signals an exhausted quota with 403 and a zero remaining count.
    return headers.get("X-Ratelimit-Remaining") == "0"


def is_rate_limited(resp: requests.Response) -> bool:
    if resp.status_code == 429:
        return True
    return resp.status_code == 403 and quota_exhausted(resp.headers)


class ProviderRetry(Retry):
    """`Retry` that caps `Retry-After` and only retries a 403 when the quota ran out."""

    def __init__(self, *args: Any, retry_after_cap: float = 30.0, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.retry_after_cap = retry_after_cap

    def new(self, **kw: Any) -> "ProviderRetry":
        retry = super().new(**kw)
        retry.retry_after_cap = self.retry_after_cap
        return retry

    def increment(self, method=None, url=None, response=None, error=None, _pool=None, _stacktrace=None):
        if response is not None and response.status == 403 and not quota_exhausted(response.headers):
            # With raise_on_status=False the pool hands the 403 back to the caller.
            raise MaxRetryError(_pool, url, ResponseError("403 without exhausted quota"))
        if response is not None:
            logger.warning(
                "%s %s returned %s (limit=%s, remaining=%s); retrying",
                method,
                url,
                response.status,
                response.headers.get("X-Ratelimit-Limit", "unknown"),
                response.headers.get("X-Ratelimit-Remaining", "unknown"),
            )
        return super().increment(
            method, url, response=response, error=error, _pool=_pool, _stacktrace=_stacktrace
        )

    def get_retry_after(self, response) -> Optional[float]:
        try:
            retry_after = super().get_retry_after(response)
        except InvalidHeader:
            logger.debug("Ignoring unparseable Retry-After %r", response.headers.get("Retry-After"))
            return None
        if retry_after is None:
            return None
        return min(retry_after, self.retry_after_cap)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    backoff_factor: float = 0.5
    backoff_max_seconds: float = 8.0
    retry_after_cap_seconds: float = 30.0
    jitter: float = 0.25

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> "RetryPolicy":
        settings = settings or config.get_settings()
        return cls(
            max_attempts=settings.http_max_attempts,
            backoff_factor=settings.http_backoff_factor,
            backoff_max_seconds=settings.http_backoff_max_seconds,
            retry_after_cap_seconds=settings.retry_after_cap_seconds,
        )

    def build_retry(self) -> ProviderRetry:
        """
        Retry for GETs against the providers.

        Connection and read errors are not retried; only rate-limit and 5xx
        answers are, up to `max_attempts` requests in total.
        """
        return ProviderRetry(
            total=max(self.max_attempts - 1, 0),
            connect=0,
            read=0,
            other=0,
            redirect=5,
            status_forcelist=RETRY_STATUSES,
            allowed_methods=frozenset(["GET", "HEAD"]),
            backoff_factor=self.backoff_factor,
            backoff_max=self.backoff_max_seconds,
            backoff_jitter=self.jitter,
            respect_retry_after_header=True,
            raise_on_status=False,
            retry_after_cap=self.retry_after_cap_seconds,
        )


class HttpClient:
    """requests sessions with timeouts and adapter-level retries, one session per thread."""

    def __init__(
        self,
        timeout: Tuple[float, float] = (5.0, 30.0),
        user_agent: str = "WeatherImageService/1.0",
        policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self.user_agent = user_agent
        self.policy = policy or RetryPolicy()
        self._shared_session = session
        self._local = threading.local()
        self._sessions: List[requests.Session] = []
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> "HttpClient":
        settings = settings or config.get_settings()
        return cls(
            timeout=(settings.connect_timeout_seconds, settings.request_timeout_seconds),
            user_agent=settings.user_agent,
            policy=RetryPolicy.from_settings(settings),
        )

    def _new_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update({"User-Agent": self.user_agent})
        adapter = HTTPAdapter(max_retries=self.policy.build_retry(), pool_connections=10, pool_maxsize=20)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    @property
    def session(self) -> requests.Session:
        if self._shared_session is not None:
            return self._shared_session
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._new_session()
            self._local.session = session
            with self._lock:
                self._sessions.append(session)
        return session

    def get(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> requests.Response:
        try:
            resp = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ExternalServiceError(f"GET {url} failed: {exc}", url=url) from exc

        attempts = self.policy.max_attempts
        if is_rate_limited(resp):
            raise RateLimitedError(
                f"GET {url} still rate limited after up to {attempts} attempts",
                status_code=resp.status_code,
                url=url,
            )
        if resp.status_code >= 500:
            raise UpstreamServerError(
                f"GET {url} returned {resp.status_code} after up to {attempts} attempts",
                status_code=resp.status_code,
                url=url,
            )
        if resp.status_code >= 400:
            raise ExternalServiceError(
                f"GET {url} returned {resp.status_code}", status_code=resp.status_code, url=url
            )
        return resp

    def get_json(self, url: str, **kwargs: Any) -> Any:
        resp = self.get(url, **kwargs)
        try:
            return resp.json()
        except ValueError as exc:
            preview = resp.text[:200].replace("\n", " ")
            raise ExternalServiceError(
                f"JSON decode failed for {url!r}; body starts: {preview!r}", url=url
            ) from exc

    def close(self) -> None:
        with self._lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
        if self._shared_session is not None:
            self._shared_session.close()
