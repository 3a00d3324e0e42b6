"""
Clients for the two upstream providers.

 - Buienradar: bulk feed of current station measurements (candidate items)
 - Unsplash: random photo by keyword (image source for each item)
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from . import config
from .errors import ExternalServiceError, ImageProviderError
from .http_client import HttpClient
from .models import CandidateItem

logger = logging.getLogger(__name__)


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_station_feed(payload: Any) -> List[CandidateItem]:
    """Normalize `actual.stationmeasurements[]` into candidate items, feed order kept."""
    if not isinstance(payload, dict):
        raise ExternalServiceError(f"Unexpected station feed payload: {type(payload).__name__}")
    actual = payload.get("actual")
    if not isinstance(actual, dict):
        raise ExternalServiceError("Station feed has no 'actual' section")
    measurements = actual.get("stationmeasurements")
    if measurements is None:
        return []
    if not isinstance(measurements, list):
        raise ExternalServiceError("Station feed 'stationmeasurements' is not a list")
    items: List[CandidateItem] = []
    for raw in measurements:
        if not isinstance(raw, dict):
            continue
        name = (raw.get("stationname") or "").strip()
        station_id = str(raw.get("stationid") or "").strip()
        if not name or not station_id:
            continue
        region = raw.get("regio")
        items.append(
            CandidateItem(
                id=station_id,
                name=name,
                latitude=_to_float(raw.get("lat")),
                longitude=_to_float(raw.get("lon")),
                measurement=_to_float(raw.get("temperature")),
                region=region.strip() if isinstance(region, str) and region.strip() else None,
            )
        )
    return items


class BuienradarDataProvider:
    def __init__(self, http: HttpClient, feed_url: str):
        self.http = http
        self.feed_url = feed_url

    def fetch_candidates(self, limit: Optional[int] = None) -> List[CandidateItem]:
        logger.info("Fetching weather stations from %s", self.feed_url)
        stations = parse_station_feed(self.http.get_json(self.feed_url))
        if not stations:
            logger.warning("No station measurements found in provider response")
        if limit is not None:
            stations = stations[:limit]
        logger.info("Fetched %d weather stations", len(stations))
        return stations


class UnsplashImageProvider:
    def __init__(self, http: HttpClient, api_url: str, access_key: Optional[str]):
        self.http = http
        self.api_url = api_url
        self.access_key = access_key

    def fetch_image(self, keyword: str) -> bytes:
        """
        Download one random photo for `keyword`.

        Raises:
            ExternalServiceError: provider unavailable, rate limited or
                misconfigured (ImageProviderError for the latter).
        """
        if not self.access_key:
            raise ImageProviderError("Unsplash access key is not configured")

        meta = self.http.get_json(
            self.api_url,
            params={"query": keyword},
            headers={
                "Accept": "application/json",
                "Accept-Version": "v1",
                "Authorization": f"Client-ID {self.access_key}",
            },
        )
        image_url = ((meta or {}).get("urls") or {}).get("regular") if isinstance(meta, dict) else None
        if not image_url:
            raise ImageProviderError("No image URL found in Unsplash response", url=self.api_url)

        return self.http.get(image_url).content


def build_providers(settings: Optional[config.Settings] = None):
    settings = settings or config.get_settings()
    http = HttpClient.from_settings(settings)
    return (
        BuienradarDataProvider(http, settings.data_provider_url),
        UnsplashImageProvider(http, settings.unsplash_api_url, settings.unsplash_access_key),
    )
