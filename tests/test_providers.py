"""Tests for the Buienradar and Unsplash provider clients."""

from unittest.mock import MagicMock

import pytest

from weather_image_service.errors import ExternalServiceError, ImageProviderError
from weather_image_service.providers import (
    BuienradarDataProvider,
    UnsplashImageProvider,
    build_providers,
    parse_station_feed,
)

FEED = {
    "actual": {
        "stationmeasurements": [
            {
                "stationid": 6260,
                "stationname": "Meetstation De Bilt",
                "lat": 52.1,
                "lon": 5.18,
                "regio": "Utrecht",
                "temperature": 7.4,
            },
            {"stationid": 6269, "stationname": "Meetstation Lelystad", "regio": "Lelystad"},
            {"stationid": 6999, "stationname": "  "},
            "garbage",
            {
                "stationid": 6270,
                "stationname": "Meetstation Leeuwarden",
                "regio": "",
                "temperature": "",
                "lat": "53.22",
            },
        ]
    }
}


def test_parse_station_feed_normalizes_entries():
    items = parse_station_feed(FEED)
    assert [i.id for i in items] == ["6260", "6269", "6270"]
    first = items[0]
    assert first.name == "Meetstation De Bilt"
    assert first.region == "Utrecht"
    assert first.measurement == 7.4
    assert (first.latitude, first.longitude) == (52.1, 5.18)
    assert items[1].measurement is None
    assert items[2].region is None
    assert items[2].measurement is None
    assert items[2].latitude == 53.22


def test_parse_station_feed_without_measurements_is_empty():
    assert parse_station_feed({"actual": {}}) == []
    assert parse_station_feed({"actual": {"stationmeasurements": None}}) == []


@pytest.mark.parametrize(
    "payload",
    [
        None,
        ["not", "a", "feed"],
        {"actual": None},
        {"actual": "maintenance"},
        {"actual": {"stationmeasurements": "maintenance"}},
    ],
)
def test_parse_station_feed_rejects_malformed_payloads(payload):
    with pytest.raises(ExternalServiceError):
        parse_station_feed(payload)


def test_parse_station_feed_skips_stations_without_id():
    feed = {
        "actual": {
            "stationmeasurements": [
                {"stationname": "Meetstation Zonder Id"},
                {"stationid": "", "stationname": "Meetstation Leeg"},
                {"stationid": "  ", "stationname": "Meetstation Spatie"},
                {"stationid": 6260, "stationname": "Meetstation De Bilt"},
            ]
        }
    }
    assert [i.id for i in parse_station_feed(feed)] == ["6260"]


def test_data_provider_applies_limit():
    http = MagicMock()
    http.get_json.return_value = FEED
    provider = BuienradarDataProvider(http, "https://feed.test/json")
    assert len(provider.fetch_candidates()) == 3
    assert [i.id for i in provider.fetch_candidates(limit=1)] == ["6260"]
    http.get_json.assert_called_with("https://feed.test/json")


def test_data_provider_propagates_upstream_errors():
    http = MagicMock()
    http.get_json.side_effect = ExternalServiceError("down", status_code=503)
    with pytest.raises(ExternalServiceError):
        BuienradarDataProvider(http, "https://feed.test/json").fetch_candidates()


def test_image_provider_downloads_regular_url():
    http = MagicMock()
    http.get_json.return_value = {"urls": {"regular": "https://images.test/photo.jpg"}}
    http.get.return_value.content = b"jpeg-bytes"
    provider = UnsplashImageProvider(http, "https://api.test/photos/random", "secret")

    assert provider.fetch_image("clouds") == b"jpeg-bytes"

    args, kwargs = http.get_json.call_args
    assert args == ("https://api.test/photos/random",)
    assert kwargs["params"] == {"query": "clouds"}
    assert kwargs["headers"]["Authorization"] == "Client-ID secret"
    assert kwargs["headers"]["Accept-Version"] == "v1"
    http.get.assert_called_once_with("https://images.test/photo.jpg")


def test_image_provider_without_url_raises():
    http = MagicMock()
    http.get_json.return_value = {"urls": {}}
    provider = UnsplashImageProvider(http, "https://api.test/photos/random", "secret")
    with pytest.raises(ImageProviderError):
        provider.fetch_image("clouds")
    http.get.assert_not_called()


def test_image_provider_without_key_raises_before_calling():
    http = MagicMock()
    with pytest.raises(ImageProviderError):
        UnsplashImageProvider(http, "https://api.test/photos/random", None).fetch_image("clouds")
    http.get_json.assert_not_called()


def test_build_providers_share_one_client(settings):
    data, image = build_providers(settings)
    assert data.http is image.http
    assert data.feed_url == settings.data_provider_url
    assert image.access_key == "test-key"
