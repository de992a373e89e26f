"""Unit tests for the Nominatim geocoder (mocked session)."""

from unittest.mock import MagicMock

import pytest
import requests

from harvester.config.settings import Settings
from harvester.enrichment.geocoding import (
    GeoPoint,
    NominatimGeocoder,
    NullGeocoder,
    build_geocoder,
)
from harvester.errors import EnrichmentError
from harvester.runtime.resilience import RetryPolicy

URL = "https://nominatim.example/search"
PARADISO = [{"lat": "52.3622", "lon": "4.8838", "display_name": "Paradiso, Weteringschans, Amsterdam"}]


def _response(status=200, payload=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload if payload is not None else []
    return resp


def _geocoder(session, max_retries=2):
    sleeps = []
    geocoder = NominatimGeocoder(
        URL,
        user_agent="harvester-tests",
        rps=1000,
        retry_policy=RetryPolicy(max_retries=max_retries, base_delay_s=0.1, jitter=0),
        session=session,
        sleep=sleeps.append,
    )
    return geocoder, sleeps


class TestNominatimGeocoder:
    def test_hit(self):
        session = MagicMock()
        session.get.return_value = _response(payload=PARADISO)
        geocoder, _ = _geocoder(session)

        point = geocoder.geocode("Paradiso, Amsterdam")

        assert point == GeoPoint(52.3622, 4.8838, "Paradiso, Weteringschans, Amsterdam")
        _, kwargs = session.get.call_args
        assert kwargs["params"] == {"q": "Paradiso, Amsterdam", "format": "json", "limit": 1}
        assert session.headers.__setitem__.called

    def test_miss_is_none(self):
        session = MagicMock()
        session.get.return_value = _response(payload=[])
        geocoder, _ = _geocoder(session)

        assert geocoder.geocode("Nowhere in particular") is None

    def test_results_are_cached(self):
        session = MagicMock()
        session.get.return_value = _response(payload=PARADISO)
        geocoder, _ = _geocoder(session)

        geocoder.geocode("Paradiso")
        geocoder.geocode("  PARADISO ")

        assert session.get.call_count == 1

    def test_blank_query(self):
        session = MagicMock()
        geocoder, _ = _geocoder(session)

        assert geocoder.geocode("   ") is None
        session.get.assert_not_called()

    def test_rate_limited_then_ok(self):
        session = MagicMock()
        session.get.side_effect = [_response(429), _response(payload=PARADISO)]
        geocoder, sleeps = _geocoder(session)

        assert geocoder.geocode("Paradiso").latitude == 52.3622
        assert sleeps == [0.1]

    def test_persistent_outage_raises_retryable(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("down")
        geocoder, _ = _geocoder(session, max_retries=1)

        with pytest.raises(EnrichmentError) as exc:
            geocoder.geocode("Paradiso")
        assert exc.value.retryable is True
        assert session.get.call_count == 2

    def test_client_error_is_not_retried(self):
        session = MagicMock()
        session.get.return_value = _response(403)
        geocoder, _ = _geocoder(session)

        with pytest.raises(EnrichmentError) as exc:
            geocoder.geocode("Paradiso")
        assert exc.value.retryable is False
        assert session.get.call_count == 1

    def test_invalid_json(self):
        resp = _response()
        resp.json.side_effect = ValueError("Expecting value")
        session = MagicMock()
        session.get.return_value = resp
        geocoder, _ = _geocoder(session, max_retries=0)

        with pytest.raises(EnrichmentError, match="invalid JSON"):
            geocoder.geocode("Paradiso")


def test_build_geocoder():
    assert isinstance(build_geocoder(Settings(_env_file=None, GEOCODER_URL=None)), NullGeocoder)
    assert isinstance(build_geocoder(Settings(_env_file=None, GEOCODER_URL=URL)), NominatimGeocoder)
    assert NullGeocoder().geocode("anything") is None
