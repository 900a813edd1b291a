from __future__ import annotations

import json
from unittest import mock

import requests
from django.test import SimpleTestCase, override_settings

from accidents.records import Coordinates
from geocoding.cache import GeocodeCache, location_key


def _response(payload=None, status_code: int = 200) -> mock.Mock:
    resp = mock.Mock()
    resp.status_code = status_code
    resp.json.return_value = payload
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status_code}")
    return resp


class GeocodeCacheTests(SimpleTestCase):
    def setUp(self) -> None:
        self.session = mock.Mock()
        self.cache = GeocodeCache("https://kv.test/", "secret-token", session=self.session)

    def test_memory_only_without_kv_settings(self) -> None:
        cache = GeocodeCache(session=self.session)
        key = location_key("Nome, AK, USA")

        self.assertFalse(cache.remote_enabled)
        self.assertIsNone(cache.get(key))
        cache.put(key, Coordinates(64.5, -165.4))

        self.assertEqual(cache.get(key), Coordinates(64.5, -165.4))
        self.session.get.assert_not_called()

    def test_kv_hit_is_decoded_and_memoised(self) -> None:
        self.session.get.return_value = _response({"result": json.dumps({"lat": 61.2, "lng": -149.9})})
        key = location_key("Anchorage, AK, USA")

        first = self.cache.get(key)
        second = self.cache.get(key)

        self.assertEqual(first, Coordinates(61.2, -149.9))
        self.assertEqual(second, first)
        self.assertEqual(self.session.get.call_count, 1)
        url = self.session.get.call_args.args[0]
        self.assertTrue(url.startswith("https://kv.test/get/geo%3Aanchorage"))
        self.assertEqual(
            self.session.get.call_args.kwargs["headers"],
            {"Authorization": "Bearer secret-token"},
        )

    def test_kv_miss_returns_none(self) -> None:
        self.session.get.return_value = _response({"result": None})

        self.assertIsNone(self.cache.get(location_key("Nowhere")))

    def test_kv_read_failure_reads_as_miss(self) -> None:
        self.session.get.side_effect = requests.ConnectionError("down")

        with self.assertLogs("geocoding.cache", level="WARNING"):
            self.assertIsNone(self.cache.get(location_key("Juneau, AK, USA")))

    def test_put_writes_through_to_kv(self) -> None:
        self.session.get.return_value = _response({"result": "OK"})
        key = location_key("Bethel, AK, USA")

        self.cache.put(key, Coordinates(60.79, -161.75))

        url = self.session.get.call_args.args[0]
        self.assertTrue(url.startswith("https://kv.test/set/geo%3Abethel"))
        self.assertIn("%22lat%22%3A%2060.79", url)

    def test_put_failure_is_logged_and_swallowed(self) -> None:
        self.session.get.side_effect = requests.Timeout("slow")
        key = location_key("Kodiak, AK, USA")

        with self.assertLogs("geocoding.cache", level="WARNING"):
            self.cache.put(key, Coordinates(57.79, -152.4))

        # The in-process layer still answers for the rest of the run.
        self.session.get.side_effect = AssertionError("KV must not be consulted")
        self.assertEqual(self.cache.get(key), Coordinates(57.79, -152.4))

    def test_put_http_error_is_swallowed(self) -> None:
        self.session.get.return_value = _response(status_code=500)

        with self.assertLogs("geocoding.cache", level="WARNING"):
            self.cache.put(location_key("Sitka, AK, USA"), Coordinates(57.05, -135.33))

    @override_settings(GEOCODE_CACHE_URL="https://kv.settings/", GEOCODE_CACHE_TOKEN="tok", GEOCODE_CACHE_TIMEOUT_SEC=2)
    def test_from_settings(self) -> None:
        cache = GeocodeCache.from_settings()

        self.assertTrue(cache.remote_enabled)
        self.assertEqual(cache.url, "https://kv.settings")
        self.assertEqual(cache.timeout, 2.0)
