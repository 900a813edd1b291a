from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest import mock

from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase

from accidents.models import AccidentRecord
from accidents.records import Coordinates
from accidents.store import StoreUnavailable, UpsertStore
from geocoding.cache import GeocodeCache
from geocoding.estimates import Estimate, EstimatedLocationTable
from geocoding.geocoder import GeocodeResult, Geocoder
from geocoding.ratelimit import RateLimiter
from ingestion.models import IngestionRun
from ingestion.normalizer import RecordNormalizer
from ingestion.orchestrator import (
    IngestionAborted,
    IngestionOrchestrator,
    RunState,
    RunStatistics,
)
from ingestion.sources import FetchError, IngestionParams, SourceAdapter


class FakeAdapter(SourceAdapter):
    name = "fake"

    def __init__(self, records: List[Any], *, parse_failures: int = 0, error: Optional[Exception] = None) -> None:
        super().__init__()
        self.records = records
        self._failures = parse_failures
        self.error = error

    def fetch(self, params):
        self.parse_failures = self._failures
        if self.error is not None:
            raise self.error
        yield from self.records


def raw(key: str, city: Optional[str] = None, **extra) -> Dict[str, Any]:
    record = {"ev_id": key, "ev_date": "2024-01-15", "ev_city": city, "ev_state": "AK", "ev_country": "USA"}
    record.update(extra)
    return record


def geocode_hit(lat: float, lng: float, *, coarse: bool = False, from_cache: bool = False) -> GeocodeResult:
    return GeocodeResult(Coordinates(lat, lng), "query", "region_country" if coarse else "city_country", coarse, from_cache)


ESTIMATES = EstimatedLocationTable([Estimate("SHIP SHOAL", Coordinates(28.8, -91.0), "Gulf of Mexico oil rig block")])


class OrchestratorTestMixin:
    def setUp(self) -> None:
        super().setUp()
        self.geocoder = mock.Mock(spec=Geocoder)
        self.geocoder.resolve.return_value = None

    def make_orchestrator(self, records, **kwargs) -> IngestionOrchestrator:
        adapter = kwargs.pop("adapter", None) or FakeAdapter(records)
        kwargs.setdefault("geocoder", self.geocoder)
        kwargs.setdefault("estimates", ESTIMATES)
        kwargs.setdefault("normalizer", RecordNormalizer(source=adapter.name))
        return IngestionOrchestrator(adapter, **kwargs)


class IngestionOrchestratorTests(OrchestratorTestMixin, TestCase):
    def test_mixed_batch_counts_every_outcome(self) -> None:
        def resolve(city, region, country):
            return geocode_hit(61.58, -149.44) if city == "Wasilla" else None

        self.geocoder.resolve.side_effect = resolve
        records = [
            raw("A1", "Anchorage", latitude=61.17, longitude=-149.99),
            raw("A2", "Wasilla"),
            raw("A3", "Ship Shoal 208"),
            raw("A4", "Nowhere Creek"),
            {"ev_date": "2024-01-15"},
            {"ev_id": "A6"},
        ]

        stats = self.make_orchestrator(records).run(IngestionParams())

        self.assertEqual(stats.records_seen, 6)
        self.assertEqual(stats.inserted, 4)
        self.assertEqual(stats.geocoded, 1)
        self.assertEqual(stats.estimated, 1)
        self.assertEqual(stats.unresolved, 1)
        self.assertEqual(stats.skipped_no_key, 1)
        self.assertEqual(stats.skipped_no_date, 1)
        self.assertEqual(stats.failed, 0)
        self.assertEqual(stats.state, RunState.DONE)
        self.assertFalse(stats.cancelled)

        rows = {r.external_key: r for r in AccidentRecord.objects.all()}
        self.assertEqual(rows["A1"].coordinates_source, "upstream")
        self.assertEqual(rows["A2"].coordinates_source, "geocoded")
        self.assertFalse(rows["A2"].coordinates_estimated)
        self.assertEqual(rows["A3"].coordinates_source, "estimated")
        self.assertTrue(rows["A3"].coordinates_estimated)
        self.assertFalse(rows["A4"].has_coordinates)

    def test_records_with_coordinates_are_not_geocoded(self) -> None:
        self.make_orchestrator([raw("A1", "Anchorage", latitude=61.17, longitude=-149.99)]).run()

        self.geocoder.resolve.assert_not_called()

    def test_invalid_upstream_coordinates_go_through_geocoder(self) -> None:
        self.geocoder.resolve.return_value = geocode_hit(39.53, -119.81)

        stats = self.make_orchestrator([raw("R1", "Reno", latitude=91, longitude=10)]).run()

        self.geocoder.resolve.assert_called_once_with("Reno", "AK", "USA")
        self.assertEqual(stats.geocoded, 1)
        self.assertEqual(AccidentRecord.objects.get().latitude, Decimal("39.53"))

    def test_cache_hits_are_counted_separately(self) -> None:
        self.geocoder.resolve.return_value = geocode_hit(61.2, -149.9, from_cache=True)

        stats = self.make_orchestrator([raw("C1", "Anchorage")]).run()

        self.assertEqual(stats.geocode_cache_hits, 1)
        self.assertEqual(stats.geocoded, 0)

    def test_coarse_geocode_is_flagged_estimated(self) -> None:
        self.geocoder.resolve.return_value = geocode_hit(64.0, -150.0, coarse=True)

        self.make_orchestrator([raw("C2", "Unknown Strip")]).run()

        row = AccidentRecord.objects.get()
        self.assertTrue(row.coordinates_estimated)
        self.assertEqual(row.coordinates_source, "geocoded")

    def test_geocoding_can_be_disabled(self) -> None:
        stats = self.make_orchestrator([raw("N1", "Nome")], geocode=False, geocoder=None, estimates=None).run()

        self.assertEqual(stats.inserted, 1)
        self.assertEqual(stats.unresolved, 1)
        self.geocoder.resolve.assert_not_called()

    def test_existing_keys_are_skipped_by_default(self) -> None:
        records = [raw("D1", "Kenai", latitude=60.55, longitude=-151.25)]
        self.make_orchestrator(records).run()

        stats = self.make_orchestrator(records).run()

        self.assertEqual(stats.skipped_duplicate, 1)
        self.assertEqual(stats.inserted, 0)
        self.assertEqual(AccidentRecord.objects.count(), 1)

    def test_refresh_existing_updates(self) -> None:
        self.make_orchestrator([raw("D1", "Kenai", latitude=60.55, longitude=-151.25)]).run()

        stats = self.make_orchestrator([raw("D1", "Soldotna")], refresh_existing=True).run()

        self.assertEqual(stats.updated, 1)
        row = AccidentRecord.objects.get()
        self.assertEqual(row.city, "Soldotna")
        # Unresolved refresh keeps the stored position.
        self.assertEqual(row.latitude, Decimal("60.55"))

    def test_parse_failures_count_as_seen_and_failed(self) -> None:
        adapter = FakeAdapter([raw("P1", "Homer", latitude=59.6, longitude=-151.5)], parse_failures=2)

        stats = self.make_orchestrator([], adapter=adapter).run()

        self.assertEqual(stats.records_seen, 3)
        self.assertEqual(stats.failed, 2)
        self.assertEqual(stats.inserted, 1)

    def test_store_error_fails_one_record_and_run_continues(self) -> None:
        store = UpsertStore()
        real_upsert = store.upsert

        def flaky_upsert(record):
            if record.external_key == "BAD":
                raise DatabaseError("value too long")
            return real_upsert(record)

        store.upsert = flaky_upsert
        records = [raw("G1", "Bethel", lat=60.8, lng=-161.8), raw("BAD", "Bethel"), raw("G2", "Bethel", lat=60.8, lng=-161.8)]

        with self.assertLogs("ingestion.orchestrator", level="WARNING"):
            stats = self.make_orchestrator(records, store=store).run()

        self.assertEqual(stats.inserted, 2)
        self.assertEqual(stats.failed, 1)

    def test_unexpected_normalizer_error_counts_as_failed(self) -> None:
        normalizer = mock.Mock(spec=RecordNormalizer)
        normalizer.normalize.side_effect = KeyError("boom")

        with self.assertLogs("ingestion.orchestrator", level="ERROR"):
            stats = self.make_orchestrator([raw("X1")], normalizer=normalizer).run()

        self.assertEqual(stats.failed, 1)

    def test_fetch_error_aborts_without_record_writes(self) -> None:
        adapter = FakeAdapter([], error=FetchError("upstream returned 503"))

        with self.assertRaises(IngestionAborted) as ctx:
            self.make_orchestrator([], adapter=adapter).run()

        stats = ctx.exception.statistics
        self.assertEqual(stats.state, RunState.ABORTED)
        self.assertIn("503", stats.error)
        self.assertTrue(stats.is_final)
        self.assertEqual(AccidentRecord.objects.count(), 0)
        run = IngestionRun.objects.get()
        self.assertEqual(run.status, IngestionRun.Status.ABORTED)
        self.assertIn("503", run.error_message)

    def test_unexpected_adapter_error_aborts_with_statistics(self) -> None:
        adapter = FakeAdapter([], error=RuntimeError("feed layout changed"))

        with self.assertLogs("ingestion.orchestrator", level="ERROR"):
            with self.assertRaises(IngestionAborted) as ctx:
                self.make_orchestrator([], adapter=adapter).run()

        stats = ctx.exception.statistics
        self.assertEqual(stats.state, RunState.ABORTED)
        self.assertTrue(stats.is_final)
        self.assertIn("feed layout changed", stats.error)
        self.assertEqual(IngestionRun.objects.get().status, IngestionRun.Status.ABORTED)

    def test_unreachable_store_aborts(self) -> None:
        store = mock.Mock(spec=UpsertStore)

        @contextmanager
        def broken_session():
            raise StoreUnavailable("connection refused")
            yield  # pragma: no cover

        store.session.side_effect = broken_session

        with self.assertRaises(IngestionAborted) as ctx:
            self.make_orchestrator([raw("S1")], store=store).run()

        self.assertEqual(ctx.exception.statistics.state, RunState.ABORTED)
        store.upsert.assert_not_called()

    def test_cancellation_stops_between_records(self) -> None:
        store = UpsertStore()
        real_upsert = store.upsert
        records = [raw(f"K{i}", "Kotzebue", lat=66.9, lng=-162.6) for i in range(5)]
        orchestrator = self.make_orchestrator(records, store=store)

        def upsert_then_cancel(record):
            outcome = real_upsert(record)
            orchestrator.cancel()
            return outcome

        store.upsert = upsert_then_cancel

        stats = orchestrator.run()

        self.assertTrue(stats.cancelled)
        self.assertEqual(stats.inserted, 1)
        self.assertEqual(stats.state, RunState.DONE)
        self.assertEqual(IngestionRun.objects.get().status, IngestionRun.Status.CANCELLED)

    def test_finished_run_is_recorded(self) -> None:
        stats = self.make_orchestrator([raw("L1", "Kodiak", lat=57.8, lng=-152.4)], triggered_by="command").run()

        run = IngestionRun.objects.get()
        self.assertEqual(run.status, IngestionRun.Status.SUCCEEDED)
        self.assertEqual(run.source, "fake")
        self.assertEqual(run.triggered_by, "command")
        self.assertEqual(run.inserted, 1)
        self.assertEqual(run.records_seen, stats.records_seen)
        self.assertEqual(run.finished_at, stats.finished_at)

    def test_audit_failure_does_not_fail_run(self) -> None:
        with mock.patch.object(IngestionRun.objects, "create", side_effect=DatabaseError("read only")):
            with self.assertLogs("ingestion.orchestrator", level="WARNING"):
                stats = self.make_orchestrator([raw("M1", "Sitka", lat=57.0, lng=-135.3)]).run()

        self.assertEqual(stats.inserted, 1)


class RunStatisticsTests(SimpleTestCase):
    def test_finalized_statistics_are_read_only(self) -> None:
        stats = RunStatistics(source="fake")
        stats.increment("inserted")
        stats.finalize(RunState.DONE)

        with self.assertRaises(RuntimeError):
            stats.inserted = 10
        with self.assertRaises(RuntimeError):
            stats.increment("failed")
        self.assertEqual(stats.inserted, 1)

    def test_unknown_counter_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            RunStatistics().increment("bogus")

    def test_as_dict(self) -> None:
        stats = RunStatistics(source="feed", triggered_by="scheduler")
        stats.increment("records_seen", 3)
        stats.finalize(RunState.DONE)

        data = stats.as_dict()

        self.assertEqual(data["records_seen"], 3)
        self.assertEqual(data["state"], "done")
        self.assertEqual(data["source"], "feed")
        self.assertIsNotNone(data["finished_at"])
        for key in ("inserted", "updated", "skipped_duplicate", "unresolved", "failed", "cancelled"):
            self.assertIn(key, data)


class StoredPositionTests(OrchestratorTestMixin, TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.geocoder.resolve.return_value = geocode_hit(31.0, -92.0, coarse=True)

    def _stored_row(self, key: str, **fields) -> AccidentRecord:
        return AccidentRecord.objects.create(
            external_key=key,
            event_date=datetime(2024, 1, 15, tzinfo=dt_timezone.utc),
            city="Ship Shoal 208",
            region="GM",
            **fields,
        )

    def test_refresh_keeps_manual_estimate(self) -> None:
        row = self._stored_row("E1")
        UpsertStore().set_coordinates(
            row.pk,
            Coordinates(28.8, -91.0),
            estimated=True,
            source=AccidentRecord.CoordinatesSource.ESTIMATED,
        )

        stats = self.make_orchestrator([raw("E1", "Ship Shoal 208")], refresh_existing=True).run()

        self.geocoder.resolve.assert_not_called()
        self.assertEqual(stats.updated, 1)
        self.assertEqual(stats.unresolved, 0)
        row.refresh_from_db()
        self.assertEqual(row.latitude, Decimal("28.8"))
        self.assertEqual(row.coordinates_source, "estimated")
        self.assertTrue(row.coordinates_estimated)

    def test_case_number_match_keeps_upstream_position(self) -> None:
        row = self._stored_row(
            "M1",
            case_number="CEN24LA001",
            latitude=Decimal("28.81"),
            longitude=Decimal("-91.02"),
            coordinates_source="upstream",
        )

        stats = self.make_orchestrator([raw("E9", "Ship Shoal 208", cm_ntsbNum="CEN24LA001")]).run()

        self.geocoder.resolve.assert_not_called()
        self.assertEqual(stats.updated, 1)
        row.refresh_from_db()
        self.assertEqual(row.latitude, Decimal("28.81"))
        self.assertEqual(row.coordinates_source, "upstream")

    def test_refresh_of_unplaced_row_is_located(self) -> None:
        self._stored_row("E2")

        stats = self.make_orchestrator([raw("E2", "Ship Shoal 208")], refresh_existing=True).run()

        self.geocoder.resolve.assert_called_once()
        self.assertEqual(stats.geocoded, 1)
        self.assertEqual(AccidentRecord.objects.get().coordinates_source, "geocoded")


class CountingGeocodingService:
    """Geocoding service stand-in that records every query it answers."""

    def __init__(self, answers: Dict[str, List[Dict[str, str]]]) -> None:
        self.answers = answers
        self.queries: List[str] = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.queries.append(params["q"])
        return SimpleNamespace(
            raise_for_status=lambda: None,
            json=lambda: self.answers.get(params["q"], []),
        )


class EndToEndGeocodingTests(TestCase):
    def setUp(self) -> None:
        self.service = CountingGeocodingService({"Big Lake, USA": [{"lat": "61.52", "lon": "-149.95"}]})
        self.cache = GeocodeCache()
        self.records = [
            raw("B1", "Big Lake"),
            raw("B2", "Big Lake"),
            raw("B3", "Nowhere Creek"),
            raw("B4", "Nowhere Creek"),
        ]

    def _run(self, **kwargs) -> RunStatistics:
        geocoder = Geocoder(
            cache=self.cache,
            rate_limiter=RateLimiter(),
            url="https://geocoder.test/search",
            user_agent="AviationSafetyWatch/test",
            country_codes={},
            region_sentinels=frozenset(),
            session=self.service,
        )
        adapter = FakeAdapter(self.records)
        return IngestionOrchestrator(
            adapter,
            normalizer=RecordNormalizer(source=adapter.name),
            geocoder=geocoder,
            estimates=EstimatedLocationTable([]),
            **kwargs,
        ).run()

    def test_repeated_locations_call_service_once(self) -> None:
        stats = self._run()

        self.assertEqual(stats.inserted, 4)
        self.assertEqual(stats.geocoded, 1)
        self.assertEqual(stats.geocode_cache_hits, 1)
        self.assertEqual(stats.unresolved, 2)
        self.assertEqual(
            self.service.queries,
            [
                "Big Lake, AK, USA",
                "Big Lake, USA",
                "Nowhere Creek, AK, USA",
                "Nowhere Creek, USA",
                "AK, USA",
                "USA",
            ],
        )

    def test_second_ingestion_is_idempotent_without_service_calls(self) -> None:
        self._run()
        calls = len(self.service.queries)
        before = {r.external_key: (r.latitude, r.longitude) for r in AccidentRecord.objects.all()}

        stats = self._run()

        self.assertEqual(stats.skipped_duplicate, 4)
        self.assertEqual(stats.inserted, 0)
        self.assertEqual(len(self.service.queries), calls)
        after = {r.external_key: (r.latitude, r.longitude) for r in AccidentRecord.objects.all()}
        self.assertEqual(after, before)

    def test_refresh_run_only_locates_unplaced_rows(self) -> None:
        self._run()
        calls = len(self.service.queries)

        stats = self._run(refresh_existing=True)

        self.assertEqual(stats.updated, 4)
        # Big Lake rows keep their position; Nowhere Creek is tried once more.
        self.assertEqual(
            self.service.queries[calls:],
            ["Nowhere Creek, AK, USA", "Nowhere Creek, USA", "AK, USA", "USA"],
        )
