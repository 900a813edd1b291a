"""
Ingestion run orchestration.

One :class:`IngestionOrchestrator` drives a single run for one source:

    IDLE -> FETCHING -> (NORMALIZING -> GEOCODING -> PERSISTING)* -> DONE
                     \\-> ABORTED

Records are processed sequentially. Per-record problems (rejected records,
store errors, unresolved locations) are counted and the run carries on; a
failed fetch or an unreachable store aborts the run with
:class:`IngestionAborted`. Every run, aborted ones included, is recorded as
an ``IngestionRun`` row.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from django.db import DatabaseError
from django.utils import timezone

from accidents.models import AccidentRecord
from accidents.records import CanonicalAccident
from accidents.store import StoreUnavailable, UpsertStore
from geocoding.estimates import EstimatedLocationTable
from geocoding.geocoder import Geocoder

from .models import IngestionRun
from .normalizer import NO_KEY, RecordNormalizer, RecordRejected
from .sources import FetchError, IngestionParams, SourceAdapter

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    GEOCODING = "geocoding"
    PERSISTING = "persisting"
    DONE = "done"
    ABORTED = "aborted"


COUNTERS = (
    "records_seen",
    "inserted",
    "updated",
    "skipped_duplicate",
    "skipped_no_key",
    "skipped_no_date",
    "geocoded",
    "geocode_cache_hits",
    "estimated",
    "unresolved",
    "failed",
)


@dataclass
class RunStatistics:
    """Counters for one run. Read-only once :meth:`finalize` has been called."""

    source: str = ""
    triggered_by: str = ""
    records_seen: int = 0
    inserted: int = 0
    updated: int = 0
    skipped_duplicate: int = 0
    skipped_no_key: int = 0
    skipped_no_date: int = 0
    geocoded: int = 0
    geocode_cache_hits: int = 0
    estimated: int = 0
    unresolved: int = 0
    failed: int = 0
    state: RunState = RunState.IDLE
    cancelled: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: str = ""
    _final: bool = field(default=False, init=False, repr=False, compare=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_final", False):
            raise RuntimeError(f"Run statistics are final; cannot set {name!r}.")
        super().__setattr__(name, value)

    @property
    def is_final(self) -> bool:
        return self._final

    @property
    def duration_sec(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return round((self.finished_at - self.started_at).total_seconds(), 3)

    def increment(self, counter: str, amount: int = 1) -> None:
        if counter not in COUNTERS:
            raise ValueError(f"Unknown run counter {counter!r}.")
        setattr(self, counter, getattr(self, counter) + amount)

    def finalize(self, state: RunState, *, error: str = "") -> "RunStatistics":
        self.state = state
        if error:
            self.error = error
        self.finished_at = timezone.now()
        self._final = True
        return self

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {name: getattr(self, name) for name in COUNTERS}
        data.update(
            {
                "source": self.source,
                "triggered_by": self.triggered_by,
                "state": self.state.value,
                "cancelled": self.cancelled,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "finished_at": self.finished_at.isoformat() if self.finished_at else None,
                "duration_sec": self.duration_sec,
                "error": self.error,
            }
        )
        return data


class IngestionAborted(Exception):
    """A run could not complete; ``statistics`` holds the finalized counters."""

    def __init__(self, statistics: RunStatistics, message: str) -> None:
        super().__init__(message)
        self.statistics = statistics


class IngestionOrchestrator:
    """Run one source through normalise -> locate -> persist.

    ``refresh_existing`` upserts records whose key is already stored instead
    of counting them as duplicates. ``geocode=False`` stores records lacking
    coordinates as they are.
    """

    def __init__(
        self,
        adapter: SourceAdapter,
        *,
        store: Optional[UpsertStore] = None,
        normalizer: Optional[RecordNormalizer] = None,
        geocoder: Optional[Geocoder] = None,
        estimates: Optional[EstimatedLocationTable] = None,
        geocode: bool = True,
        refresh_existing: bool = False,
        triggered_by: str = "manual",
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.adapter = adapter
        self.store = store or UpsertStore()
        self.normalizer = normalizer or RecordNormalizer.from_settings(source=adapter.name)
        self.geocode = geocode
        self.geocoder = geocoder if geocoder is not None or not geocode else Geocoder.from_settings()
        self.estimates = estimates if estimates is not None or not geocode else EstimatedLocationTable.from_yaml()
        self.refresh_existing = refresh_existing
        self.triggered_by = triggered_by
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        """Ask the run to stop before the next record."""
        self.cancel_event.set()

    def run(self, params: Optional[IngestionParams] = None) -> RunStatistics:
        params = params or IngestionParams()
        stats = RunStatistics(
            source=self.adapter.name,
            triggered_by=self.triggered_by,
            started_at=timezone.now(),
        )
        logger.info(
            "Ingestion run start",
            extra={
                "source": stats.source,
                "triggered_by": stats.triggered_by,
                "date_from": params.date_from.isoformat() if params.date_from else None,
                "date_to": params.date_to.isoformat() if params.date_to else None,
            },
        )

        try:
            with self.store.session():
                stats.state = RunState.FETCHING
                try:
                    raw_records = list(self.adapter.fetch(params))
                except FetchError as exc:
                    self._abort(stats, exc)
                except Exception as exc:
                    logger.exception("Source adapter failed", extra={"source": stats.source})
                    self._abort(stats, FetchError(f"{self.adapter.name} adapter failed: {exc}"))

                parse_failures = self.adapter.parse_failures
                stats.increment("records_seen", len(raw_records) + parse_failures)
                stats.increment("failed", parse_failures)

                for raw in raw_records:
                    if self.cancel_event.is_set():
                        stats.cancelled = True
                        logger.info("Ingestion run cancelled", extra={"source": stats.source})
                        break
                    self._process(raw, stats)
        except StoreUnavailable as exc:
            self._abort(stats, exc)

        stats.finalize(RunState.DONE)
        logger.info("Ingestion run complete", extra=stats.as_dict())
        self._record_run(stats)
        return stats

    # ------------------------------------------------------------------
    # Per-record pipeline
    # ------------------------------------------------------------------

    def _process(self, raw: Any, stats: RunStatistics) -> None:
        stats.state = RunState.NORMALIZING
        try:
            record = self.normalizer.normalize(raw)
        except RecordRejected as exc:
            stats.increment("skipped_no_key" if exc.reason == NO_KEY else "skipped_no_date")
            logger.warning("Skipping record", extra={"reason": exc.reason, "detail": str(exc)})
            return
        except Exception:
            stats.increment("failed")
            logger.exception("Could not normalise record", extra={"source": stats.source})
            return

        try:
            stored = self.store.find(record)
        except DatabaseError as exc:
            stats.increment("failed")
            logger.warning(
                "Existence check failed",
                extra={"external_key": record.external_key, "error": str(exc)},
            )
            return

        if stored is not None and not self.refresh_existing and stored.external_key == record.external_key:
            stats.increment("skipped_duplicate")
            return

        # A stored position is kept on write, so only unplaced rows are located.
        if record.coordinates is None and (stored is None or not stored.has_coordinates):
            stats.state = RunState.GEOCODING
            self._locate(record, stats)

        stats.state = RunState.PERSISTING
        try:
            outcome = self.store.upsert(record)
        except (DatabaseError, ValueError) as exc:
            stats.increment("failed")
            logger.warning(
                "Failed to store record",
                extra={"external_key": record.external_key, "error": str(exc)},
            )
            return
        stats.increment(outcome)

    def _locate(self, record: CanonicalAccident, stats: RunStatistics) -> None:
        location = record.location
        if self.geocode and self.geocoder is not None:
            result = self.geocoder.resolve(location.city, location.region, location.country)
            if result is not None:
                record.coordinates = result.coordinates
                record.coordinates_estimated = result.coarse
                record.coordinates_source = AccidentRecord.CoordinatesSource.GEOCODED
                stats.increment("geocode_cache_hits" if result.from_cache else "geocoded")
                return

            estimate = self.estimates.match(location.city, location.region, location.country) if self.estimates else None
            if estimate is not None:
                record.coordinates = estimate.coordinates
                record.coordinates_estimated = True
                record.coordinates_source = AccidentRecord.CoordinatesSource.ESTIMATED
                stats.increment("estimated")
                logger.info(
                    "Using estimated position",
                    extra={"external_key": record.external_key, "reason": estimate.reason},
                )
                return

        stats.increment("unresolved")
        logger.info(
            "No position for record",
            extra={"external_key": record.external_key, "location": location.label()},
        )

    # ------------------------------------------------------------------
    # Run end
    # ------------------------------------------------------------------

    def _abort(self, stats: RunStatistics, exc: Exception) -> None:
        stats.finalize(RunState.ABORTED, error=str(exc))
        logger.error("Ingestion run aborted", extra=stats.as_dict())
        self._record_run(stats)
        raise IngestionAborted(stats, str(exc)) from exc

    def _record_run(self, stats: RunStatistics) -> None:
        if stats.state == RunState.ABORTED:
            status = IngestionRun.Status.ABORTED
        elif stats.cancelled:
            status = IngestionRun.Status.CANCELLED
        else:
            status = IngestionRun.Status.SUCCEEDED
        try:
            IngestionRun.objects.create(
                source=stats.source,
                triggered_by=stats.triggered_by,
                status=status,
                started_at=stats.started_at,
                finished_at=stats.finished_at,
                duration_sec=stats.duration_sec,
                error_message=stats.error,
                **{name: getattr(stats, name) for name in COUNTERS},
            )
        except DatabaseError as exc:
            logger.warning("Could not record ingestion run: %s", exc)
