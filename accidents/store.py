from __future__ import annotations

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional

from django.db import DatabaseError, IntegrityError, connections, transaction
from django.db.models import Q, QuerySet

from .models import AccidentRecord
from .records import CanonicalAccident, Coordinates

logger = logging.getLogger(__name__)

INSERTED = "inserted"
UPDATED = "updated"

# Written only when the incoming record carries coordinates.
COORDINATE_FIELDS = ("latitude", "longitude", "coordinates_estimated", "coordinates_source")
# Positions a geocoder result may not overwrite.
PROTECTED_SOURCES = (
    AccidentRecord.CoordinatesSource.UPSTREAM,
    AccidentRecord.CoordinatesSource.ESTIMATED,
)


class StoreUnavailable(Exception):
    """Raised when the relational store cannot be reached."""


def _to_decimal(value: float) -> Decimal:
    return Decimal(str(round(value, 9)))


def _keeps_stored_position(existing: AccidentRecord, record: CanonicalAccident) -> bool:
    return (
        existing.has_coordinates
        and record.coordinates_source == AccidentRecord.CoordinatesSource.GEOCODED
        and existing.coordinates_source in PROTECTED_SOURCES
    )


def record_to_fields(record: CanonicalAccident) -> Dict[str, Any]:
    """Flatten a canonical record into AccidentRecord column values."""
    coords = record.coordinates
    return {
        "case_number": record.case_number,
        "event_date": record.event_date,
        "event_class": record.event_class,
        "injury_severity": record.injury_severity,
        "city": record.location.city,
        "region": record.location.region,
        "country": record.location.country,
        "airport_id": record.airport_id,
        "airport_name": record.airport_name,
        "latitude": _to_decimal(coords.lat) if coords else None,
        "longitude": _to_decimal(coords.lng) if coords else None,
        "coordinates_estimated": record.coordinates_estimated if coords else False,
        "coordinates_source": record.coordinates_source if coords else None,
        "fatal_count": record.fatal_count,
        "serious_injury_count": record.serious_injury_count,
        "minor_injury_count": record.minor_injury_count,
        "aircraft_make": record.aircraft.make,
        "aircraft_model": record.aircraft.model,
        "aircraft_category": record.aircraft.category,
        "registration_number": record.aircraft.registration,
        "damage_level": record.aircraft.damage_level,
        "operator_name": record.aircraft.operator_name,
        "prelim_narrative": record.prelim_narrative,
        "factual_narrative": record.factual_narrative,
        "analysis_narrative": record.analysis_narrative,
        "probable_cause": record.probable_cause,
        "is_closed": record.is_closed,
        "completion_status": record.completion_status,
        "original_published_date": record.original_published_date,
        "most_recent_report_type": record.most_recent_report_type,
        "source": record.source,
    }


class UpsertStore:
    """Idempotent writer for AccidentRecord rows.

    A store is constructed per run and handed to the orchestrator; the
    connection it uses is acquired and released through :meth:`session`.
    """

    def __init__(self, using: str = "default") -> None:
        self.using = using

    @property
    def _objects(self):
        return AccidentRecord.objects.using(self.using)

    @contextmanager
    def session(self) -> Iterator["UpsertStore"]:
        connection = connections[self.using]
        try:
            connection.ensure_connection()
        except DatabaseError as exc:
            raise StoreUnavailable(f"Cannot connect to the accident store: {exc}") from exc
        try:
            yield self
        finally:
            # Leave connections owned by an enclosing transaction alone.
            if not connection.in_atomic_block:
                connection.close_if_unusable_or_obsolete()

    def exists(self, external_key: str) -> bool:
        return self._objects.filter(external_key=external_key).exists()

    def find(self, record: CanonicalAccident) -> Optional[AccidentRecord]:
        """The row ``upsert`` would update for ``record``, if any."""
        match = self._objects.filter(external_key=record.external_key).first()
        if match is None and record.case_number:
            match = self._objects.filter(case_number=record.case_number).first()
        return match

    def upsert(self, record: CanonicalAccident) -> str:
        """Insert or update one record atomically.

        The row is matched on ``external_key`` first, then ``case_number``.
        Every field is overwritten from ``record`` except the coordinates and
        their provenance, which are only written when ``record`` has
        coordinates. A geocoded position never replaces a stored upstream or
        manually estimated one. Returns ``INSERTED`` or ``UPDATED``.
        """
        fields = record_to_fields(record)
        if record.coordinates is None:
            for name in COORDINATE_FIELDS:
                fields.pop(name)

        with transaction.atomic(using=self.using):
            existing = self._locked_match(record)
            if existing is None:
                try:
                    with transaction.atomic(using=self.using):
                        self._objects.create(external_key=record.external_key, **fields)
                    return INSERTED
                except IntegrityError:
                    # A concurrent run inserted the same key between our
                    # lookup and insert; fall back to updating its row.
                    existing = self._locked_match(record)
                    if existing is None:
                        raise

            if _keeps_stored_position(existing, record):
                for name in COORDINATE_FIELDS:
                    fields.pop(name, None)

            for name, value in fields.items():
                setattr(existing, name, value)
            existing.save()
        return UPDATED

    def _locked_match(self, record: CanonicalAccident) -> Optional[AccidentRecord]:
        qs = self._objects.select_for_update()
        match = qs.filter(external_key=record.external_key).first()
        if match is None and record.case_number:
            match = qs.filter(case_number=record.case_number).first()
        return match

    def missing_coordinates(self) -> QuerySet:
        """Records that still have no position, newest first."""
        return self._objects.filter(
            Q(latitude__isnull=True) | Q(longitude__isnull=True)
        ).order_by("-event_date")

    def set_coordinates(
        self,
        pk: int,
        coordinates: Coordinates,
        *,
        estimated: bool,
        source: str,
    ) -> None:
        self._objects.filter(pk=pk).update(
            latitude=_to_decimal(coordinates.lat),
            longitude=_to_decimal(coordinates.lng),
            coordinates_estimated=estimated,
            coordinates_source=source,
        )
