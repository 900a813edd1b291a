"""
Map raw upstream records onto :class:`~accidents.records.CanonicalAccident`.

The three upstreams spell the same concepts differently (``cm_*`` fields in
bulk exports and the case API, ``ev_*``/``inj_*`` fields in the legacy API,
CamelCase in some exports, RSS fields in the feed). Each concept is resolved
by trying a fixed list of spellings in priority order and taking the first
present, non-blank value.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Sequence

import pandas as pd
from django.conf import settings
from django.utils import timezone

from accidents.models import AccidentRecord
from accidents.records import Aircraft, CanonicalAccident, Coordinates, Location

NO_KEY = "no_key"
NO_DATE = "no_date"


class RecordRejected(Exception):
    """Raised for records that cannot be stored at all."""

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(message or reason)
        self.reason = reason


# Upstream spellings, highest priority first.
KEY_FIELDS = ("ev_id", "cm_mkey", "EventId", "eventId", "Mkey")
CASE_NUMBER_FIELDS = ("cm_ntsbNum", "ntsbNumber", "NtsbNumber", "ntsb_number")
DATE_FIELDS = ("cm_eventDate", "ev_date", "EventDate", "eventDate", "pubDate")
LATITUDE_FIELDS = ("cm_Latitude", "latitude", "Latitude", "lat")
LONGITUDE_FIELDS = ("cm_Longitude", "longitude", "Longitude", "lng", "lon")
CITY_FIELDS = ("cm_city", "ev_city", "City")
REGION_FIELDS = ("cm_state", "ev_state", "State")
COUNTRY_FIELDS = ("cm_country", "ev_country", "Country")
EVENT_CLASS_FIELDS = ("cm_eventType", "ev_type", "EventType")
TOTAL_FATAL_FIELDS = ("cm_fatalInjuryCount", "inj_tot_f")
ONBOARD_FATAL_FIELDS = ("cm_injury_onboard_Fatal",)
GROUND_FATAL_FIELDS = ("cm_injury_onground_Fatal", "inj_f_grnd")
SERIOUS_FIELDS = ("cm_seriousInjuryCount", "inj_tot_s")
MINOR_FIELDS = ("cm_minorInjuryCount", "inj_tot_m")
SEVERITY_FIELDS = ("cm_highestInjury", "inj_highest", "HighestInjury")
VEHICLE_FIELDS = ("cm_vehicles", "Vehicles", "vehicles")
AIRPORT_ID_FIELDS = ("cm_airportId", "airportId", "AirportId", "apt_id")
AIRPORT_NAME_FIELDS = ("cm_airportName", "airportName", "AirportName", "apt_name")
PRELIM_FIELDS = ("prelimNarrative", "narr_prelim")
FACTUAL_FIELDS = ("factualNarrative", "narr_factual")
ANALYSIS_FIELDS = ("analysisNarrative", "narr_analysis")
PROBABLE_CAUSE_FIELDS = ("cm_probableCause", "ProbableCause")

EVENT_CLASSES = {
    "ACC": AccidentRecord.EventClass.ACCIDENT,
    "ACCIDENT": AccidentRecord.EventClass.ACCIDENT,
    "INC": AccidentRecord.EventClass.INCIDENT,
    "INCIDENT": AccidentRecord.EventClass.INCIDENT,
}

# Prefix of the upstream "highest injury" value -> severity.
SEVERITY_PREFIXES = (
    ("FAT", AccidentRecord.Severity.FATAL),
    ("SER", AccidentRecord.Severity.SERIOUS),
    ("MIN", AccidentRecord.Severity.MINOR),
    ("NON", AccidentRecord.Severity.NONE),
)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, float):
        return pd.isna(value)
    return False


def _first(raw: Mapping[str, Any], names: Sequence[str]) -> Any:
    for name in names:
        value = raw.get(name)
        if not _is_blank(value):
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if _is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _safe_int(value: Any) -> Optional[int]:
    try:
        if _is_blank(value):
            return None
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _safe_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "y", "1"}
    return bool(value) if not _is_blank(value) else False


def _parse_datetime(value: Any) -> Optional[datetime]:
    if _is_blank(value):
        return None
    try:
        parsed = pd.to_datetime(value, errors="coerce", utc=True)
    except (TypeError, ValueError, OverflowError):
        return None
    if pd.isna(parsed):
        return None
    return parsed.to_pydatetime()


def _truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    return value[:limit]


def _column_limit(field_name: str, value: Optional[str]) -> Optional[str]:
    """Clip a value to the max_length of the AccidentRecord column it lands in."""
    if value is None:
        return None
    max_length = AccidentRecord._meta.get_field(field_name).max_length
    return value[:max_length] if max_length else value


class RecordNormalizer:
    """Turn one raw upstream dict into a canonical record.

    ``normalize`` is pure apart from reading the current time to reject
    future-dated events. It raises :class:`RecordRejected` with reason
    ``"no_key"`` or ``"no_date"``.
    """

    def __init__(
        self,
        *,
        source: str = "",
        narrative_max_length: int = 5000,
        probable_cause_max_length: int = 2000,
    ) -> None:
        self.source = source
        self.narrative_max_length = narrative_max_length
        self.probable_cause_max_length = probable_cause_max_length

    @classmethod
    def from_settings(cls, *, source: str = "") -> "RecordNormalizer":
        return cls(
            source=source,
            narrative_max_length=settings.INGESTION_NARRATIVE_MAX_LENGTH,
            probable_cause_max_length=settings.INGESTION_PROBABLE_CAUSE_MAX_LENGTH,
        )

    def normalize(self, raw: Mapping[str, Any]) -> CanonicalAccident:
        if not isinstance(raw, Mapping):
            raise RecordRejected(NO_KEY, f"record is a {type(raw).__name__}, not an object")

        case_number = _column_limit("case_number", _text(_first(raw, CASE_NUMBER_FIELDS)))
        external_key = _text(_first(raw, KEY_FIELDS)) or case_number
        if not external_key:
            raise RecordRejected(NO_KEY, "record has no event id or case number")
        external_key = external_key[: AccidentRecord._meta.get_field("external_key").max_length]

        event_date = _parse_datetime(_first(raw, DATE_FIELDS))
        if event_date is None:
            raise RecordRejected(NO_DATE, f"record {external_key} has no parseable event date")
        if event_date.date() > timezone.now().date():
            raise RecordRejected(NO_DATE, f"record {external_key} is dated in the future ({event_date:%Y-%m-%d})")

        coordinates = Coordinates.from_values(
            _first(raw, LATITUDE_FIELDS),
            _first(raw, LONGITUDE_FIELDS),
        )

        fatal_count = self._fatal_count(raw)
        narrative_limit = self.narrative_max_length

        return CanonicalAccident(
            external_key=external_key,
            case_number=case_number,
            event_date=event_date,
            event_class=self._event_class(raw),
            injury_severity=self._severity(raw, fatal_count),
            location=Location(
                city=_column_limit("city", _text(_first(raw, CITY_FIELDS))),
                region=_column_limit("region", _text(_first(raw, REGION_FIELDS))),
                country=_column_limit("country", _text(_first(raw, COUNTRY_FIELDS))),
            ),
            coordinates=coordinates,
            coordinates_estimated=False,
            coordinates_source=AccidentRecord.CoordinatesSource.UPSTREAM if coordinates else None,
            aircraft=self._aircraft(raw),
            fatal_count=fatal_count,
            serious_injury_count=max(_safe_int(_first(raw, SERIOUS_FIELDS)) or 0, 0),
            minor_injury_count=max(_safe_int(_first(raw, MINOR_FIELDS)) or 0, 0),
            airport_id=_column_limit("airport_id", _text(_first(raw, AIRPORT_ID_FIELDS))),
            airport_name=_column_limit("airport_name", _text(_first(raw, AIRPORT_NAME_FIELDS))),
            prelim_narrative=_truncate(_text(_first(raw, PRELIM_FIELDS)), narrative_limit),
            factual_narrative=_truncate(_text(_first(raw, FACTUAL_FIELDS)), narrative_limit),
            analysis_narrative=_truncate(_text(_first(raw, ANALYSIS_FIELDS)), narrative_limit),
            probable_cause=_truncate(
                _text(_first(raw, PROBABLE_CAUSE_FIELDS)),
                self.probable_cause_max_length,
            ),
            is_closed=_safe_bool(raw.get("cm_closed")),
            completion_status=_column_limit("completion_status", _text(raw.get("cm_completionStatus"))),
            original_published_date=_parse_datetime(raw.get("cm_originalPublishedDate")),
            most_recent_report_type=_column_limit(
                "most_recent_report_type", _text(raw.get("cm_mostRecentReportType"))
            ),
            source=self.source,
        )

    # ------------------------------------------------------------------
    # Derived fields
    # ------------------------------------------------------------------

    def _event_class(self, raw: Mapping[str, Any]) -> str:
        value = _text(_first(raw, EVENT_CLASS_FIELDS))
        if value is None:
            return AccidentRecord.EventClass.ACCIDENT
        return EVENT_CLASSES.get(value.upper(), AccidentRecord.EventClass.ACCIDENT)

    def _fatal_count(self, raw: Mapping[str, Any]) -> int:
        total = _safe_int(_first(raw, TOTAL_FATAL_FIELDS)) or 0
        onboard = _safe_int(_first(raw, ONBOARD_FATAL_FIELDS)) or 0
        ground = _safe_int(_first(raw, GROUND_FATAL_FIELDS)) or 0
        return max(total, onboard + ground, 0)

    def _severity(self, raw: Mapping[str, Any], fatal_count: int) -> str:
        if fatal_count > 0:
            return AccidentRecord.Severity.FATAL
        upstream = _text(_first(raw, SEVERITY_FIELDS))
        if upstream:
            label = upstream.upper()
            for prefix, severity in SEVERITY_PREFIXES:
                if label.startswith(prefix):
                    return severity
        return AccidentRecord.Severity.NONE

    def _aircraft(self, raw: Mapping[str, Any]) -> Aircraft:
        vehicles = _first(raw, VEHICLE_FIELDS)
        vehicle: Dict[str, Any] = {}
        if isinstance(vehicles, list) and vehicles and isinstance(vehicles[0], Mapping):
            vehicle = dict(vehicles[0])

        return Aircraft(
            make=_column_limit(
                "aircraft_make", _text(_first(vehicle, ("make", "Make")) or raw.get("acft_make"))
            ),
            model=_column_limit(
                "aircraft_model", _text(_first(vehicle, ("model", "Model")) or raw.get("acft_model"))
            ),
            category=_column_limit(
                "aircraft_category",
                _text(_first(vehicle, ("aircraftCategory", "AircraftCategory")) or raw.get("acft_category")),
            ),
            registration=_column_limit(
                "registration_number",
                _text(_first(vehicle, ("registrationNumber", "RegistrationNumber")) or raw.get("regis_no")),
            ),
            damage_level=_column_limit(
                "damage_level", _text(_first(vehicle, ("DamageLevel", "damageLevel")) or raw.get("damage"))
            ),
            operator_name=_column_limit(
                "operator_name", _text(_first(vehicle, ("operatorName", "OperatorName")))
            ),
        )
