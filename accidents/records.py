"""Canonical, source-independent accident record types.

Every upstream shape is normalised into :class:`CanonicalAccident` before
it reaches the store.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    @classmethod
    def from_values(cls, lat: Any, lng: Any) -> Optional["Coordinates"]:
        """Build coordinates from loosely typed values.

        Returns None when either side is missing, non-numeric, non-finite or
        outside |lat| <= 90, |lng| <= 180.
        """
        try:
            if lat is None or lng is None:
                return None
            if isinstance(lat, str) and not lat.strip():
                return None
            if isinstance(lng, str) and not lng.strip():
                return None
            lat_f = float(lat)
            lng_f = float(lng)
        except (TypeError, ValueError):
            return None
        if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
            return None
        if abs(lat_f) > 90 or abs(lng_f) > 180:
            return None
        return cls(lat=lat_f, lng=lng_f)

    def as_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class Location:
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.city or self.region or self.country)

    def label(self) -> str:
        return ", ".join(p for p in (self.city, self.region, self.country) if p)


@dataclass(frozen=True)
class Aircraft:
    make: Optional[str] = None
    model: Optional[str] = None
    category: Optional[str] = None
    registration: Optional[str] = None
    damage_level: Optional[str] = None
    operator_name: Optional[str] = None


@dataclass
class CanonicalAccident:
    external_key: str
    event_date: datetime
    case_number: Optional[str] = None
    event_class: str = "accident"
    injury_severity: str = "none"
    location: Location = field(default_factory=Location)
    coordinates: Optional[Coordinates] = None
    coordinates_estimated: bool = False
    coordinates_source: Optional[str] = None
    aircraft: Aircraft = field(default_factory=Aircraft)
    fatal_count: int = 0
    serious_injury_count: int = 0
    minor_injury_count: int = 0
    airport_id: Optional[str] = None
    airport_name: Optional[str] = None
    prelim_narrative: Optional[str] = None
    factual_narrative: Optional[str] = None
    analysis_narrative: Optional[str] = None
    probable_cause: Optional[str] = None
    is_closed: bool = False
    completion_status: Optional[str] = None
    original_published_date: Optional[datetime] = None
    most_recent_report_type: Optional[str] = None
    source: str = ""
