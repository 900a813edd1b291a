from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import yaml
from django.conf import settings

from accidents.records import Coordinates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Estimate:
    pattern: str
    coordinates: Coordinates
    reason: str


def _get_estimates_path() -> Path:
    configured = getattr(settings, "GEOCODER_ESTIMATES_PATH", None)
    if configured:
        return Path(configured)
    return Path(__file__).resolve().parent / "config" / "estimated_locations.yml"


class EstimatedLocationTable:
    """Hand-curated positions for places the geocoder cannot resolve."""

    def __init__(self, estimates: List[Estimate]) -> None:
        self.estimates = estimates

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "EstimatedLocationTable":
        config_path = path or _get_estimates_path()
        try:
            with config_path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Estimated location table not found at %s", config_path)
            data = {}

        estimates: List[Estimate] = []
        for entry in data.get("estimates") or []:
            coords = Coordinates.from_values(entry.get("lat"), entry.get("lng"))
            pattern = str(entry.get("pattern") or "").strip()
            if coords is None or not pattern:
                logger.warning("Skipping invalid estimated location entry: %r", entry)
                continue
            estimates.append(Estimate(pattern, coords, str(entry.get("reason") or "")))
        return cls(estimates)

    def match(
        self,
        city: Optional[str] = None,
        region: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Optional[Estimate]:
        label = ", ".join(str(p).strip() for p in (city, region, country) if p).upper()
        if not label:
            return None
        for estimate in self.estimates:
            if estimate.pattern.upper() in label:
                return estimate
        return None
