from __future__ import annotations

import json
import logging
from typing import Dict, Optional
from urllib.parse import quote

import requests
from django.conf import settings

from accidents.records import Coordinates

logger = logging.getLogger(__name__)

KEY_PREFIX = "geo:"


def location_key(query: str) -> str:
    """Normalised cache key for a geocoder query string."""
    return KEY_PREFIX + query.strip().lower()


class GeocodeCache:
    """Location-string -> coordinates cache.

    Lookups are memoised in-process for the lifetime of the instance and
    written through to a key-value service over its REST interface. When the
    service is not configured only the in-process layer is used. The cache is
    an optimisation: KV failures read as misses and failed writes are
    logged and dropped.
    """

    def __init__(
        self,
        url: str = "",
        token: str = "",
        *,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()
        self._memory: Dict[str, Coordinates] = {}

    @classmethod
    def from_settings(cls) -> "GeocodeCache":
        return cls(
            getattr(settings, "GEOCODE_CACHE_URL", ""),
            getattr(settings, "GEOCODE_CACHE_TOKEN", ""),
            timeout=float(getattr(settings, "GEOCODE_CACHE_TIMEOUT_SEC", 5.0)),
        )

    @property
    def remote_enabled(self) -> bool:
        return bool(self.url and self.token)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def get(self, key: str) -> Optional[Coordinates]:
        if key in self._memory:
            return self._memory[key]
        if not self.remote_enabled:
            return None

        try:
            resp = self.session.get(
                f"{self.url}/get/{quote(key, safe='')}",
                headers=self._headers(),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            raw = resp.json().get("result")
            if not raw:
                return None
            value = json.loads(raw) if isinstance(raw, str) else raw
        except (requests.RequestException, ValueError, AttributeError) as exc:
            logger.warning("Geocode cache read failed for %r: %s", key, exc)
            return None

        if not isinstance(value, dict):
            return None
        coords = Coordinates.from_values(value.get("lat"), value.get("lng"))
        if coords is not None:
            self._memory[key] = coords
        return coords

    def put(self, key: str, coordinates: Coordinates) -> None:
        self._memory[key] = coordinates
        if not self.remote_enabled:
            return

        payload = json.dumps(coordinates.as_dict())
        try:
            resp = self.session.get(
                f"{self.url}/set/{quote(key, safe='')}/{quote(payload, safe='')}",
                headers=self._headers(),
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Geocode cache write failed for %r: %s", key, exc)
