"""
Location-to-coordinates resolution.

A :class:`Geocoder` walks an ordered chain of :class:`LocationStrategy`
candidate builders, most specific first, and returns the first candidate
the external service resolves. Each candidate is checked against the
:class:`~geocoding.cache.GeocodeCache` before the service is called, and
every service call waits on the shared :class:`~geocoding.ratelimit.RateLimiter`.
A geocoder remembers, for its lifetime, each location it has resolved (hit or
miss) and each candidate query the service could not answer, so repeated
locations within a run never reach the service twice.

Running out of candidates is a normal outcome: ``resolve`` returns None and
the caller stores the record without a position (or with a manual estimate).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Set, Tuple

import requests
import yaml
from django.conf import settings

from accidents.records import Coordinates

from .cache import GeocodeCache, location_key
from .ratelimit import GEOCODE_SERVICE, RateLimiter, default_rate_limiter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Code tables (externalized for non-devs)
# ---------------------------------------------------------------------------


def _get_code_tables_path() -> Path:
    configured = getattr(settings, "GEOCODER_COUNTRY_CODES_PATH", None)
    if configured:
        return Path(configured)
    return Path(__file__).resolve().parent / "config" / "country_codes.yml"


def load_code_tables(path: Optional[Path] = None) -> Tuple[Dict[str, Optional[str]], FrozenSet[str]]:
    """Return (country code table, region sentinel set) from the YAML config."""
    config_path = path or _get_code_tables_path()
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Country code table not found at %s", config_path)
        data = {}

    codes = {
        str(code).upper(): (str(name) if name else None)
        for code, name in (data.get("country_codes") or {}).items()
    }
    sentinels = frozenset(str(s).upper() for s in (data.get("region_sentinels") or []))
    return codes, sentinels


# ---------------------------------------------------------------------------
# Strategy chain
# ---------------------------------------------------------------------------

CandidateBuilder = Callable[[Optional[str], Optional[str], Optional[str]], Optional[str]]


@dataclass(frozen=True)
class LocationStrategy:
    name: str
    build: CandidateBuilder
    # Coarse strategies resolve to a region or country centroid; their
    # results are flagged as estimated positions.
    coarse: bool = False


def _city_region_country(city, region, country):
    if city and region and country:
        return f"{city}, {region}, {country}"
    return None


def _city_country(city, region, country):
    if city and country:
        return f"{city}, {country}"
    return None


def _region_country(city, region, country):
    if region and country:
        return f"{region}, {country}"
    return None


def _country_only(city, region, country):
    return country or None


DEFAULT_STRATEGIES: Tuple[LocationStrategy, ...] = (
    LocationStrategy("city_region_country", _city_region_country),
    LocationStrategy("city_country", _city_country),
    LocationStrategy("region_country", _region_country, coarse=True),
    LocationStrategy("country_only", _country_only, coarse=True),
)


@dataclass(frozen=True)
class GeocodeResult:
    coordinates: Coordinates
    query: str
    strategy: str
    coarse: bool
    from_cache: bool


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class Geocoder:
    """Resolve (city, region, country) to coordinates via a strategy chain."""

    def __init__(
        self,
        *,
        cache: GeocodeCache,
        rate_limiter: RateLimiter,
        url: str,
        user_agent: str,
        timeout: float = 10.0,
        strategies: Sequence[LocationStrategy] = DEFAULT_STRATEGIES,
        country_codes: Optional[Mapping[str, Optional[str]]] = None,
        region_sentinels: Optional[FrozenSet[str]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.url = url
        self.user_agent = user_agent
        self.timeout = timeout
        self.strategies = tuple(strategies)
        if country_codes is None or region_sentinels is None:
            loaded_codes, loaded_sentinels = load_code_tables()
            country_codes = loaded_codes if country_codes is None else country_codes
            region_sentinels = loaded_sentinels if region_sentinels is None else region_sentinels
        self.country_codes = dict(country_codes)
        self.region_sentinels = frozenset(region_sentinels)
        self.session = session or requests.Session()
        self.service_calls = 0
        # Per-instance memo of whole-location outcomes (None for misses) and
        # of candidate queries the service could not resolve.
        self._resolved: Dict[Tuple[str, ...], Optional[GeocodeResult]] = {}
        self._missed_queries: Set[str] = set()

    @classmethod
    def from_settings(
        cls,
        *,
        cache: Optional[GeocodeCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> "Geocoder":
        return cls(
            cache=cache or GeocodeCache.from_settings(),
            rate_limiter=rate_limiter or default_rate_limiter(),
            url=settings.GEOCODER_URL,
            user_agent=settings.GEOCODER_USER_AGENT,
            timeout=float(settings.GEOCODER_TIMEOUT_SEC),
        )

    def map_country(self, country: Optional[str]) -> Optional[str]:
        """Expand a two-letter upstream code; other values pass through."""
        if country and len(country) == 2 and country.isalpha():
            code = country.upper()
            if code in self.country_codes:
                return self.country_codes[code]
        return country

    def candidates(
        self,
        city: Optional[str] = None,
        region: Optional[str] = None,
        country: Optional[str] = None,
    ) -> List[Tuple[LocationStrategy, str]]:
        """Ordered, de-duplicated (strategy, query) pairs for a location."""
        city = _clean(city)
        region = _clean(region)
        country = self.map_country(_clean(country))
        if region and region.upper() in self.region_sentinels:
            region = None

        seen = set()
        out: List[Tuple[LocationStrategy, str]] = []
        for strategy in self.strategies:
            query = strategy.build(city, region, country)
            if not query or query.lower() in seen:
                continue
            seen.add(query.lower())
            out.append((strategy, query))
        return out

    def resolve(
        self,
        city: Optional[str] = None,
        region: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Optional[GeocodeResult]:
        candidates = self.candidates(city, region, country)
        if not candidates:
            return None

        memo_key = tuple(query.lower() for _, query in candidates)
        if memo_key in self._resolved:
            previous = self._resolved[memo_key]
            return replace(previous, from_cache=True) if previous is not None else None

        result = self._walk(candidates)
        primary_query = candidates[0][1]
        if result is not None and not result.coarse and result.query != primary_query:
            # Precise hits are also stored under the whole location so later
            # runs stop at the first candidate.
            self.cache.put(location_key(primary_query), result.coordinates)
        self._resolved[memo_key] = result
        return result

    def _walk(self, candidates: List[Tuple[LocationStrategy, str]]) -> Optional[GeocodeResult]:
        for strategy, query in candidates:
            key = location_key(query)

            cached = self.cache.get(key)
            if cached is not None:
                return GeocodeResult(cached, query, strategy.name, strategy.coarse, True)

            if key in self._missed_queries:
                continue

            self.rate_limiter.acquire(GEOCODE_SERVICE)
            coords = self._lookup(query)
            if coords is None:
                self._missed_queries.add(key)
                continue

            self.cache.put(key, coords)
            logger.debug(
                "Geocoded location",
                extra={"query": query, "strategy": strategy.name, **coords.as_dict()},
            )
            return GeocodeResult(coords, query, strategy.name, strategy.coarse, False)

        return None

    def _lookup(self, query: str) -> Optional[Coordinates]:
        self.service_calls += 1
        try:
            resp = self.session.get(
                self.url,
                params={"q": query, "format": "json", "limit": 1},
                headers={"User-Agent": self.user_agent, "Accept-Language": "en"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            results = resp.json()
        except requests.Timeout:
            logger.info("Geocoder timed out for %r; trying next candidate", query)
            return None
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Geocoder request failed for %r: %s", query, exc)
            return None

        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            return None
        return Coordinates.from_values(results[0].get("lat"), results[0].get("lon"))
