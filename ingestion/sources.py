"""
Upstream source adapters.

Each adapter turns one upstream (bulk JSON export, paginated case-query API,
RSS-style feed) into a finite stream of raw record dicts. ``fetch`` is a
generator; calling it again re-reads the upstream from the start. Anything
that prevents a complete read raises :class:`FetchError`, which is fatal for
the ingestion run.
"""

from __future__ import annotations

import functools
import html
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

import requests
from django.conf import settings
from django.utils import timezone

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Raised when an upstream cannot be read completely."""


@dataclass(frozen=True)
class IngestionParams:
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    def resolved_range(self, lookback_days: int) -> tuple[date, date]:
        date_to = self.date_to or timezone.now().date()
        date_from = self.date_from or (date_to - timedelta(days=lookback_days))
        return date_from, date_to


def _send_with_retry(
    send: Callable[[], requests.Response],
    *,
    description: str,
    retries: int = 1,
) -> requests.Response:
    """Issue a request, retrying timeouts and connection errors ``retries`` times."""
    attempt = 0
    while True:
        try:
            resp = send()
            resp.raise_for_status()
            return resp
        except (requests.Timeout, requests.ConnectionError) as exc:
            if attempt >= retries:
                raise FetchError(f"{description} failed after {attempt + 1} attempts: {exc}") from exc
            attempt += 1
            logger.warning("%s failed (%s); retrying", description, exc)
        except requests.RequestException as exc:
            raise FetchError(f"{description} failed: {exc}") from exc


class SourceAdapter(ABC):
    """Base class for upstream adapters."""

    name = "source"

    def __init__(self) -> None:
        # Items the adapter saw but could not turn into a raw record.
        self.parse_failures = 0

    @abstractmethod
    def fetch(self, params: IngestionParams) -> Iterator[Dict[str, Any]]:
        """Yield raw records for ``params``; raise FetchError on a failed read."""


class BulkFileAdapter(SourceAdapter):
    """Read complete JSON export documents; each array element is a record.

    Directory paths expand to their ``accidents_*.json`` files in name order.
    """

    name = "bulk_file"

    def __init__(self, paths: Sequence[Union[str, Path]], *, pattern: str = "accidents_*.json") -> None:
        super().__init__()
        self.paths = [Path(p) for p in paths]
        self.pattern = pattern

    def _documents(self) -> List[Path]:
        documents: List[Path] = []
        for path in self.paths:
            if path.is_dir():
                documents.extend(sorted(path.glob(self.pattern)))
            else:
                documents.append(path)
        return documents

    def fetch(self, params: IngestionParams) -> Iterator[Dict[str, Any]]:
        self.parse_failures = 0
        documents = self._documents()
        if not documents:
            raise FetchError("No bulk export documents found in " + ", ".join(map(str, self.paths)))

        for path in documents:
            try:
                with path.open("r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as exc:
                raise FetchError(f"Cannot read bulk export {path}: {exc}") from exc

            if not isinstance(data, list):
                raise FetchError(f"Bulk export {path} does not contain an array of records.")

            logger.info("Loaded bulk export", extra={"path": str(path), "records": len(data)})
            yield from data


class CaseQueryAdapter(SourceAdapter):
    """Page through the case-query API for a date range.

    Each page is a POST of ``{dateFrom, dateTo, pageSize, pageNumber, sort}``
    answered with ``{Data: [...], TotalRecords}``. Paging stops at the first
    page shorter than ``page_size``.
    """

    name = "case_api"

    def __init__(
        self,
        url: str,
        *,
        page_size: int = 500,
        timeout: float = 15.0,
        lookback_days: int = 30,
        sort: str = "EventDate DESC",
        max_pages: int = 1000,
        user_agent: str = "AviationSafetyWatch/2.0",
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__()
        self.url = url
        self.page_size = page_size
        self.timeout = timeout
        self.lookback_days = lookback_days
        self.sort = sort
        self.max_pages = max_pages
        self.user_agent = user_agent
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> "CaseQueryAdapter":
        return cls(
            settings.INGESTION_CASE_API_URL,
            page_size=settings.INGESTION_PAGE_SIZE,
            timeout=settings.INGESTION_FETCH_TIMEOUT_SEC,
            lookback_days=settings.INGESTION_SYNC_LOOKBACK_DAYS,
            user_agent=settings.INGESTION_USER_AGENT,
        )

    def fetch(self, params: IngestionParams) -> Iterator[Dict[str, Any]]:
        self.parse_failures = 0
        date_from, date_to = params.resolved_range(self.lookback_days)

        for page in range(1, self.max_pages + 1):
            body = {
                "dateFrom": date_from.isoformat(),
                "dateTo": date_to.isoformat(),
                "pageSize": self.page_size,
                "pageNumber": page,
                "sort": self.sort,
            }
            resp = _send_with_retry(
                functools.partial(
                    self.session.post,
                    self.url,
                    json=body,
                    headers={"Accept": "application/json", "User-Agent": self.user_agent},
                    timeout=self.timeout,
                ),
                description=f"Case query page {page}",
            )
            try:
                payload = resp.json()
            except ValueError as exc:
                raise FetchError(f"Case query page {page} is not valid JSON.") from exc

            data = payload.get("Data") if isinstance(payload, dict) else None
            if not isinstance(data, list):
                raise FetchError(f"Case query page {page} has no Data array.")

            logger.info(
                "Fetched case query page",
                extra={
                    "page": page,
                    "records": len(data),
                    "total_records": payload.get("TotalRecords"),
                },
            )
            yield from data
            if len(data) < self.page_size:
                return

        logger.warning("Case query stopped after max_pages=%s", self.max_pages)


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------

_ITEM_RE = re.compile(r"<item\b[^>]*>(.*?)</item\s*>", re.IGNORECASE | re.DOTALL)
_CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_EVENT_ID_RE = re.compile(r"[?&]ev_id=([A-Za-z0-9]+)", re.IGNORECASE)
_LOCATION_RE = re.compile(r"Location:\s*([^,]+?)\s*,\s*([A-Za-z]{2})\b")


def _tag_text(block: str, tag: str) -> str:
    match = re.search(
        rf"<{tag}\b[^>]*>(.*?)</{tag}\s*>",
        block,
        re.IGNORECASE | re.DOTALL,
    )
    if not match:
        return ""
    text = _CDATA_RE.sub(r"\1", match.group(1))
    return html.unescape(text).strip()


class FeedAdapter(SourceAdapter):
    """Extract items from an RSS-style feed by pattern matching.

    The feed is not assumed to be well-formed XML. Items whose link carries
    no ``ev_id`` are counted in ``parse_failures`` and skipped.
    """

    name = "feed"
    default_country = "USA"

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 15.0,
        user_agent: str = "AviationSafetyWatch/2.0",
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__()
        self.url = url
        self.timeout = timeout
        self.user_agent = user_agent
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> "FeedAdapter":
        return cls(
            settings.INGESTION_FEED_URL,
            timeout=settings.INGESTION_FETCH_TIMEOUT_SEC,
            user_agent=settings.INGESTION_USER_AGENT,
        )

    def fetch(self, params: IngestionParams) -> Iterator[Dict[str, Any]]:
        self.parse_failures = 0
        resp = _send_with_retry(
            functools.partial(
                self.session.get,
                self.url,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            ),
            description="Feed fetch",
        )
        blocks = _ITEM_RE.findall(resp.text)
        logger.info("Fetched feed", extra={"url": self.url, "items": len(blocks)})

        for index, block in enumerate(blocks):
            try:
                yield self.parse_item(block)
            except ValueError as exc:
                self.parse_failures += 1
                logger.warning("Skipping feed item %s: %s", index, exc)

    def parse_item(self, block: str) -> Dict[str, Any]:
        title = _tag_text(block, "title")
        link = _tag_text(block, "link")
        description = _TAG_RE.sub("", _tag_text(block, "description")).strip()
        pub_date = _tag_text(block, "pubDate")

        if not link:
            raise ValueError("item has no link")
        id_match = _EVENT_ID_RE.search(link)
        if not id_match:
            raise ValueError(f"no ev_id in link {link!r}")

        record: Dict[str, Any] = {
            "ev_id": id_match.group(1),
            "ev_date": pub_date or None,
            "ev_type": "ACC",
            "narr_prelim": description or None,
            "title": title,
            "link": link,
        }
        location = _LOCATION_RE.search(title)
        if location:
            record["ev_city"] = location.group(1).strip()
            record["ev_state"] = location.group(2).upper()
            record["ev_country"] = self.default_country
        return record
