from __future__ import annotations

import json
from datetime import date
from typing import Any

from django.core.management.base import BaseCommand, CommandError

from ingestion.orchestrator import IngestionAborted, IngestionOrchestrator
from ingestion.sources import BulkFileAdapter, CaseQueryAdapter, FeedAdapter, IngestionParams


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise CommandError(f"Invalid date {value!r}; expected YYYY-MM-DD.")


class Command(BaseCommand):
    help = "Ingest accident records from a bulk export, the case-query API or the latest-events feed."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "paths",
            nargs="*",
            help="Bulk export files or directories (for --source file).",
        )
        parser.add_argument(
            "--source",
            choices=["file", "api", "feed"],
            default="file",
            help="Upstream to read from.",
        )
        parser.add_argument("--date-from", help="First event date to request (API source).")
        parser.add_argument("--date-to", help="Last event date to request (API source).")
        parser.add_argument(
            "--refresh-existing",
            action="store_true",
            help="Update records that are already stored instead of skipping them.",
        )
        parser.add_argument(
            "--no-geocode",
            action="store_true",
            help="Store records without coordinates as they are.",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        source = options["source"]
        paths = options["paths"]

        if source == "file":
            if not paths:
                raise CommandError("--source file needs at least one path.")
            adapter = BulkFileAdapter(paths)
        elif paths:
            raise CommandError(f"Paths are only accepted with --source file, not --source {source}.")
        elif source == "api":
            adapter = CaseQueryAdapter.from_settings()
        else:
            adapter = FeedAdapter.from_settings()

        params = IngestionParams(
            date_from=_parse_date(options["date_from"]) if options["date_from"] else None,
            date_to=_parse_date(options["date_to"]) if options["date_to"] else None,
        )
        if params.date_from and params.date_to and params.date_from > params.date_to:
            raise CommandError("--date-from must not be after --date-to.")

        orchestrator = IngestionOrchestrator(
            adapter,
            geocode=not options["no_geocode"],
            refresh_existing=bool(options["refresh_existing"]),
            triggered_by="command",
        )
        try:
            stats = orchestrator.run(params)
        except IngestionAborted as exc:
            raise CommandError(f"Ingestion aborted: {exc}")

        self.stdout.write(json.dumps(stats.as_dict(), indent=2))
        self.stdout.write(
            self.style.SUCCESS(
                f"Ingested {stats.records_seen} records from {adapter.name}: "
                f"{stats.inserted} inserted, {stats.updated} updated, {stats.failed} failed."
            )
        )
