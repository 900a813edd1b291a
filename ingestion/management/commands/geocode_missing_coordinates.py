from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand, CommandError

from accidents.models import AccidentRecord
from accidents.store import StoreUnavailable, UpsertStore
from geocoding.geocoder import Geocoder


class Command(BaseCommand):
    help = "Re-run the geocoder over stored accidents that still have no coordinates (newest first)."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Process at most this many records.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be resolved without writing coordinates.",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        limit = options["limit"]
        dry_run = bool(options["dry_run"])
        if limit is not None and limit < 1:
            raise CommandError("--limit must be a positive integer.")

        store = UpsertStore()
        geocoder = Geocoder.from_settings()
        resolved = unresolved = 0

        try:
            with store.session():
                records = store.missing_coordinates()
                if limit is not None:
                    records = records[:limit]

                for record in records:
                    result = geocoder.resolve(record.city, record.region, record.country)
                    label = ", ".join(p for p in (record.city, record.region, record.country) if p)
                    if result is None:
                        unresolved += 1
                        self.stdout.write(f"{record.external_key}: no match for {label!r}")
                        continue

                    resolved += 1
                    coords = result.coordinates
                    self.stdout.write(
                        f"{record.external_key}: {coords.lat:.5f}, {coords.lng:.5f} "
                        f"via {result.strategy} ({result.query!r})"
                    )
                    if not dry_run:
                        store.set_coordinates(
                            record.pk,
                            coords,
                            estimated=result.coarse,
                            source=AccidentRecord.CoordinatesSource.GEOCODED,
                        )
        except StoreUnavailable as exc:
            raise CommandError(str(exc))

        prefix = "Dry run: would geocode" if dry_run else "Geocoded"
        self.stdout.write(
            self.style.SUCCESS(
                f"{prefix} {resolved} records; {unresolved} still unresolved "
                f"({geocoder.service_calls} geocoder calls)."
            )
        )
