from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand, CommandError

from accidents.models import AccidentRecord
from accidents.store import StoreUnavailable, UpsertStore
from geocoding.estimates import EstimatedLocationTable


class Command(BaseCommand):
    help = "Apply the hand-curated estimated location table to accidents still lacking coordinates."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show matches without writing coordinates.",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        dry_run = bool(options["dry_run"])
        table = EstimatedLocationTable.from_yaml()
        if not table.estimates:
            raise CommandError("The estimated location table is empty.")

        store = UpsertStore()
        applied = 0
        try:
            with store.session():
                for record in store.missing_coordinates():
                    estimate = table.match(record.city, record.region, record.country)
                    if estimate is None:
                        continue
                    applied += 1
                    self.stdout.write(
                        f"{record.external_key}: {estimate.coordinates.lat:.4f}, "
                        f"{estimate.coordinates.lng:.4f} ({estimate.reason or estimate.pattern})"
                    )
                    if not dry_run:
                        store.set_coordinates(
                            record.pk,
                            estimate.coordinates,
                            estimated=True,
                            source=AccidentRecord.CoordinatesSource.ESTIMATED,
                        )
        except StoreUnavailable as exc:
            raise CommandError(str(exc))

        if dry_run:
            self.stdout.write(self.style.SUCCESS(f"Dry run complete; {applied} records would be updated."))
            return
        self.stdout.write(self.style.SUCCESS(f"Applied estimated coordinates to {applied} records."))
