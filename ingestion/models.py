import uuid

from django.db import models


class IngestionRun(models.Model):
    """Audit log row for one ingestion run.

    Written once when a run completes, is cancelled or aborts. An aborted
    run whose store is unreachable is only logged.
    """

    class Status(models.TextChoices):
        SUCCEEDED = "succeeded", "Succeeded"
        CANCELLED = "cancelled", "Cancelled"
        ABORTED = "aborted", "Aborted"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    source = models.CharField(max_length=32)
    triggered_by = models.CharField(max_length=32, blank=True)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.SUCCEEDED,
    )

    records_seen = models.PositiveIntegerField(default=0)
    inserted = models.PositiveIntegerField(default=0)
    updated = models.PositiveIntegerField(default=0)
    skipped_duplicate = models.PositiveIntegerField(default=0)
    skipped_no_key = models.PositiveIntegerField(default=0)
    skipped_no_date = models.PositiveIntegerField(default=0)
    geocoded = models.PositiveIntegerField(default=0)
    geocode_cache_hits = models.PositiveIntegerField(default=0)
    estimated = models.PositiveIntegerField(default=0)
    unresolved = models.PositiveIntegerField(default=0)
    failed = models.PositiveIntegerField(default=0)

    started_at = models.DateTimeField()
    finished_at = models.DateTimeField()
    duration_sec = models.FloatField(default=0.0)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-started_at"]
        indexes = [
            models.Index(fields=["source"], name="ingestion_run_source_idx"),
            models.Index(fields=["status"], name="ingestion_run_status_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.source} run at {self.started_at:%Y-%m-%d %H:%M} ({self.status})"
