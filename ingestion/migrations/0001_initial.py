import uuid

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="IngestionRun",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("source", models.CharField(max_length=32)),
                ("triggered_by", models.CharField(blank=True, max_length=32)),
                (
                    "status",
                    models.CharField(
                        choices=[("succeeded", "Succeeded"), ("cancelled", "Cancelled"), ("aborted", "Aborted")],
                        default="succeeded",
                        max_length=16,
                    ),
                ),
                ("records_seen", models.PositiveIntegerField(default=0)),
                ("inserted", models.PositiveIntegerField(default=0)),
                ("updated", models.PositiveIntegerField(default=0)),
                ("skipped_duplicate", models.PositiveIntegerField(default=0)),
                ("skipped_no_key", models.PositiveIntegerField(default=0)),
                ("skipped_no_date", models.PositiveIntegerField(default=0)),
                ("geocoded", models.PositiveIntegerField(default=0)),
                ("geocode_cache_hits", models.PositiveIntegerField(default=0)),
                ("estimated", models.PositiveIntegerField(default=0)),
                ("unresolved", models.PositiveIntegerField(default=0)),
                ("failed", models.PositiveIntegerField(default=0)),
                ("started_at", models.DateTimeField()),
                ("finished_at", models.DateTimeField()),
                ("duration_sec", models.FloatField(default=0.0)),
                ("error_message", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["-started_at"],
                "indexes": [
                    models.Index(fields=["source"], name="ingestion_run_source_idx"),
                    models.Index(fields=["status"], name="ingestion_run_status_idx"),
                ],
            },
        ),
    ]
