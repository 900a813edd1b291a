from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="AccidentRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("external_key", models.CharField(max_length=64, unique=True)),
                ("case_number", models.CharField(blank=True, max_length=50, null=True, unique=True)),
                ("event_date", models.DateTimeField()),
                (
                    "event_class",
                    models.CharField(
                        choices=[("accident", "Accident"), ("incident", "Incident")],
                        default="accident",
                        max_length=16,
                    ),
                ),
                (
                    "injury_severity",
                    models.CharField(
                        choices=[("fatal", "Fatal"), ("serious", "Serious"), ("minor", "Minor"), ("none", "None")],
                        default="none",
                        max_length=16,
                    ),
                ),
                ("city", models.CharField(blank=True, max_length=100, null=True)),
                ("region", models.CharField(blank=True, max_length=50, null=True)),
                ("country", models.CharField(blank=True, max_length=100, null=True)),
                ("airport_id", models.CharField(blank=True, max_length=20, null=True)),
                ("airport_name", models.CharField(blank=True, max_length=200, null=True)),
                ("latitude", models.DecimalField(blank=True, decimal_places=9, max_digits=12, null=True)),
                ("longitude", models.DecimalField(blank=True, decimal_places=9, max_digits=12, null=True)),
                ("coordinates_estimated", models.BooleanField(default=False)),
                (
                    "coordinates_source",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("upstream", "Reported upstream"),
                            ("geocoded", "Geocoded"),
                            ("estimated", "Manually estimated"),
                        ],
                        max_length=16,
                        null=True,
                    ),
                ),
                ("fatal_count", models.PositiveIntegerField(default=0)),
                ("serious_injury_count", models.PositiveIntegerField(default=0)),
                ("minor_injury_count", models.PositiveIntegerField(default=0)),
                ("aircraft_make", models.CharField(blank=True, max_length=100, null=True)),
                ("aircraft_model", models.CharField(blank=True, max_length=100, null=True)),
                ("aircraft_category", models.CharField(blank=True, max_length=20, null=True)),
                ("registration_number", models.CharField(blank=True, max_length=30, null=True)),
                ("damage_level", models.CharField(blank=True, max_length=50, null=True)),
                ("operator_name", models.CharField(blank=True, max_length=200, null=True)),
                ("prelim_narrative", models.TextField(blank=True, null=True)),
                ("factual_narrative", models.TextField(blank=True, null=True)),
                ("analysis_narrative", models.TextField(blank=True, null=True)),
                ("probable_cause", models.TextField(blank=True, null=True)),
                ("is_closed", models.BooleanField(default=False)),
                ("completion_status", models.CharField(blank=True, max_length=50, null=True)),
                ("original_published_date", models.DateTimeField(blank=True, null=True)),
                ("most_recent_report_type", models.CharField(blank=True, max_length=50, null=True)),
                ("source", models.CharField(blank=True, max_length=32)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-event_date"],
                "indexes": [
                    models.Index(fields=["event_date"], name="accident_event_date_idx"),
                    models.Index(fields=["region"], name="accident_region_idx"),
                    models.Index(fields=["injury_severity"], name="accident_severity_idx"),
                    models.Index(fields=["event_class"], name="accident_event_class_idx"),
                    models.Index(
                        condition=models.Q(("latitude__isnull", False)),
                        fields=["latitude", "longitude"],
                        name="accident_location_idx",
                    ),
                ],
            },
        ),
    ]
