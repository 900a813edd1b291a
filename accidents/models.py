from django.db import models
from django.db.models import Q


class AccidentRecord(models.Model):
    """One investigated aviation accident or incident.

    Rows are keyed by the upstream ``external_key`` and are created and
    refreshed by the ingestion pipeline; the pipeline never deletes them.
    Coordinates are coalesced on write (see ``accidents.store``).
    """

    class EventClass(models.TextChoices):
        ACCIDENT = "accident", "Accident"
        INCIDENT = "incident", "Incident"

    class Severity(models.TextChoices):
        FATAL = "fatal", "Fatal"
        SERIOUS = "serious", "Serious"
        MINOR = "minor", "Minor"
        NONE = "none", "None"

    class CoordinatesSource(models.TextChoices):
        UPSTREAM = "upstream", "Reported upstream"
        GEOCODED = "geocoded", "Geocoded"
        ESTIMATED = "estimated", "Manually estimated"

    external_key = models.CharField(max_length=64, unique=True)
    case_number = models.CharField(max_length=50, unique=True, null=True, blank=True)

    event_date = models.DateTimeField()
    event_class = models.CharField(
        max_length=16,
        choices=EventClass.choices,
        default=EventClass.ACCIDENT,
    )
    injury_severity = models.CharField(
        max_length=16,
        choices=Severity.choices,
        default=Severity.NONE,
    )

    city = models.CharField(max_length=100, null=True, blank=True)
    region = models.CharField(max_length=50, null=True, blank=True)
    country = models.CharField(max_length=100, null=True, blank=True)
    airport_id = models.CharField(max_length=20, null=True, blank=True)
    airport_name = models.CharField(max_length=200, null=True, blank=True)

    latitude = models.DecimalField(max_digits=12, decimal_places=9, null=True, blank=True)
    longitude = models.DecimalField(max_digits=12, decimal_places=9, null=True, blank=True)
    # True when the position came from a coarse or hand-curated fallback
    # rather than a precise upstream value or city-level geocode.
    coordinates_estimated = models.BooleanField(default=False)
    coordinates_source = models.CharField(
        max_length=16,
        choices=CoordinatesSource.choices,
        null=True,
        blank=True,
    )

    fatal_count = models.PositiveIntegerField(default=0)
    serious_injury_count = models.PositiveIntegerField(default=0)
    minor_injury_count = models.PositiveIntegerField(default=0)

    aircraft_make = models.CharField(max_length=100, null=True, blank=True)
    aircraft_model = models.CharField(max_length=100, null=True, blank=True)
    aircraft_category = models.CharField(max_length=20, null=True, blank=True)
    registration_number = models.CharField(max_length=30, null=True, blank=True)
    damage_level = models.CharField(max_length=50, null=True, blank=True)
    operator_name = models.CharField(max_length=200, null=True, blank=True)

    prelim_narrative = models.TextField(null=True, blank=True)
    factual_narrative = models.TextField(null=True, blank=True)
    analysis_narrative = models.TextField(null=True, blank=True)
    probable_cause = models.TextField(null=True, blank=True)

    is_closed = models.BooleanField(default=False)
    completion_status = models.CharField(max_length=50, null=True, blank=True)
    original_published_date = models.DateTimeField(null=True, blank=True)
    most_recent_report_type = models.CharField(max_length=50, null=True, blank=True)

    source = models.CharField(max_length=32, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-event_date"]
        indexes = [
            models.Index(fields=["event_date"], name="accident_event_date_idx"),
            models.Index(fields=["region"], name="accident_region_idx"),
            models.Index(fields=["injury_severity"], name="accident_severity_idx"),
            models.Index(fields=["event_class"], name="accident_event_class_idx"),
            models.Index(
                fields=["latitude", "longitude"],
                name="accident_location_idx",
                condition=Q(latitude__isnull=False),
            ),
        ]

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def __str__(self) -> str:
        label = self.case_number or self.external_key
        return f"Accident {label} ({self.get_injury_severity_display()})"
