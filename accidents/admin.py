from django.contrib import admin

from .models import AccidentRecord


@admin.register(AccidentRecord)
class AccidentRecordAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "external_key",
        "case_number",
        "event_date",
        "event_class",
        "injury_severity",
        "city",
        "region",
        "coordinates_source",
    )
    list_filter = ("event_class", "injury_severity", "coordinates_estimated", "coordinates_source")
    search_fields = ("external_key", "case_number", "city", "region", "registration_number")
