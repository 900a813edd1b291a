from django.contrib import admin

from .models import IngestionRun


@admin.register(IngestionRun)
class IngestionRunAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "source",
        "triggered_by",
        "status",
        "records_seen",
        "inserted",
        "updated",
        "failed",
        "unresolved",
        "started_at",
        "duration_sec",
    )
    list_filter = ("status", "source", "triggered_by", "started_at")
    search_fields = ("error_message",)
    readonly_fields = [f.name for f in IngestionRun._meta.fields]
