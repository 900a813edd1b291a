from django.contrib import admin
from django.http import JsonResponse
from django.urls import path, include
from drf_spectacular.views import SpectacularAPIView


def healthcheck(_request):
    """Simple readiness/liveness probe used by deployment."""
    return JsonResponse({"status": "ok"})


urlpatterns = [
    path("admin/", admin.site.urls),
    # Ingestion trigger endpoint
    path("api/ingest/", include("ingestion.urls")),
    # OpenAPI schema
    path("api/schema/", SpectacularAPIView.as_view(), name="schema"),
    # Healthcheck
    path("health/", healthcheck, name="healthcheck"),
]
