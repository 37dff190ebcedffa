"""URL routing: the coin ledger API under /api/daswos-coins/ plus the admin."""

from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/daswos-coins/", include("coins.urls")),
]
