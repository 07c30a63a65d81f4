from django.urls import path

from .views import healthz_view

urlpatterns = [
    path("healthz/", healthz_view, name="healthz"),
]
