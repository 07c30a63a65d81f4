from django.conf import settings
from django.db import DatabaseError, connection
from django.http import JsonResponse


def _release_engine_status() -> dict:
    return {
        "status": "ok",
        "bulk_atomic": bool(getattr(settings, "RELEASE_BULK_ATOMIC", False)),
        "max_attempts_limit": int(getattr(settings, "RELEASE_MAX_ATTEMPTS_LIMIT", 10)),
    }


def healthz_view(_request):
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
    except DatabaseError as exc:
        return JsonResponse(
            {
                "status": "error",
                "services": {
                    "database": {"status": "error", "error": str(exc)},
                    "releases": _release_engine_status(),
                },
            },
            status=503,
        )

    return JsonResponse(
        {
            "status": "ok",
            "services": {
                "database": {"status": "ok"},
                "releases": _release_engine_status(),
            },
        }
    )
