from unittest import mock

from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.urls import reverse


@override_settings(RELEASE_BULK_ATOMIC=False, RELEASE_MAX_ATTEMPTS_LIMIT=10)
class HealthTests(TestCase):
    def test_healthz_ok(self):
        response = self.client.get(reverse("healthz"))

        self.assertEqual(response.status_code, 200)
        self.assertJSONEqual(
            response.content,
            {
                "status": "ok",
                "services": {
                    "database": {"status": "ok"},
                    "releases": {"status": "ok", "bulk_atomic": False, "max_attempts_limit": 10},
                },
            },
        )

    def test_healthz_db_error_returns_503(self):
        cursor_mock = mock.MagicMock()
        cursor_mock.__enter__.side_effect = DatabaseError("boom")

        with mock.patch("pages.views.connection") as mocked_connection:
            mocked_connection.cursor.return_value = cursor_mock

            response = self.client.get(reverse("healthz"))

        self.assertEqual(response.status_code, 503)
        payload = response.json()
        self.assertEqual(payload["status"], "error")
        self.assertEqual(payload["services"]["database"], {"status": "error", "error": "boom"})

    @override_settings(RELEASE_BULK_ATOMIC=True)
    def test_healthz_reports_bulk_mode(self):
        response = self.client.get(reverse("healthz"))

        self.assertTrue(response.json()["services"]["releases"]["bulk_atomic"])
