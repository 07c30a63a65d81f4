from datetime import timedelta
from unittest import mock

from django.test import TestCase, override_settings
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient

from releases.exceptions import TransientStoreError
from releases.models import TestRelease, TestReleaseSite

from .helpers import START, ReleaseWorldMixin


class ReleaseListApiTests(ReleaseWorldMixin, TestCase):
    def setUp(self):
        self.client = APIClient()
        self.build_world()
        self.rel_a1 = self.make_release(self.test_a1, self.student_a1)
        self.rel_a2 = self.make_release(self.test_a2, self.student_a2)
        self.rel_b = self.make_release(self.test_b, self.student_b1, deleted=True)
        self.make_site(self.rel_a1, url="https://docs.python.org", title="Docs")
        self.make_result(self.rel_a1)

    def test_requires_authentication(self):
        response = self.client.get(reverse("release-list"))

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_teacher_listing_is_isolated_and_summarised(self):
        self.client.force_authenticate(self.teacher_a1_user)

        response = self.client.get(reverse("release-list"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["access"], "ok")
        self.assertEqual(response.data["scope"]["kind"], "professor")
        releases = response.data["releases"]
        self.assertEqual([r["id"] for r in releases], [self.rel_a1.pk])
        entry = releases[0]
        self.assertEqual(entry["status"], "completed")
        self.assertTrue(entry["has_result"])
        self.assertEqual(entry["test_title"], "Algebra")
        self.assertEqual(entry["student_name"], "Alice")
        self.assertEqual(entry["professor_name"], "Ada")
        self.assertEqual(entry["allowed_sites"][0]["title"], "Docs")
        self.assertEqual(len(entry["results"]), 1)

    def test_release_with_two_results_is_completed_once(self):
        self.make_result(self.rel_a1, score=9.5)
        self.client.force_authenticate(self.teacher_a1_user)

        response = self.client.get(reverse("release-list"))

        entry = response.data["releases"][0]
        self.assertEqual(entry["id"], self.rel_a1.pk)
        self.assertEqual(entry["status"], "completed")
        self.assertTrue(entry["has_result"])
        self.assertEqual(len(entry["results"]), 2)

    def test_status_reflects_window_without_result(self):
        self.client.force_authenticate(self.manager_a_user)

        response = self.client.get(reverse("release-list"))

        statuses = {r["id"]: r["status"] for r in response.data["releases"]}
        self.assertEqual(statuses[self.rel_a2.pk], "closed")

    def test_manager_include_deleted_is_ignored(self):
        self.client.force_authenticate(self.manager_b_user)

        response = self.client.get(reverse("release-list"), {"include_deleted": "true"})

        self.assertEqual(response.data["releases"], [])

    def test_admin_include_deleted_and_filter(self):
        self.client.force_authenticate(self.admin_user)

        response = self.client.get(reverse("release-list"), {"include_deleted": "1", "institution": self.inst_b.pk})

        self.assertEqual([r["id"] for r in response.data["releases"]], [self.rel_b.pk])
        self.assertEqual(response.data["releases"][0]["status"], "deleted")

    def test_bad_institution_filter(self):
        self.client.force_authenticate(self.admin_user)

        response = self.client.get(reverse("release-list"), {"institution": "abc"})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_unlinked_manager_gets_empty_state(self):
        self.client.force_authenticate(self.unlinked_manager_user)

        response = self.client.get(reverse("release-list"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["access"], "unlinked")
        self.assertEqual(response.data["releases"], [])

    def test_student_role_is_denied_not_errored(self):
        self.client.force_authenticate(self.student_user)

        response = self.client.get(reverse("release-list"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["access"], "denied")

    def test_store_failure_returns_503_with_message(self):
        self.client.force_authenticate(self.admin_user)

        with mock.patch(
            "releases.api.views.list_releases", side_effect=TransientStoreError("connection reset", operation="list")
        ):
            response = self.client.get(reverse("release-list"))

        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(response.data["detail"], "connection reset")

    def test_retrieve_out_of_scope_is_404(self):
        self.client.force_authenticate(self.teacher_a2_user)

        response = self.client.get(reverse("release-detail", args=[self.rel_a1.pk]))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_auxiliary(self):
        self.client.force_authenticate(self.teacher_a1_user)

        response = self.client.get(reverse("release-auxiliary"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([t["title"] for t in response.data["tests"]], ["Algebra"])
        self.assertEqual([i["name"] for i in response.data["institutions"]], ["Alpha School"])

    def test_student_reads_own_schedule_only(self):
        self.client.force_authenticate(self.student_user)

        own = self.client.get(reverse("release-student-releases", args=[self.student_a1.pk]))
        other = self.client.get(reverse("release-student-releases", args=[self.student_a2.pk]))

        self.assertEqual(own.status_code, status.HTTP_200_OK)
        self.assertEqual([r["id"] for r in own.data["releases"]], [self.rel_a1.pk])
        self.assertEqual(other.status_code, status.HTTP_403_FORBIDDEN)

    def test_class_listing(self):
        self.client.force_authenticate(self.manager_a_user)

        response = self.client.get(reverse("release-class-releases", args=[self.class_a.pk]))

        self.assertEqual([r["id"] for r in response.data["releases"]], [self.rel_a1.pk, self.rel_a2.pk])


class ReleaseWriteApiTests(ReleaseWorldMixin, TestCase):
    def setUp(self):
        self.client = APIClient()
        self.build_world()

    def test_create_single_release(self):
        self.client.force_authenticate(self.teacher_a1_user)
        payload = self.base_payload(student_id=self.student_a2.pk, sites=[{"url": " https://example.com "}])

        response = self.client.post(reverse("release-list"), payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["professor"], self.prof_a1.pk)
        self.assertEqual(response.data["institution"], self.inst_a.pk)
        self.assertEqual(response.data["allowed_sites"][0]["url"], "https://example.com")

    def test_create_rejects_eleven_attempts(self):
        self.client.force_authenticate(self.admin_user)

        response = self.client.post(
            reverse("release-list"),
            self.base_payload(student_id=self.student_a1.pk, max_attempts=11),
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("max_attempts", response.data)
        self.assertFalse(TestRelease.objects.exists())

    def test_create_rejects_inverted_window(self):
        self.client.force_authenticate(self.admin_user)

        response = self.client.post(
            reverse("release-list"),
            self.base_payload(student_id=self.student_a1.pk, end_time=START - timedelta(hours=1)),
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("end_time", response.data)

    def test_create_missing_student(self):
        self.client.force_authenticate(self.admin_user)

        response = self.client.post(reverse("release-list"), self.base_payload(), format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("student_id", response.data)

    def test_teacher_cannot_use_other_professor(self):
        self.client.force_authenticate(self.teacher_a1_user)

        response = self.client.post(
            reverse("release-list"),
            self.base_payload(student_id=self.student_a1.pk, professor_id=self.prof_a2.pk),
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_student_cannot_create(self):
        self.client.force_authenticate(self.student_user)

        response = self.client.post(
            reverse("release-list"), self.base_payload(student_id=self.student_a1.pk), format="json"
        )

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_delete_and_restore(self):
        release = self.make_release(self.test_a1, self.student_a1)
        self.client.force_authenticate(self.manager_a_user)

        deleted = self.client.delete(reverse("release-detail", args=[release.pk]))
        listing = self.client.get(reverse("release-list"))
        restored = self.client.post(reverse("release-restore", args=[release.pk]))

        self.assertEqual(deleted.status_code, status.HTTP_200_OK)
        self.assertTrue(deleted.data["deleted"])
        self.assertEqual(listing.data["releases"], [])
        self.assertEqual(restored.status_code, status.HTTP_200_OK)
        self.assertFalse(restored.data["deleted"])

    def test_delete_with_result_conflicts(self):
        release = self.make_release(self.test_a1, self.student_a1)
        self.make_result(release)
        self.client.force_authenticate(self.admin_user)

        response = self.client.delete(reverse("release-detail", args=[release.pk]))

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["results"], 1)

    def test_delete_out_of_scope_is_404(self):
        release = self.make_release(self.test_b, self.student_b1)
        self.client.force_authenticate(self.manager_a_user)

        response = self.client.delete(reverse("release-detail", args=[release.pk]))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_add_and_remove_site(self):
        release = self.make_release(self.test_a1, self.student_a1)
        self.client.force_authenticate(self.teacher_a1_user)

        added = self.client.post(
            reverse("release-sites", args=[release.pk]), {"url": "https://example.com", "title": ""}, format="json"
        )
        blank = self.client.post(reverse("release-sites", args=[release.pk]), {"url": "  "}, format="json")
        removed = self.client.delete(reverse("release-site-detail", args=[added.data["id"]]))

        self.assertEqual(added.status_code, status.HTTP_201_CREATED)
        self.assertEqual(added.data["title"], "https://example.com")
        self.assertEqual(blank.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("url", blank.data)
        self.assertEqual(removed.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(TestReleaseSite.objects.exists())

    def test_remove_site_of_other_teacher_is_404(self):
        site = self.make_site(self.make_release(self.test_a1, self.student_a1))
        self.client.force_authenticate(self.teacher_a2_user)

        response = self.client.delete(reverse("release-site-detail", args=[site.pk]))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_bulk_release(self):
        self.client.force_authenticate(self.manager_a_user)
        payload = self.base_payload(
            student_ids=[self.student_a1.pk, self.student_a2.pk, self.student_a1.pk],
            sites=[{"url": "https://s1.example.com"}],
        )

        response = self.client.post(reverse("release-bulk"), payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["created"], 2)
        self.assertEqual(TestReleaseSite.objects.count(), 2)

    def test_bulk_release_with_no_students(self):
        self.client.force_authenticate(self.admin_user)

        response = self.client.post(reverse("release-bulk"), self.base_payload(student_ids=[]), format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["created"], 0)

    @override_settings(RELEASE_BULK_ATOMIC=False)
    def test_bulk_partial_failure_body(self):
        self.client.force_authenticate(self.manager_a_user)
        payload = self.base_payload(student_ids=[self.student_a1.pk, self.student_b1.pk])

        response = self.client.post(reverse("release-bulk"), payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["created"], 1)
        self.assertEqual(response.data["total"], 2)
        self.assertEqual(response.data["failed_student_id"], self.student_b1.pk)

    def test_class_release(self):
        self.client.force_authenticate(self.teacher_a1_user)

        response = self.client.post(
            reverse("release-class"), self.base_payload(class_id=self.class_a.pk), format="json"
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["created"], 2)
