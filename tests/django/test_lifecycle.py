from datetime import timedelta
from unittest import mock

from django.core.exceptions import PermissionDenied
from django.db import IntegrityError
from django.forms.models import model_to_dict
from django.test import TestCase, override_settings

from releases.exceptions import (
    ReleaseDependencyError,
    ReleaseValidationError,
    SiteAttachmentError,
    TransientStoreError,
)
from releases.models import TestRelease, TestReleaseSite
from releases.scope import GlobalScope, InstitutionScope, ProfessorScope, Unauthorized
from releases.services.lifecycle import (
    add_site,
    create_release,
    remove_site,
    restore_release,
    soft_delete_release,
    validate_release_fields,
)

from .helpers import END, START, ReleaseWorldMixin


class ValidateReleaseFieldsTests(ReleaseWorldMixin, TestCase):
    def setUp(self):
        self.build_world()

    def payload(self, **overrides):
        payload = self.base_payload(student_id=self.student_a1.pk)
        payload.update(overrides)
        return payload

    def assertFieldError(self, field, payload):
        with self.assertRaises(ReleaseValidationError) as ctx:
            validate_release_fields(payload)
        self.assertEqual(ctx.exception.field, field)
        self.assertIn(field, ctx.exception.message_dict)

    def test_eleven_attempts_names_max_attempts(self):
        self.assertFieldError("max_attempts", self.payload(max_attempts=11))

    def test_attempt_bounds(self):
        self.assertFieldError("max_attempts", self.payload(max_attempts=0))
        self.assertFieldError("max_attempts", self.payload(max_attempts=True))
        self.assertEqual(validate_release_fields(self.payload(max_attempts=10))["max_attempts"], 10)

    @override_settings(RELEASE_MAX_ATTEMPTS_LIMIT=3)
    def test_attempt_limit_is_configurable(self):
        self.assertFieldError("max_attempts", self.payload(max_attempts=4))

    def test_window_must_be_positive(self):
        self.assertFieldError("end_time", self.payload(end_time=START))
        self.assertFieldError("end_time", self.payload(end_time=START - timedelta(minutes=1)))

    def test_required_ids(self):
        self.assertFieldError("test_id", self.payload(test_id=None))
        self.assertFieldError("student_id", self.payload(student_id=""))

    def test_iso_strings_are_parsed(self):
        cleaned = validate_release_fields(
            self.payload(start_time="2025-03-01T09:00:00Z", end_time="2025-03-01T11:00:00Z")
        )

        self.assertEqual(cleaned["start_time"], START)
        self.assertEqual(cleaned["end_time"], END)

    def test_polygon_is_validated(self):
        self.assertFieldError("location_polygon", self.payload(location_polygon=[{"lat": 100, "lng": 0}]))

    def test_impossible_calendar_date_names_field(self):
        self.assertFieldError("start_time", self.payload(start_time="2025-02-30T09:00:00"))
        self.assertFieldError("end_time", self.payload(end_time="2025-03-01T25:00:00"))

    def test_blank_optional_ids_are_rejected(self):
        self.assertFieldError("professor_id", self.payload(professor_id=""))
        self.assertFieldError("institution_id", self.payload(institution_id="  "))

    def test_omitted_optional_ids_stay_empty(self):
        cleaned = validate_release_fields(self.payload(professor_id=None))

        self.assertIsNone(cleaned["professor_id"])
        self.assertIsNone(cleaned["institution_id"])


class CreateReleaseTests(ReleaseWorldMixin, TestCase):
    def setUp(self):
        self.build_world()
        self.admin = GlobalScope()
        self.manager_a = InstitutionScope(institution_id=self.inst_a.pk)
        self.teacher_a1 = ProfessorScope(professor_id=self.prof_a1.pk, institution_id=self.inst_a.pk)

    def test_creates_release_with_sites(self):
        release = create_release(
            self.admin,
            self.base_payload(student_id=self.student_a1.pk),
            sites=["  https://example.com/ref  ", {"url": "https://docs.python.org", "title": "Python"}],
        )

        release.refresh_from_db()
        self.assertEqual(release.institution_id, self.inst_a.pk)
        self.assertEqual(release.professor_id, self.prof_a1.pk)
        self.assertEqual(release.max_attempts, 2)
        self.assertTrue(release.allow_consultation)
        self.assertEqual(len(release.location_polygon), 3)
        sites = list(release.allowed_sites.values_list("url", "title"))
        self.assertEqual(
            sites,
            [("https://example.com/ref", "https://example.com/ref"), ("https://docs.python.org", "Python")],
        )

    def test_professor_defaults_to_caller_for_teachers(self):
        release = create_release(self.teacher_a1, self.base_payload(student_id=self.student_a2.pk))

        self.assertEqual(release.professor_id, self.prof_a1.pk)

    def test_institution_falls_back_to_professor(self):
        self.test_a1.institution = None
        self.test_a1.save()

        release = create_release(self.admin, self.base_payload(student_id=self.student_a1.pk))

        self.assertEqual(release.institution_id, self.inst_a.pk)

    def test_unknown_student_names_field(self):
        with self.assertRaises(ReleaseValidationError) as ctx:
            create_release(self.admin, self.base_payload(student_id=999999))

        self.assertEqual(ctx.exception.field, "student_id")
        self.assertFalse(TestRelease.objects.exists())

    def test_impossible_date_fails_before_writing(self):
        payload = self.base_payload(student_id=self.student_a1.pk, start_time="2025-02-30T09:00:00")

        with self.assertRaises(ReleaseValidationError) as ctx:
            create_release(self.admin, payload)

        self.assertEqual(ctx.exception.field, "start_time")
        self.assertFalse(TestRelease.objects.exists())

    def test_deleted_student_rejected(self):
        with self.assertRaises(ReleaseValidationError):
            create_release(self.admin, self.base_payload(student_id=self.student_a3.pk))

    def test_teacher_cannot_release_under_another_professor(self):
        with self.assertRaises(PermissionDenied):
            create_release(
                self.teacher_a1, self.base_payload(student_id=self.student_a1.pk, professor_id=self.prof_a2.pk)
            )

    def test_teacher_cannot_release_someone_elses_test(self):
        with self.assertRaises(PermissionDenied):
            create_release(self.teacher_a1, self.base_payload(test=self.test_a2, student_id=self.student_a1.pk))

    def test_manager_cannot_write_into_other_institution(self):
        with self.assertRaises(PermissionDenied):
            create_release(self.manager_a, self.base_payload(student_id=self.student_b1.pk))

    def test_unauthorized_cannot_write(self):
        with self.assertRaises(PermissionDenied):
            create_release(Unauthorized(), self.base_payload(student_id=self.student_a1.pk))

    def test_empty_site_url_fails_before_writing(self):
        with self.assertRaises(ReleaseValidationError) as ctx:
            create_release(self.admin, self.base_payload(student_id=self.student_a1.pk), sites=["   "])

        self.assertEqual(ctx.exception.field, "url")
        self.assertFalse(TestRelease.objects.exists())

    def test_store_failure_is_propagated_with_message(self):
        with mock.patch.object(TestRelease.objects, "create", side_effect=IntegrityError("constraint failed")):
            with self.assertRaises(TransientStoreError) as ctx:
                create_release(self.admin, self.base_payload(student_id=self.student_a1.pk))

        self.assertEqual(ctx.exception.message, "constraint failed")

    def test_site_failure_keeps_release(self):
        with mock.patch.object(TestReleaseSite.objects, "bulk_create", side_effect=IntegrityError("sites down")):
            with self.assertRaises(SiteAttachmentError) as ctx:
                create_release(
                    self.admin, self.base_payload(student_id=self.student_a1.pk), sites=["https://example.com"]
                )

        self.assertTrue(TestRelease.objects.filter(pk=ctx.exception.release.pk).exists())
        self.assertIsInstance(ctx.exception, TransientStoreError)


class SoftDeleteRestoreTests(ReleaseWorldMixin, TestCase):
    def setUp(self):
        self.build_world()
        self.admin = GlobalScope()
        self.release = self.make_release(self.test_a1, self.student_a1)
        self.site = self.make_site(self.release)

    def snapshot(self):
        self.release.refresh_from_db()
        return model_to_dict(self.release, exclude=["updated_at"])

    def test_delete_then_restore_round_trip(self):
        before = self.snapshot()

        soft_delete_release(self.admin, self.release.pk)
        soft_delete_release(self.admin, self.release.pk)
        self.assertTrue(TestRelease.objects.get(pk=self.release.pk).deleted)
        self.assertTrue(TestReleaseSite.objects.filter(pk=self.site.pk).exists())

        restore_release(self.admin, self.release.pk)
        restore_release(self.admin, self.release.pk)
        self.assertEqual(self.snapshot(), before)

    def test_delete_refused_when_results_exist(self):
        self.make_result(self.release)

        with self.assertRaises(ReleaseDependencyError) as ctx:
            soft_delete_release(self.admin, self.release.pk)

        self.assertEqual(ctx.exception.result_count, 1)
        self.assertFalse(TestRelease.objects.get(pk=self.release.pk).deleted)

    def test_out_of_scope_release_is_not_found(self):
        with self.assertRaises(TestRelease.DoesNotExist):
            soft_delete_release(InstitutionScope(institution_id=self.inst_b.pk), self.release.pk)

    def test_owner_can_restore_deleted_release(self):
        teacher = ProfessorScope(professor_id=self.prof_a1.pk, institution_id=self.inst_a.pk)
        soft_delete_release(teacher, self.release.pk)

        self.assertFalse(restore_release(teacher, self.release.pk).deleted)

    def test_unauthorized_cannot_delete(self):
        with self.assertRaises(PermissionDenied):
            soft_delete_release(Unauthorized(), self.release.pk)


class SiteManagementTests(ReleaseWorldMixin, TestCase):
    def setUp(self):
        self.build_world()
        self.release = self.make_release(self.test_a1, self.student_a1)
        self.teacher_a1 = ProfessorScope(professor_id=self.prof_a1.pk, institution_id=self.inst_a.pk)

    def test_add_site_trims_and_defaults_title(self):
        site = add_site(self.teacher_a1, self.release.pk, {"url": " https://example.org "})

        self.assertEqual(site.url, "https://example.org")
        self.assertEqual(site.title, "https://example.org")

    def test_add_site_requires_url(self):
        with self.assertRaises(ReleaseValidationError):
            add_site(self.teacher_a1, self.release.pk, {"url": ""})

    def test_remove_site(self):
        site = self.make_site(self.release)

        remove_site(self.teacher_a1, site.pk)

        self.assertFalse(TestReleaseSite.objects.filter(pk=site.pk).exists())

    def test_remove_site_outside_scope(self):
        site = self.make_site(self.release)
        other_teacher = ProfessorScope(professor_id=self.prof_a2.pk, institution_id=self.inst_a.pk)

        with self.assertRaises(TestReleaseSite.DoesNotExist):
            remove_site(other_teacher, site.pk)
