"""
Create, soft delete, restore and allowed-site management for releases.

Input is validated completely before anything is written. Writes outside the
caller's scope raise PermissionDenied; storage failures surface as
TransientStoreError with the driver message intact.
"""
import logging
from datetime import datetime
from typing import Iterable, Mapping, Optional

from django.conf import settings
from django.core.exceptions import PermissionDenied
from django.db import DatabaseError, transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from releases.exceptions import (
    ReleaseDependencyError,
    ReleaseValidationError,
    SiteAttachmentError,
    wrap_store_errors,
)
from releases.geo import GeoPolygon
from releases.models import Professor, Student, Test, TestRelease, TestReleaseSite
from releases.repository import owned_release_queryset, owned_site_queryset
from releases.scope import InstitutionScope, ProfessorScope, ScopeDescriptor, Unauthorized

logger = logging.getLogger(__name__)

SITE_URL_MAX_LENGTH = 2048


def max_attempts_limit() -> int:
    return int(getattr(settings, "RELEASE_MAX_ATTEMPTS_LIMIT", 10))


def _parse_id(data: Mapping, name: str, required: bool = True) -> Optional[int]:
    value = data.get(name)
    blank = isinstance(value, str) and not value.strip()
    if value is None or blank:
        if required:
            raise ReleaseValidationError(name, "This field is required.")
        if blank:
            raise ReleaseValidationError(name, "Must be an integer id or omitted.")
        return None
    if isinstance(value, bool):
        raise ReleaseValidationError(name, "Must be an integer id.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ReleaseValidationError(name, "Must be an integer id.")


def _parse_instant(data: Mapping, name: str) -> datetime:
    value = data.get(name)
    if isinstance(value, str):
        try:
            value = parse_datetime(value.strip())
        except ValueError:
            raise ReleaseValidationError(name, "A valid date and time is required.")
    if not isinstance(value, datetime):
        raise ReleaseValidationError(name, "A valid date and time is required.")
    if settings.USE_TZ and timezone.is_naive(value):
        value = timezone.make_aware(value)
    return value


def _parse_flag(data: Mapping, name: str) -> bool:
    value = data.get(name, False)
    if not isinstance(value, bool):
        raise ReleaseValidationError(name, "Must be true or false.")
    return value


def validate_release_fields(data: Mapping, *, require_student: bool = True) -> dict:
    """
    Check a release payload without touching the store and return cleaned
    values. Ids that are not required here may still be defaulted later.
    """
    cleaned = {
        "test_id": _parse_id(data, "test_id"),
        "student_id": _parse_id(data, "student_id", required=require_student),
        "professor_id": _parse_id(data, "professor_id", required=False),
        "institution_id": _parse_id(data, "institution_id", required=False),
        "start_time": _parse_instant(data, "start_time"),
        "end_time": _parse_instant(data, "end_time"),
    }
    if cleaned["end_time"] <= cleaned["start_time"]:
        raise ReleaseValidationError("end_time", "End time must be after start time.")

    attempts = data.get("max_attempts", 1)
    limit = max_attempts_limit()
    if isinstance(attempts, bool) or not isinstance(attempts, int) or not 1 <= attempts <= limit:
        raise ReleaseValidationError("max_attempts", f"Must be an integer between 1 and {limit}.")
    cleaned["max_attempts"] = attempts

    cleaned["allow_consultation"] = _parse_flag(data, "allow_consultation")
    cleaned["allow_ai_agent"] = _parse_flag(data, "allow_ai_agent")
    cleaned["location_polygon"] = GeoPolygon.from_raw(data.get("location_polygon")).to_raw()
    return cleaned


def normalize_site(site) -> dict:
    """Accept a URL string or {"url", "title"}; trims the URL and defaults the title to it."""
    if isinstance(site, str):
        url, title = site, ""
    elif isinstance(site, Mapping):
        url, title = site.get("url"), site.get("title") or ""
    else:
        raise ReleaseValidationError("url", "Site must be a URL or an object with 'url'.")
    url = (url or "").strip() if isinstance(url, str) else ""
    if not url:
        raise ReleaseValidationError("url", "Site URL must not be empty.")
    if len(url) > SITE_URL_MAX_LENGTH:
        raise ReleaseValidationError("url", f"Site URL must be at most {SITE_URL_MAX_LENGTH} characters.")
    title = str(title).strip()[:255]
    return {"url": url, "title": title or url[:255]}


def normalize_sites(sites: Optional[Iterable]) -> list:
    return [normalize_site(site) for site in (sites or [])]


def _load(model, pk, field_name):
    with wrap_store_errors(f"load_{field_name}"):
        obj = model.objects.filter(pk=pk).first()
    if obj is None:
        raise ReleaseValidationError(field_name, f"Unknown {model._meta.verbose_name} {pk}.")
    return obj


def resolve_references(scope: ScopeDescriptor, cleaned: dict) -> dict:
    """
    Load the referenced rows, fill professor and institution defaults, and
    enforce the caller's write scope.
    """
    if isinstance(scope, Unauthorized):
        raise PermissionDenied("You are not allowed to create releases.")

    test = _load(Test, cleaned["test_id"], "test_id")
    if test.deleted:
        raise ReleaseValidationError("test_id", f"Test {test.pk} has been deleted.")
    student = _load(Student, cleaned["student_id"], "student_id")
    if student.deleted:
        raise ReleaseValidationError("student_id", f"Student {student.pk} has been deleted.")

    professor_id = cleaned["professor_id"]
    if isinstance(scope, ProfessorScope):
        if professor_id is not None and professor_id != scope.professor_id:
            raise PermissionDenied("Teachers can only release tests under their own name.")
        professor_id = scope.professor_id
    elif professor_id is None:
        professor_id = test.professor_id
    professor = _load(Professor, professor_id, "professor_id")

    institution_id = cleaned["institution_id"] or test.institution_id
    if institution_id is None and isinstance(scope, InstitutionScope):
        institution_id = scope.institution_id
    if institution_id is None:
        institution_id = professor.institution_id
    if institution_id is None:
        raise ReleaseValidationError("institution_id", "No institution given and none could be derived.")

    if isinstance(scope, ProfessorScope):
        if test.professor_id != scope.professor_id:
            raise PermissionDenied("Teachers can only release their own tests.")
        if student.institution_id != scope.institution_id or institution_id != scope.institution_id:
            raise PermissionDenied("Student is outside your institution.")
    elif isinstance(scope, InstitutionScope):
        outside = (
            institution_id != scope.institution_id
            or student.institution_id != scope.institution_id
            or test.institution_id not in (None, scope.institution_id)
            or professor.institution_id not in (None, scope.institution_id)
        )
        if outside:
            raise PermissionDenied("Release must stay within your institution.")

    return {**cleaned, "professor_id": professor.pk, "institution_id": institution_id}


def _attach_sites(release: TestRelease, sites: list) -> list:
    if not sites:
        return []
    try:
        with transaction.atomic():
            return TestReleaseSite.objects.bulk_create(
                [TestReleaseSite(release=release, url=site["url"], title=site["title"]) for site in sites]
            )
    except DatabaseError as exc:
        logger.warning("Release %s saved but its sites were not: %s", release.pk, exc)
        raise SiteAttachmentError(str(exc), release=release) from exc


def create_release(scope: ScopeDescriptor, data: Mapping, sites: Optional[Iterable] = None) -> TestRelease:
    """
    Persist one release and its allowed sites.

    The release row is written first; if the site rows then fail the release is
    kept and SiteAttachmentError carries it so only the sites need retrying.
    """
    cleaned = validate_release_fields(data)
    site_rows = normalize_sites(sites if sites is not None else data.get("sites"))
    fields = resolve_references(scope, cleaned)

    with wrap_store_errors("create_release"), transaction.atomic():
        release = TestRelease.objects.create(**fields)
    _attach_sites(release, site_rows)
    logger.info(
        "Release %s created: test=%s student=%s professor=%s sites=%d",
        release.pk,
        release.test_id,
        release.student_id,
        release.professor_id,
        len(site_rows),
    )
    return release


def _writable_release(scope: ScopeDescriptor, release_id) -> TestRelease:
    if isinstance(scope, Unauthorized):
        raise PermissionDenied("You are not allowed to modify releases.")
    with wrap_store_errors("get_release"):
        return owned_release_queryset(scope).get(pk=release_id)


def soft_delete_release(scope: ScopeDescriptor, release_id) -> TestRelease:
    """
    Mark a release deleted. Already-deleted releases are returned unchanged.
    A live release that graded results point at cannot be deleted.
    """
    release = _writable_release(scope, release_id)
    if release.deleted:
        return release
    with wrap_store_errors("soft_delete_release"):
        result_count = release.results.count()
        if result_count:
            raise ReleaseDependencyError(release.pk, result_count)
        release.deleted = True
        release.save(update_fields=["deleted", "updated_at"])
    logger.info("Release %s soft deleted", release.pk)
    return release


def restore_release(scope: ScopeDescriptor, release_id) -> TestRelease:
    release = _writable_release(scope, release_id)
    if not release.deleted:
        return release
    with wrap_store_errors("restore_release"):
        release.deleted = False
        release.save(update_fields=["deleted", "updated_at"])
    logger.info("Release %s restored", release.pk)
    return release


def add_site(scope: ScopeDescriptor, release_id, site) -> TestReleaseSite:
    cleaned = normalize_site(site)
    release = _writable_release(scope, release_id)
    with wrap_store_errors("add_site"):
        created = TestReleaseSite.objects.create(release=release, **cleaned)
    logger.info("Site %s added to release %s", created.pk, release.pk)
    return created


def remove_site(scope: ScopeDescriptor, site_id) -> None:
    if isinstance(scope, Unauthorized):
        raise PermissionDenied("You are not allowed to modify releases.")
    with wrap_store_errors("remove_site"):
        site = owned_site_queryset(scope).get(pk=site_id)
        release_id = site.release_id
        site.delete()
    logger.info("Site %s removed from release %s", site_id, release_id)
