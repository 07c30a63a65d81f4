"""
Scoped reads over releases and the collections needed to build them.

Every query here takes a resolved scope and filters at the database, so rows
outside the caller's scope never leave this module.
"""
from dataclasses import dataclass, field
from typing import Iterable, Optional

from django.db.models import QuerySet

from releases.exceptions import wrap_store_errors
from releases.models import (
    Institution,
    Professor,
    SchoolClass,
    Student,
    Test,
    TestRelease,
    TestReleaseSite,
    TestResult,
)
from releases.scope import (
    GlobalScope,
    InstitutionScope,
    ProfessorScope,
    ScopeDescriptor,
    Unauthorized,
    access_state,
)


@dataclass
class ReleaseListing:
    access: str
    releases: list = field(default_factory=list)


@dataclass
class AuxiliaryCollections:
    access: str
    tests: list = field(default_factory=list)
    students: list = field(default_factory=list)
    professors: list = field(default_factory=list)
    institutions: list = field(default_factory=list)
    classes: list = field(default_factory=list)


def _base_releases() -> QuerySet:
    return TestRelease.objects.select_related("test", "student", "professor", "institution").prefetch_related(
        "allowed_sites"
    )


def _scope_releases(qs: QuerySet, scope: ScopeDescriptor, *, honour_filter: bool = True) -> QuerySet:
    if isinstance(scope, Unauthorized):
        return qs.none()
    if isinstance(scope, ProfessorScope):
        # Teachers see what they authored, not their whole institution.
        return qs.filter(professor_id=scope.professor_id)
    if isinstance(scope, InstitutionScope):
        return qs.filter(institution_id=scope.institution_id)
    if isinstance(scope, GlobalScope) and honour_filter and scope.institution_id:
        return qs.filter(institution_id=scope.institution_id)
    return qs


def release_queryset(scope: ScopeDescriptor, include_deleted: bool = False) -> QuerySet:
    """
    Releases visible under `scope`. Only administrators can see soft-deleted
    rows; the flag is ignored for every other scope.
    """
    qs = _scope_releases(_base_releases(), scope)
    if not (include_deleted and isinstance(scope, GlobalScope)):
        qs = qs.active()
    return qs


def owned_release_queryset(scope: ScopeDescriptor) -> QuerySet:
    """
    Releases the caller may write to, soft-deleted rows included so they can be
    restored. The administrator's listing filter does not narrow writes.
    """
    return _scope_releases(_base_releases(), scope, honour_filter=False)


def owned_site_queryset(scope: ScopeDescriptor) -> QuerySet:
    return TestReleaseSite.objects.select_related("release").filter(
        release__in=owned_release_queryset(scope).values("pk")
    )


def list_releases(scope: ScopeDescriptor, include_deleted: bool = False) -> ReleaseListing:
    access = access_state(scope)
    if isinstance(scope, Unauthorized):
        return ReleaseListing(access=access)
    with wrap_store_errors("list_releases"):
        releases = list(release_queryset(scope, include_deleted))
    return ReleaseListing(access=access, releases=releases)


def releases_for_student(student_id, scope: Optional[ScopeDescriptor] = None) -> list:
    """
    Upcoming schedule of one student, earliest first. Without a scope the
    student is reading their own schedule.
    """
    qs = _base_releases().active() if scope is None else release_queryset(scope)
    with wrap_store_errors("releases_for_student"):
        return list(qs.filter(student_id=student_id).order_by("start_time", "id"))


def releases_for_class(scope: ScopeDescriptor, class_id) -> list:
    qs = release_queryset(scope).filter(student__school_class_id=class_id)
    with wrap_store_errors("releases_for_class"):
        return list(qs.order_by("start_time", "id"))


def results_in_scope(scope: Optional[ScopeDescriptor], release_ids: Optional[Iterable] = None) -> list:
    """Graded results linked to releases the caller can see."""
    qs = TestResult.objects.filter(release__isnull=False)
    if scope is not None:
        if isinstance(scope, Unauthorized):
            return []
        if isinstance(scope, ProfessorScope):
            qs = qs.filter(release__professor_id=scope.professor_id)
        elif isinstance(scope, InstitutionScope) or scope.institution_id:
            qs = qs.filter(release__institution_id=scope.institution_id)
    if release_ids is not None:
        qs = qs.filter(release_id__in=list(release_ids))
    with wrap_store_errors("results_in_scope"):
        return list(qs.order_by("release_id", "-correction_date"))


def list_auxiliary(scope: ScopeDescriptor) -> AuxiliaryCollections:
    """
    Tests, students, professors, institutions and classes a caller can pick
    from when building a release, filtered with the same rule as listings.
    """
    access = access_state(scope)
    if isinstance(scope, Unauthorized):
        return AuxiliaryCollections(access=access)

    tests = Test.objects.filter(deleted=False).select_related("professor", "institution")
    students = Student.objects.filter(deleted=False).select_related("school_class")
    professors = Professor.objects.select_related("institution")
    institutions = Institution.objects.all()
    classes = SchoolClass.objects.select_related("institution")

    if isinstance(scope, ProfessorScope):
        tests = tests.filter(professor_id=scope.professor_id)
        professors = professors.filter(pk=scope.professor_id)
        if scope.institution_id:
            students = students.filter(institution_id=scope.institution_id)
            institutions = institutions.filter(pk=scope.institution_id)
            classes = classes.filter(institution_id=scope.institution_id)
        else:
            students = students.none()
            institutions = institutions.none()
            classes = classes.none()
    elif scope.institution_id:
        tests = tests.filter(institution_id=scope.institution_id)
        students = students.filter(institution_id=scope.institution_id)
        professors = professors.filter(institution_id=scope.institution_id)
        institutions = institutions.filter(pk=scope.institution_id)
        classes = classes.filter(institution_id=scope.institution_id)

    with wrap_store_errors("list_auxiliary"):
        return AuxiliaryCollections(
            access=access,
            tests=list(tests),
            students=list(students),
            professors=list(professors),
            institutions=list(institutions),
            classes=list(classes),
        )
