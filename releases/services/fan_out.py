"""
Expand one release configuration into one release per student.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from django.conf import settings
from django.core.exceptions import PermissionDenied, ValidationError
from django.db import transaction

from releases.exceptions import (
    PartialBatchFailure,
    ReleaseValidationError,
    SiteAttachmentError,
    TransientStoreError,
    wrap_store_errors,
)
from releases.models import SchoolClass, Student
from releases.scope import InstitutionScope, ProfessorScope, ScopeDescriptor, Unauthorized
from releases.services.lifecycle import create_release, normalize_sites, validate_release_fields

logger = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    created: list = field(default_factory=list)
    total: int = 0

    @property
    def created_count(self) -> int:
        return len(self.created)


def distinct_student_ids(student_ids: Optional[Iterable]) -> list:
    """Drop duplicates, keeping the first occurrence's position."""
    seen = set()
    ordered = []
    for raw in student_ids or []:
        if isinstance(raw, bool):
            raise ReleaseValidationError("student_ids", "Student ids must be integers.")
        try:
            student_id = int(raw)
        except (TypeError, ValueError):
            raise ReleaseValidationError("student_ids", f"Invalid student id {raw!r}.")
        if student_id not in seen:
            seen.add(student_id)
            ordered.append(student_id)
    return ordered


def _run_batch(scope, base, student_ids, sites, created, *, atomic_mode):
    for student_id in student_ids:
        try:
            created.append(create_release(scope, {**base, "student_id": student_id}, sites))
        except SiteAttachmentError as exc:
            # The release row exists even though its sites do not.
            created.append(exc.release)
            raise PartialBatchFailure(
                created=[] if atomic_mode else created,
                total=len(student_ids),
                failed_student_id=student_id,
                error=exc,
            ) from exc
        except (ValidationError, PermissionDenied, TransientStoreError) as exc:
            logger.warning("Bulk release failed for student %s: %s", student_id, exc)
            raise PartialBatchFailure(
                created=[] if atomic_mode else created,
                total=len(student_ids),
                failed_student_id=student_id,
                error=exc,
            ) from exc


def bulk_create_releases(
    scope: ScopeDescriptor,
    base: Mapping,
    student_ids: Optional[Iterable],
    sites: Optional[Iterable] = None,
    *,
    atomic: Optional[bool] = None,
) -> BatchOutcome:
    """
    Create one release per distinct student, in the order given.

    Every release gets its own copy of `sites`. By default the batch is best
    effort: the first failure stops the loop and releases already created stay.
    With `atomic` (or RELEASE_BULK_ATOMIC) the whole batch rolls back instead.
    An empty student list is a successful no-op.
    """
    ordered = distinct_student_ids(student_ids)
    if not ordered:
        logger.info("Bulk release called with no students; nothing to do")
        return BatchOutcome()

    # A malformed base config fails the same way for everyone, so reject it up front.
    validate_release_fields(base, require_student=False)
    site_rows = normalize_sites(sites)
    if isinstance(scope, Unauthorized):
        raise PermissionDenied("You are not allowed to create releases.")

    atomic_mode = getattr(settings, "RELEASE_BULK_ATOMIC", False) if atomic is None else atomic
    created = []
    if atomic_mode:
        with transaction.atomic():
            _run_batch(scope, base, ordered, site_rows, created, atomic_mode=True)
    else:
        _run_batch(scope, base, ordered, site_rows, created, atomic_mode=False)

    logger.info("Bulk release created %d releases for %d students", len(created), len(ordered))
    return BatchOutcome(created=created, total=len(ordered))


def class_student_ids(scope: ScopeDescriptor, class_id) -> list:
    """Ids of the live students in a class the caller may release to."""
    if isinstance(scope, Unauthorized):
        raise PermissionDenied("You are not allowed to create releases.")
    with wrap_store_errors("load_class"):
        school_class = SchoolClass.objects.filter(pk=class_id).first()
        if school_class is None:
            raise ReleaseValidationError("class_id", f"Unknown class {class_id}.")
        if isinstance(scope, (InstitutionScope, ProfessorScope)) and school_class.institution_id != scope.institution_id:
            raise PermissionDenied("Class is outside your institution.")
        return list(
            Student.objects.filter(school_class=school_class, deleted=False)
            .order_by("name", "id")
            .values_list("id", flat=True)
        )


def create_class_releases(
    scope: ScopeDescriptor,
    base: Mapping,
    class_id,
    sites: Optional[Iterable] = None,
    *,
    atomic: Optional[bool] = None,
) -> BatchOutcome:
    return bulk_create_releases(scope, base, class_student_ids(scope, class_id), sites, atomic=atomic)
