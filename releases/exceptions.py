"""
Error taxonomy for the release engine.

Validation problems are raised before anything is written. Storage failures are
wrapped and propagated with the driver's message intact; nothing here retries.
"""
import logging
from contextlib import contextmanager

from django.core.exceptions import ValidationError
from django.db import DatabaseError

logger = logging.getLogger(__name__)


class ReleaseValidationError(ValidationError):
    """Malformed release input, keyed by the offending field."""

    def __init__(self, field: str, message: str):
        super().__init__({field: [message]})
        self.field = field

    def __str__(self):
        return f"{self.field}: {'; '.join(self.message_dict[self.field])}"


class TransientStoreError(Exception):
    """The persistence layer failed (connection, constraint, timeout)."""

    def __init__(self, message: str, *, operation: str = ""):
        super().__init__(message)
        self.message = message
        self.operation = operation


class SiteAttachmentError(TransientStoreError):
    """The release row was written but its allowed-site rows were not."""

    def __init__(self, message: str, *, release):
        super().__init__(message, operation="attach_sites")
        self.release = release


class ReleaseDependencyError(Exception):
    """Soft delete refused because graded results already point at the release."""

    def __init__(self, release_id, result_count: int):
        super().__init__(
            f"Release {release_id} cannot be deleted: {result_count} test result(s) are linked to it."
        )
        self.release_id = release_id
        self.result_count = result_count


class PartialBatchFailure(Exception):
    """
    A bulk fan-out stopped at its first failing student.

    `created` holds the releases persisted before the failure; they are kept
    unless the batch ran in atomic mode (in which case `created` is empty).
    """

    def __init__(self, *, created, total: int, failed_student_id, error: Exception):
        self.created = list(created)
        self.created_count = len(self.created)
        self.total = total
        self.failed_student_id = failed_student_id
        self.error = error
        super().__init__(
            f"Created {self.created_count} of {total} releases; "
            f"failed for student {failed_student_id}: {error}"
        )


@contextmanager
def wrap_store_errors(operation: str):
    """Re-raise ORM failures as TransientStoreError, keeping the driver message."""
    try:
        yield
    except DatabaseError as exc:
        logger.warning("Store failure during %s: %s", operation, exc)
        raise TransientStoreError(str(exc), operation=operation) from exc
