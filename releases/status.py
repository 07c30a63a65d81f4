from datetime import datetime
from typing import Mapping

from django.db import models


class ReleaseStatus(models.TextChoices):
    SCHEDULED = "scheduled", "Scheduled"
    ACTIVE = "active", "Active"
    CLOSED = "closed", "Closed"
    COMPLETED = "completed", "Completed"
    DELETED = "deleted", "Deleted"


def derive_status(now: datetime, start_time: datetime, end_time: datetime, has_result: bool) -> ReleaseStatus:
    """
    Status of a live release at `now`.

    A linked result wins over the time window, so a release graded after it
    closed still reads as completed. Both window bounds are inclusive for Active.
    """
    if has_result:
        return ReleaseStatus.COMPLETED
    if now < start_time:
        return ReleaseStatus.SCHEDULED
    if now > end_time:
        return ReleaseStatus.CLOSED
    return ReleaseStatus.ACTIVE


def release_status(release, now: datetime, completion: Mapping) -> ReleaseStatus:
    # Soft-deleted rows never reach derive_status.
    if release.deleted:
        return ReleaseStatus.DELETED
    return derive_status(now, release.start_time, release.end_time, bool(completion.get(release.pk, False)))
