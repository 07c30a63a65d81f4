from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone

from releases.geo import GeoPolygon


# ---------- DIRECTORY TABLES ----------


class Institution(models.Model):
    name = models.CharField(max_length=255)
    manager = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="managed_institutions",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class Professor(models.Model):
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="professor_profile",
    )
    name = models.CharField(max_length=255)
    institution = models.ForeignKey(
        Institution,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="professors",
    )

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class SchoolClass(models.Model):
    name = models.CharField(max_length=100)
    institution = models.ForeignKey(Institution, on_delete=models.CASCADE, related_name="classes")

    class Meta:
        ordering = ["name"]
        verbose_name = "Class"
        verbose_name_plural = "Classes"

    def __str__(self):
        return f"{self.name} ({self.institution})"


class Student(models.Model):
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="student_profile",
    )
    name = models.CharField(max_length=255)
    student_hash = models.CharField(max_length=64, blank=True)
    institution = models.ForeignKey(Institution, on_delete=models.CASCADE, related_name="students")
    school_class = models.ForeignKey(
        SchoolClass,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="students",
    )
    deleted = models.BooleanField(default=False)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class Test(models.Model):
    __test__ = False  # keep pytest from collecting the model

    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    professor = models.ForeignKey(Professor, on_delete=models.PROTECT, related_name="tests")
    institution = models.ForeignKey(
        Institution,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="tests",
    )
    deleted = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["title"]

    def __str__(self):
        return self.title


# ---------- RELEASES ----------


class ActiveReleaseQuerySet(models.QuerySet):
    def active(self):
        return self.filter(deleted=False)

    def soft_deleted(self):
        return self.filter(deleted=True)


class TestRelease(models.Model):
    """
    Binds one test to one student inside a time window.

    Rows are never hard-deleted: `deleted` is flipped by soft delete and restore.
    `location_polygon` stores an ordered list of {"lat", "lng"} vertices; the
    closing edge from the last vertex back to the first is implicit.
    """

    __test__ = False

    test = models.ForeignKey(Test, on_delete=models.PROTECT, related_name="releases")
    student = models.ForeignKey(Student, on_delete=models.PROTECT, related_name="releases")
    professor = models.ForeignKey(Professor, on_delete=models.PROTECT, related_name="releases")
    institution = models.ForeignKey(Institution, on_delete=models.PROTECT, related_name="releases")
    start_time = models.DateTimeField()
    end_time = models.DateTimeField()
    max_attempts = models.PositiveSmallIntegerField(default=1)
    allow_consultation = models.BooleanField(default=False)
    allow_ai_agent = models.BooleanField(default=False)
    location_polygon = models.JSONField(default=list, blank=True)
    deleted = models.BooleanField(default=False)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ActiveReleaseQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["institution", "deleted"], name="release_inst_deleted_idx"),
            models.Index(fields=["professor", "deleted"], name="release_prof_deleted_idx"),
            models.Index(fields=["student", "start_time"], name="release_student_start_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(end_time__gt=models.F("start_time")),
                name="test_release_end_after_start",
            ),
            models.CheckConstraint(
                condition=models.Q(max_attempts__gte=1),
                name="test_release_max_attempts_positive",
            ),
        ]

    def __str__(self):
        return f"{self.test} -> {self.student}"

    @property
    def polygon(self) -> GeoPolygon:
        return GeoPolygon.from_raw(self.location_polygon or [])

    def clean(self):
        super().clean()
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValidationError({"end_time": "End time must be after start time."})


class TestReleaseSite(models.Model):
    __test__ = False

    release = models.ForeignKey(TestRelease, on_delete=models.CASCADE, related_name="allowed_sites")
    url = models.URLField(max_length=2048)
    title = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ["id"]

    def __str__(self):
        return self.title or self.url

    def save(self, *args, **kwargs):
        if not self.title:
            self.title = self.url
        return super().save(*args, **kwargs)


# ---------- RESULTS (written by the grading side) ----------


class TestResult(models.Model):
    __test__ = False

    release = models.ForeignKey(
        TestRelease,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="results",
    )
    test = models.ForeignKey(Test, on_delete=models.CASCADE, related_name="results")
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name="results")
    score = models.FloatField(default=0)
    correct_count = models.IntegerField(default=0)
    error_count = models.IntegerField(default=0)
    correction_date = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-correction_date"]

    def __str__(self):
        return f"{self.student} - {self.test}: {self.score}"
