from django.utils import timezone
from rest_framework import serializers

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
from releases.status import release_status


class ReleaseSiteSerializer(serializers.ModelSerializer):
    class Meta:
        model = TestReleaseSite
        fields = ("id", "release", "url", "title")
        read_only_fields = fields


class ReleaseResultSerializer(serializers.ModelSerializer):
    class Meta:
        model = TestResult
        fields = ("id", "score", "correct_count", "error_count", "correction_date")
        read_only_fields = fields


class ReleaseSerializer(serializers.ModelSerializer):
    """
    Listing entry for a release. Status and result details come from the
    `completion` and `results` maps the view puts into the context, so the
    serializer never queries results per row.
    """

    test_title = serializers.CharField(source="test.title", read_only=True)
    student_name = serializers.CharField(source="student.name", read_only=True)
    professor_name = serializers.CharField(source="professor.name", read_only=True)
    institution_name = serializers.CharField(source="institution.name", read_only=True)
    allowed_sites = ReleaseSiteSerializer(many=True, read_only=True)
    status = serializers.SerializerMethodField()
    has_result = serializers.SerializerMethodField()
    results = serializers.SerializerMethodField()

    class Meta:
        model = TestRelease
        fields = (
            "id",
            "test",
            "test_title",
            "student",
            "student_name",
            "professor",
            "professor_name",
            "institution",
            "institution_name",
            "start_time",
            "end_time",
            "max_attempts",
            "allow_consultation",
            "allow_ai_agent",
            "location_polygon",
            "deleted",
            "status",
            "has_result",
            "results",
            "allowed_sites",
            "created_at",
        )
        read_only_fields = fields

    def _now(self):
        return self.context.setdefault("now", timezone.now())

    def get_has_result(self, obj):
        return bool(self.context.get("completion", {}).get(obj.pk, False))

    def get_status(self, obj):
        return release_status(obj, self._now(), self.context.get("completion", {})).value

    def get_results(self, obj):
        rows = self.context.get("results", {}).get(obj.pk, [])
        return ReleaseResultSerializer(rows, many=True).data


class SiteInputSerializer(serializers.Serializer):
    url = serializers.CharField(max_length=2048, allow_blank=True, trim_whitespace=False)
    title = serializers.CharField(max_length=255, required=False, allow_blank=True)


class ReleaseBaseSerializer(serializers.Serializer):
    """Fields shared by single, bulk and class releases. Range checks happen in the service."""

    test_id = serializers.IntegerField()
    professor_id = serializers.IntegerField(required=False, allow_null=True)
    institution_id = serializers.IntegerField(required=False, allow_null=True)
    start_time = serializers.DateTimeField()
    end_time = serializers.DateTimeField()
    max_attempts = serializers.IntegerField(required=False, default=1)
    allow_consultation = serializers.BooleanField(required=False, default=False)
    allow_ai_agent = serializers.BooleanField(required=False, default=False)
    location_polygon = serializers.JSONField(required=False, default=list)
    sites = SiteInputSerializer(many=True, required=False, default=list)


class ReleaseCreateSerializer(ReleaseBaseSerializer):
    student_id = serializers.IntegerField()


class BulkReleaseSerializer(ReleaseBaseSerializer):
    student_ids = serializers.ListField(child=serializers.IntegerField(), allow_empty=True)


class ClassReleaseSerializer(ReleaseBaseSerializer):
    class_id = serializers.IntegerField()


class TestOptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Test
        fields = ("id", "title", "professor", "institution")


class StudentOptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Student
        fields = ("id", "name", "student_hash", "institution", "school_class")


class ProfessorOptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Professor
        fields = ("id", "name", "institution")


class InstitutionOptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Institution
        fields = ("id", "name")


class ClassOptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = SchoolClass
        fields = ("id", "name", "institution")
