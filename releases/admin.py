from django import forms
from django.contrib import admin

from .geo import GeoPolygon
from .models import (
    Institution,
    Professor,
    SchoolClass,
    Student,
    Test,
    TestRelease,
    TestReleaseSite,
    TestResult,
)


class TestReleaseAdminForm(forms.ModelForm):
    class Meta:
        model = TestRelease
        fields = "__all__"

    def clean_location_polygon(self):
        # Same vertex checks as the API; stores the normalised {"lat", "lng"} form.
        return GeoPolygon.from_raw(self.cleaned_data.get("location_polygon")).to_raw()


class TestReleaseSiteInline(admin.TabularInline):
    model = TestReleaseSite
    extra = 0


@admin.register(Institution)
class InstitutionAdmin(admin.ModelAdmin):
    list_display = ("name", "manager", "created_at")
    search_fields = ("name", "manager__email", "manager__username")


@admin.register(Professor)
class ProfessorAdmin(admin.ModelAdmin):
    list_display = ("name", "institution", "user")
    list_filter = ("institution",)
    search_fields = ("name", "user__email")


@admin.register(SchoolClass)
class SchoolClassAdmin(admin.ModelAdmin):
    list_display = ("name", "institution")
    list_filter = ("institution",)
    search_fields = ("name",)


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = ("name", "student_hash", "institution", "school_class", "deleted")
    list_filter = ("institution", "deleted")
    search_fields = ("name", "student_hash")


@admin.register(Test)
class TestAdmin(admin.ModelAdmin):
    list_display = ("title", "professor", "institution", "deleted")
    list_filter = ("institution", "deleted")
    search_fields = ("title", "professor__name")


@admin.register(TestRelease)
class TestReleaseAdmin(admin.ModelAdmin):
    form = TestReleaseAdminForm
    inlines = [TestReleaseSiteInline]
    list_display = (
        "test",
        "student",
        "professor",
        "institution",
        "start_time",
        "end_time",
        "max_attempts",
        "deleted",
    )
    list_filter = ("institution", "deleted", "allow_consultation", "allow_ai_agent")
    search_fields = ("test__title", "student__name", "professor__name")
    raw_id_fields = ("test", "student", "professor")
    ordering = ("-created_at",)


@admin.register(TestResult)
class TestResultAdmin(admin.ModelAdmin):
    list_display = ("student", "test", "release", "score", "correction_date")
    search_fields = ("student__name", "test__title")
    raw_id_fields = ("release", "test", "student")
    ordering = ("-correction_date",)
