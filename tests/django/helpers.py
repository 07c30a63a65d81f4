from datetime import datetime, timedelta, timezone as dt_timezone

from django.contrib.auth import get_user_model

from accounts.models import UserRole
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

START = datetime(2025, 3, 1, 9, 0, tzinfo=dt_timezone.utc)
END = datetime(2025, 3, 1, 11, 0, tzinfo=dt_timezone.utc)


class ReleaseWorldMixin:
    """
    Two institutions, their managers and teachers, a class, a few students and
    tests. Mixed into TestCase classes; call build_world() from setUp.
    """

    def build_world(self):
        User = get_user_model()

        def user(username, role):
            return User.objects.create_user(
                username=username,
                email=f"{username}@example.com",
                password="secret",
                role=role,
            )

        self.admin_user = user("admin", UserRole.ADMINISTRATOR)
        self.manager_a_user = user("manager_a", UserRole.INSTITUTION)
        self.manager_b_user = user("manager_b", UserRole.INSTITUTION)
        self.unlinked_manager_user = user("manager_none", UserRole.INSTITUTION)
        self.teacher_a1_user = user("teacher_a1", UserRole.TEACHER)
        self.teacher_a2_user = user("teacher_a2", UserRole.TEACHER)
        self.unlinked_teacher_user = user("teacher_none", UserRole.TEACHER)
        self.student_user = user("student_a1", UserRole.STUDENT)
        self.plain_user = user("nobody", "")

        self.inst_a = Institution.objects.create(name="Alpha School", manager=self.manager_a_user)
        self.inst_b = Institution.objects.create(name="Beta School", manager=self.manager_b_user)

        self.prof_a1 = Professor.objects.create(user=self.teacher_a1_user, name="Ada", institution=self.inst_a)
        self.prof_a2 = Professor.objects.create(user=self.teacher_a2_user, name="Alan", institution=self.inst_a)
        self.prof_b = Professor.objects.create(name="Barbara", institution=self.inst_b)

        self.class_a = SchoolClass.objects.create(name="3A", institution=self.inst_a)
        self.class_b = SchoolClass.objects.create(name="5B", institution=self.inst_b)

        self.student_a1 = Student.objects.create(
            user=self.student_user, name="Alice", institution=self.inst_a, school_class=self.class_a
        )
        self.student_a2 = Student.objects.create(name="Bob", institution=self.inst_a, school_class=self.class_a)
        self.student_a3 = Student.objects.create(
            name="Carol", institution=self.inst_a, school_class=self.class_a, deleted=True
        )
        self.student_a4 = Student.objects.create(name="Dave", institution=self.inst_a)
        self.student_b1 = Student.objects.create(name="Eve", institution=self.inst_b, school_class=self.class_b)

        self.test_a1 = Test.objects.create(title="Algebra", professor=self.prof_a1, institution=self.inst_a)
        self.test_a2 = Test.objects.create(title="Biology", professor=self.prof_a2, institution=self.inst_a)
        self.test_b = Test.objects.create(title="Chemistry", professor=self.prof_b, institution=self.inst_b)

    def make_release(self, test, student, **overrides):
        fields = {
            "test": test,
            "student": student,
            "professor": test.professor,
            "institution": test.institution,
            "start_time": START,
            "end_time": END,
        }
        fields.update(overrides)
        return TestRelease.objects.create(**fields)

    def make_site(self, release, url="https://docs.python.org", title=""):
        return TestReleaseSite.objects.create(release=release, url=url, title=title)

    def make_result(self, release, score=8.5):
        return TestResult.objects.create(release=release, test=release.test, student=release.student, score=score)

    def base_payload(self, test=None, **overrides):
        payload = {
            "test_id": (test or self.test_a1).pk,
            "start_time": START,
            "end_time": END,
            "max_attempts": 2,
            "allow_consultation": True,
            "allow_ai_agent": False,
            "location_polygon": [
                {"lat": 41.0, "lng": 2.0},
                {"lat": 41.0, "lng": 2.1},
                {"lat": 41.1, "lng": 2.1},
            ],
        }
        payload.update(overrides)
        return payload
