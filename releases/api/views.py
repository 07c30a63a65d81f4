from django.core.exceptions import ObjectDoesNotExist, PermissionDenied
from django.core.exceptions import ValidationError as DjangoValidationError
from django.http import Http404
from django.utils import timezone
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from accounts.models import UserRole
from releases.exceptions import (
    PartialBatchFailure,
    ReleaseDependencyError,
    SiteAttachmentError,
    TransientStoreError,
    wrap_store_errors,
)
from releases.repository import (
    list_auxiliary,
    list_releases,
    owned_release_queryset,
    release_queryset,
    releases_for_class,
    releases_for_student,
)
from releases.scope import Unauthorized, access_state, describe_scope, get_request_scope, is_admin_scope
from releases.services.correlation import load_completion
from releases.services.fan_out import bulk_create_releases, create_class_releases
from releases.services.lifecycle import (
    add_site,
    create_release,
    remove_site,
    restore_release,
    soft_delete_release,
)

from .serializers import (
    BulkReleaseSerializer,
    ClassOptionSerializer,
    ClassReleaseSerializer,
    InstitutionOptionSerializer,
    ProfessorOptionSerializer,
    ReleaseCreateSerializer,
    ReleaseSerializer,
    ReleaseSiteSerializer,
    SiteInputSerializer,
    StudentOptionSerializer,
    TestOptionSerializer,
)

TRUTHY = {"1", "true", "yes", "on"}


def _query_flag(request, name: str) -> bool:
    return str(request.query_params.get(name, "")).strip().lower() in TRUTHY


def _query_institution(request):
    raw = request.query_params.get("institution")
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError({"institution": ["Must be an integer id."]})


class ReleaseErrorMixin:
    """
    Translate release-engine exceptions into HTTP responses. Messages from the
    store are passed through verbatim.
    """

    def handle_exception(self, exc):
        if isinstance(exc, PartialBatchFailure):
            return Response(
                {
                    "detail": str(exc),
                    "created": exc.created_count,
                    "created_ids": [release.pk for release in exc.created],
                    "total": exc.total,
                    "failed_student_id": exc.failed_student_id,
                    "error": _error_body(exc.error),
                },
                status=status.HTTP_409_CONFLICT,
            )
        if isinstance(exc, ReleaseDependencyError):
            return Response(
                {"detail": str(exc), "release": exc.release_id, "results": exc.result_count},
                status=status.HTTP_409_CONFLICT,
            )
        if isinstance(exc, TransientStoreError):
            return Response(_error_body(exc), status=status.HTTP_503_SERVICE_UNAVAILABLE)
        if isinstance(exc, DjangoValidationError):
            return Response(_error_body(exc), status=status.HTTP_400_BAD_REQUEST)
        if isinstance(exc, ObjectDoesNotExist):
            exc = Http404("Not found.")
        return super().handle_exception(exc)


def _error_body(exc) -> dict:
    if isinstance(exc, SiteAttachmentError):
        return {"detail": exc.message, "operation": exc.operation, "release": exc.release.pk}
    if isinstance(exc, TransientStoreError):
        return {"detail": exc.message, "operation": exc.operation}
    if isinstance(exc, DjangoValidationError):
        if hasattr(exc, "error_dict"):
            return exc.message_dict
        return {"detail": exc.messages}
    return {"detail": str(exc)}


class ReleaseViewSet(ReleaseErrorMixin, viewsets.ViewSet):
    """
    Releases visible to the caller. Every handler resolves the caller's scope
    once and passes it to the repository and services.
    """

    permission_classes = [IsAuthenticated]
    lookup_value_regex = r"\d+"

    def _scope(self, request):
        return get_request_scope(request, _query_institution(request))

    def _render(self, releases, scope=None):
        completion, results = load_completion(releases, scope)
        context = {"request": self.request, "completion": completion, "results": results, "now": timezone.now()}
        return ReleaseSerializer(releases, many=True, context=context).data

    def _render_one(self, release, scope):
        return self._render([release], scope)[0]

    def list(self, request):
        scope = self._scope(request)
        listing = list_releases(scope, include_deleted=_query_flag(request, "include_deleted"))
        return Response(
            {
                "access": listing.access,
                "scope": describe_scope(scope),
                "releases": self._render(listing.releases, scope),
            }
        )

    def retrieve(self, request, pk=None):
        scope = self._scope(request)
        with wrap_store_errors("get_release"):
            release = release_queryset(scope, include_deleted=True).get(pk=pk)
        return Response(self._render_one(release, scope))

    def create(self, request):
        scope = self._scope(request)
        serializer = ReleaseCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        sites = data.pop("sites", [])
        release = create_release(scope, data, sites)
        release = owned_release_queryset(scope).get(pk=release.pk)
        return Response(self._render_one(release, scope), status=status.HTTP_201_CREATED)

    def destroy(self, request, pk=None):
        release = soft_delete_release(self._scope(request), pk)
        return Response({"id": release.pk, "deleted": release.deleted}, status=status.HTTP_200_OK)

    @action(detail=True, methods=["post"], url_path="restore")
    def restore(self, request, pk=None):
        scope = self._scope(request)
        release = restore_release(scope, pk)
        return Response(self._render_one(owned_release_queryset(scope).get(pk=release.pk), scope))

    @action(detail=True, methods=["post"], url_path="sites")
    def sites(self, request, pk=None):
        serializer = SiteInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        site = add_site(self._scope(request), pk, serializer.validated_data)
        return Response(ReleaseSiteSerializer(site).data, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["post"], url_path="bulk")
    def bulk(self, request):
        """
        Release one test configuration to many students.
        Expects JSON body: {"student_ids": [1,2,3], "sites": [...], ...base fields}
        """
        scope = self._scope(request)
        serializer = BulkReleaseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        student_ids = data.pop("student_ids")
        sites = data.pop("sites", [])
        outcome = bulk_create_releases(scope, data, student_ids, sites)
        return Response(
            {"created": outcome.created_count, "total": outcome.total, "ids": [r.pk for r in outcome.created]},
            status=status.HTTP_201_CREATED,
        )

    @action(detail=False, methods=["post"], url_path="class", url_name="class")
    def release_to_class(self, request):
        scope = self._scope(request)
        serializer = ClassReleaseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        class_id = data.pop("class_id")
        sites = data.pop("sites", [])
        outcome = create_class_releases(scope, data, class_id, sites)
        return Response(
            {"created": outcome.created_count, "total": outcome.total, "ids": [r.pk for r in outcome.created]},
            status=status.HTTP_201_CREATED,
        )

    @action(detail=False, methods=["get"], url_path="auxiliary")
    def auxiliary(self, request):
        scope = self._scope(request)
        collections = list_auxiliary(scope)
        return Response(
            {
                "access": collections.access,
                "scope": describe_scope(scope),
                "tests": TestOptionSerializer(collections.tests, many=True).data,
                "students": StudentOptionSerializer(collections.students, many=True).data,
                "professors": ProfessorOptionSerializer(collections.professors, many=True).data,
                "institutions": InstitutionOptionSerializer(collections.institutions, many=True).data,
                "classes": ClassOptionSerializer(collections.classes, many=True).data,
            }
        )

    @action(detail=False, methods=["get"], url_path=r"student/(?P<student_id>\d+)", url_name="student-releases")
    def for_student(self, request, student_id=None):
        """
        A student's schedule, earliest first. Students may read only their own;
        staff read it through their usual scope.
        """
        user = request.user
        if getattr(user, "role", "") == UserRole.STUDENT and not is_admin_scope(self._scope(request)):
            profile = getattr(user, "student_profile", None)
            if profile is None or profile.pk != int(student_id):
                raise PermissionDenied("Students can only view their own releases.")
            releases = releases_for_student(student_id)
            return Response({"access": "ok", "releases": self._render(releases)})

        scope = self._scope(request)
        if isinstance(scope, Unauthorized):
            return Response({"access": access_state(scope), "releases": []})
        releases = releases_for_student(student_id, scope)
        return Response({"access": access_state(scope), "releases": self._render(releases, scope)})

    @action(detail=False, methods=["get"], url_path=r"class/(?P<class_id>\d+)", url_name="class-releases")
    def for_class(self, request, class_id=None):
        scope = self._scope(request)
        releases = releases_for_class(scope, class_id)
        return Response({"access": access_state(scope), "releases": self._render(releases, scope)})


class ReleaseSiteViewSet(ReleaseErrorMixin, viewsets.ViewSet):
    permission_classes = [IsAuthenticated]
    lookup_value_regex = r"\d+"

    def destroy(self, request, pk=None):
        remove_site(get_request_scope(request), pk)
        return Response(status=status.HTTP_204_NO_CONTENT)
