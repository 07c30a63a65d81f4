"""
Who may see which releases.

The acting user is resolved once into one of four scope descriptors, and that
descriptor is handed to every query and write instead of re-checking role
strings at each call site.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

from accounts.models import UserRole
from releases.exceptions import wrap_store_errors
from releases.models import Institution, Professor

logger = logging.getLogger(__name__)

ACCESS_OK = "ok"
ACCESS_UNLINKED = "unlinked"
ACCESS_DENIED = "denied"


@dataclass(frozen=True)
class GlobalScope:
    """Platform administrator, optionally narrowed to one institution."""

    institution_id: Optional[int] = None

    def narrowed(self, institution_id) -> "GlobalScope":
        return GlobalScope(institution_id=int(institution_id) if institution_id else None)


@dataclass(frozen=True)
class InstitutionScope:
    """Manager of a single institution."""

    institution_id: int


@dataclass(frozen=True)
class ProfessorScope:
    """A teacher: sees what they authored, picks students from their institution."""

    professor_id: int
    institution_id: Optional[int] = None


@dataclass(frozen=True)
class Unauthorized:
    """No release access. `reason` separates a denied role from an unlinked profile."""

    role: str = ""
    reason: str = ACCESS_DENIED


ScopeDescriptor = Union[GlobalScope, InstitutionScope, ProfessorScope, Unauthorized]


def is_admin_scope(scope: ScopeDescriptor) -> bool:
    return isinstance(scope, GlobalScope)


def access_state(scope: ScopeDescriptor) -> str:
    if isinstance(scope, Unauthorized):
        return scope.reason
    return ACCESS_OK


def resolve_scope(user, institution_filter=None) -> ScopeDescriptor:
    """
    Map an authenticated user to exactly one scope.

    Missing links (a manager with no institution, a teacher with no professor
    record) resolve to an empty scope rather than an error. Database failures
    propagate as TransientStoreError.
    """
    if user is None or not getattr(user, "is_authenticated", False):
        return Unauthorized(reason=ACCESS_DENIED)

    role = getattr(user, "role", "") or ""
    if getattr(user, "is_platform_admin", False) or getattr(user, "is_superuser", False):
        return GlobalScope().narrowed(institution_filter)

    if role == UserRole.INSTITUTION:
        with wrap_store_errors("resolve_institution_by_manager"):
            institution_id = (
                Institution.objects.filter(manager=user).order_by("id").values_list("id", flat=True).first()
            )
        if institution_id is None:
            logger.info("Institution manager %s is not linked to an institution", user.pk)
            return Unauthorized(role=role, reason=ACCESS_UNLINKED)
        return InstitutionScope(institution_id=institution_id)

    if role == UserRole.TEACHER:
        with wrap_store_errors("resolve_professor_by_user"):
            professor = Professor.objects.filter(user=user).only("id", "institution_id").first()
        if professor is None:
            logger.info("Teacher %s has no professor record", user.pk)
            return Unauthorized(role=role, reason=ACCESS_UNLINKED)
        return ProfessorScope(professor_id=professor.id, institution_id=professor.institution_id)

    logger.info("Role %r of user %s has no release access", role, user.pk)
    return Unauthorized(role=role, reason=ACCESS_DENIED)


def get_request_scope(request, institution_filter=None) -> ScopeDescriptor:
    """
    Resolve the scope once per request and reuse it; a different principal on
    the same request object forces a fresh lookup. The institution filter only
    narrows administrator scopes and is ignored for everyone else.
    """
    user = getattr(request, "user", None)
    principal = getattr(user, "pk", None)
    cached = getattr(request, "_release_scope", None)
    if cached is None or cached[0] != principal:
        cached = (principal, resolve_scope(user))
        request._release_scope = cached

    scope = cached[1]
    if institution_filter and isinstance(scope, GlobalScope):
        return scope.narrowed(institution_filter)
    return scope


def describe_scope(scope: ScopeDescriptor) -> dict:
    if isinstance(scope, GlobalScope):
        kind = "global"
    elif isinstance(scope, InstitutionScope):
        kind = "institution"
    elif isinstance(scope, ProfessorScope):
        kind = "professor"
    else:
        kind = "unauthorized"
    return {
        "kind": kind,
        "access": access_state(scope),
        "institution_id": getattr(scope, "institution_id", None),
        "professor_id": getattr(scope, "professor_id", None),
        "is_admin": is_admin_scope(scope),
    }
