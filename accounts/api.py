from django.contrib.auth import get_user_model
from django.db.models import Q
from django.utils import timezone
from rest_framework import serializers, status
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from accounts.models import UserSession
from releases.scope import describe_scope, get_request_scope


def _get_client_ip(request):
    xff = request.META.get("HTTP_X_FORWARDED_FOR")
    if xff:
        return xff.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR", "")


def _get_user_agent(request):
    return request.META.get("HTTP_USER_AGENT", "")


def _user_payload(user):
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role or None,
        "last_login": user.last_login.isoformat() if user.last_login else None,
    }


class AuthTokenSerializer(serializers.Serializer):
    username = serializers.CharField(write_only=True)
    password = serializers.CharField(write_only=True, style={"input_type": "password"})

    default_error_messages = {
        "invalid_credentials": "Unable to log in with provided credentials.",
        "inactive": "User account is disabled.",
    }

    def validate(self, attrs):
        username_or_email = attrs.get("username")
        password = attrs.get("password")
        if not username_or_email or not password:
            raise serializers.ValidationError(self.error_messages["invalid_credentials"], code="authorization")

        user = (
            get_user_model()
            .objects.filter(Q(username=username_or_email) | Q(email__iexact=username_or_email))
            .order_by("id")
            .first()
        )
        if not user or not user.check_password(password):
            raise serializers.ValidationError(self.error_messages["invalid_credentials"], code="authorization")
        if not user.is_active:
            raise serializers.ValidationError(self.error_messages["inactive"], code="authorization")

        attrs["user"] = user
        return attrs


class ObtainAuthTokenView(APIView):
    """
    Issue a session token for any active user.
    Accepts either username or email in the "username" field.
    """

    permission_classes = [AllowAny]
    authentication_classes: list = []
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "login"

    def post(self, request, *args, **kwargs):
        serializer = AuthTokenSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        user = serializer.validated_data["user"]

        user.last_login = timezone.now()
        user.save(update_fields=["last_login"])
        session = UserSession.objects.create(
            user=user,
            user_agent=_get_user_agent(request),
            ip_address=_get_client_ip(request),
        )
        return Response({"token": session.key, "user": _user_payload(user)}, status=status.HTTP_200_OK)


class CurrentUserView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, *_args, **_kwargs):
        payload = _user_payload(request.user)
        payload["scope"] = describe_scope(get_request_scope(request))
        return Response(payload, status=status.HTTP_200_OK)


class SessionLogoutView(APIView):
    """
    Revoke the current session (used on logout).
    """

    permission_classes = [IsAuthenticated]

    def post(self, request, *_args, **_kwargs):
        current_session = getattr(request, "auth", None)
        if isinstance(current_session, UserSession):
            current_session.revoke()
            return Response({"detail": "Session revoked."}, status=status.HTTP_200_OK)
        return Response({"detail": "No active session to revoke."}, status=status.HTTP_400_BAD_REQUEST)
