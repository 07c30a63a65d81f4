from django.utils import timezone
from rest_framework import exceptions
from rest_framework.authentication import TokenAuthentication

from accounts.models import UserSession


class UserSessionAuthentication(TokenAuthentication):
    """
    DRF authentication backed by per-login UserSession tokens.
    Revoked sessions and inactive users are rejected; last_seen is touched on every hit.
    """

    keyword = "Token"
    model = UserSession

    def authenticate_credentials(self, key):
        session = self.model.objects.select_related("user").filter(key=key).first()
        if session is None:
            raise exceptions.AuthenticationFailed("Invalid token.")
        if session.revoked_at is not None:
            raise exceptions.AuthenticationFailed("Session revoked.")

        user = session.user
        if not user.is_active:
            raise exceptions.AuthenticationFailed("User inactive or deleted.")

        self.model.objects.filter(pk=session.pk).update(last_seen=timezone.now())
        return (user, session)
