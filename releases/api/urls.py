from django.urls import path
from rest_framework.routers import DefaultRouter

from accounts.api import CurrentUserView, ObtainAuthTokenView, SessionLogoutView
from .views import ReleaseSiteViewSet, ReleaseViewSet

router = DefaultRouter()
router.register("releases", ReleaseViewSet, basename="release")
router.register("release-sites", ReleaseSiteViewSet, basename="release-site")

urlpatterns = [
    path("auth/token/login/", ObtainAuthTokenView.as_view(), name="api-login"),
    path("auth/me/", CurrentUserView.as_view(), name="api-auth-me"),
    path("auth/logout/", SessionLogoutView.as_view(), name="api-auth-logout"),
]

urlpatterns += router.urls
