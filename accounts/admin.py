from django.contrib import admin
from django.contrib.auth.admin import UserAdmin

from .models import CustomUser, UserSession


class CustomUserAdmin(UserAdmin):
    model = CustomUser
    list_display = [
        "email",
        "username",
        "role",
        "is_staff",
        "is_active",
    ]
    list_filter = ["role", "is_staff", "is_superuser", "is_active"]
    search_fields = ["email", "username", "phone"]
    fieldsets = UserAdmin.fieldsets + (
        ("Profile", {"fields": ("role", "phone")}),
    )
    add_fieldsets = UserAdmin.add_fieldsets + (
        ("Profile", {"fields": ("email", "role", "phone")}),
    )


admin.site.register(CustomUser, CustomUserAdmin)


@admin.register(UserSession)
class UserSessionAdmin(admin.ModelAdmin):
    list_display = ["user", "created_at", "last_seen", "revoked_at", "ip_address"]
    list_filter = ["revoked_at"]
    search_fields = ["user__email", "user__username", "ip_address"]
    readonly_fields = ["key", "created_at", "last_seen"]
