"""
Django admin configuration for RBAC app.

Assignments, overrides and role permission sets are changed through
RBACService so that every change is audited; the admin shows them
read-only. The audit log can never be edited or deleted here.
"""
from django.contrib import admin
from .models import (
    Module,
    PermissionType,
    Permission,
    Role,
    RolePermission,
    User,
    UserRole,
    UserPermissionOverride,
    PermissionAuditLog,
)


class ReadOnlyAdmin(admin.ModelAdmin):
    """Admin that lists and shows rows but never writes them."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Module)
class ModuleAdmin(admin.ModelAdmin):
    list_display = ['code', 'name', 'display_order', 'is_active']
    list_filter = ['is_active']
    search_fields = ['code', 'name']
    ordering = ['display_order', 'code']


@admin.register(PermissionType)
class PermissionTypeAdmin(admin.ModelAdmin):
    list_display = ['code', 'name', 'is_active']
    list_filter = ['is_active']


@admin.register(Permission)
class PermissionAdmin(admin.ModelAdmin):
    list_display = ['full_name', 'module', 'permission_type', 'is_active']
    list_filter = ['is_active', 'module', 'permission_type']
    list_select_related = ['module', 'permission_type']


class RolePermissionInline(admin.TabularInline):
    """Inline view of a role's permissions."""
    model = RolePermission
    extra = 0
    fields = ['permission', 'granted_at', 'granted_by']
    readonly_fields = ['permission', 'granted_at', 'granted_by']
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Role)
class RoleAdmin(admin.ModelAdmin):
    list_display = ['name', 'code', 'is_system_role', 'department', 'company', 'is_active']
    list_filter = ['is_system_role', 'is_active']
    search_fields = ['name', 'code']
    readonly_fields = ['is_system_role', 'created_at', 'updated_at']
    inlines = [RolePermissionInline]

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ['username', 'employee', 'is_system_admin', 'is_active', 'is_locked', 'last_login_date']
    list_filter = ['is_system_admin', 'is_active', 'is_locked']
    search_fields = ['username', 'employee__email', 'employee__last_name']
    readonly_fields = ['last_login_date', 'login_attempts', 'created_at', 'updated_at']


@admin.register(UserRole)
class UserRoleAdmin(ReadOnlyAdmin):
    list_display = ['user', 'role', 'assigned_at', 'expiry_date', 'is_active', 'assigned_by']
    list_filter = ['is_active', 'role']
    search_fields = ['user__username', 'role__code']


@admin.register(UserPermissionOverride)
class UserPermissionOverrideAdmin(ReadOnlyAdmin):
    list_display = ['user', 'permission', 'is_granted', 'expiry_date', 'is_active', 'created_by']
    list_filter = ['is_granted', 'is_active']
    search_fields = ['user__username', 'reason']


@admin.register(PermissionAuditLog)
class PermissionAuditLogAdmin(ReadOnlyAdmin):
    list_display = ['created_at', 'action', 'target_type', 'target_id', 'user', 'actor']
    list_filter = ['action', 'target_type']
    search_fields = ['target_id', 'reason', 'user__username', 'actor__username']
    date_hierarchy = 'created_at'
