"""
Serializers rendering access-control results and catalog data as JSON.

Field names follow the JSON interface consumed by the front-end
(hasPermission, permissionType, isGranted, ...).
"""
from rest_framework import serializers

from apps.rbac.models import (
    Module, PermissionType, Permission, Role, UserPermissionOverride, PermissionAuditLog,
)


class VerdictSerializer(serializers.Serializer):
    """Serializer for a permission check result."""

    hasPermission = serializers.BooleanField(source='granted')
    reason = serializers.CharField()
    sources = serializers.ListField(child=serializers.CharField())


class EffectivePermissionSerializer(serializers.Serializer):
    """Serializer for one row of a user's effective permissions."""

    module = serializers.CharField()
    permissionType = serializers.CharField(source='permission_type')
    permissionFullName = serializers.CharField(source='full_name')
    source = serializers.CharField()
    isGranted = serializers.BooleanField(source='is_granted')
    effectiveDate = serializers.DateTimeField(source='effective_date', allow_null=True)
    expiryDate = serializers.DateTimeField(source='expiry_date', allow_null=True)


class ModuleSerializer(serializers.ModelSerializer):
    """Serializer for catalog modules."""

    moduleCode = serializers.CharField(source='code')
    moduleName = serializers.CharField(source='name')
    displayOrder = serializers.IntegerField(source='display_order')
    permissionCount = serializers.IntegerField(source='permission_count', default=0)

    class Meta:
        model = Module
        fields = ['id', 'moduleCode', 'moduleName', 'description', 'displayOrder', 'permissionCount']


class PermissionTypeSerializer(serializers.ModelSerializer):
    """Serializer for catalog permission types."""

    permissionCode = serializers.CharField(source='code')
    permissionName = serializers.CharField(source='name')
    permissionCount = serializers.IntegerField(source='permission_count', default=0)

    class Meta:
        model = PermissionType
        fields = ['id', 'permissionCode', 'permissionName', 'description', 'permissionCount']


class PermissionSerializer(serializers.ModelSerializer):
    """Serializer for catalog permissions."""

    moduleCode = serializers.CharField(source='module.code')
    permissionCode = serializers.CharField(source='permission_type.code')
    fullName = serializers.CharField(source='full_name')

    class Meta:
        model = Permission
        fields = ['id', 'moduleCode', 'permissionCode', 'fullName', 'description']


class RoleSerializer(serializers.ModelSerializer):
    """Serializer for roles and the full names of their permissions."""

    permissions = serializers.SerializerMethodField()

    class Meta:
        model = Role
        fields = [
            'id', 'name', 'code', 'description', 'is_system_role',
            'department', 'company', 'is_active', 'permissions',
        ]

    def get_permissions(self, obj):
        role_permissions = obj.role_permissions.select_related(
            'permission__module', 'permission__permission_type'
        )
        return sorted(rp.permission.full_name for rp in role_permissions)


class UserPermissionOverrideSerializer(serializers.ModelSerializer):
    """Serializer for per-user overrides."""

    permission = serializers.CharField(source='permission.full_name')
    created_by = serializers.CharField(source='created_by.username')

    class Meta:
        model = UserPermissionOverride
        fields = [
            'id', 'user', 'permission', 'is_granted', 'reason',
            'expiry_date', 'is_active', 'created_by', 'created_at',
        ]


class PermissionAuditLogSerializer(serializers.ModelSerializer):
    """Serializer for audit entries."""

    actor = serializers.SerializerMethodField()

    class Meta:
        model = PermissionAuditLog
        fields = [
            'id', 'action', 'target_type', 'target_id', 'user', 'actor',
            'old_value', 'new_value', 'reason', 'ip_address', 'request_id', 'created_at',
        ]

    def get_actor(self, obj):
        return obj.actor.username if obj.actor else None
