"""
Read access to the static permission catalog.

The catalog (modules, permission types and their pairs) changes rarely, so
its JSON rendering is cached and invalidated by model signals.
"""
import logging

from django.conf import settings
from django.core.cache import cache
from django.db.models import Count, Q

from apps.core.db import read_guard
from apps.core.exceptions import NotFoundError
from apps.rbac.models import Module, Permission, PermissionType

logger = logging.getLogger(__name__)


class PermissionCatalog:
    """
    Lookups over the active permission catalog.
    """

    CACHE_KEY = 'rbac:permission_catalog'

    @classmethod
    def get_permission(cls, module_code, permission_code):
        """
        Find the active permission for a module/type code pair.

        Raises:
            NotFoundError: If the module, the type or their pair is unknown
                or inactive
        """
        with read_guard('permission lookup'):
            module = Module.objects.by_code(module_code)
            if module is None:
                raise NotFoundError(
                    f"Unknown module: {module_code}",
                    details={'module_code': module_code}
                )

            permission_type = PermissionType.objects.by_code(permission_code)
            if permission_type is None:
                raise NotFoundError(
                    f"Unknown permission type: {permission_code}",
                    details={'permission_code': permission_code}
                )

            permission = Permission.objects.by_codes(module_code, permission_code)

        if permission is None:
            raise NotFoundError(
                f"Permission {module_code}_{permission_code} is not defined",
                details={'module_code': module_code, 'permission_code': permission_code}
            )
        return permission

    @classmethod
    def active_permissions(cls):
        return Permission.objects.active().select_related('module', 'permission_type')

    @classmethod
    def list_modules(cls):
        """Active modules annotated with their count of active permissions."""
        return Module.objects.active().annotate(
            permission_count=Count(
                'permissions',
                filter=Q(permissions__is_active=True, permissions__deleted_at__isnull=True,
                         permissions__permission_type__is_active=True,
                         permissions__permission_type__deleted_at__isnull=True)
            )
        ).order_by('display_order', 'code')

    @classmethod
    def list_permission_types(cls):
        """Active permission types annotated with their count of active permissions."""
        return PermissionType.objects.active().annotate(
            permission_count=Count(
                'permissions',
                filter=Q(permissions__is_active=True, permissions__deleted_at__isnull=True,
                         permissions__module__is_active=True,
                         permissions__module__deleted_at__isnull=True)
            )
        ).order_by('code')

    @classmethod
    def get_permission_matrix(cls):
        """
        Return the static catalog as {modules, permissionTypes, permissions}.

        The result is cached for PERMISSION_CATALOG_CACHE_TTL seconds.
        """
        from apps.rbac.serializers import (
            ModuleSerializer, PermissionSerializer, PermissionTypeSerializer,
        )

        matrix = cache.get(cls.CACHE_KEY)
        if matrix is not None:
            logger.debug("Permission catalog cache hit")
            return matrix

        with read_guard('permission catalog load'):
            matrix = {
                'modules': [dict(row) for row in ModuleSerializer(cls.list_modules(), many=True).data],
                'permissionTypes': [
                    dict(row) for row in PermissionTypeSerializer(cls.list_permission_types(), many=True).data
                ],
                'permissions': [
                    dict(row) for row in PermissionSerializer(cls.active_permissions(), many=True).data
                ],
            }

        cache.set(cls.CACHE_KEY, matrix, settings.PERMISSION_CATALOG_CACHE_TTL)
        logger.debug(
            "Permission catalog cached",
            extra={'permission_count': len(matrix['permissions'])}
        )
        return matrix

    @classmethod
    def invalidate_cache(cls):
        cache.delete(cls.CACHE_KEY)
