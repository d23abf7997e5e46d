"""
Permission resolution.

Decides whether a user may perform an action on a module. Precedence,
first match wins:

1. System administrator bypass
2. Effective per-user override (grant or deny)
3. Effective role assignment whose role grants the permission
4. Default deny
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from django.core.exceptions import ValidationError as DjangoValidationError
from django.utils import timezone

from apps.core.db import read_guard
from apps.core.exceptions import NotFoundError
from apps.rbac.catalog import PermissionCatalog
from apps.rbac.models import RolePermission, User, UserPermissionOverride, UserRole

logger = logging.getLogger(__name__)

ADMIN_REASON = "System Administrator has all permissions"
ADMIN_SOURCE = "System Admin"
OVERRIDE_SOURCE = "Override"
DENY_REASON = "No permission granted"
DENY_SOURCE = "None"


@dataclass(frozen=True)
class Verdict:
    granted: bool
    reason: str
    sources: Tuple[str, ...]


@dataclass(frozen=True)
class EffectivePermission:
    module: str
    permission_type: str
    full_name: str
    source: str
    is_granted: bool
    effective_date: Optional[datetime]
    expiry_date: Optional[datetime]


def get_or_not_found(queryset, pk, label):
    """
    Fetch one row by primary key or raise NotFoundError.

    Malformed identifiers are reported as not found rather than as a
    database error.
    """
    try:
        obj = queryset.filter(pk=pk).first()
    except (DjangoValidationError, ValueError, TypeError):
        obj = None
    if obj is None:
        raise NotFoundError(f"{label} not found", details={'id': str(pk)})
    return obj


class ResolutionSession:
    """
    A user's live grants loaded once, answering any number of checks.

    Loads the user's effective overrides and the permissions of the roles
    behind effective assignments in two queries; every verdict after that is
    computed from memory.
    """

    def __init__(self, user, permission_ids=None, at=None):
        self.user = user
        self.at = at or timezone.now()
        self._overrides: Dict[object, UserPermissionOverride] = {}
        self._role_grants: Dict[object, List[Tuple[str, UserRole]]] = defaultdict(list)
        if not user.is_system_admin:
            self._load(permission_ids)

    def _load(self, permission_ids):
        overrides = UserPermissionOverride.objects.active(self.at).filter(user=self.user)
        if permission_ids is not None:
            overrides = overrides.filter(permission_id__in=permission_ids)
        for override in overrides.order_by('-created_at'):
            self._overrides.setdefault(override.permission_id, override)

        assignments = {
            assignment.role_id: assignment
            for assignment in UserRole.objects.active(self.at).filter(
                user=self.user,
                role__is_active=True,
                role__deleted_at__isnull=True,
            ).select_related('role')
        }
        if not assignments:
            return

        grants = RolePermission.objects.filter(role_id__in=list(assignments))
        if permission_ids is not None:
            grants = grants.filter(permission_id__in=permission_ids)
        for grant in grants.order_by('permission_id'):
            assignment = assignments[grant.role_id]
            self._role_grants[grant.permission_id].append((assignment.role.name, assignment))

        for holders in self._role_grants.values():
            holders.sort(key=lambda holder: holder[0])

    def verdict(self, permission):
        """Apply the precedence rules to one permission."""
        if self.user.is_system_admin:
            return Verdict(True, ADMIN_REASON, (ADMIN_SOURCE,))

        override = self._overrides.get(permission.id)
        if override is not None:
            if override.reason:
                reason = override.reason
            elif override.is_granted:
                reason = "Explicitly granted by override"
            else:
                reason = "Explicitly denied by override"
            return Verdict(override.is_granted, reason, (OVERRIDE_SOURCE,))

        holders = self._role_grants.get(permission.id)
        if holders:
            role_names = tuple(name for name, _ in holders)
            return Verdict(True, f"Granted by role(s): {', '.join(role_names)}", role_names)

        return Verdict(False, DENY_REASON, (DENY_SOURCE,))

    def effective_row(self, permission):
        """The effective-permission row for one permission, or None if nothing applies."""
        if self.user.is_system_admin:
            return EffectivePermission(
                module=permission.module.code,
                permission_type=permission.permission_type.code,
                full_name=permission.full_name,
                source=ADMIN_SOURCE,
                is_granted=True,
                effective_date=self.user.created_at,
                expiry_date=None,
            )

        override = self._overrides.get(permission.id)
        if override is not None:
            return EffectivePermission(
                module=permission.module.code,
                permission_type=permission.permission_type.code,
                full_name=permission.full_name,
                source=OVERRIDE_SOURCE,
                is_granted=override.is_granted,
                effective_date=override.created_at,
                expiry_date=override.expiry_date,
            )

        holders = self._role_grants.get(permission.id)
        if holders:
            role_name, assignment = holders[0]
            return EffectivePermission(
                module=permission.module.code,
                permission_type=permission.permission_type.code,
                full_name=permission.full_name,
                source=role_name,
                is_granted=True,
                effective_date=assignment.assigned_at,
                expiry_date=assignment.expiry_date,
            )

        return None


class PermissionResolver:
    """
    Read-only decision engine for permission checks.

    Holds no state between calls and is safe to use concurrently.
    """

    @classmethod
    def get_user(cls, user_id):
        """
        Get an active user by id.

        Raises:
            NotFoundError: If the user does not exist or is inactive
        """
        with read_guard('user lookup'):
            return get_or_not_found(User.objects.active(), user_id, 'User')

    @classmethod
    def resolve(cls, user_id, module_code, permission_code):
        """
        Decide whether a user holds a permission.

        Args:
            user_id: User id
            module_code: Module code (e.g. 'EMPLOYEES')
            permission_code: Permission type code (e.g. 'R')

        Returns:
            Verdict: granted flag, reason and sources

        Raises:
            NotFoundError: If the user, module or permission is unknown
            StorageError: If the data store is unavailable
        """
        user = cls.get_user(user_id)
        permission = PermissionCatalog.get_permission(module_code, permission_code)

        with read_guard('permission resolution'):
            session = ResolutionSession(user, permission_ids=[permission.id])
            verdict = session.verdict(permission)

        logger.debug(
            f"Resolved {permission.full_name} for user {user.id}: "
            f"{'granted' if verdict.granted else 'denied'}",
            extra={
                'user_id': str(user.id),
                'permission': permission.full_name,
                'sources': list(verdict.sources),
            }
        )
        return verdict

    @classmethod
    def check_permission(cls, user_id, module_code, permission_code):
        """Resolve a permission and render it as {hasPermission, reason, sources}."""
        from apps.rbac.serializers import VerdictSerializer

        verdict = cls.resolve(user_id, module_code, permission_code)
        return dict(VerdictSerializer(verdict).data)

    @classmethod
    def resolve_matrix(cls, user_id):
        """
        Resolve every active permission for a user in one session.

        Returns:
            dict: {(module_code, permission_code): Verdict}
        """
        user = cls.get_user(user_id)

        with read_guard('permission matrix resolution'):
            session = ResolutionSession(user)
            return {
                (permission.module.code, permission.permission_type.code): session.verdict(permission)
                for permission in PermissionCatalog.active_permissions()
            }

    @classmethod
    def get_user_permissions(cls, user_id):
        """
        List a user's effective permissions.

        One row per permission. Administrators get every active permission
        from "System Admin"; otherwise an effective override (grant or deny)
        wins over role rows, and permissions with no grant are omitted.

        Returns:
            list: EffectivePermission rows ordered by module then type
        """
        user = cls.get_user(user_id)

        with read_guard('effective permission listing'):
            session = ResolutionSession(user)
            rows = []
            for permission in PermissionCatalog.active_permissions():
                row = session.effective_row(permission)
                if row is not None:
                    rows.append(row)
        return rows

    @classmethod
    def is_system_admin(cls, user_id):
        return cls.get_user(user_id).is_system_admin

    @classmethod
    def get_user_role_codes(cls, user_id):
        """Codes of the active roles behind the user's effective assignments."""
        user = cls.get_user(user_id)
        with read_guard('role code listing'):
            return sorted(set(
                UserRole.objects.active().filter(
                    user=user,
                    role__is_active=True,
                    role__deleted_at__isnull=True,
                ).values_list('role__code', flat=True)
            ))

    @classmethod
    def get_permission_matrix(cls):
        """Return the static permission catalog."""
        return PermissionCatalog.get_permission_matrix()
