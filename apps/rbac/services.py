"""
Access-control mutation services.

Implements:
- RBACService: role assignment, permission overrides, role permission sets
  and role administration, each written together with its audit entry in one
  transaction
"""
import logging
import uuid
from typing import Iterable, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.core.db import read_guard, storage_guard
from apps.core.exceptions import (
    ConflictError, ForbiddenError, NotFoundError, ValidationError,
)
from apps.core.logging import SecurityLogger
from apps.organization.models import Company, Department
from apps.rbac.client import PermissionClient
from apps.rbac.models import (
    AuditAction, Permission, PermissionAuditLog, Role, RolePermission, User,
    UserPermissionOverride, UserRole,
)
from apps.rbac.resolver import PermissionResolver, get_or_not_found

logger = logging.getLogger(__name__)


def _iso(value):
    return value.isoformat() if value else None


def _assignment_state(assignment):
    return {
        'user_id': str(assignment.user_id),
        'role_id': str(assignment.role_id),
        'role_code': assignment.role.code,
        'is_active': assignment.is_active,
        'assigned_at': _iso(assignment.assigned_at),
        'expiry_date': _iso(assignment.expiry_date),
    }


def _override_state(override):
    return {
        'user_id': str(override.user_id),
        'permission': override.permission.full_name,
        'is_granted': override.is_granted,
        'reason': override.reason,
        'expiry_date': _iso(override.expiry_date),
        'is_active': override.is_active,
    }


def _role_state(role, permissions=None):
    state = {
        'code': role.code,
        'name': role.name,
        'description': role.description,
        'is_active': role.is_active,
        'department_id': str(role.department_id) if role.department_id else None,
        'company_id': str(role.company_id) if role.company_id else None,
    }
    if permissions is not None:
        state['permissions'] = sorted(permissions)
    return state


class RBACService:
    """
    Service for administrative changes to roles, assignments and overrides.

    Every method checks the acting user, performs its change and appends its
    audit entry inside one transaction: either both persist or neither does.
    """

    @classmethod
    def _get_actor(cls, actor_id):
        with read_guard('actor lookup'):
            return get_or_not_found(User.objects.active(), actor_id, 'Acting user')

    @classmethod
    def _authorize(cls, actor, operation, target_id=None):
        """
        Require the actor to be a system administrator or to hold the
        administration permission.

        Raises:
            ForbiddenError: If the actor may not run administrative mutations
        """
        if actor.is_system_admin:
            return

        module_code, _, permission_code = settings.RBAC_ADMIN_PERMISSION.rpartition('_')
        try:
            granted = PermissionResolver.resolve(actor.id, module_code, permission_code).granted
        except NotFoundError:
            granted = False

        if not granted:
            SecurityLogger.log_admin_mutation_denied(
                actor_id=str(actor.id),
                operation=operation,
                target_id=str(target_id) if target_id else None,
            )
            raise ForbiddenError(
                "Only administrators can perform this operation",
                details={'operation': operation}
            )

    @classmethod
    def _validate_expiry(cls, expiry_date):
        if expiry_date is None:
            return None
        if timezone.is_naive(expiry_date):
            expiry_date = timezone.make_aware(expiry_date)
        if expiry_date <= timezone.now():
            raise ValidationError(
                "Expiry date must be in the future",
                details={'expiry_date': expiry_date.isoformat()}
            )
        return expiry_date

    @classmethod
    def _lock_user(cls, user_id):
        """Fetch the target user, locking the row so grant changes serialize."""
        return get_or_not_found(User.objects.active().select_for_update(), user_id, 'User')

    @classmethod
    def _invalidate_client_cache(cls, user_id):
        transaction.on_commit(lambda: PermissionClient.invalidate(user_id))

    @classmethod
    def assign_role(cls, user_id, role_id, assigned_by, expiry_date=None,
                    reason: str = '', request=None) -> UserRole:
        """
        Assign a role to a user.

        Args:
            user_id: User receiving the role
            role_id: Role to assign
            assigned_by: Id of the acting user
            expiry_date: Optional instant at which the assignment lapses
            reason: Optional reason, stored with the audit entry
            request: Optional HTTP request for audit context

        Returns:
            UserRole: The new assignment

        Raises:
            NotFoundError: If the user, role or actor does not exist
            ConflictError: If the user already holds an effective assignment
                of the role
            ValidationError: If the expiry is not in the future or the role
                is inactive
            ForbiddenError: If the actor is not an administrator
        """
        actor = cls._get_actor(assigned_by)
        cls._authorize(actor, 'assign_role', target_id=user_id)
        expiry_date = cls._validate_expiry(expiry_date)

        with storage_guard('assign_role'):
            user = cls._lock_user(user_id)
            role = get_or_not_found(Role.objects_with_deleted.all(), role_id, 'Role')
            if role.is_deleted or not role.is_active:
                raise ValidationError(
                    f"Role {role.code} is inactive or deleted",
                    details={'role_id': str(role.id)}
                )

            if UserRole.objects.active().filter(user=user, role=role).exists():
                raise ConflictError(
                    f"User already holds role {role.code}",
                    details={'user_id': str(user.id), 'role_id': str(role.id)}
                )

            UserRole.objects.lapsed().filter(user=user, role=role).update(is_active=False)

            assignment = UserRole.objects.create(
                user=user,
                role=role,
                expiry_date=expiry_date,
                assigned_by=actor,
                reason=reason or '',
            )

            PermissionAuditLog.log_action(
                action=AuditAction.ROLE_ASSIGNED,
                target_type='UserRole',
                target_id=assignment.id,
                actor=actor,
                user=user,
                new_value=_assignment_state(assignment),
                reason=reason,
                request=request,
            )
            cls._invalidate_client_cache(user.id)

        logger.info(
            f"Role {role.code} assigned to user {user.id}",
            extra={
                'user_id': str(user.id),
                'role_code': role.code,
                'assigned_by': str(actor.id),
                'expiry_date': _iso(expiry_date),
            }
        )
        return assignment

    @classmethod
    def remove_role(cls, user_id, role_id, removed_by, reason: str = '',
                    request=None) -> UserRole:
        """
        Deactivate a user's effective assignment of a role.

        The assignment row is kept with is_active=False.

        Raises:
            NotFoundError: If the user, role or actor does not exist, or the
                user holds no effective assignment of the role
            ForbiddenError: If the actor is not an administrator
        """
        actor = cls._get_actor(removed_by)
        cls._authorize(actor, 'remove_role', target_id=user_id)

        with storage_guard('remove_role'):
            user = cls._lock_user(user_id)
            role = get_or_not_found(Role.objects_with_deleted.all(), role_id, 'Role')

            assignment = UserRole.objects.active().select_related('role').filter(
                user=user, role=role
            ).first()
            if assignment is None:
                raise NotFoundError(
                    f"User holds no active assignment of role {role.code}",
                    details={'user_id': str(user.id), 'role_id': str(role.id)}
                )

            old_value = _assignment_state(assignment)
            assignment.is_active = False
            assignment.save(update_fields=['is_active', 'updated_at'])

            PermissionAuditLog.log_action(
                action=AuditAction.ROLE_REMOVED,
                target_type='UserRole',
                target_id=assignment.id,
                actor=actor,
                user=user,
                old_value=old_value,
                new_value=_assignment_state(assignment),
                reason=reason,
                request=request,
            )
            cls._invalidate_client_cache(user.id)

        logger.info(
            f"Role {role.code} removed from user {user.id}",
            extra={'user_id': str(user.id), 'role_code': role.code, 'removed_by': str(actor.id)}
        )
        return assignment

    @classmethod
    def create_override(cls, user_id, permission_id, is_granted: bool, reason: str,
                        created_by, expiry_date=None, request=None) -> UserPermissionOverride:
        """
        Create an explicit grant or deny of one permission for a user.

        Any override still flagged active for the same user and permission
        is deactivated first, so at most one override is active per pair.

        Args:
            user_id: User the override applies to
            permission_id: Permission being overridden
            is_granted: True to grant, False to deny
            reason: Required justification
            created_by: Id of the acting user
            expiry_date: Optional instant at which the override lapses
            request: Optional HTTP request for audit context

        Returns:
            UserPermissionOverride: The new override

        Raises:
            ValidationError: If the reason is blank or the expiry is not in
                the future
            NotFoundError: If the user, permission or actor does not exist
            ForbiddenError: If the actor is not an administrator
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for permission overrides")

        actor = cls._get_actor(created_by)
        cls._authorize(actor, 'create_override', target_id=user_id)
        expiry_date = cls._validate_expiry(expiry_date)

        with storage_guard('create_override'):
            user = cls._lock_user(user_id)
            permission = get_or_not_found(
                Permission.objects.active().select_related('module', 'permission_type'),
                permission_id,
                'Permission'
            )

            flagged = list(
                UserPermissionOverride.objects.select_related(
                    'permission__module', 'permission__permission_type'
                ).filter(user=user, permission=permission, is_active=True)
            )
            superseded = next((o for o in flagged if o.is_effective()), None)
            old_value = _override_state(superseded) if superseded else None

            UserPermissionOverride.objects.filter(
                pk__in=[o.pk for o in flagged]
            ).update(is_active=False, updated_at=timezone.now())

            override = UserPermissionOverride.objects.create(
                user=user,
                permission=permission,
                is_granted=is_granted,
                reason=reason.strip(),
                expiry_date=expiry_date,
                created_by=actor,
            )

            PermissionAuditLog.log_action(
                action=AuditAction.PERMISSION_OVERRIDE_CREATED,
                target_type='UserPermissionOverride',
                target_id=override.id,
                actor=actor,
                user=user,
                old_value=old_value,
                new_value=_override_state(override),
                reason=override.reason,
                request=request,
            )
            cls._invalidate_client_cache(user.id)

        logger.info(
            f"Permission override {'granting' if is_granted else 'denying'} "
            f"{permission.full_name} created for user {user.id}",
            extra={
                'user_id': str(user.id),
                'permission': permission.full_name,
                'is_granted': is_granted,
                'superseded': str(superseded.id) if superseded else None,
                'created_by': str(actor.id),
            }
        )
        return override

    @classmethod
    def delete_override(cls, override_id, deleted_by, reason: str = '',
                        request=None) -> UserPermissionOverride:
        """
        Deactivate an override.

        Raises:
            NotFoundError: If the override does not exist or is no longer
                active, or the actor does not exist
            ForbiddenError: If the actor is not an administrator
        """
        actor = cls._get_actor(deleted_by)
        cls._authorize(actor, 'delete_override', target_id=override_id)

        with storage_guard('delete_override'):
            override = get_or_not_found(
                UserPermissionOverride.objects.select_for_update().filter(is_active=True),
                override_id,
                'Permission override'
            )
            old_value = _override_state(override)
            override.is_active = False
            override.save(update_fields=['is_active', 'updated_at'])

            PermissionAuditLog.log_action(
                action=AuditAction.PERMISSION_OVERRIDE_DELETED,
                target_type='UserPermissionOverride',
                target_id=override.id,
                actor=actor,
                user=override.user,
                old_value=old_value,
                new_value=_override_state(override),
                reason=reason,
                request=request,
            )
            cls._invalidate_client_cache(override.user_id)

        logger.info(
            f"Permission override {override.id} deleted",
            extra={'override_id': str(override.id), 'deleted_by': str(actor.id)}
        )
        return override

    @classmethod
    def update_role_permissions(cls, role_id, permission_ids: Iterable, modified_by,
                                reason: str = '', request=None) -> dict:
        """
        Replace a role's permission set.

        Only the difference is written: permissions missing from the new set
        are removed and new ones are added. One audit entry records the full
        before and after sets plus the added and removed permissions.

        Args:
            role_id: Role to update
            permission_ids: Complete new set of permission ids
            modified_by: Id of the acting user
            reason: Optional reason
            request: Optional HTTP request for audit context

        Returns:
            dict: {'role', 'added', 'removed'} with full permission names

        Raises:
            ForbiddenError: If the role is a system role or the actor is not
                an administrator
            NotFoundError: If the role, the actor or any permission does not
                exist
            ValidationError: If permission_ids is not a collection
        """
        actor = cls._get_actor(modified_by)
        cls._authorize(actor, 'update_role_permissions', target_id=role_id)

        try:
            requested = {uuid.UUID(str(pid)) for pid in permission_ids}
        except TypeError as exc:
            raise ValidationError("permission_ids must be a list") from exc
        except ValueError as exc:
            raise NotFoundError("Permission not found", details={'error': str(exc)}) from exc

        with storage_guard('update_role_permissions'):
            role = get_or_not_found(Role.objects.select_for_update(), role_id, 'Role')
            if role.is_system_role:
                SecurityLogger.log_system_role_edit_blocked(
                    actor_id=str(actor.id),
                    role_code=role.code,
                    operation='update_role_permissions',
                )
                raise ForbiddenError(
                    f"Permissions of system role {role.code} cannot be modified",
                    details={'role_id': str(role.id), 'role_code': role.code}
                )

            permissions = {
                p.id: p for p in Permission.objects.active().select_related(
                    'module', 'permission_type'
                ).filter(id__in=requested)
            }
            missing = requested - set(permissions)
            if missing:
                raise NotFoundError(
                    "Permission not found",
                    details={'permission_ids': sorted(str(pid) for pid in missing)}
                )

            current = {
                rp.permission_id: rp.permission
                for rp in role.role_permissions.select_related(
                    'permission__module', 'permission__permission_type'
                )
            }
            to_add = set(permissions) - set(current)
            to_remove = set(current) - set(permissions)

            if to_remove:
                RolePermission.objects.filter(role=role, permission_id__in=to_remove).hard_delete()
            RolePermission.objects.bulk_create([
                RolePermission(role=role, permission=permissions[pid], granted_by=actor)
                for pid in to_add
            ])

            before = sorted(p.full_name for p in current.values())
            after = sorted(p.full_name for p in permissions.values())
            added = sorted(permissions[pid].full_name for pid in to_add)
            removed = sorted(current[pid].full_name for pid in to_remove)

            PermissionAuditLog.log_action(
                action=AuditAction.ROLE_PERMISSIONS_UPDATED,
                target_type='Role',
                target_id=role.id,
                actor=actor,
                old_value={'permissions': before},
                new_value={'permissions': after, 'added': added, 'removed': removed},
                reason=reason,
                request=request,
            )

        logger.info(
            f"Permissions of role {role.code} updated",
            extra={
                'role_code': role.code,
                'added': added,
                'removed': removed,
                'modified_by': str(actor.id),
            }
        )
        return {'role': role, 'added': added, 'removed': removed}

    @classmethod
    def create_role(cls, name: str, code: str, created_by, description: str = '',
                    department_id=None, company_id=None, request=None) -> Role:
        """
        Create a non-system role with no permissions.

        Raises:
            ValidationError: If the name or code is blank
            ConflictError: If a role with the code already exists
            NotFoundError: If the department, company or actor does not exist
            ForbiddenError: If the actor is not an administrator
        """
        if not name or not name.strip() or not code or not code.strip():
            raise ValidationError("Role name and code are required")
        code = code.strip().upper()

        actor = cls._get_actor(created_by)
        cls._authorize(actor, 'create_role')

        with storage_guard('create_role'):
            if Role.objects_with_deleted.filter(code=code).exists():
                raise ConflictError(
                    f"Role code {code} already exists",
                    details={'code': code}
                )
            department = (
                get_or_not_found(Department.objects.all(), department_id, 'Department')
                if department_id else None
            )
            company = (
                get_or_not_found(Company.objects.all(), company_id, 'Company')
                if company_id else None
            )

            role = Role.objects.create(
                name=name.strip(),
                code=code,
                description=description,
                department=department,
                company=company,
            )

            PermissionAuditLog.log_action(
                action=AuditAction.ROLE_CREATED,
                target_type='Role',
                target_id=role.id,
                actor=actor,
                new_value=_role_state(role, permissions=[]),
                request=request,
            )

        logger.info(f"Role {role.code} created", extra={'role_code': role.code, 'created_by': str(actor.id)})
        return role

    @classmethod
    def update_role(cls, role_id, modified_by, name: Optional[str] = None,
                    description: Optional[str] = None, is_active: Optional[bool] = None,
                    reason: str = '', request=None) -> Role:
        """
        Update a role's name, description or active flag.

        Raises:
            ForbiddenError: If the role is a system role, or the actor is not
                an administrator
            NotFoundError: If the role or actor does not exist
        """
        actor = cls._get_actor(modified_by)
        cls._authorize(actor, 'update_role', target_id=role_id)

        with storage_guard('update_role'):
            role = get_or_not_found(Role.objects.select_for_update(), role_id, 'Role')
            if role.is_system_role:
                SecurityLogger.log_system_role_edit_blocked(
                    actor_id=str(actor.id),
                    role_code=role.code,
                    operation='update_role',
                )
                raise ForbiddenError(
                    f"System role {role.code} cannot be modified",
                    details={'role_id': str(role.id), 'role_code': role.code}
                )

            old_value = _role_state(role)
            if name is not None:
                if not name.strip():
                    raise ValidationError("Role name cannot be blank")
                role.name = name.strip()
            if description is not None:
                role.description = description
            if is_active is not None:
                role.is_active = is_active
            role.save()

            PermissionAuditLog.log_action(
                action=AuditAction.ROLE_UPDATED,
                target_type='Role',
                target_id=role.id,
                actor=actor,
                old_value=old_value,
                new_value=_role_state(role),
                reason=reason,
                request=request,
            )

        logger.info(f"Role {role.code} updated", extra={'role_code': role.code, 'modified_by': str(actor.id)})
        return role

    @classmethod
    def delete_role(cls, role_id, deleted_by, reason: str = '', request=None) -> Role:
        """
        Delete a role and its permission grants.

        The role is soft-deleted; its RolePermission rows are removed and
        the former permission set is kept in the audit entry.

        Raises:
            ForbiddenError: If the role is a system role or the actor is not
                an administrator
            ConflictError: If users still hold active assignments of the role
            NotFoundError: If the role or actor does not exist
        """
        actor = cls._get_actor(deleted_by)
        cls._authorize(actor, 'delete_role', target_id=role_id)

        with storage_guard('delete_role'):
            role = get_or_not_found(Role.objects.select_for_update(), role_id, 'Role')
            if role.is_system_role:
                SecurityLogger.log_system_role_edit_blocked(
                    actor_id=str(actor.id),
                    role_code=role.code,
                    operation='delete_role',
                )
                raise ForbiddenError(
                    f"System role {role.code} cannot be deleted",
                    details={'role_id': str(role.id), 'role_code': role.code}
                )

            if role.has_active_assignments():
                raise ConflictError(
                    f"Role {role.code} is still assigned to users; reassign them first",
                    details={'role_id': str(role.id)}
                )

            permissions = [
                rp.permission.full_name for rp in role.role_permissions.select_related(
                    'permission__module', 'permission__permission_type'
                )
            ]
            old_value = _role_state(role, permissions=permissions)

            role.role_permissions.all().hard_delete()
            role.is_active = False
            role.save(update_fields=['is_active', 'updated_at'])
            role.delete()

            PermissionAuditLog.log_action(
                action=AuditAction.ROLE_DELETED,
                target_type='Role',
                target_id=role.id,
                actor=actor,
                old_value=old_value,
                reason=reason,
                request=request,
            )

        logger.info(f"Role {role.code} deleted", extra={'role_code': role.code, 'deleted_by': str(actor.id)})
        return role

    @classmethod
    def get_user_overrides(cls, user_id, include_inactive: bool = False):
        """
        List a user's permission overrides, newest first.

        By default only overrides that currently apply are returned.
        """
        user = PermissionResolver.get_user(user_id)
        with read_guard('override listing'):
            overrides = UserPermissionOverride.objects.select_related(
                'permission__module', 'permission__permission_type', 'created_by'
            ).filter(user=user)
            if not include_inactive:
                overrides = overrides.active()
            return list(overrides.order_by('-created_at'))

    @classmethod
    def get_role_permissions(cls, role_id):
        """Return the full names of the permissions granted to a role."""
        with read_guard('role permission listing'):
            role = get_or_not_found(Role.objects.all(), role_id, 'Role')
            return sorted(
                rp.permission.full_name for rp in role.role_permissions.select_related(
                    'permission__module', 'permission__permission_type'
                )
            )

    @classmethod
    def get_role_users(cls, role_id):
        """
        List the active users currently holding a role, ordered by username.

        Only effective assignments count, so these are the users that block
        delete_role until they are reassigned.

        Raises:
            NotFoundError: If the role does not exist
        """
        with read_guard('role holder listing'):
            role = get_or_not_found(Role.objects.all(), role_id, 'Role')
            return list(
                User.objects.active().filter(
                    role_assignments__in=UserRole.objects.active().filter(role=role)
                ).distinct().order_by('username')
            )

    @classmethod
    def get_audit_log(cls, user_id=None, days: int = 30):
        """
        Return recent audit entries, newest first.

        Args:
            user_id: Restrict to entries about this user
            days: How far back to look

        Returns:
            list: At most AUDIT_LOG_QUERY_LIMIT entries
        """
        with read_guard('audit log query'):
            entries = PermissionAuditLog.objects.select_related('actor', 'user').recent(days)
            if user_id is not None:
                user = get_or_not_found(User.objects.all(), user_id, 'User')
                entries = entries.for_user(user)
            return list(entries.order_by('-created_at')[:settings.AUDIT_LOG_QUERY_LIMIT])
