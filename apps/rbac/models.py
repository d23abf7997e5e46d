"""
Access-control models for CareerPath.

Implements:
- Permission catalog (Module, PermissionType, Permission)
- Roles holding sets of permissions (Role, RolePermission)
- Application users wrapping employees (User)
- Time-bounded role assignments and per-user overrides
- Append-only permission audit log
"""
from datetime import timedelta

from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.core.exceptions import ImmutableRecordError
from apps.core.logging import SecurityLogger
from apps.core.middleware import get_current_request_id
from apps.core.models import BaseModel, BaseModelManager, BaseModelQuerySet, TimeBoundGrant


class CatalogManager(BaseModelManager):
    """Manager for catalog entries addressed by a code."""

    def active(self):
        return self.filter(is_active=True)

    def by_code(self, code):
        """Get an active entry by code, or None."""
        return self.active().filter(code=code).first()


class Module(BaseModel):
    """
    A functional area of the application that permissions are scoped to.

    Examples: EMPLOYEES, COMPETENCIES, ROLES.
    """

    code = models.CharField(
        max_length=50,
        unique=True,
        db_index=True,
        help_text="Module code (e.g., 'EMPLOYEES')"
    )
    name = models.CharField(
        max_length=100,
        help_text="Display name"
    )
    description = models.TextField(
        blank=True,
        help_text="What this module covers"
    )
    display_order = models.PositiveIntegerField(
        default=0,
        help_text="Ordering in permission matrices"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Whether the module is part of the live catalog"
    )

    objects = CatalogManager()

    class Meta:
        db_table = 'application_modules'
        ordering = ['display_order', 'code']

    def __str__(self):
        return self.code


class PermissionType(BaseModel):
    """
    An action kind: Create, Read, Update, Delete, Approve or Manage.
    """

    code = models.CharField(
        max_length=10,
        unique=True,
        db_index=True,
        help_text="Single-letter action code (C, R, U, D, A, M)"
    )
    name = models.CharField(
        max_length=50,
        help_text="Display name"
    )
    description = models.TextField(
        blank=True,
        help_text="What this action allows"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Whether the type is part of the live catalog"
    )

    objects = CatalogManager()

    class Meta:
        db_table = 'permission_types'
        ordering = ['code']

    def __str__(self):
        return self.code


class PermissionManager(BaseModelManager):
    """Manager for Permission model."""

    def active(self):
        """Permissions whose own flag, module and type are all active."""
        return self.filter(
            is_active=True,
            module__is_active=True,
            module__deleted_at__isnull=True,
            permission_type__is_active=True,
            permission_type__deleted_at__isnull=True,
        )

    def by_codes(self, module_code, permission_code):
        """Get the active permission for a module/type code pair, or None."""
        return self.active().select_related('module', 'permission_type').filter(
            module__code=module_code,
            permission_type__code=permission_code,
        ).first()

    def get_or_create_permission(self, module, permission_type, description=''):
        """Get or create the permission for a module/type pair."""
        return self.get_or_create(
            module=module,
            permission_type=permission_type,
            defaults={'description': description}
        )


class Permission(BaseModel):
    """
    The (Module x PermissionType) pair that can be granted.

    Full name is `{MODULE_CODE}_{TYPE_CODE}`, e.g. EMPLOYEES_R.
    """

    module = models.ForeignKey(
        Module,
        on_delete=models.PROTECT,
        related_name='permissions',
        help_text="Module this permission belongs to"
    )
    permission_type = models.ForeignKey(
        PermissionType,
        on_delete=models.PROTECT,
        related_name='permissions',
        help_text="Action kind"
    )
    description = models.TextField(
        blank=True,
        help_text="Human-readable description"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Whether the permission can be resolved"
    )

    objects = PermissionManager()

    class Meta:
        db_table = 'permissions'
        unique_together = [('module', 'permission_type')]
        ordering = ['module__display_order', 'module__code', 'permission_type__code']

    def __str__(self):
        return self.full_name

    @property
    def full_name(self):
        return f"{self.module.code}_{self.permission_type.code}"


class RoleManager(BaseModelManager):
    """Manager for Role model."""

    def active(self):
        return self.filter(is_active=True)

    def by_code(self, code):
        return self.filter(code=code).first()

    def system_roles(self):
        return self.filter(is_system_role=True)


class Role(BaseModel):
    """
    A named, reusable bundle of permissions assignable to users.

    System roles are protected: their permission sets cannot be edited and
    they cannot be deleted through the standard administration path.
    """

    name = models.CharField(
        max_length=100,
        help_text="Role name (e.g., 'Manager')"
    )
    code = models.CharField(
        max_length=50,
        unique=True,
        db_index=True,
        help_text="Stable role code (e.g., 'MANAGER')"
    )
    description = models.TextField(
        blank=True,
        help_text="Role description"
    )
    is_system_role = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Protected role managed by seeding only"
    )
    department = models.ForeignKey(
        'organization.Department',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='roles',
        help_text="Department this role is scoped to (null = global)"
    )
    company = models.ForeignKey(
        'organization.Company',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='roles',
        help_text="Company this role is scoped to (null = global)"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Inactive roles grant nothing"
    )

    objects = RoleManager()

    class Meta:
        db_table = 'roles'
        ordering = ['name']

    def __str__(self):
        return f"{self.name} ({self.code})"

    def permission_ids(self):
        """Return the set of permission ids granted to this role."""
        return set(self.role_permissions.values_list('permission_id', flat=True))

    def has_active_assignments(self):
        return UserRole.objects.active().filter(role=self).exists()


class RolePermissionManager(BaseModelManager):
    """Manager for RolePermission model."""

    def grant_permission(self, role, permission, granted_by=None):
        """Grant a permission to a role (idempotent)."""
        role_permission, _ = self.get_or_create(
            role=role,
            permission=permission,
            defaults={'granted_by': granted_by}
        )
        return role_permission

    def revoke_permission(self, role, permission):
        """Remove a permission from a role."""
        return self.filter(role=role, permission=permission).hard_delete()


class RolePermission(BaseModel):
    """
    Grants a Permission to a Role.

    Rows are removed physically when a grant is withdrawn; the audit log keeps
    the history.
    """

    role = models.ForeignKey(
        Role,
        on_delete=models.CASCADE,
        related_name='role_permissions',
        help_text="Role receiving the permission"
    )
    permission = models.ForeignKey(
        Permission,
        on_delete=models.CASCADE,
        related_name='role_permissions',
        help_text="Granted permission"
    )
    granted_at = models.DateTimeField(
        default=timezone.now,
        help_text="When the permission was granted"
    )
    granted_by = models.ForeignKey(
        'rbac.User',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
        help_text="User who granted the permission"
    )

    objects = RolePermissionManager.from_queryset(BaseModelQuerySet)()

    class Meta:
        db_table = 'role_permissions'
        unique_together = [('role', 'permission')]
        ordering = ['role', 'permission']

    def __str__(self):
        return f"{self.role.code}: {self.permission_id}"

    def delete(self, using=None, keep_parents=False):
        """Grants are removed physically."""
        return self.hard_delete(using=using, keep_parents=keep_parents)


class UserManager(BaseModelManager):
    """Manager for User model."""

    def active(self):
        return self.filter(is_active=True)

    def by_email(self, email):
        """
        Map an identity-provider email to an active user via the employee.

        Returns None when the email matches no active employee or the
        employee has no active user.
        """
        if not email:
            return None
        return self.active().select_related('employee').filter(
            employee__email__iexact=email.strip(),
            employee__is_active=True,
        ).first()

    def by_username(self, username):
        return self.active().filter(username__iexact=username).first()


class User(BaseModel):
    """
    An application user. Wraps exactly one employee.
    """

    employee = models.OneToOneField(
        'organization.Employee',
        on_delete=models.PROTECT,
        related_name='user',
        help_text="Employee this account belongs to"
    )
    username = models.CharField(
        max_length=150,
        unique=True,
        help_text="Login name"
    )
    is_system_admin = models.BooleanField(
        default=False,
        help_text="System administrators hold every permission"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Inactive users cannot be resolved"
    )
    last_login_date = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Last successful login"
    )
    login_attempts = models.PositiveIntegerField(
        default=0,
        help_text="Consecutive failed login attempts"
    )
    is_locked = models.BooleanField(
        default=False,
        help_text="Whether the account is locked"
    )
    lockout_end = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When a temporary lockout ends"
    )

    objects = UserManager()

    class Meta:
        db_table = 'users'
        ordering = ['username']

    def __str__(self):
        return self.username

    @property
    def email(self):
        return self.employee.email

    @property
    def is_locked_out(self):
        """Locked, and either permanently or until a future instant."""
        if not self.is_locked:
            return False
        return self.lockout_end is None or self.lockout_end > timezone.now()


class UserRole(TimeBoundGrant):
    """
    Assigns a Role to a User.

    A user may hold several roles at once, but at most one live assignment
    per role.
    """

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='role_assignments',
        help_text="User holding the role"
    )
    role = models.ForeignKey(
        Role,
        on_delete=models.PROTECT,
        related_name='assignments',
        help_text="Assigned role"
    )
    assigned_at = models.DateTimeField(
        default=timezone.now,
        help_text="When the role was assigned"
    )
    assigned_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
        help_text="User who made the assignment"
    )
    reason = models.TextField(
        blank=True,
        help_text="Why the role was assigned"
    )

    class Meta:
        db_table = 'user_roles'
        ordering = ['-assigned_at']
        constraints = [
            models.UniqueConstraint(
                fields=['user', 'role'],
                condition=Q(is_active=True, deleted_at__isnull=True),
                name='unique_active_user_role',
            ),
        ]
        indexes = [
            models.Index(fields=['user', 'is_active']),
        ]

    def __str__(self):
        return f"{self.user_id} -> {self.role_id}"


class UserPermissionOverride(TimeBoundGrant):
    """
    Explicit per-user grant or deny of one permission.

    An effective override beats every role grant. Overrides always carry a
    reason and a creator.
    """

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='permission_overrides',
        help_text="User the override applies to"
    )
    permission = models.ForeignKey(
        Permission,
        on_delete=models.PROTECT,
        related_name='overrides',
        help_text="Overridden permission"
    )
    is_granted = models.BooleanField(
        help_text="True grants the permission, False denies it"
    )
    reason = models.TextField(
        help_text="Why the override exists"
    )
    created_by = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name='+',
        help_text="User who created the override"
    )

    class Meta:
        db_table = 'user_permission_overrides'
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['user', 'permission'],
                condition=Q(is_active=True, deleted_at__isnull=True),
                name='unique_active_permission_override',
            ),
        ]
        indexes = [
            models.Index(fields=['user', 'is_active']),
        ]

    def __str__(self):
        effect = 'GRANT' if self.is_granted else 'DENY'
        return f"{self.user_id}: {effect} {self.permission_id}"


class AuditAction(models.TextChoices):
    ROLE_ASSIGNED = 'ROLE_ASSIGNED', 'Role assigned'
    ROLE_REMOVED = 'ROLE_REMOVED', 'Role removed'
    PERMISSION_OVERRIDE_CREATED = 'PERMISSION_OVERRIDE_CREATED', 'Permission override created'
    PERMISSION_OVERRIDE_DELETED = 'PERMISSION_OVERRIDE_DELETED', 'Permission override deleted'
    ROLE_PERMISSIONS_UPDATED = 'ROLE_PERMISSIONS_UPDATED', 'Role permissions updated'
    ROLE_CREATED = 'ROLE_CREATED', 'Role created'
    ROLE_UPDATED = 'ROLE_UPDATED', 'Role updated'
    ROLE_DELETED = 'ROLE_DELETED', 'Role deleted'


class AuditLogQuerySet(models.QuerySet):
    """QuerySet that refuses bulk modification of audit rows."""

    def update(self, **kwargs):
        SecurityLogger.log_audit_tamper_attempt('bulk_update')
        raise ImmutableRecordError("Audit log entries cannot be updated")

    def delete(self):
        SecurityLogger.log_audit_tamper_attempt('bulk_delete')
        raise ImmutableRecordError("Audit log entries cannot be deleted")

    def hard_delete(self):
        raise ImmutableRecordError("Audit log entries cannot be deleted")

    def for_user(self, user):
        return self.filter(user=user)

    def by_action(self, action):
        return self.filter(action=action)

    def for_target(self, target_type, target_id):
        return self.filter(target_type=target_type, target_id=str(target_id))

    def recent(self, days=30):
        cutoff = timezone.now() - timedelta(days=days)
        return self.filter(created_at__gte=cutoff)


class PermissionAuditLog(BaseModel):
    """
    Immutable record of every mutation to roles, assignments and overrides.

    Rows are only ever inserted. Saving an existing row or deleting one
    raises ImmutableRecordError.
    """

    action = models.CharField(
        max_length=50,
        choices=AuditAction.choices,
        db_index=True,
        help_text="What happened"
    )
    target_type = models.CharField(
        max_length=50,
        db_index=True,
        help_text="Kind of object acted on (UserRole, Role, ...)"
    )
    target_id = models.CharField(
        max_length=64,
        db_index=True,
        help_text="Identifier of the object acted on"
    )
    user = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='audit_entries',
        help_text="User whose access changed (null for role-level changes)"
    )
    old_value = models.JSONField(
        null=True,
        blank=True,
        encoder=DjangoJSONEncoder,
        help_text="State before the change"
    )
    new_value = models.JSONField(
        null=True,
        blank=True,
        encoder=DjangoJSONEncoder,
        help_text="State after the change"
    )
    reason = models.TextField(
        blank=True,
        help_text="Reason supplied with the change"
    )
    actor = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='audit_actions',
        help_text="User who performed the change"
    )
    ip_address = models.GenericIPAddressField(
        null=True,
        blank=True,
        help_text="IP address of the request"
    )
    user_agent = models.TextField(
        blank=True,
        help_text="User agent of the request"
    )
    request_id = models.CharField(
        max_length=64,
        blank=True,
        help_text="Request id for tracing"
    )

    objects = models.Manager.from_queryset(AuditLogQuerySet)()
    objects_with_deleted = models.Manager.from_queryset(AuditLogQuerySet)()

    class Meta:
        db_table = 'permission_audit_logs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'created_at']),
            models.Index(fields=['target_type', 'target_id']),
        ]

    def __str__(self):
        return f"{self.action} {self.target_type}:{self.target_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            SecurityLogger.log_audit_tamper_attempt('update', audit_id=str(self.pk))
            raise ImmutableRecordError(
                "Audit log entries cannot be modified",
                details={'audit_id': str(self.pk)}
            )
        super().save(*args, **kwargs)

    def delete(self, using=None, keep_parents=False):
        SecurityLogger.log_audit_tamper_attempt('delete', audit_id=str(self.pk))
        raise ImmutableRecordError(
            "Audit log entries cannot be deleted",
            details={'audit_id': str(self.pk)}
        )

    def hard_delete(self, using=None, keep_parents=False):
        return self.delete(using=using, keep_parents=keep_parents)

    @classmethod
    def log_action(cls, action, target_type, target_id, actor=None, user=None,
                   old_value=None, new_value=None, reason='', request=None,
                   request_id=None):
        """
        Append an audit entry.

        Args:
            action: AuditAction value
            target_type: Kind of object acted on
            target_id: Identifier of that object
            actor: User who performed the change
            user: User whose access changed
            old_value: JSON-serializable state before
            new_value: JSON-serializable state after
            reason: Reason supplied with the change
            request: Optional HTTP request for IP, user agent and request id
            request_id: Request id when no request object is available

        Returns:
            PermissionAuditLog: The created entry

        Failures propagate, so a mutation that cannot be audited is rolled
        back with it.
        """
        ip_address = None
        user_agent = ''

        if request is not None:
            x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
            if x_forwarded_for:
                ip_address = x_forwarded_for.split(',')[0].strip()
            else:
                ip_address = request.META.get('REMOTE_ADDR')
            user_agent = request.META.get('HTTP_USER_AGENT', '')
            request_id = request_id or getattr(request, 'request_id', None)
        request_id = request_id or get_current_request_id()

        return cls.objects.create(
            action=action,
            target_type=target_type,
            target_id=str(target_id),
            actor=actor,
            user=user,
            old_value=old_value,
            new_value=new_value,
            reason=reason or '',
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id or '',
        )
