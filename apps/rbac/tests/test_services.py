"""
Unit tests for RBAC services.

Tests role assignment, permission overrides, role permission updates and
role administration, including the audit entry written with each change.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from django.db import DatabaseError
from django.utils import timezone

from apps.core.exceptions import (
    ConflictError, ForbiddenError, NotFoundError, StorageError, ValidationError,
)
from apps.rbac.client import PermissionClient
from apps.rbac.models import (
    AuditAction, PermissionAuditLog, Role, RolePermission, UserPermissionOverride, UserRole,
)
from apps.rbac.resolver import PermissionResolver
from apps.rbac.services import RBACService


@pytest.fixture
def manager_role(catalog, make_role):
    return make_role('MANAGER', name='MANAGER', permissions=[catalog.permission('EMPLOYEES', 'R')])


@pytest.mark.django_db
class TestRoleAssignment:
    """Test assigning and removing roles."""

    def test_assign_role(self, user, admin_user, manager_role):
        """Test assigning a role grants its permissions and is audited."""
        assignment = RBACService.assign_role(user.id, manager_role.id, admin_user.id, reason='Promotion')

        assert assignment.is_active is True
        assert assignment.assigned_by == admin_user
        assert PermissionResolver.resolve(user.id, 'EMPLOYEES', 'R').sources == ('MANAGER',)

        entry = PermissionAuditLog.objects.get(action=AuditAction.ROLE_ASSIGNED)
        assert entry.target_id == str(assignment.id)
        assert entry.user == user
        assert entry.actor == admin_user
        assert entry.reason == 'Promotion'
        assert entry.new_value['role_code'] == 'MANAGER'

    def test_assign_duplicate_role_conflicts(self, user, admin_user, manager_role):
        """Test a second active assignment of the same role is rejected."""
        RBACService.assign_role(user.id, manager_role.id, admin_user.id)

        with pytest.raises(ConflictError):
            RBACService.assign_role(user.id, manager_role.id, admin_user.id)

        assert UserRole.objects.filter(user=user, role=manager_role).count() == 1
        assert PermissionAuditLog.objects.count() == 1

    def test_assign_after_lapse(self, user, admin_user, manager_role, assign):
        """Test a lapsed assignment is retired and a new one created."""
        lapsed = assign(user, manager_role, expiry_date=timezone.now() - timedelta(hours=1))

        assignment = RBACService.assign_role(user.id, manager_role.id, admin_user.id)

        lapsed.refresh_from_db()
        assert lapsed.is_active is False
        assert assignment.pk != lapsed.pk
        assert UserRole.objects.filter(user=user, is_active=True).count() == 1

    def test_assign_with_past_expiry_rejected(self, user, admin_user, manager_role):
        """Test an expiry in the past is a validation error."""
        with pytest.raises(ValidationError):
            RBACService.assign_role(
                user.id, manager_role.id, admin_user.id,
                expiry_date=timezone.now() - timedelta(days=1),
            )

        assert not UserRole.objects.exists()
        assert not PermissionAuditLog.objects.exists()

    def test_assign_inactive_role_rejected(self, user, admin_user, make_role):
        """Test inactive roles cannot be assigned."""
        role = make_role('RETIRED', is_active=False)

        with pytest.raises(ValidationError):
            RBACService.assign_role(user.id, role.id, admin_user.id)

    def test_assign_deleted_role_rejected(self, user, admin_user, make_role):
        """Test soft-deleted roles cannot be assigned."""
        role = make_role('TEMP')
        role.delete()

        with pytest.raises(ValidationError):
            RBACService.assign_role(user.id, role.id, admin_user.id)

        assert not UserRole.objects.exists()

    def test_assign_unknown_role(self, user, admin_user):
        """Test an unknown role id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            RBACService.assign_role(user.id, '00000000-0000-0000-0000-000000000000', admin_user.id)

    def test_remove_role_revokes(self, user, admin_user, manager_role):
        """Test removing the only granting role denies the permission."""
        RBACService.assign_role(user.id, manager_role.id, admin_user.id)

        assignment = RBACService.remove_role(user.id, manager_role.id, admin_user.id, reason='Left team')

        assert assignment.is_active is False
        assert PermissionResolver.resolve(user.id, 'EMPLOYEES', 'R').granted is False
        entry = PermissionAuditLog.objects.get(action=AuditAction.ROLE_REMOVED)
        assert entry.old_value['is_active'] is True
        assert entry.new_value['is_active'] is False

    def test_remove_unassigned_role(self, user, admin_user, manager_role):
        """Test removing a role the user does not hold raises NotFoundError."""
        with pytest.raises(NotFoundError):
            RBACService.remove_role(user.id, manager_role.id, admin_user.id)

        assert not PermissionAuditLog.objects.exists()

    def test_failed_audit_rolls_back(self, user, admin_user, manager_role):
        """Test a failing audit write aborts the assignment."""
        with patch.object(PermissionAuditLog, 'log_action', side_effect=DatabaseError('disk full')):
            with pytest.raises(StorageError):
                RBACService.assign_role(user.id, manager_role.id, admin_user.id)

        assert not UserRole.objects.filter(user=user).exists()
        assert PermissionResolver.resolve(user.id, 'EMPLOYEES', 'R').granted is False

    def test_cache_invalidated_on_commit(self, user, admin_user, manager_role,
                                         django_capture_on_commit_callbacks):
        """Test the user's cached permissions are dropped after the change commits."""
        client = PermissionClient(user.id)
        assert client.get_user_permissions() == []

        with django_capture_on_commit_callbacks(execute=True):
            RBACService.assign_role(user.id, manager_role.id, admin_user.id)

        assert client.has_cached_permission('EMPLOYEES', 'R') is True


@pytest.mark.django_db
class TestOverrides:
    """Test creating and deleting permission overrides."""

    def test_create_deny_override(self, catalog, user, admin_user, manager_role, assign):
        """Test a deny override hides the role grant."""
        assign(user, manager_role)
        permission = catalog.permission('EMPLOYEES', 'R')

        override = RBACService.create_override(
            user.id, permission.id, False, 'under investigation', admin_user.id
        )

        result = PermissionResolver.check_permission(user.id, 'EMPLOYEES', 'R')
        assert result['hasPermission'] is False
        assert result['sources'] == ['Override']
        entry = PermissionAuditLog.objects.get(action=AuditAction.PERMISSION_OVERRIDE_CREATED)
        assert entry.target_id == str(override.id)
        assert entry.old_value is None
        assert entry.new_value['is_granted'] is False

    def test_new_override_supersedes_previous(self, catalog, user, admin_user):
        """Test at most one override is active per user and permission."""
        permission = catalog.permission('REPORTS', 'R')
        first = RBACService.create_override(user.id, permission.id, True, 'project', admin_user.id)

        second = RBACService.create_override(user.id, permission.id, False, 'project ended', admin_user.id)

        first.refresh_from_db()
        assert first.is_active is False
        assert list(UserPermissionOverride.objects.active().filter(user=user)) == [second]
        entry = PermissionAuditLog.objects.for_target('UserPermissionOverride', second.id).get()
        assert entry.old_value['is_granted'] is True
        assert PermissionResolver.resolve(user.id, 'REPORTS', 'R').granted is False

    def test_override_requires_reason(self, catalog, user, admin_user):
        """Test a blank reason is rejected."""
        with pytest.raises(ValidationError):
            RBACService.create_override(
                user.id, catalog.permission('REPORTS', 'R').id, True, '   ', admin_user.id
            )

        assert not UserPermissionOverride.objects.exists()

    def test_override_past_expiry_rejected(self, catalog, user, admin_user):
        """Test an override cannot be created already expired."""
        with pytest.raises(ValidationError):
            RBACService.create_override(
                user.id, catalog.permission('REPORTS', 'R').id, True, 'temp', admin_user.id,
                expiry_date=timezone.now() - timedelta(minutes=5),
            )

    def test_override_unknown_permission(self, catalog, user, admin_user):
        """Test an unknown permission id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            RBACService.create_override(
                user.id, '00000000-0000-0000-0000-000000000000', True, 'temp', admin_user.id
            )

    def test_delete_override(self, catalog, user, admin_user, manager_role, assign):
        """Test deleting a deny override restores the role grant."""
        assign(user, manager_role)
        override = RBACService.create_override(
            user.id, catalog.permission('EMPLOYEES', 'R').id, False, 'audit', admin_user.id
        )

        RBACService.delete_override(override.id, admin_user.id, reason='cleared')

        override.refresh_from_db()
        assert override.is_active is False
        assert PermissionResolver.resolve(user.id, 'EMPLOYEES', 'R').sources == ('MANAGER',)
        assert PermissionAuditLog.objects.by_action(AuditAction.PERMISSION_OVERRIDE_DELETED).count() == 1

    def test_delete_inactive_override(self, catalog, user, admin_user):
        """Test deleting an already inactive override raises NotFoundError."""
        override = RBACService.create_override(
            user.id, catalog.permission('EMPLOYEES', 'R').id, True, 'temp', admin_user.id
        )
        RBACService.delete_override(override.id, admin_user.id)

        with pytest.raises(NotFoundError):
            RBACService.delete_override(override.id, admin_user.id)

    def test_get_user_overrides(self, catalog, user, admin_user):
        """Test listing only applying overrides unless asked for all."""
        permission = catalog.permission('EMPLOYEES', 'R')
        RBACService.create_override(user.id, permission.id, True, 'one', admin_user.id)
        latest = RBACService.create_override(user.id, permission.id, False, 'two', admin_user.id)

        assert RBACService.get_user_overrides(user.id) == [latest]
        assert len(RBACService.get_user_overrides(user.id, include_inactive=True)) == 2


@pytest.mark.django_db
class TestRolePermissions:
    """Test replacing a role's permission set."""

    def test_update_role_permissions_diff(self, catalog, admin_user, make_role):
        """Test only the difference is written and audited once."""
        role = make_role('COACH', permissions=[
            catalog.permission('ASSESSMENTS', 'R'),
            catalog.permission('ASSESSMENTS', 'U'),
        ])
        new_ids = [catalog.permission('ASSESSMENTS', 'R').id, catalog.permission('ASSESSMENTS', 'A').id]

        result = RBACService.update_role_permissions(role.id, new_ids, admin_user.id, reason='Approvals')

        assert result['added'] == ['ASSESSMENTS_A']
        assert result['removed'] == ['ASSESSMENTS_U']
        assert RBACService.get_role_permissions(role.id) == ['ASSESSMENTS_A', 'ASSESSMENTS_R']
        entry = PermissionAuditLog.objects.get(action=AuditAction.ROLE_PERMISSIONS_UPDATED)
        assert entry.old_value == {'permissions': ['ASSESSMENTS_R', 'ASSESSMENTS_U']}
        assert entry.new_value['permissions'] == ['ASSESSMENTS_A', 'ASSESSMENTS_R']

    def test_update_system_role_forbidden(self, catalog, admin_user, make_role):
        """Test system role permission sets cannot be edited."""
        role = make_role('SYSTEM_ADMIN', is_system_role=True, permissions=[catalog.permission('ROLES', 'M')])

        with pytest.raises(ForbiddenError):
            RBACService.update_role_permissions(role.id, [], admin_user.id)

        assert RolePermission.objects.filter(role=role).count() == 1
        assert not PermissionAuditLog.objects.exists()

    @pytest.mark.parametrize('permission_ids', [None, 42])
    def test_update_with_non_collection(self, admin_user, make_role, permission_ids):
        """Test a missing or scalar permission set is a validation error."""
        role = make_role('COACH')

        with pytest.raises(ValidationError):
            RBACService.update_role_permissions(role.id, permission_ids, admin_user.id)

        assert not PermissionAuditLog.objects.exists()

    def test_update_unknown_permission(self, catalog, admin_user, make_role):
        """Test an unknown permission id aborts the whole update."""
        role = make_role('COACH', permissions=[catalog.permission('ASSESSMENTS', 'R')])

        with pytest.raises(NotFoundError):
            RBACService.update_role_permissions(
                role.id,
                [catalog.permission('ASSESSMENTS', 'U').id, '00000000-0000-0000-0000-000000000000'],
                admin_user.id,
            )

        assert RBACService.get_role_permissions(role.id) == ['ASSESSMENTS_R']

    def test_update_reaches_assigned_users(self, catalog, user, admin_user, make_role, assign):
        """Test users holding the role see the new permission set."""
        role = make_role('COACH', permissions=[catalog.permission('ASSESSMENTS', 'R')])
        assign(user, role)

        RBACService.update_role_permissions(role.id, [catalog.permission('REPORTS', 'R').id], admin_user.id)

        assert PermissionResolver.resolve(user.id, 'ASSESSMENTS', 'R').granted is False
        assert PermissionResolver.resolve(user.id, 'REPORTS', 'R').granted is True


@pytest.mark.django_db
class TestRoleAdministration:
    """Test creating, updating and deleting roles."""

    def test_create_role(self, admin_user):
        """Test a new role starts empty and is audited."""
        role = RBACService.create_role('Mentor', ' mentor ', admin_user.id, description='Guides juniors')

        assert role.code == 'MENTOR'
        assert role.is_system_role is False
        assert PermissionAuditLog.objects.for_target('Role', role.id).get().action == AuditAction.ROLE_CREATED

    def test_create_duplicate_code(self, admin_user, make_role):
        """Test role codes are unique."""
        make_role('MENTOR')

        with pytest.raises(ConflictError):
            RBACService.create_role('Mentor', 'MENTOR', admin_user.id)

    def test_update_role(self, admin_user, make_role):
        """Test renaming a role records before and after."""
        role = make_role('MENTOR', name='Mentor')

        RBACService.update_role(role.id, admin_user.id, name='Senior Mentor')

        role.refresh_from_db()
        assert role.name == 'Senior Mentor'
        entry = PermissionAuditLog.objects.get(action=AuditAction.ROLE_UPDATED)
        assert entry.old_value['name'] == 'Mentor'
        assert entry.new_value['name'] == 'Senior Mentor'

    def test_deactivate_system_role_forbidden(self, admin_user, make_role):
        """Test system roles cannot be deactivated."""
        role = make_role('SYSTEM_ADMIN', is_system_role=True)

        with pytest.raises(ForbiddenError):
            RBACService.update_role(role.id, admin_user.id, is_active=False)

    def test_delete_role(self, catalog, admin_user, make_role):
        """Test deleting a role removes its grants and keeps them in the audit entry."""
        role = make_role('MENTOR', permissions=[catalog.permission('ASSESSMENTS', 'R')])

        RBACService.delete_role(role.id, admin_user.id)

        assert not Role.objects.filter(pk=role.pk).exists()
        assert Role.objects_with_deleted.get(pk=role.pk).is_deleted
        assert not RolePermission.objects.filter(role_id=role.pk).exists()
        entry = PermissionAuditLog.objects.get(action=AuditAction.ROLE_DELETED)
        assert entry.old_value['permissions'] == ['ASSESSMENTS_R']

    def test_delete_assigned_role_conflicts(self, user, admin_user, manager_role, assign):
        """Test a role still held by users cannot be deleted."""
        assign(user, manager_role)

        with pytest.raises(ConflictError):
            RBACService.delete_role(manager_role.id, admin_user.id)

    @patch('apps.rbac.services.SecurityLogger')
    def test_rename_system_role_forbidden(self, mock_logger, admin_user, make_role):
        """Test system roles cannot be renamed or redescribed."""
        role = make_role('SYSTEM_ADMIN', name='System Administrator', is_system_role=True)

        with pytest.raises(ForbiddenError):
            RBACService.update_role(role.id, admin_user.id, name='Renamed')
        with pytest.raises(ForbiddenError):
            RBACService.update_role(role.id, admin_user.id, description='Changed')

        role.refresh_from_db()
        assert role.name == 'System Administrator'
        assert role.description == ''
        assert not PermissionAuditLog.objects.exists()
        assert mock_logger.log_system_role_edit_blocked.call_count == 2

    def test_get_role_users(self, user, make_user, admin_user, manager_role, assign):
        """Test only users with an effective assignment are listed as holders."""
        lapsed = make_user(username='zed')
        revoked = make_user(username='yan')
        inactive = make_user(username='xia', is_active=False)
        assign(user, manager_role)
        assign(lapsed, manager_role, expiry_date=timezone.now() - timedelta(days=1))
        assign(revoked, manager_role, is_active=False)
        assign(inactive, manager_role)
        assign(admin_user, manager_role, expiry_date=timezone.now() + timedelta(days=1))

        assert RBACService.get_role_users(manager_role.id) == [admin_user, user]

        with pytest.raises(ConflictError):
            RBACService.delete_role(manager_role.id, admin_user.id)

    def test_get_role_users_unknown_role(self):
        """Test listing holders of an unknown role raises NotFoundError."""
        with pytest.raises(NotFoundError):
            RBACService.get_role_users('not-a-uuid')

    def test_delete_system_role_forbidden(self, admin_user, make_role):
        """Test system roles cannot be deleted."""
        role = make_role('SYSTEM_ADMIN', is_system_role=True)

        with pytest.raises(ForbiddenError):
            RBACService.delete_role(role.id, admin_user.id)

        assert Role.objects.filter(pk=role.pk).exists()


@pytest.mark.django_db
class TestActorAuthorization:
    """Test who may run administrative mutations."""

    def test_regular_user_forbidden(self, user, make_user, manager_role):
        """Test a user without the administration permission is rejected."""
        actor = make_user(username='bob')

        with pytest.raises(ForbiddenError):
            RBACService.assign_role(user.id, manager_role.id, actor.id)

        assert not UserRole.objects.exists()

    def test_role_administrator_allowed(self, catalog, user, make_user, make_role, assign, manager_role):
        """Test holding the administration permission is enough."""
        actor = make_user(username='hr')
        assign(actor, make_role('HR_ADMIN', permissions=[catalog.permission('ROLES', 'M')]))

        assignment = RBACService.assign_role(user.id, manager_role.id, actor.id)

        assert assignment.assigned_by == actor

    def test_inactive_actor_not_found(self, user, make_user, manager_role):
        """Test an inactive acting user cannot act."""
        actor = make_user(is_system_admin=True, is_active=False)

        with pytest.raises(NotFoundError):
            RBACService.assign_role(user.id, manager_role.id, actor.id)

    @patch('apps.core.logging.sentry_sdk')
    def test_denied_mutation_reported(self, mock_sentry, user, make_user, manager_role):
        """Test denied administrative mutations are reported as critical."""
        actor = make_user(username='mallory')

        with pytest.raises(ForbiddenError):
            RBACService.remove_role(user.id, manager_role.id, actor.id)

        mock_sentry.capture_message.assert_called_once()


@pytest.mark.django_db
class TestAuditLogQuery:
    """Test reading the audit log."""

    def test_recent_entries_for_user(self, user, make_user, admin_user, manager_role):
        """Test filtering the audit log by user, newest first."""
        other = make_user()
        RBACService.assign_role(user.id, manager_role.id, admin_user.id)
        RBACService.assign_role(other.id, manager_role.id, admin_user.id)
        RBACService.remove_role(user.id, manager_role.id, admin_user.id)

        entries = RBACService.get_audit_log(user_id=user.id)

        assert [e.action for e in entries] == [AuditAction.ROLE_REMOVED, AuditAction.ROLE_ASSIGNED]
        assert len(RBACService.get_audit_log()) == 3
