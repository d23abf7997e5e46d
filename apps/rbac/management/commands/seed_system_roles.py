"""
Management command to seed the protected system roles.

Creates SYSTEM_ADMIN, HR_ADMIN, MANAGER and EMPLOYEE with their default
permission sets. Existing system roles are brought back in line with the
definitions below. This is the privileged path for system roles; every
change is audited. Idempotent and safe to re-run.
"""
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction
from apps.rbac.models import (
    AuditAction, Permission, PermissionAuditLog, Role, RolePermission,
)


class Command(BaseCommand):
    help = 'Seed system roles and their permission sets (idempotent)'

    # Permissions per role as {module code: permission type codes}
    SYSTEM_ROLES = {
        'SYSTEM_ADMIN': {
            'name': 'System Administrator',
            'description': 'Full access to every module',
            'permissions': 'ALL',  # Special marker for all permissions
        },
        'HR_ADMIN': {
            'name': 'HR Administrator',
            'description': 'Manages organization data, competencies and assessments',
            'permissions': {
                'EMPLOYEES': 'CRUDAM',
                'COMPANIES': 'CRUDAM',
                'DEPARTMENTS': 'CRUDAM',
                'POSITIONS': 'CRUDAM',
                'COMPETENCIES': 'CRUDAM',
                'ASSESSMENTS': 'CRUDAM',
                'DEVELOPMENT_PLANS': 'CRUDAM',
                'REPORTS': 'R',
                'USERS': 'R',
                'ROLES': 'R',
            },
        },
        'MANAGER': {
            'name': 'Manager',
            'description': 'Assesses and develops direct reports',
            'permissions': {
                'EMPLOYEES': 'R',
                'COMPETENCIES': 'R',
                'ASSESSMENTS': 'CRUA',
                'DEVELOPMENT_PLANS': 'CRUA',
                'REPORTS': 'R',
            },
        },
        'EMPLOYEE': {
            'name': 'Employee',
            'description': 'Views own profile and works on own development plan',
            'permissions': {
                'EMPLOYEES': 'R',
                'COMPETENCIES': 'R',
                'ASSESSMENTS': 'R',
                'DEVELOPMENT_PLANS': 'CRU',
            },
        },
    }

    def _resolve_permissions(self, grants):
        """Turn a role's permission grants into Permission rows."""
        active = Permission.objects.active().select_related('module', 'permission_type')
        if grants == 'ALL':
            return list(active)

        permissions = []
        for module_code, type_codes in grants.items():
            for type_code in type_codes:
                permission = active.filter(
                    module__code=module_code, permission_type__code=type_code
                ).first()
                if permission is None:
                    raise CommandError(
                        f'Permission {module_code}_{type_code} not found. '
                        f'Run: python manage.py seed_permission_catalog'
                    )
                permissions.append(permission)
        return permissions

    @transaction.atomic
    def handle(self, *args, **options):
        """Create or sync every system role."""
        if not Permission.objects.exists():
            raise CommandError(
                'Permission catalog is empty. Run: python manage.py seed_permission_catalog'
            )

        created_count = 0
        synced_count = 0

        self.stdout.write('Seeding system roles...\n')

        for code, definition in self.SYSTEM_ROLES.items():
            permissions = {p.id: p for p in self._resolve_permissions(definition['permissions'])}

            role = Role.objects_with_deleted.filter(code=code).first()
            if role is None:
                role = Role.objects.create(
                    code=code,
                    name=definition['name'],
                    description=definition['description'],
                    is_system_role=True,
                )
                created_count += 1
                PermissionAuditLog.log_action(
                    action=AuditAction.ROLE_CREATED,
                    target_type='Role',
                    target_id=role.id,
                    new_value={'code': role.code, 'name': role.name, 'permissions': []},
                    reason='Seeded system role',
                )
                self.stdout.write(self.style.SUCCESS(f'✓ Created: {code}'))
            elif not role.is_system_role or role.deleted_at or not role.is_active:
                role.is_system_role = True
                role.is_active = True
                role.deleted_at = None
                role.save(update_fields=['is_system_role', 'is_active', 'deleted_at', 'updated_at'])
                self.stdout.write(self.style.WARNING(f'↻ Restored: {code}'))

            current = {
                rp.permission_id: rp.permission
                for rp in RolePermission.objects.filter(role=role).select_related(
                    'permission__module', 'permission__permission_type'
                )
            }
            to_add = set(permissions) - set(current)
            to_remove = set(current) - set(permissions)

            if not to_add and not to_remove:
                self.stdout.write(self.style.HTTP_INFO(f'  Unchanged: {code}'))
                continue

            RolePermission.objects.filter(role=role, permission_id__in=to_remove).hard_delete()
            RolePermission.objects.bulk_create([
                RolePermission(role=role, permission=permissions[pid]) for pid in to_add
            ])
            PermissionAuditLog.log_action(
                action=AuditAction.ROLE_PERMISSIONS_UPDATED,
                target_type='Role',
                target_id=role.id,
                old_value={'permissions': sorted(p.full_name for p in current.values())},
                new_value={
                    'permissions': sorted(p.full_name for p in permissions.values()),
                    'added': sorted(permissions[pid].full_name for pid in to_add),
                    'removed': sorted(current[pid].full_name for pid in to_remove),
                },
                reason='Seeded system role',
            )
            synced_count += 1
            self.stdout.write(
                self.style.WARNING(f'↻ Synced: {code} (+{len(to_add)} / -{len(to_remove)})')
            )

        self.stdout.write(
            self.style.SUCCESS(
                f'\n✓ Seeding complete: {created_count} created, {synced_count} synced'
            )
        )
