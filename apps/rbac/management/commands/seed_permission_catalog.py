"""
Management command to seed the permission catalog.

Creates the standard application modules, the six permission types and
every module x type permission. This command is idempotent and safe to
re-run.
"""
from django.core.management.base import BaseCommand
from django.db import transaction
from apps.rbac.models import Module, PermissionType, Permission


class Command(BaseCommand):
    help = 'Seed application modules, permission types and permissions (idempotent)'

    MODULES = [
        {'code': 'EMPLOYEES', 'name': 'Employees', 'description': 'Employee records'},
        {'code': 'COMPANIES', 'name': 'Companies', 'description': 'Company records'},
        {'code': 'DEPARTMENTS', 'name': 'Departments', 'description': 'Department structure'},
        {'code': 'POSITIONS', 'name': 'Positions', 'description': 'Positions and job grades'},
        {'code': 'COMPETENCIES', 'name': 'Competencies', 'description': 'Competency framework'},
        {'code': 'ASSESSMENTS', 'name': 'Assessments', 'description': 'Assessment cycles and scores'},
        {'code': 'DEVELOPMENT_PLANS', 'name': 'Development Plans', 'description': 'Employee development plans'},
        {'code': 'REPORTS', 'name': 'Reports', 'description': 'Reporting and exports'},
        {'code': 'USERS', 'name': 'Users', 'description': 'Application user accounts'},
        {'code': 'ROLES', 'name': 'Roles', 'description': 'Roles, assignments and permission overrides'},
    ]

    PERMISSION_TYPES = [
        {'code': 'C', 'name': 'Create', 'description': 'Create new records'},
        {'code': 'R', 'name': 'Read', 'description': 'View records'},
        {'code': 'U', 'name': 'Update', 'description': 'Modify existing records'},
        {'code': 'D', 'name': 'Delete', 'description': 'Remove records'},
        {'code': 'A', 'name': 'Approve', 'description': 'Approve submitted work'},
        {'code': 'M', 'name': 'Manage', 'description': 'Full administration of the module'},
    ]

    def _sync(self, model, code, defaults):
        """Create or update one catalog entry, returning a status label."""
        obj, created = model.objects.get_or_create(code=code, defaults=defaults)
        if created:
            return obj, 'created'

        changed = [field for field, value in defaults.items() if getattr(obj, field) != value]
        if changed:
            for field in changed:
                setattr(obj, field, defaults[field])
            obj.save(update_fields=changed + ['updated_at'])
            return obj, 'updated'
        return obj, 'unchanged'

    @transaction.atomic
    def handle(self, *args, **options):
        """Create or update the whole catalog."""
        counts = {'created': 0, 'updated': 0, 'unchanged': 0}

        self.stdout.write('Seeding permission catalog...\n')

        modules = []
        for order, data in enumerate(self.MODULES, start=1):
            module, status = self._sync(Module, data['code'], {
                'name': data['name'],
                'description': data['description'],
                'display_order': order,
                'is_active': True,
            })
            counts[status] += 1
            modules.append(module)
            self._report(status, f'module {module.code}')

        permission_types = []
        for data in self.PERMISSION_TYPES:
            permission_type, status = self._sync(PermissionType, data['code'], {
                'name': data['name'],
                'description': data['description'],
                'is_active': True,
            })
            counts[status] += 1
            permission_types.append(permission_type)
            self._report(status, f'permission type {permission_type.code}')

        for module in modules:
            for permission_type in permission_types:
                permission, created = Permission.objects.get_or_create_permission(
                    module,
                    permission_type,
                    description=f'{permission_type.name} {module.name.lower()}',
                )
                counts['created' if created else 'unchanged'] += 1
                if created:
                    self._report('created', f'permission {permission.full_name}')

        self.stdout.write(
            self.style.SUCCESS(
                f"\n✓ Seeding complete: {counts['created']} created, "
                f"{counts['updated']} updated, {counts['unchanged']} unchanged"
            )
        )

        self.stdout.write('\n' + '=' * 70)
        self.stdout.write('Permission Matrix:')
        self.stdout.write('=' * 70)
        type_codes = [pt.code for pt in permission_types]
        self.stdout.write(f"{'MODULE':<22}" + ' '.join(type_codes))
        for module in modules:
            defined = set(
                Permission.objects.filter(module=module).values_list('permission_type__code', flat=True)
            )
            cells = ' '.join('x' if code in defined else '.' for code in type_codes)
            self.stdout.write(f'{module.code:<22}{cells}')

        self.stdout.write(f'\nTotal permissions: {Permission.objects.count()}')

    def _report(self, status, label):
        if status == 'created':
            self.stdout.write(self.style.SUCCESS(f'✓ Created: {label}'))
        elif status == 'updated':
            self.stdout.write(self.style.WARNING(f'↻ Updated: {label}'))
