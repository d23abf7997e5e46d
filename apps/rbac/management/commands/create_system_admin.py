"""
Management command to bootstrap a system administrator.

Finds the employee by email (optionally creating it), creates or activates
the employee's user account with the administrator flag and assigns the
SYSTEM_ADMIN role. The assignment is audited with no acting user, since
none exists yet.
"""
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction
from apps.organization.models import Employee
from apps.rbac.models import AuditAction, PermissionAuditLog, Role, User, UserRole


class Command(BaseCommand):
    help = 'Create or promote a system administrator'

    def add_arguments(self, parser):
        """Add command arguments."""
        parser.add_argument(
            '--email',
            type=str,
            required=True,
            help='Employee email address',
        )
        parser.add_argument(
            '--username',
            type=str,
            help='Username for a new account (defaults to the email)',
        )
        parser.add_argument(
            '--create-employee',
            action='store_true',
            help='Create the employee if they do not exist',
        )
        parser.add_argument(
            '--first-name',
            type=str,
            default='',
            help='First name for a new employee',
        )
        parser.add_argument(
            '--last-name',
            type=str,
            default='',
            help='Last name for a new employee',
        )

    @transaction.atomic
    def handle(self, *args, **options):
        """Promote the employee's account to system administrator."""
        email = options['email']

        employee = Employee.objects.by_email(email)
        if employee is None:
            if not options['create_employee']:
                raise CommandError(
                    f'Employee not found: {email}\n'
                    f'Use --create-employee --first-name=<name> --last-name=<name> to create it'
                )
            if not options['first_name'] or not options['last_name']:
                raise CommandError('--first-name and --last-name are required with --create-employee')
            employee = Employee.objects.create(
                email=email,
                first_name=options['first_name'],
                last_name=options['last_name'],
            )
            self.stdout.write(self.style.SUCCESS(f'✓ Created employee: {employee.full_name}'))
        else:
            self.stdout.write(f'Employee: {employee.full_name}')

        user = User.objects.filter(employee=employee).first()
        if user is None:
            user = User.objects.create(
                employee=employee,
                username=options.get('username') or email,
                is_system_admin=True,
            )
            self.stdout.write(self.style.SUCCESS(f'✓ Created user: {user.username}'))
        elif not user.is_system_admin or not user.is_active:
            user.is_system_admin = True
            user.is_active = True
            user.save(update_fields=['is_system_admin', 'is_active', 'updated_at'])
            self.stdout.write(self.style.WARNING(f'↻ Promoted user: {user.username}'))
        else:
            self.stdout.write(f'User: {user.username} (already administrator)')

        role = Role.objects.by_code('SYSTEM_ADMIN')
        if role is None:
            raise CommandError(
                'SYSTEM_ADMIN role not found.\n'
                'Run: python manage.py seed_system_roles'
            )

        if UserRole.objects.active().filter(user=user, role=role).exists():
            self.stdout.write(f'Role: {role.code} already assigned')
            return

        UserRole.objects.lapsed().filter(user=user, role=role).update(is_active=False)
        assignment = UserRole.objects.create(
            user=user,
            role=role,
            reason='Bootstrap system administrator',
        )
        PermissionAuditLog.log_action(
            action=AuditAction.ROLE_ASSIGNED,
            target_type='UserRole',
            target_id=assignment.id,
            user=user,
            new_value={'user_id': str(user.id), 'role_id': str(role.id), 'role_code': role.code},
            reason=assignment.reason,
        )
        self.stdout.write(self.style.SUCCESS(f'✓ Assigned {role.code} to {user.username}'))
