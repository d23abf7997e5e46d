"""
Pytest configuration and fixtures.
"""
import itertools

import pytest
from django.conf import settings
import django
from django.core.cache import caches
from django.core.management import call_command


def pytest_configure(config):
    """Configure Django settings for tests."""
    settings.DATABASES['default'] = {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
        'ATOMIC_REQUESTS': False,
    }
    settings.CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'careerpath-tests',
        }
    }
    django.setup()


@pytest.fixture(scope='session')
def django_db_setup(django_db_setup, django_db_blocker):
    """Set up test database with migrations."""
    with django_db_blocker.unblock():
        call_command('migrate', '--run-syncdb', verbosity=0)


@pytest.fixture(autouse=True)
def clear_caches():
    """Start every test with empty caches."""
    for alias in settings.CACHES:
        caches[alias].clear()
    yield
    for alias in settings.CACHES:
        caches[alias].clear()


@pytest.fixture
def api_client():
    """Return DRF API client."""
    from rest_framework.test import APIClient
    return APIClient()


class Catalog:
    """Test catalog of modules × C/R/U/D/A/M permissions."""

    MODULES = ['EMPLOYEES', 'ASSESSMENTS', 'REPORTS', 'ROLES']
    TYPES = ['C', 'R', 'U', 'D', 'A', 'M']

    def __init__(self):
        from apps.rbac.models import Module, Permission, PermissionType

        self.modules = {
            code: Module.objects.create(code=code, name=code.title(), display_order=index)
            for index, code in enumerate(self.MODULES)
        }
        self.types = {
            code: PermissionType.objects.create(code=code, name=code)
            for code in self.TYPES
        }
        self.permissions = {
            (module_code, type_code): Permission.objects.create(
                module=self.modules[module_code],
                permission_type=self.types[type_code],
            )
            for module_code, type_code in itertools.product(self.MODULES, self.TYPES)
        }

    def permission(self, module_code, type_code):
        return self.permissions[(module_code, type_code)]


@pytest.fixture
def catalog(db):
    """Create the permission catalog used by most tests."""
    return Catalog()


@pytest.fixture
def make_user(db):
    """Factory for application users backed by an employee."""
    from apps.organization.models import Employee
    from apps.rbac.models import User

    counter = itertools.count(1)

    def factory(username=None, is_system_admin=False, is_active=True, email=None):
        n = next(counter)
        username = username or f'user{n}'
        employee = Employee.objects.create(
            first_name='Test',
            last_name=f'User{n}',
            email=email or f'{username}@example.com',
        )
        return User.objects.create(
            employee=employee,
            username=username,
            is_system_admin=is_system_admin,
            is_active=is_active,
        )

    return factory


@pytest.fixture
def admin_user(make_user):
    """A system administrator, used as the acting user for mutations."""
    return make_user(username='admin', is_system_admin=True)


@pytest.fixture
def user(make_user):
    """A regular user with no roles or overrides."""
    return make_user(username='alice')


@pytest.fixture
def make_role(db):
    """Factory for roles with a given permission set."""
    from apps.rbac.models import Role, RolePermission

    def factory(code, name=None, permissions=(), is_system_role=False, is_active=True):
        role = Role.objects.create(
            code=code,
            name=name or code.title(),
            is_system_role=is_system_role,
            is_active=is_active,
        )
        for permission in permissions:
            RolePermission.objects.grant_permission(role, permission)
        return role

    return factory


@pytest.fixture
def assign(db):
    """Assign a role directly, bypassing the service layer."""
    from apps.rbac.models import UserRole

    def factory(user, role, **kwargs):
        return UserRole.objects.create(user=user, role=role, **kwargs)

    return factory
