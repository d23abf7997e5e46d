"""
Tests for RBAC signal handlers.
"""
import pytest
from django.core.cache import cache

from apps.rbac.catalog import PermissionCatalog
from apps.rbac.client import PermissionClient
from apps.rbac.signals import clear_permission_cache_on_logout


@pytest.mark.django_db
class TestCatalogInvalidation:
    """Test catalog edits drop the cached matrix."""

    def test_permission_deactivation(self, catalog):
        """Test deactivating a permission removes it from the next matrix."""
        PermissionCatalog.get_permission_matrix()
        permission = catalog.permission('EMPLOYEES', 'D')
        permission.is_active = False
        permission.save()

        matrix = PermissionCatalog.get_permission_matrix()

        assert 'EMPLOYEES_D' not in [p['fullName'] for p in matrix['permissions']]

    def test_permission_type_delete(self, catalog):
        """Test deleting a permission type invalidates the matrix."""
        PermissionCatalog.get_permission_matrix()

        catalog.types['A'].delete()

        assert cache.get(PermissionCatalog.CACHE_KEY) is None


@pytest.mark.django_db
class TestLogoutHandler:
    """Test the logout receiver."""

    def test_unknown_principal_ignored(self, rf, user):
        """Test a principal without an application user leaves caches alone."""
        PermissionClient(user.id).get_user_permissions()
        principal = type('Principal', (), {'email': 'stranger@example.com'})()

        clear_permission_cache_on_logout(sender=None, request=rf.get('/'), user=principal)

        assert cache.get(PermissionClient.cache_key(user.id)) is not None

    def test_anonymous_principal_ignored(self, rf):
        """Test a principal without an email is ignored."""
        clear_permission_cache_on_logout(sender=None, request=rf.get('/'), user=None)
