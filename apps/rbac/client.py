"""
Permission client with a per-user, time-limited cache.

The cache only serves UI hints such as whether to show a menu entry. Any
server-side authorization decision must go through PermissionResolver.
"""
import logging
import time

from django.conf import settings
from django.core.cache import caches

from apps.rbac.resolver import PermissionResolver

logger = logging.getLogger(__name__)


class PermissionClient:
    """
    Client for one user's permissions.

    Construct one per user session and pass it to the code that needs it;
    there is no module-level instance. The user's effective permissions are
    cached under a per-user key together with the time they were loaded, and
    are reloaded once older than the configured TTL (24 hours by default).

    Usage:
        client = PermissionClient(user.id)
        client.check_permission('EMPLOYEES', 'R')      # live resolution
        client.has_cached_permission('EMPLOYEES', 'R')  # advisory only
        client.clear()                                  # on logout
    """

    KEY_PREFIX = 'rbac:user_permissions'

    def __init__(self, user_id, resolver=PermissionResolver, cache_alias=None, ttl=None):
        self.user_id = user_id
        self.resolver = resolver
        self.cache_alias = cache_alias or settings.PERMISSION_CLIENT_CACHE_ALIAS
        self.ttl = settings.PERMISSION_CLIENT_CACHE_TTL if ttl is None else ttl

    @classmethod
    def cache_key(cls, user_id):
        return f"{cls.KEY_PREFIX}:{user_id}"

    @classmethod
    def invalidate(cls, user_id, cache_alias=None):
        """Drop a user's cached permissions."""
        alias = cache_alias or settings.PERMISSION_CLIENT_CACHE_ALIAS
        caches[alias].delete(cls.cache_key(user_id))
        logger.debug("Permission cache invalidated", extra={'user_id': str(user_id)})

    @property
    def cache(self):
        return caches[self.cache_alias]

    def _is_fresh(self, entry):
        return (time.time() - entry['timestamp']) < self.ttl

    def _cached_entry(self):
        entry = self.cache.get(self.cache_key(self.user_id))
        if entry is None or entry.get('user_id') != str(self.user_id):
            return None
        if not self._is_fresh(entry):
            logger.debug("Permission cache entry stale", extra={'user_id': str(self.user_id)})
            return None
        return entry

    def refresh(self):
        """Reload the user's permissions from the resolver and cache them."""
        from apps.rbac.serializers import EffectivePermissionSerializer

        rows = self.resolver.get_user_permissions(self.user_id)
        entry = {
            'user_id': str(self.user_id),
            'timestamp': time.time(),
            'permissions': [dict(row) for row in EffectivePermissionSerializer(rows, many=True).data],
        }
        self.cache.set(self.cache_key(self.user_id), entry, self.ttl)
        logger.debug(
            "Permission cache loaded",
            extra={'user_id': str(self.user_id), 'permission_count': len(entry['permissions'])}
        )
        return entry

    def get_user_permissions(self):
        """Return the user's effective permissions, read through the cache."""
        entry = self._cached_entry() or self.refresh()
        return entry['permissions']

    def has_cached_permission(self, module_code, permission_code):
        """
        Advisory check against the cached permission list.

        Not authoritative: use check_permission or the resolver for any
        decision that protects data.
        """
        full_name = f"{module_code}_{permission_code}"
        return any(
            row['permissionFullName'] == full_name and row['isGranted']
            for row in self.get_user_permissions()
        )

    def check_permission(self, module_code, permission_code):
        """Resolve a permission live: {hasPermission, reason, sources}."""
        return self.resolver.check_permission(self.user_id, module_code, permission_code)

    def get_permission_matrix(self):
        return self.resolver.get_permission_matrix()

    def clear(self):
        """Forget the cached permissions, e.g. on logout."""
        self.invalidate(self.user_id, cache_alias=self.cache_alias)
