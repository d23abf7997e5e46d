"""
RBAC signals for cache invalidation.

Keeps the cached permission catalog and per-user permission caches from
outliving the data they were built from.
"""
import logging

from django.contrib.auth.signals import user_logged_out
from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

logger = logging.getLogger(__name__)


@receiver(post_save, sender='rbac.Module')
@receiver(post_delete, sender='rbac.Module')
@receiver(post_save, sender='rbac.PermissionType')
@receiver(post_delete, sender='rbac.PermissionType')
@receiver(post_save, sender='rbac.Permission')
@receiver(post_delete, sender='rbac.Permission')
def invalidate_permission_catalog(sender, instance, **kwargs):
    """Drop the cached catalog whenever a catalog entry changes."""
    from apps.rbac.catalog import PermissionCatalog

    PermissionCatalog.invalidate_cache()


@receiver(user_logged_out)
def clear_permission_cache_on_logout(sender, request, user, **kwargs):
    """
    Forget the logged-out principal's cached permissions.

    The authenticated principal is mapped to an application user through its
    email, the same way permission checks map it.
    """
    from apps.rbac.client import PermissionClient
    from apps.rbac.models import User

    email = getattr(user, 'email', None)
    app_user = User.objects.by_email(email)
    if app_user is None:
        return

    PermissionClient.invalidate(app_user.id)
    logger.info(
        "Permission cache cleared on logout",
        extra={'user_id': str(app_user.id)}
    )
