from django.apps import AppConfig
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
import logging
import re
import sys

logger = logging.getLogger(__name__)

PERMISSION_NAME_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*_[A-Z]$')


class CoreConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.core'
    verbose_name = 'Core'

    def ready(self):
        """Perform startup validation checks when Django initializes."""
        # Only validate when serving requests; migrations, seeding and tests
        # run without a full production config
        if 'runserver' not in sys.argv and 'gunicorn' not in sys.argv[0]:
            return

        self.validate_access_control_settings()
        self.validate_security_settings()

        logger.info("Startup configuration validated")

    def validate_access_control_settings(self):
        """Validate permission cache and administration settings."""
        admin_permission = getattr(settings, 'RBAC_ADMIN_PERMISSION', '')
        if not PERMISSION_NAME_PATTERN.match(admin_permission or ''):
            raise ImproperlyConfigured(
                f"RBAC_ADMIN_PERMISSION must be a full permission name such as 'ROLES_M', "
                f"got {admin_permission!r}"
            )

        ttl = getattr(settings, 'PERMISSION_CLIENT_CACHE_TTL', None)
        if not isinstance(ttl, int) or ttl <= 0:
            raise ImproperlyConfigured(
                f"PERMISSION_CLIENT_CACHE_TTL must be a positive number of seconds, got {ttl!r}"
            )

        alias = getattr(settings, 'PERMISSION_CLIENT_CACHE_ALIAS', 'default')
        if alias not in settings.CACHES:
            raise ImproperlyConfigured(
                f"PERMISSION_CLIENT_CACHE_ALIAS {alias!r} is not a configured cache"
            )

        limit = getattr(settings, 'AUDIT_LOG_QUERY_LIMIT', None)
        if not isinstance(limit, int) or limit <= 0:
            raise ImproperlyConfigured(
                f"AUDIT_LOG_QUERY_LIMIT must be a positive integer, got {limit!r}"
            )

    def validate_security_settings(self):
        """Validate general security settings."""
        secret_key = getattr(settings, 'SECRET_KEY', None)

        if not secret_key:
            raise ImproperlyConfigured(
                "SECRET_KEY must be set in environment variables. "
                "Generate with: "
                "python -c \"import secrets; print(secrets.token_urlsafe(50))\""
            )

        if not settings.DEBUG and 'insecure' in secret_key.lower():
            raise ImproperlyConfigured(
                "SECRET_KEY appears to be the development default. "
                "Set a strong SECRET_KEY before running with DEBUG=False."
            )
