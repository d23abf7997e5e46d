"""
DRF permission class and decorator for server-side permission enforcement.

This module provides:
- HasModulePermission: DRF permission class that resolves the required
  module permission for the request principal on every request
- @requires_permission: Decorator to declare the required permission on views

Client-supplied permission claims are never consulted.
"""
import logging
from rest_framework.permissions import BasePermission

from apps.core.exceptions import NotFoundError
from apps.core.logging import SecurityLogger

logger = logging.getLogger(__name__)


def get_request_principal(request):
    """
    Map the authenticated principal of a request to an application user.

    The identity provider supplies an email; the user is found through the
    employee carrying that email. Returns None when nothing matches.
    """
    from apps.rbac.models import User

    principal = getattr(request, 'user', None)
    if principal is None or not getattr(principal, 'is_authenticated', False):
        return None
    return User.objects.by_email(getattr(principal, 'email', None))


class HasModulePermission(BasePermission):
    """
    DRF permission class that enforces a module permission on API endpoints.

    Usage in views:
        class EmployeeListView(APIView):
            permission_classes = [HasModulePermission]
            required_permission = ('EMPLOYEES', 'R')

    Or with the decorator:
        @requires_permission('EMPLOYEES', 'R')
        class EmployeeListView(APIView):
            ...
    """

    message = 'You do not have permission to perform this action.'

    def has_permission(self, request, view):
        """
        Resolve the view's required permission for the request principal.

        Args:
            request: DRF request object
            view: DRF view instance with optional required_permission attribute

        Returns:
            bool: True if the resolver grants the permission, False otherwise
        """
        from apps.rbac.resolver import PermissionResolver

        handler = getattr(view, request.method.lower(), None)
        required = (
            getattr(handler, 'required_permission', None)
            or getattr(view, 'required_permission', None)
        )
        if not required:
            return True

        module_code, permission_code = required
        full_name = f"{module_code}_{permission_code}"
        ip_address = request.META.get('REMOTE_ADDR')

        user = get_request_principal(request)
        if user is None:
            SecurityLogger.log_permission_denied(
                user_email=getattr(getattr(request, 'user', None), 'email', None),
                permission=full_name,
                path=request.path,
                ip_address=ip_address,
                reason='No application user for principal',
            )
            return False

        try:
            verdict = PermissionResolver.resolve(user.id, module_code, permission_code)
        except NotFoundError:
            logger.error(
                f"Required permission {full_name} is not in the catalog",
                extra={'view': view.__class__.__name__, 'permission': full_name}
            )
            return False

        if not verdict.granted:
            SecurityLogger.log_permission_denied(
                user_email=user.email,
                permission=full_name,
                path=request.path,
                ip_address=ip_address,
                reason=verdict.reason,
            )
            return False

        logger.debug(
            f"Permission granted: {full_name}",
            extra={
                'user_id': str(user.id),
                'sources': list(verdict.sources),
                'view': view.__class__.__name__,
            }
        )
        return True


def requires_permission(module_code, permission_code):
    """
    Decorator to declare the module permission a view or method requires.

    Usage:
        @requires_permission('EMPLOYEES', 'R')
        class EmployeeListView(APIView):
            permission_classes = [HasModulePermission]

    Or on individual methods:
        class EmployeeListView(APIView):
            permission_classes = [HasModulePermission]

            @requires_permission('EMPLOYEES', 'C')
            def post(self, request):
                pass
    """
    required = (module_code, permission_code)

    def decorator(view_or_method):
        view_or_method.required_permission = required
        return view_or_method

    return decorator
