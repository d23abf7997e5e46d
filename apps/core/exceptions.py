"""
Typed exceptions for CareerPath and the DRF handler that renders them.
"""
import logging
from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework import status

logger = logging.getLogger(__name__)


class CareerPathException(Exception):
    """Base exception for CareerPath-specific errors."""

    code = 'ERROR'
    status_code = 500

    def __init__(self, message, details=None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def as_dict(self):
        """Render the error for an API response body."""
        return {
            'error': self.message,
            'code': self.code,
            'details': self.details,
        }


class NotFoundError(CareerPathException):
    """Raised when a user, role, permission or override cannot be found."""
    code = 'NOT_FOUND'
    status_code = 404


class ConflictError(CareerPathException):
    """Raised when a write collides with existing active state."""
    code = 'CONFLICT'
    status_code = 409


class ForbiddenError(CareerPathException):
    """Raised when an operation is not allowed for the target or the actor."""
    code = 'FORBIDDEN'
    status_code = 403


class ImmutableRecordError(ForbiddenError):
    """Raised on any attempt to modify or delete an append-only record."""
    code = 'IMMUTABLE_RECORD'


class ValidationError(CareerPathException):
    """Raised when input validation fails."""
    code = 'VALIDATION_ERROR'
    status_code = 400


class StorageError(CareerPathException):
    """Raised when the data store is unavailable or a transaction fails."""
    code = 'STORAGE_ERROR'
    status_code = 503


def custom_exception_handler(exc, context):
    """
    Exception handler that renders CareerPath errors with their status code.

    Anything else is delegated to DRF's default handler; unhandled errors
    become a generic 500 with the request id attached.
    """
    request = context.get('request')
    request_id = getattr(request, 'request_id', None) if request else None

    if isinstance(exc, CareerPathException):
        logger.warning(
            f"API error: {exc.__class__.__name__}: {exc.message}",
            extra={
                'error_code': exc.code,
                'request_id': request_id,
                'path': request.path if request else None,
                'method': request.method if request else None,
            }
        )
        body = exc.as_dict()
        body['request_id'] = request_id
        return Response(body, status=exc.status_code)

    response = exception_handler(exc, context)

    if response is None:
        logger.error(
            f"API Exception: {exc.__class__.__name__}",
            extra={
                'exception': str(exc),
                'request_id': request_id,
                'path': request.path if request else None,
                'method': request.method if request else None,
            },
            exc_info=True
        )
        return Response(
            {
                'error': 'Internal server error',
                'code': 'INTERNAL_ERROR',
                'request_id': request_id,
            },
            status=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    if request_id and isinstance(response.data, dict):
        response.data['request_id'] = request_id

    return response
