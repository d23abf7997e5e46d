"""
Transaction helpers that translate database failures into typed errors.
"""
import logging
from contextlib import contextmanager

from django.db import DatabaseError, IntegrityError, transaction

from apps.core.exceptions import ConflictError, StorageError

logger = logging.getLogger(__name__)


@contextmanager
def storage_guard(operation, using=None):
    """
    Run a block inside one atomic transaction.

    Either everything written in the block commits or nothing does. A typed
    CareerPath error raised inside the block rolls back and propagates as is;
    raw database errors are re-raised as ConflictError (constraint
    violations) or StorageError (everything else).

    Args:
        operation: Short name of the operation, used in logs and messages
        using: Optional database alias

    Raises:
        ConflictError: If a unique or foreign key constraint was violated
        StorageError: If the store is unavailable or the transaction failed
    """
    try:
        with transaction.atomic(using=using):
            yield
    except IntegrityError as exc:
        logger.warning(
            f"Integrity error during {operation}",
            extra={'operation': operation, 'error': str(exc)}
        )
        raise ConflictError(
            f"{operation} conflicts with existing data",
            details={'operation': operation}
        ) from exc
    except DatabaseError as exc:
        logger.error(
            f"Storage failure during {operation}",
            extra={'operation': operation, 'error': str(exc)},
            exc_info=True
        )
        raise StorageError(
            f"{operation} failed: data store unavailable",
            details={'operation': operation}
        ) from exc


@contextmanager
def read_guard(operation):
    """Translate database failures of read-only work into StorageError."""
    try:
        yield
    except DatabaseError as exc:
        logger.error(
            f"Storage failure during {operation}",
            extra={'operation': operation, 'error': str(exc)},
            exc_info=True
        )
        raise StorageError(
            f"{operation} failed: data store unavailable",
            details={'operation': operation}
        ) from exc
