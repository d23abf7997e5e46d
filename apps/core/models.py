"""
Core models for CareerPath.

Provides BaseModel with UUID primary keys, soft delete and timestamps, and
the time-bounded grant mixin shared by role assignments and overrides.
"""
import uuid
from django.db import models
from django.db.models import Q
from django.utils import timezone


class BaseModelManager(models.Manager):
    """Manager that excludes soft-deleted objects by default."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)


class BaseModelQuerySet(models.QuerySet):
    """QuerySet with soft delete support."""

    def delete(self):
        """Soft delete all objects in queryset."""
        return self.update(deleted_at=timezone.now())

    def hard_delete(self):
        """Permanently delete all objects in queryset."""
        return super().delete()


class BaseModel(models.Model):
    """
    Abstract base model with UUID primary key, soft delete, and timestamps.

    Every persistent entity in CareerPath inherits from this model so that
    identifiers, ordering and deletion behave the same everywhere.
    """
    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier"
    )

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when the record was created"
    )

    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="Timestamp when the record was last updated"
    )

    deleted_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Timestamp when the record was soft deleted"
    )

    # Default manager excludes soft-deleted objects
    objects = BaseModelManager.from_queryset(BaseModelQuerySet)()

    # Manager that includes soft-deleted objects
    objects_with_deleted = models.Manager.from_queryset(BaseModelQuerySet)()

    class Meta:
        abstract = True
        ordering = ['-created_at']

    def delete(self, using=None, keep_parents=False):
        """Soft delete the object."""
        self.deleted_at = timezone.now()
        self.save(using=using, update_fields=['deleted_at', 'updated_at'])

    def hard_delete(self, using=None, keep_parents=False):
        """Permanently delete the object."""
        return super().delete(using=using, keep_parents=keep_parents)

    @property
    def is_deleted(self):
        """Check if the object is soft deleted."""
        return self.deleted_at is not None


class TimeBoundQuerySet(BaseModelQuerySet):
    """QuerySet for rows that are live while flagged active and unexpired."""

    def active(self, at=None):
        """Rows whose active flag is set and whose expiry lies in the future."""
        at = at or timezone.now()
        return self.filter(is_active=True).filter(
            Q(expiry_date__isnull=True) | Q(expiry_date__gt=at)
        )

    def lapsed(self, at=None):
        """Rows still flagged active although their expiry has passed."""
        at = at or timezone.now()
        return self.filter(is_active=True, expiry_date__lte=at)


class TimeBoundGrant(BaseModel):
    """
    Abstract base for grants with an active flag and an optional expiry.

    A grant counts only while `is_active` is true and either no expiry is
    set or the expiry is still in the future.
    """
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether this grant has not been revoked"
    )

    expiry_date = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When this grant stops applying (null = never)"
    )

    objects = BaseModelManager.from_queryset(TimeBoundQuerySet)()
    objects_with_deleted = models.Manager.from_queryset(TimeBoundQuerySet)()

    class Meta:
        abstract = True
        ordering = ['-created_at']

    def is_effective(self, at=None):
        """Check whether the grant applies at the given instant."""
        at = at or timezone.now()
        if not self.is_active:
            return False
        return self.expiry_date is None or self.expiry_date > at
