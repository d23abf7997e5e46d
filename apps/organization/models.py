"""
Organization models: Company, Department, Employee.
"""
from django.db import models
from apps.core.models import BaseModel, BaseModelManager


class Company(BaseModel):
    """A legal entity that owns departments."""

    name = models.CharField(
        max_length=100,
        help_text="Company name"
    )
    description = models.TextField(
        blank=True,
        help_text="Company description"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Whether the company is active"
    )

    class Meta:
        db_table = 'companies'
        ordering = ['name']

    def __str__(self):
        return self.name


class Department(BaseModel):
    """A department, optionally belonging to a company."""

    company = models.ForeignKey(
        Company,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='departments',
        help_text="Owning company"
    )
    name = models.CharField(
        max_length=100,
        help_text="Department name"
    )
    description = models.TextField(
        blank=True,
        help_text="Department description"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Whether the department is active"
    )

    class Meta:
        db_table = 'departments'
        ordering = ['name']

    def __str__(self):
        return self.name


class EmployeeManager(BaseModelManager):
    """Manager for Employee model."""

    def by_email(self, email):
        """
        Map an identity-provider email to an active employee.

        Returns None when no active employee carries the address.
        """
        if not email:
            return None
        return self.filter(email__iexact=email.strip(), is_active=True).first()


class Employee(BaseModel):
    """
    A person employed by the organization.

    Every application user wraps exactly one employee.
    """

    employee_code = models.CharField(
        max_length=20,
        blank=True,
        help_text="HR employee code"
    )
    first_name = models.CharField(
        max_length=100,
        help_text="First name"
    )
    last_name = models.CharField(
        max_length=100,
        help_text="Last name"
    )
    email = models.EmailField(
        unique=True,
        null=True,
        blank=True,
        help_text="Work email, as supplied by the identity provider"
    )
    department = models.ForeignKey(
        Department,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='employees',
        help_text="Department the employee works in"
    )
    manager = models.ForeignKey(
        'self',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='subordinates',
        help_text="Line manager"
    )
    hire_date = models.DateField(
        null=True,
        blank=True,
        help_text="Date of hire"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Whether the employee is active"
    )

    objects = EmployeeManager()

    class Meta:
        db_table = 'employees'
        ordering = ['last_name', 'first_name']
        indexes = [
            models.Index(fields=['last_name', 'first_name']),
        ]

    def __str__(self):
        return self.full_name

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()
