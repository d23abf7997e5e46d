"""
Django admin configuration for organization models.
"""
from django.contrib import admin
from apps.organization.models import Company, Department, Employee


@admin.register(Company)
class CompanyAdmin(admin.ModelAdmin):
    list_display = ['name', 'is_active', 'created_at']
    list_filter = ['is_active']
    search_fields = ['name']


@admin.register(Department)
class DepartmentAdmin(admin.ModelAdmin):
    list_display = ['name', 'company', 'is_active']
    list_filter = ['is_active', 'company']
    search_fields = ['name']


@admin.register(Employee)
class EmployeeAdmin(admin.ModelAdmin):
    list_display = ['full_name', 'email', 'department', 'is_active']
    list_filter = ['is_active', 'department']
    search_fields = ['first_name', 'last_name', 'email', 'employee_code']
