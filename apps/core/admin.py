"""
Django admin site branding.
"""
from django.contrib import admin


admin.site.site_header = "CareerPath Administration"
admin.site.site_title = "CareerPath Admin"
admin.site.index_title = "Access control and organization data"
