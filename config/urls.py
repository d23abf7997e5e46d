"""
URL configuration for CareerPath.

The access-control core exposes Python services rather than endpoints; only
the Django admin is routed here.
"""
from django.contrib import admin
from django.urls import path

urlpatterns = [
    path('admin/', admin.site.urls),
]
