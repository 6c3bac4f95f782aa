"""
URL configuration for the charge recovery service.

The recovery engine is driven by Celery tasks, so the only HTTP surface is
operational:

URL Structure:
    /admin/                        - Django admin interface
    /health/                       - Health check endpoint (database + lease store)

For more information, see:
https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import path

from core.views import health_check

urlpatterns = [
    path("admin/", admin.site.urls),
    # Docker, Kubernetes, load balancers
    path("health/", health_check, name="health_check"),
]

admin.site.site_header = "Charge Recovery Admin"
admin.site.site_title = "Charge Recovery"
