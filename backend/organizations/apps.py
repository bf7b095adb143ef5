"""
Django application configuration for the organizations app.

Organizations are the tenants that own organization subscriptions. The app
holds memberships with their ordered roles and the denormalized billing
projection that the billing engine keeps in sync.
"""

from django.apps import AppConfig


class OrganizationsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'organizations'
    verbose_name = 'Organization Management'
