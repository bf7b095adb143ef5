import logging

from django.apps import AppConfig
from django.db.models.signals import post_migrate

logger = logging.getLogger(__name__)


def init_plans_after_migrate(sender, **kwargs):
    """Called automatically after migrations to seed the plan catalog."""
    from django.db import OperationalError, ProgrammingError

    from .services.plan_catalog import ensure_plan_catalog

    logger.info("[Billing] Running ensure_plan_catalog() after migrate…")
    try:
        ensure_plan_catalog()
    except (OperationalError, ProgrammingError):
        logger.debug("Database not ready for plan catalog initialisation.")


class BillingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'billing'

    def ready(self):
        # Connect signal so the catalog is ensured after every migrate run
        post_migrate.connect(init_plans_after_migrate, sender=self)
