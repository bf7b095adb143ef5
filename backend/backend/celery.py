import os
from datetime import timedelta

from celery import Celery

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'backend.settings')

app = Celery('backend')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Task routing configuration
app.conf.task_routes = {
    "billing.tasks.process_provider_event_async": {"queue": "billing"},
    "billing.tasks.reconcile_due_subscriptions": {"queue": "billing"},

    # Default queue
    '*': {'queue': 'default'},
}

app.conf.task_default_queue = 'default'

app.conf.update(
    # Serialization settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone settings
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_track_started=True,
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Retry settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    task_queues={
        'default': {
            'exchange': 'default',
            'routing_key': 'default',
        },
        'billing': {
            'exchange': 'billing',
            'routing_key': 'billing',
        },
    },

    task_default_priority=5,
    task_ignore_result=False,
    task_store_errors_even_if_ignored=True,
)


def build_beat_schedule(sweep_minutes=None):
    """Return the periodic task table; the reconcile sweep only runs when configured."""
    schedule = {}
    if sweep_minutes:
        schedule["reconcile_due_subscriptions"] = {
            "task": "billing.tasks.reconcile_due_subscriptions",
            "schedule": timedelta(minutes=int(sweep_minutes)),
            "options": {"queue": "billing", "priority": 8},
        }
    return schedule


@app.on_after_configure.connect
def configure_beat_schedule(sender, **kwargs):
    from django.conf import settings

    sender.conf.beat_schedule = build_beat_schedule(
        getattr(settings, "BILLING_RECONCILE_SWEEP_MINUTES", None)
    )
