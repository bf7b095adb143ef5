from datetime import timedelta
from io import StringIO
from unittest import mock

import pytest
from django.core.management import call_command
from django.utils import timezone

from backend.celery import build_beat_schedule
from billing.errors import TransientStoreError
from billing.models import Subscription, SubscriptionChange
from billing.services.plan_catalog import get_plan
from billing.tasks import process_provider_event_async, reconcile_due_subscriptions


def test_beat_schedule_only_sweeps_when_configured():
    assert build_beat_schedule() == {}
    assert build_beat_schedule(0) == {}

    schedule = build_beat_schedule(15)
    assert schedule["reconcile_due_subscriptions"]["schedule"] == timedelta(minutes=15)
    assert schedule["reconcile_due_subscriptions"]["task"] == "billing.tasks.reconcile_due_subscriptions"


@pytest.mark.django_db
def test_process_event_task_reports_outcome(make_subscription, make_user, make_event):
    make_subscription(user=make_user(), external_id="sub_task")
    event = make_event("payment.failed", "sub_task", event_id="evt_task")

    first = process_provider_event_async.run(event.to_dict(), "req-1")
    second = process_provider_event_async.run(event.to_dict(), "req-1")

    assert first["status"] == "processed"
    assert first["outcome"] == "applied"
    assert first["status"] == second["status"]
    assert second["replayed"] is True
    assert Subscription.objects.get(external_id="sub_task").status == Subscription.Status.PAST_DUE


@pytest.mark.django_db
def test_process_event_task_reports_rejection(catalog, make_event):
    result = process_provider_event_async.run(make_event("payment.failed", "sub_unknown").to_dict())

    assert result["status"] == "rejected"
    assert result["code"] == "not_found"


@pytest.mark.django_db
def test_process_event_task_propagates_transient_errors(catalog, make_event):
    event = make_event("payment.failed", "sub_busy")

    with mock.patch("billing.tasks.handle", side_effect=TransientStoreError("busy")):
        with pytest.raises(TransientStoreError):
            process_provider_event_async.run(event.to_dict())


@pytest.mark.django_db
def test_reconcile_task_without_due_work(catalog):
    assert reconcile_due_subscriptions() == {"examined": 0, "advanced": 0, "skipped": 0, "failed": 0}


@pytest.mark.django_db
def test_reconcile_command_dry_run_lists_due_subscriptions(make_subscription, make_user):
    subscription = make_subscription(user=make_user())
    SubscriptionChange.objects.create(
        subscription=subscription,
        change_type=SubscriptionChange.ChangeType.DOWNGRADE,
        from_tier="pro",
        to_tier="basic",
        target_plan=get_plan("basic"),
        effective_date=timezone.now() - timedelta(minutes=5),
        status=SubscriptionChange.Status.SCHEDULED,
    )
    out = StringIO()

    call_command("reconcile_subscriptions", "--dry-run", stdout=out)

    assert str(subscription.pk) in out.getvalue()
    assert Subscription.objects.get(pk=subscription.pk).plan.plan_id == "pro"

    call_command("reconcile_subscriptions", stdout=StringIO())

    assert Subscription.objects.get(pk=subscription.pk).plan.plan_id == "basic"


@pytest.mark.django_db
def test_seed_plan_catalog_command_lists_plans(catalog):
    out = StringIO()

    call_command("seed_plan_catalog", "--list", stdout=out)

    assert "pro" in out.getvalue()
