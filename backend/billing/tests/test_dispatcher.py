from datetime import timedelta
from unittest import mock

import pytest
from django.db import DatabaseError
from django.utils import timezone
from prometheus_client import REGISTRY

from billing.errors import Conflict, NotFound, ValidationError
from billing.models import BillingAuditLog, ProcessedEvent, Subscription
from billing.services.dispatcher import handle, handler_for
from billing.services.events import EventType

Status = Subscription.Status
Outcome = ProcessedEvent.Outcome
AuditEvent = BillingAuditLog.EventType


def _audit_types(subscription):
    return list(
        BillingAuditLog.objects.filter(subscription=subscription)
        .order_by("id")
        .values_list("event_type", flat=True)
    )


def test_every_event_type_has_a_handler():
    for event_type in EventType:
        assert callable(handler_for(event_type))


@pytest.mark.django_db
def test_trial_converts_to_paid_on_first_payment(catalog, make_user, make_event):
    user = make_user()
    created = make_event(
        "subscription.created",
        "sub_trial",
        payload={"plan_id": "pro", "owner": {"user_id": user.pk}},
    )

    result = handle(created)

    subscription = Subscription.objects.get(external_id="sub_trial")
    assert result.outcome == Outcome.APPLIED
    assert result.status == Status.TRIALING
    assert subscription.user == user
    assert subscription.trial_end is not None
    assert _audit_types(subscription) == [AuditEvent.SUBSCRIPTION_CREATED, AuditEvent.TRIAL_STARTED]

    paid = handle(make_event("payment.succeeded", "sub_trial", payload={"invoice_id": "in_1", "amount_paid": 2900}))

    subscription.refresh_from_db()
    assert paid.previous_status == Status.TRIALING
    assert subscription.status == Status.ACTIVE
    assert _audit_types(subscription).count(AuditEvent.TRIAL_TO_PAID_UPGRADE) == 1
    assert AuditEvent.PAYMENT_SUCCEEDED in _audit_types(subscription)


@pytest.mark.django_db
def test_duplicate_delivery_is_applied_once(make_subscription, make_user, make_event):
    subscription = make_subscription(user=make_user(), external_id="sub_dup")
    event = make_event("payment.failed", "sub_dup", event_id="evt_failed", payload={"attempt_count": 1})

    first = handle(event)
    second = handle(event)

    subscription.refresh_from_db()
    assert subscription.status == Status.PAST_DUE
    assert first.replayed is False
    assert second.replayed is True
    assert first == second
    assert ProcessedEvent.objects.filter(event_id="evt_failed").count() == 1
    assert _audit_types(subscription).count(AuditEvent.PAYMENT_FAILED) == 1


@pytest.mark.django_db
def test_repeated_payment_failures_keep_subscription_past_due(make_subscription, make_user, make_event):
    subscription = make_subscription(user=make_user(), external_id="sub_retry")

    handle(make_event("payment.failed", "sub_retry"))
    result = handle(make_event("payment.failed", "sub_retry"))

    assert result.previous_status == Status.PAST_DUE
    assert result.status == Status.PAST_DUE
    assert _audit_types(subscription).count(AuditEvent.PAYMENT_FAILED) == 2


@pytest.mark.django_db
def test_payment_recovers_past_due_subscription(make_subscription, make_user, make_event):
    subscription = make_subscription(user=make_user(), external_id="sub_recover", status=Status.PAST_DUE)

    handle(make_event("payment.succeeded", "sub_recover"))

    subscription.refresh_from_db()
    assert subscription.status == Status.ACTIVE
    log = BillingAuditLog.objects.get(subscription=subscription, event_type=AuditEvent.PAYMENT_SUCCEEDED)
    assert log.details["recovered"] is True
    assert log.source == "webhook"


@pytest.mark.django_db
def test_out_of_order_event_is_recorded_as_stale(make_subscription, make_user, make_event):
    applied_at = timezone.now()
    subscription = make_subscription(user=make_user(), external_id="sub_stale", last_event_at=applied_at)

    result = handle(make_event("payment.failed", "sub_stale", timestamp=applied_at - timedelta(hours=1)))

    subscription.refresh_from_db()
    assert result.outcome == Outcome.STALE
    assert subscription.status == Status.ACTIVE
    assert ProcessedEvent.objects.get(event_id=result.event_id).outcome == Outcome.STALE


@pytest.mark.django_db
def test_newer_event_advances_last_event_marker(make_subscription, make_user, make_event):
    applied_at = timezone.now() - timedelta(hours=2)
    subscription = make_subscription(user=make_user(), external_id="sub_newer", last_event_at=applied_at)
    newer = applied_at + timedelta(hours=1)

    handle(make_event("payment.failed", "sub_newer", timestamp=newer))

    subscription.refresh_from_db()
    assert subscription.last_event_at == newer
    assert subscription.status == Status.PAST_DUE


@pytest.mark.django_db
def test_events_for_expired_subscription_are_ignored(make_subscription, make_user, make_event):
    subscription = make_subscription(
        user=make_user(),
        external_id="sub_gone",
        status=Status.EXPIRED,
        is_active=False,
    )

    result = handle(make_event("payment.succeeded", "sub_gone"))

    subscription.refresh_from_db()
    assert result.outcome == Outcome.IGNORED
    assert subscription.status == Status.EXPIRED


@pytest.mark.django_db
def test_unknown_subject_is_rejected_and_replayed(catalog, make_event):
    event = make_event("payment.failed", "sub_missing", event_id="evt_missing")

    with pytest.raises(NotFound):
        handle(event)

    entry = ProcessedEvent.objects.get(event_id="evt_missing")
    assert entry.outcome == Outcome.REJECTED
    assert entry.error_code == "not_found"

    with pytest.raises(NotFound) as exc:
        handle(event)
    assert exc.value.context["replayed"] is True


@pytest.mark.django_db
def test_created_event_without_known_plan_is_rejected(catalog, make_user, make_event):
    event = make_event("subscription.created", "sub_noplan", payload={"owner": {"user_id": make_user().pk}})

    with pytest.raises(ValidationError):
        handle(event)

    assert not Subscription.objects.filter(external_id="sub_noplan").exists()


@pytest.mark.django_db
def test_deleted_event_cancels_subscription(make_subscription, make_user, make_event):
    subscription = make_subscription(user=make_user(), external_id="sub_deleted")

    result = handle(make_event("subscription.deleted", "sub_deleted"))

    subscription.refresh_from_db()
    assert result.status == Status.CANCELED
    assert subscription.access_expires_at is not None
    assert subscription.is_active is True
    assert AuditEvent.SUBSCRIPTION_CANCELLED in _audit_types(subscription)


@pytest.mark.django_db
def test_updated_event_syncs_quantity_and_cancellation(make_subscription, organization, make_event):
    subscription = make_subscription(
        organization=organization,
        plan="business",
        external_id="sub_org_update",
        seat_limit=5,
        quantity=5,
        used_seats=3,
    )

    handle(
        make_event(
            "subscription.updated",
            "sub_org_update",
            payload={"quantity": 8, "status": "active", "cancel_at_period_end": True},
        )
    )

    subscription.refresh_from_db()
    organization.refresh_from_db()
    assert subscription.seat_limit == 8
    assert subscription.quantity == 8
    assert subscription.cancel_at_period_end is True
    assert organization.member_limit == 8
    assert AuditEvent.SEATS_CHANGED in _audit_types(subscription)


@pytest.mark.django_db
def test_provider_quantity_below_used_seats_conflicts(make_subscription, organization, make_event):
    subscription = make_subscription(
        organization=organization,
        plan="business",
        external_id="sub_org_shrink",
        seat_limit=5,
        quantity=5,
        used_seats=4,
    )

    with pytest.raises(Conflict):
        handle(make_event("subscription.updated", "sub_org_shrink", payload={"quantity": 2}))

    subscription.refresh_from_db()
    assert subscription.seat_limit == 5


@pytest.mark.django_db
def test_organization_subscription_creation_counts_members(catalog, organization, add_member, make_event):
    add_member(organization)
    add_member(organization)

    result = handle(
        make_event(
            "subscription.created",
            "sub_org_new",
            payload={"plan_id": "business", "owner": {"organization_id": organization.pk}},
        )
    )

    subscription = Subscription.objects.get(pk=result.subscription_id)
    organization.refresh_from_db()
    assert subscription.status == Status.ACTIVE
    assert subscription.used_seats == 3
    assert subscription.seat_limit == 5
    assert organization.subscription_status == Status.ACTIVE
    assert organization.subscription_tier == "business"
    assert organization.member_limit == 5
    assert organization.current_member_count == 3


@pytest.mark.django_db
def test_second_live_subscription_for_owner_conflicts(make_subscription, make_user, make_event):
    user = make_user()
    make_subscription(user=user)

    with pytest.raises(Conflict):
        handle(
            make_event(
                "subscription.created",
                "sub_second",
                payload={"plan_id": "basic", "owner": {"user_id": user.pk}},
            )
        )


@pytest.mark.django_db
def test_new_subscription_supersedes_cancelled_one(make_subscription, make_user, make_event):
    user = make_user()
    cancelled = make_subscription(user=user, status=Status.CANCELED, canceled_at=timezone.now())

    result = handle(
        make_event(
            "subscription.created",
            "sub_replacement",
            payload={"plan_id": "basic", "status": "active", "owner": {"user_id": user.pk}},
        )
    )

    cancelled.refresh_from_db()
    assert cancelled.is_active is False
    assert Subscription.objects.get(pk=result.subscription_id).is_active is True


@pytest.mark.django_db
def test_non_numeric_provider_quantity_is_rejected(make_subscription, organization, make_event):
    subscription = make_subscription(
        organization=organization,
        plan="business",
        external_id="sub_org_garbled",
        seat_limit=5,
        quantity=5,
        used_seats=2,
    )
    event = make_event("subscription.updated", "sub_org_garbled", event_id="evt_garbled", payload={"quantity": "lots"})

    with pytest.raises(ValidationError) as exc:
        handle(event)

    assert exc.value.context["field"] == "quantity"
    assert ProcessedEvent.objects.get(event_id="evt_garbled").outcome == Outcome.REJECTED
    subscription.refresh_from_db()
    assert subscription.seat_limit == 5


@pytest.mark.django_db
def test_old_ledger_entries_still_deduplicate(make_subscription, make_user, make_event):
    subscription = make_subscription(user=make_user(), external_id="sub_late")
    event = make_event("payment.failed", "sub_late", event_id="evt_late")

    handle(event)
    ProcessedEvent.objects.filter(event_id="evt_late").update(processed_at=timezone.now() - timedelta(days=400))
    handle(make_event("payment.succeeded", "sub_late"))
    replayed = handle(event)

    subscription.refresh_from_db()
    assert replayed.replayed is True
    assert subscription.status == Status.ACTIVE
    assert _audit_types(subscription).count(AuditEvent.PAYMENT_FAILED) == 1


@pytest.mark.django_db
def test_audit_failure_does_not_undo_transition(make_subscription, make_user, make_event):
    subscription = make_subscription(user=make_user(), external_id="sub_audit_down")
    labels = {"event_type": str(AuditEvent.PAYMENT_FAILED)}
    before = REGISTRY.get_sample_value("billing_audit_emit_failure_total", labels) or 0

    with mock.patch.object(BillingAuditLog.objects, "create", side_effect=DatabaseError("audit store down")):
        result = handle(make_event("payment.failed", "sub_audit_down", event_id="evt_audit_down"))

    subscription.refresh_from_db()
    assert result.outcome == Outcome.APPLIED
    assert subscription.status == Status.PAST_DUE
    assert ProcessedEvent.objects.filter(event_id="evt_audit_down").exists()
    assert _audit_types(subscription) == []
    assert REGISTRY.get_sample_value("billing_audit_emit_failure_total", labels) == before + 1
