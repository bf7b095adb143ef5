from datetime import timedelta
from unittest import mock

import pytest
from django.utils import timezone

from billing.context import RequestContext
from billing.errors import Conflict, ExternalProviderError, NotFound, PermissionDenied, ValidationError
from billing.models import BillingAuditLog, Subscription, SubscriptionChange
from billing.services.management import (
    create_billing_portal_session,
    get_status,
    request_change,
    update_organization_subscription,
)
from billing.services.reconcile import due_subscription_ids, sweep_due_subscriptions
from organizations.roles import Role

Status = Subscription.Status
ChangeStatus = SubscriptionChange.Status
AuditEvent = BillingAuditLog.EventType


@pytest.fixture
def org_subscription(make_subscription, organization):
    return make_subscription(
        organization=organization,
        plan="pro",
        seat_limit=5,
        quantity=5,
        used_seats=3,
    )


@pytest.mark.django_db
def test_downgrade_waits_for_period_end_then_applies(make_subscription, make_user):
    user = make_user()
    subscription = make_subscription(user=user)
    period_end = subscription.current_period_end

    result = request_change(RequestContext.for_user(user), action="downgrade", to_tier="basic", from_tier="pro")

    subscription.refresh_from_db()
    assert result.status == ChangeStatus.SCHEDULED
    assert result.effective_date == period_end
    assert subscription.plan.plan_id == "pro"
    assert AuditEvent.DOWNGRADE_SCHEDULED in BillingAuditLog.objects.filter(subscription=subscription).values_list(
        "event_type", flat=True
    )

    assert due_subscription_ids() == []
    later = period_end + timedelta(minutes=1)
    assert due_subscription_ids(now=later) == [subscription.pk]

    sweep = sweep_due_subscriptions(now=later)

    subscription.refresh_from_db()
    assert sweep.advanced == 1
    assert subscription.plan.plan_id == "basic"
    assert SubscriptionChange.objects.get(pk=result.change_id).status == ChangeStatus.APPLIED


@pytest.mark.django_db
def test_new_plan_request_supersedes_scheduled_downgrade(make_subscription, make_user):
    user = make_user()
    make_subscription(user=user)
    context = RequestContext.for_user(user)
    scheduled = request_change(context, action="downgrade", to_tier="basic")

    status = get_status(context)
    assert status.scheduled_change.pk == scheduled.change_id

    request_change(context, action="downgrade", to_tier="free")

    assert SubscriptionChange.objects.get(pk=scheduled.change_id).status == ChangeStatus.CANCELLED
    assert BillingAuditLog.objects.filter(event_type=AuditEvent.DOWNGRADE_CANCELLED).count() == 1


@pytest.mark.django_db
def test_upgrade_is_applied_immediately(make_subscription, make_user):
    user = make_user()
    subscription = make_subscription(user=user, plan="basic")

    result = request_change(RequestContext.for_user(user), action="upgrade", to_tier="pro")

    subscription.refresh_from_db()
    assert result.status == ChangeStatus.APPLIED
    assert result.subscription_status == Status.ACTIVE
    assert subscription.plan.plan_id == "pro"


@pytest.mark.django_db
def test_change_direction_must_match_tiers(make_subscription, make_user):
    user = make_user()
    make_subscription(user=user)

    with pytest.raises(ValidationError):
        request_change(RequestContext.for_user(user), action="upgrade", to_tier="basic")


@pytest.mark.django_db
def test_from_tier_must_match_current_plan(make_subscription, make_user):
    user = make_user()
    make_subscription(user=user)

    with pytest.raises(Conflict):
        request_change(RequestContext.for_user(user), action="downgrade", from_tier="basic", to_tier="free")


@pytest.mark.django_db
def test_plan_change_requires_target_tier(make_subscription, make_user):
    user = make_user()
    make_subscription(user=user)

    with pytest.raises(ValidationError):
        request_change(RequestContext.for_user(user), action="upgrade")


@pytest.mark.django_db
def test_anonymous_context_is_rejected(catalog):
    with pytest.raises(PermissionDenied):
        request_change(RequestContext(), action="cancellation")


@pytest.mark.django_db
def test_other_users_subscription_cannot_be_changed(make_subscription, make_user):
    subscription = make_subscription(user=make_user())
    intruder = make_user()

    with pytest.raises(PermissionDenied):
        request_change(
            RequestContext.for_user(intruder),
            action="cancellation",
            subscription_id=subscription.pk,
        )


@pytest.mark.django_db
def test_user_without_subscription_gets_not_found(catalog, make_user):
    with pytest.raises(NotFound):
        request_change(RequestContext.for_user(make_user()), action="cancellation")


@pytest.mark.django_db
def test_cancellation_and_reactivation(make_subscription, make_user):
    user = make_user()
    subscription = make_subscription(user=user)
    context = RequestContext.for_user(user)

    cancelled = request_change(context, action="cancellation", reason="too expensive")
    assert cancelled.subscription_status == Status.CANCELED

    reactivated = request_change(context, action="reactivation")

    subscription.refresh_from_db()
    assert reactivated.subscription_status == Status.ACTIVE
    assert subscription.access_expires_at is None
    event_types = set(BillingAuditLog.objects.filter(subscription=subscription).values_list("event_type", flat=True))
    assert {AuditEvent.SUBSCRIPTION_CANCELLED, AuditEvent.SUBSCRIPTION_REACTIVATED} <= event_types


@pytest.mark.django_db
def test_cancellation_at_period_end_keeps_subscription_active(make_subscription, make_user):
    user = make_user()
    subscription = make_subscription(user=user)

    result = request_change(
        RequestContext.for_user(user),
        action="cancellation",
        effective_date=subscription.current_period_end,
    )

    subscription.refresh_from_db()
    assert result.subscription_status == Status.ACTIVE
    assert subscription.cancel_at_period_end is True


@pytest.mark.django_db
@pytest.mark.parametrize("status", [Status.CANCELED, Status.PAST_DUE])
def test_plan_change_on_inactive_subscription_conflicts(make_subscription, make_user, status):
    user = make_user()
    fields = {"status": status}
    if status == Status.CANCELED:
        fields["canceled_at"] = timezone.now()
        fields["access_expires_at"] = timezone.now() + timedelta(days=10)
    subscription = make_subscription(user=user, **fields)

    with pytest.raises(Conflict) as exc:
        request_change(RequestContext.for_user(user), action="downgrade", to_tier="basic")

    assert exc.value.context["current_state"] == status
    assert exc.value.context["transition"] == "pro->basic"
    assert not SubscriptionChange.objects.filter(subscription=subscription).exists()
    subscription.refresh_from_db()
    assert subscription.status == status


@pytest.mark.django_db
def test_failed_immediate_change_is_recorded(make_subscription, organization):
    make_subscription(
        organization=organization,
        plan="business",
        seat_limit=20,
        quantity=20,
        used_seats=12,
    )

    with pytest.raises(Conflict) as exc:
        request_change(
            RequestContext.for_user(organization.owner),
            action="downgrade",
            to_tier="basic",
            organization_id=organization.pk,
            effective_date=timezone.now() - timedelta(minutes=1),
        )

    change = SubscriptionChange.objects.get(pk=exc.value.context["change_id"])
    assert change.status == ChangeStatus.FAILED
    assert BillingAuditLog.objects.filter(event_type=AuditEvent.PLAN_CHANGE_FAILED).exists()


@pytest.mark.django_db
def test_viewer_cannot_change_organization_plan(org_subscription, organization, add_member):
    viewer = add_member(organization, Role.VIEWER).user

    with pytest.raises(PermissionDenied):
        update_organization_subscription(
            RequestContext.for_user(viewer),
            organization_id=organization.pk,
            action="change_plan",
            plan_id="business",
        )


@pytest.mark.django_db
def test_admin_changes_organization_plan(org_subscription, organization, add_member):
    admin = add_member(organization, Role.ADMIN).user

    subscription = update_organization_subscription(
        RequestContext.for_user(admin),
        organization_id=organization.pk,
        action="change_plan",
        plan_id="business",
    )

    organization.refresh_from_db()
    assert subscription.plan.plan_id == "business"
    assert subscription.seat_limit == 5
    assert organization.subscription_tier == "business"
    change = SubscriptionChange.objects.get(subscription=subscription)
    assert change.change_type == SubscriptionChange.ChangeType.UPGRADE
    assert change.status == ChangeStatus.APPLIED


@pytest.mark.django_db
def test_billing_manager_adds_and_removes_seats(org_subscription, organization, add_member):
    manager = add_member(organization, Role.BILLING_MANAGER).user
    context = RequestContext.for_user(manager)

    subscription = update_organization_subscription(
        context,
        organization_id=organization.pk,
        action="add_seats",
        seat_count=3,
    )
    assert subscription.seat_limit == 8

    subscription = update_organization_subscription(
        context,
        organization_id=organization.pk,
        action="remove_seats",
        seat_count=2,
    )
    organization.refresh_from_db()
    assert subscription.seat_limit == 6
    assert organization.member_limit == 6
    assert BillingAuditLog.objects.filter(subscription=subscription, event_type=AuditEvent.SEATS_CHANGED).count() == 2


@pytest.mark.django_db
def test_seat_removal_cannot_strand_members(org_subscription, organization):
    with pytest.raises(Conflict):
        update_organization_subscription(
            RequestContext.for_user(organization.owner),
            organization_id=organization.pk,
            action="remove_seats",
            seat_count=4,
        )


@pytest.mark.django_db
@pytest.mark.parametrize("action", ["add_seats", "remove_seats"])
def test_seat_actions_require_a_seat_count(org_subscription, organization, action):
    with pytest.raises(ValidationError):
        update_organization_subscription(
            RequestContext.for_user(organization.owner),
            organization_id=organization.pk,
            action=action,
        )

    org_subscription.refresh_from_db()
    assert org_subscription.seat_limit == 5


@pytest.mark.django_db
def test_update_billing_settings(org_subscription, organization):
    subscription = update_organization_subscription(
        RequestContext.for_user(organization.owner),
        organization_id=organization.pk,
        action="update_billing",
        auto_add_seats=True,
        billing_email="finance@acme.test",
    )

    organization.refresh_from_db()
    assert subscription.auto_add_seats is True
    assert organization.billing_email == "finance@acme.test"
    log = BillingAuditLog.objects.get(subscription=subscription, event_type=AuditEvent.SETTINGS_UPDATED)
    assert log.details == {"auto_add_seats": True, "billing_email": "finance@acme.test"}


@pytest.mark.django_db
def test_organization_action_requires_subscription(catalog, organization):
    with pytest.raises(NotFound):
        update_organization_subscription(
            RequestContext.for_user(organization.owner),
            organization_id=organization.pk,
            action="add_seats",
            seat_count=1,
        )


@pytest.mark.django_db
def test_member_can_view_organization_status(org_subscription, organization, add_member):
    viewer = add_member(organization, Role.VIEWER).user

    status = get_status(RequestContext.for_user(viewer), organization_id=organization.pk)

    assert status.subscription.pk == org_subscription.pk
    assert status.seats.used_seats == 3
    assert status.scheduled_change is None


@pytest.mark.django_db
def test_status_without_subscription_is_empty(catalog, make_user):
    status = get_status(RequestContext.for_user(make_user()))

    assert status.subscription is None
    assert status.changes == []


@pytest.mark.django_db
def test_billing_portal_requires_customer(catalog, organization):
    with pytest.raises(ValidationError):
        create_billing_portal_session(
            RequestContext.for_user(organization.owner),
            organization_id=organization.pk,
            return_url="https://app.example.com/billing",
        )


@pytest.mark.django_db
def test_billing_portal_returns_provider_url(catalog, organization):
    organization.stripe_customer_id = "cus_123"
    organization.save(update_fields=["stripe_customer_id"])

    with mock.patch(
        "billing.services.management.stripe_gateway.create_billing_portal_session",
        return_value={"url": "https://billing.stripe.com/session/abc"},
    ) as portal:
        url = create_billing_portal_session(
            RequestContext.for_user(organization.owner),
            organization_id=organization.pk,
            return_url="https://app.example.com/billing",
        )

    assert url == "https://billing.stripe.com/session/abc"
    portal.assert_called_once_with(customer_id="cus_123", return_url="https://app.example.com/billing")


@pytest.mark.django_db
def test_billing_portal_surfaces_provider_errors(catalog, organization):
    organization.stripe_customer_id = "cus_123"
    organization.save(update_fields=["stripe_customer_id"])

    with mock.patch(
        "billing.services.management.stripe_gateway.create_billing_portal_session",
        side_effect=ExternalProviderError("Stripe is unavailable."),
    ):
        with pytest.raises(ExternalProviderError):
            create_billing_portal_session(
                RequestContext.for_user(organization.owner),
                organization_id=organization.pk,
                return_url="https://app.example.com/billing",
            )
