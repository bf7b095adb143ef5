"""Management entry points for authenticated subscription changes."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from billing.context import RequestContext
from billing.errors import Conflict, NotFound, PermissionDenied, ValidationError
from billing.models import BillingAuditLog, Plan, Subscription, SubscriptionChange, tier_rank
from billing.services import stripe_gateway
from billing.services.audit import AuditRecord, emit
from billing.services.locking import lock_subscription
from billing.services.plan_catalog import get_plan, get_plan_for_tier
from billing.services.seats import SeatAvailability, adjust_seat_limit, compute_availability
from billing.services.state_machine import PLAN_CHANGE_STATUSES, SubscriptionTransition, is_upgrade
from organizations.models import Organization
from organizations.roles import Permission
from organizations.services import (
    active_subscription_id,
    get_organization,
    require_permission,
    sync_billing_projection,
)

logger = logging.getLogger(__name__)

ChangeType = SubscriptionChange.ChangeType
ChangeStatus = SubscriptionChange.Status
AuditEvent = BillingAuditLog.EventType

ORGANIZATION_ACTIONS = ("add_seats", "remove_seats", "change_plan", "update_billing")
_PLAN_CHANGE_TYPES = (ChangeType.UPGRADE, ChangeType.DOWNGRADE)
_HISTORY_LIMIT = 50


@dataclass(frozen=True)
class ChangeRequestResult:
    success: bool
    change_id: int
    status: str
    subscription_status: str
    effective_date: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionStatusSnapshot:
    subscription: Optional[Subscription]
    seats: Optional[SeatAvailability] = None
    scheduled_change: Optional[SubscriptionChange] = None
    changes: List[SubscriptionChange] = field(default_factory=list)


def _parse_change_type(action: str) -> str:
    try:
        return ChangeType(str(action).lower())
    except ValueError as exc:
        raise ValidationError(
            f"Unsupported action '{action}'.",
            context={"allowed": list(ChangeType.values)},
        ) from exc


def _require_authenticated(context: RequestContext) -> None:
    if not context.is_authenticated:
        raise PermissionDenied("Authentication is required.")


def _authorize_subscription(
    context: RequestContext,
    subscription: Subscription,
    permission: Permission,
) -> None:
    if subscription.organization_id:
        require_permission(subscription.organization, context.user, permission)
    elif subscription.user_id != context.user_id:
        raise PermissionDenied("You do not own this subscription.", context={"subscription_id": subscription.pk})


def _resolve_subscription_id(
    context: RequestContext,
    *,
    subscription_id: Optional[int],
    organization_id: Optional[int],
    permission: Permission,
) -> int:
    """Find the targeted subscription and check the caller may act on it."""
    if subscription_id is not None:
        subscription = (
            Subscription.objects.select_related("organization")
            .filter(pk=subscription_id, deleted_at__isnull=True)
            .first()
        )
        if subscription is None:
            raise NotFound("Subscription does not exist.", context={"subscription_id": subscription_id})
        if organization_id is not None and str(subscription.organization_id) != str(organization_id):
            raise ValidationError(
                "Subscription does not belong to the given organization.",
                context={"subscription_id": subscription_id, "organization_id": organization_id},
            )
        _authorize_subscription(context, subscription, permission)
        return subscription.pk

    if organization_id is not None:
        organization = get_organization(organization_id)
        require_permission(organization, context.user, permission)
        found = active_subscription_id(organization)
    else:
        found = (
            Subscription.objects.filter(user_id=context.user_id, is_active=True, deleted_at__isnull=True)
            .values_list("pk", flat=True)
            .first()
        )
    if found is None:
        raise NotFound("No active subscription found.", context={"organization_id": organization_id})
    return found


def _matches_current_tier(from_tier: str, subscription: Subscription) -> bool:
    from_tier = str(from_tier).lower()
    if from_tier == "trial":
        return subscription.status == Subscription.Status.TRIALING
    return from_tier == subscription.plan.tier


def _supersede_scheduled_changes(
    transition: SubscriptionTransition,
    subscription: Subscription,
    *,
    change_types,
    at: datetime,
) -> None:
    pending = subscription.changes.filter(status=ChangeStatus.SCHEDULED, change_type__in=change_types)
    for change in pending:
        change.status = ChangeStatus.CANCELLED
        change.processed_at = at
        change.save(update_fields=["status", "processed_at"])
        if change.change_type == ChangeType.DOWNGRADE:
            transition.record(
                AuditEvent.DOWNGRADE_CANCELLED,
                change_id=change.pk,
                to_tier=change.to_tier,
                effective_date=change.effective_date.isoformat(),
            )


def _target_plan(subscription: Subscription, change_type: str, to_tier: str) -> Plan:
    try:
        tier_rank(to_tier)
    except ValueError as exc:
        raise ValidationError(str(exc), context={"to_tier": to_tier}) from exc

    if subscription.status not in PLAN_CHANGE_STATUSES:
        raise Conflict(
            f"Cannot {change_type} a {subscription.status} subscription.",
            subscription_id=subscription.pk,
            transition=f"{subscription.plan.tier}->{str(to_tier).lower()}",
            current_state=subscription.status,
        )

    plan = get_plan_for_tier(to_tier, owner_type=subscription.subscription_type)
    current = subscription.plan
    if plan.pk == current.pk:
        raise Conflict(
            f"Subscription is already on plan {plan.plan_id}.",
            subscription_id=subscription.pk,
            transition=f"{current.tier}->{plan.tier}",
            current_state=subscription.status,
        )
    upgrade = is_upgrade(current, plan)
    if upgrade != (change_type == ChangeType.UPGRADE):
        raise ValidationError(
            f"Moving from {current.tier} to {plan.tier} is not a {change_type}.",
            context={"from_tier": current.tier, "to_tier": plan.tier},
        )
    return plan


def _effective_date(
    change_type: str,
    subscription: Subscription,
    requested: Optional[datetime],
    now: datetime,
) -> Tuple[datetime, dict]:
    metadata = {}
    if requested is not None and timezone.is_naive(requested):
        requested = timezone.make_aware(requested)
    if change_type == ChangeType.DOWNGRADE:
        return requested or subscription.current_period_end or now, metadata
    if change_type == ChangeType.CANCELLATION:
        period_end = subscription.current_period_end
        if requested is not None and period_end is not None and requested == period_end:
            metadata["at_period_end"] = True
            return now, metadata
    if change_type == ChangeType.REACTIVATION:
        return now, metadata
    return requested or now, metadata


def request_change(
    context: RequestContext,
    *,
    action: str,
    to_tier: str = "",
    from_tier: str = "",
    subscription_id: Optional[int] = None,
    effective_date: Optional[datetime] = None,
    organization_id: Optional[int] = None,
    seat_change: Optional[int] = None,
    reason: str = "",
) -> ChangeRequestResult:
    """
    Record a subscription change and apply it unless it is dated in the future.

    Downgrades without an explicit date wait for the end of the current period.
    A cancellation dated exactly at the period end flags ``cancel_at_period_end``.
    """
    _require_authenticated(context)
    change_type = _parse_change_type(action)
    if change_type in _PLAN_CHANGE_TYPES and not to_tier:
        raise ValidationError("toTier is required for plan changes.")
    if seat_change is not None and (not isinstance(seat_change, int) or isinstance(seat_change, bool)):
        raise ValidationError("seatChange must be an integer.")

    sub_id = _resolve_subscription_id(
        context,
        subscription_id=subscription_id,
        organization_id=organization_id,
        permission=Permission.MANAGE_BILLING,
    )
    now = timezone.now()
    records: List[AuditRecord] = []
    failure: Optional[Conflict] = None

    with transaction.atomic():
        subscription = lock_subscription(sub_id)
        transition = SubscriptionTransition(subscription)
        transition.advance(at=now)

        if from_tier and not _matches_current_tier(from_tier, subscription):
            raise Conflict(
                f"Subscription is on {subscription.plan.tier}, not {from_tier}.",
                subscription_id=subscription.pk,
                transition=f"{from_tier}->{to_tier or change_type}",
                current_state=subscription.status,
            )

        target_plan = None
        if change_type in _PLAN_CHANGE_TYPES:
            target_plan = _target_plan(subscription, change_type, to_tier)
            _supersede_scheduled_changes(transition, subscription, change_types=_PLAN_CHANGE_TYPES, at=now)
        elif change_type == ChangeType.REACTIVATION:
            _supersede_scheduled_changes(transition, subscription, change_types=[ChangeType.CANCELLATION], at=now)

        effective, metadata = _effective_date(change_type, subscription, effective_date, now)
        scheduled = effective > now
        change = SubscriptionChange.objects.create(
            subscription=subscription,
            requested_by=context.user,
            change_type=change_type,
            from_tier=(from_tier or subscription.plan.tier).lower(),
            to_tier=(to_tier or (target_plan.tier if target_plan else subscription.plan.tier)).lower(),
            target_plan=target_plan,
            seat_change=seat_change,
            effective_date=effective,
            status=ChangeStatus.SCHEDULED if scheduled else ChangeStatus.PENDING,
            reason=reason,
            source=context.source,
            metadata=metadata,
        )
        transition.record(
            AuditEvent.PLAN_CHANGE_INITIATED,
            change_id=change.pk,
            change_type=change_type,
            from_tier=change.from_tier,
            to_tier=change.to_tier,
            effective_date=effective.isoformat(),
        )

        if scheduled:
            if change_type == ChangeType.DOWNGRADE:
                transition.record(
                    AuditEvent.DOWNGRADE_SCHEDULED,
                    change_id=change.pk,
                    to_tier=change.to_tier,
                    effective_date=effective.isoformat(),
                )
        else:
            try:
                transition.apply_change(change, at=now)
            except Conflict as exc:
                failure = exc
                change.status = ChangeStatus.FAILED
                change.processed_at = now
                change.save(update_fields=["status", "processed_at"])
                transition.record(
                    AuditEvent.PLAN_CHANGE_FAILED,
                    change_id=change.pk,
                    change_type=change_type,
                    error=exc.message,
                )

        transitioned = transition.commit()
        records.extend(transitioned.audit_records)

        if failure is None and not scheduled and seat_change and subscription.is_organization:
            before = subscription.seat_limit
            availability = adjust_seat_limit(subscription, seat_change)
            records.append(_seat_record("seat_change_request", before, availability, change_id=change.pk))

        sync_billing_projection(subscription)

    emit(records, subscription=subscription, context=context)

    if failure is not None:
        failure.context["change_id"] = change.pk
        raise failure

    logger.info(
        "Subscription change %s (%s) for subscription %s is %s.",
        change.pk,
        change_type,
        subscription.pk,
        change.status,
    )
    return ChangeRequestResult(
        success=True,
        change_id=change.pk,
        status=change.status,
        subscription_status=subscription.status,
        effective_date=change.effective_date,
    )


def _seat_record(reason: str, limit_before: int, availability: SeatAvailability, **extra) -> AuditRecord:
    return AuditRecord(
        AuditEvent.SEATS_CHANGED,
        {
            "reason": reason,
            "seat_limit_before": limit_before,
            "seat_limit": availability.seat_limit,
            "used_seats": availability.used_seats,
            "band": availability.band.value,
            **extra,
        },
    )


def get_status(context: RequestContext, *, organization_id: Optional[int] = None) -> SubscriptionStatusSnapshot:
    """Current subscription, seats and change history; applies anything that has come due."""
    _require_authenticated(context)
    if organization_id is not None:
        organization = get_organization(organization_id)
        require_permission(organization, context.user, Permission.VIEW_ORGANIZATION)
        sub_id = active_subscription_id(organization)
    else:
        sub_id = (
            Subscription.objects.filter(user_id=context.user_id, is_active=True, deleted_at__isnull=True)
            .values_list("pk", flat=True)
            .first()
        )
    if sub_id is None:
        return SubscriptionStatusSnapshot(subscription=None)

    with transaction.atomic():
        subscription = lock_subscription(sub_id)
        transition = SubscriptionTransition(subscription)
        transition.advance(at=timezone.now())
        transitioned = transition.commit()
        if transitioned.audit_records:
            sync_billing_projection(subscription)

    emit(transitioned.audit_records, subscription=subscription, context=context)

    changes = list(subscription.changes.select_related("target_plan").order_by("-created_at", "-id")[:_HISTORY_LIMIT])
    scheduled = next(
        (change for change in reversed(changes) if change.status == ChangeStatus.SCHEDULED),
        None,
    )
    return SubscriptionStatusSnapshot(
        subscription=subscription,
        seats=compute_availability(subscription) if subscription.is_organization else None,
        scheduled_change=scheduled,
        changes=changes,
    )


def update_organization_subscription(
    context: RequestContext,
    *,
    organization_id: int,
    action: str,
    seat_count: Optional[int] = None,
    plan_id: Optional[str] = None,
    auto_add_seats: Optional[bool] = None,
    billing_email: Optional[str] = None,
) -> Subscription:
    """Apply an organization billing action (seats, plan or billing settings)."""
    _require_authenticated(context)
    if action not in ORGANIZATION_ACTIONS:
        raise ValidationError(f"Unsupported action '{action}'.", context={"allowed": list(ORGANIZATION_ACTIONS)})

    organization = get_organization(organization_id)
    permission = Permission.MANAGE_SEATS if action in ("add_seats", "remove_seats") else Permission.MANAGE_BILLING
    require_permission(organization, context.user, permission)

    if action in ("add_seats", "remove_seats"):
        if seat_count is None:
            raise ValidationError("seatCount is required for seat changes.")
        if not isinstance(seat_count, int) or isinstance(seat_count, bool) or seat_count < 1:
            raise ValidationError("seatCount must be a positive integer.")
    if action == "change_plan" and not plan_id:
        raise ValidationError("planId is required for change_plan.")
    if action == "update_billing" and auto_add_seats is None and billing_email is None:
        raise ValidationError("Nothing to update.")

    sub_id = active_subscription_id(organization)
    if sub_id is None:
        raise NotFound("Organization has no active subscription.", context={"organization_id": organization.pk})

    now = timezone.now()
    records: List[AuditRecord] = []

    with transaction.atomic():
        subscription = lock_subscription(sub_id)
        transition = SubscriptionTransition(subscription)
        transition.advance(at=now)

        if action == "change_plan":
            _change_plan(context, transition, subscription, plan_id, now)
        elif action == "update_billing":
            _update_billing(transition, subscription, organization, auto_add_seats, billing_email)

        transitioned = transition.commit()
        records.extend(transitioned.audit_records)

        if action in ("add_seats", "remove_seats"):
            delta = seat_count if action == "add_seats" else -seat_count
            before = subscription.seat_limit
            availability = adjust_seat_limit(subscription, delta)
            records.append(_seat_record(action, before, availability))

        sync_billing_projection(subscription)

    emit(records, subscription=subscription, context=context)
    return subscription


def _change_plan(
    context: RequestContext,
    transition: SubscriptionTransition,
    subscription: Subscription,
    plan_id: str,
    now: datetime,
) -> None:
    plan = get_plan(plan_id)
    current = subscription.plan
    if plan.pk == current.pk:
        return
    _supersede_scheduled_changes(transition, subscription, change_types=_PLAN_CHANGE_TYPES, at=now)
    change = SubscriptionChange.objects.create(
        subscription=subscription,
        requested_by=context.user,
        change_type=ChangeType.UPGRADE if is_upgrade(current, plan) else ChangeType.DOWNGRADE,
        from_tier=current.tier,
        to_tier=plan.tier,
        target_plan=plan,
        effective_date=now,
        source=context.source,
    )
    transition.record(
        AuditEvent.PLAN_CHANGE_INITIATED,
        change_id=change.pk,
        change_type=change.change_type,
        from_tier=current.tier,
        to_tier=plan.tier,
        effective_date=now.isoformat(),
    )
    transition.apply_change(change, at=now)


def _update_billing(
    transition: SubscriptionTransition,
    subscription: Subscription,
    organization: Organization,
    auto_add_seats: Optional[bool],
    billing_email: Optional[str],
) -> None:
    changed = {}
    if auto_add_seats is not None and auto_add_seats != subscription.auto_add_seats:
        if not auto_add_seats and subscription.used_seats > subscription.seat_limit:
            raise Conflict(
                "Raise the seat limit to cover the seats in use before disabling automatic seats.",
                subscription_id=subscription.pk,
                transition="update_billing",
                current_state=subscription.status,
                context={"used_seats": subscription.used_seats, "seat_limit": subscription.seat_limit},
            )
        transition.set(auto_add_seats=auto_add_seats)
        changed["auto_add_seats"] = auto_add_seats
    if billing_email is not None and billing_email != subscription.billing_email:
        transition.set(billing_email=billing_email)
        Organization.objects.filter(pk=organization.pk).update(billing_email=billing_email, updated_at=timezone.now())
        changed["billing_email"] = billing_email
    if changed:
        transition.record(AuditEvent.SETTINGS_UPDATED, **changed)


def create_billing_portal_session(
    context: RequestContext,
    *,
    organization_id: int,
    return_url: Optional[str] = None,
) -> str:
    """Return a Stripe billing portal URL for the organization's customer."""
    _require_authenticated(context)
    organization = get_organization(organization_id)
    require_permission(organization, context.user, Permission.MANAGE_BILLING)

    if not organization.stripe_customer_id:
        raise ValidationError(
            "Organization has no billing customer yet.",
            context={"organization_id": organization.pk},
        )
    return_url = return_url or getattr(settings, "BILLING_PORTAL_RETURN_URL", "")
    if not return_url:
        raise ValidationError("returnUrl is required.")

    session = stripe_gateway.create_billing_portal_session(
        customer_id=organization.stripe_customer_id,
        return_url=return_url,
    )
    logger.info("Opened billing portal for organization %s (%s).", organization.pk, context.actor)
    return session["url"]


__all__ = [
    "ChangeRequestResult",
    "ORGANIZATION_ACTIONS",
    "SubscriptionStatusSnapshot",
    "create_billing_portal_session",
    "get_status",
    "request_change",
    "update_organization_subscription",
]
