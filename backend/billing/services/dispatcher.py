"""
Provider event dispatcher.

Every normalized ``ProviderEvent`` goes through ``handle``: the idempotency
ledger is consulted first, then the subscription row is locked, advanced to
``now`` and handed to the handler registered for the event type. The ledger
entry and the new subscription state commit together; audit records are
emitted afterwards.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from django.contrib.auth import get_user_model
from django.core.exceptions import ImproperlyConfigured
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from billing.context import SOURCE_WEBHOOK, RequestContext
from billing.errors import (
    BillingError,
    Conflict,
    NotFound,
    TransientStoreError,
    ValidationError,
    error_from_code,
)
from billing.models import BillingAuditLog, Plan, ProcessedEvent, Subscription
from billing.observability.logging import log_billing_event
from billing.observability.metrics import EVENT_DISPATCH_COUNT
from billing.services.audit import AuditRecord, emit
from billing.services.events import EventType, ProviderEvent, parse_instant
from billing.services.locking import find_subscription_id, lock_subscription
from billing.services.plan_catalog import find_plan_by_price, get_plan
from billing.services.state_machine import LIVE_STATUSES, SubscriptionTransition
from organizations.models import Organization
from organizations.services import sync_billing_projection

logger = logging.getLogger(__name__)

Status = Subscription.Status
Outcome = ProcessedEvent.Outcome
AuditEvent = BillingAuditLog.EventType

# Terminal errors are written to the ledger so redelivery replays them.
_RECORDED_ERRORS = (ValidationError, NotFound, Conflict)


@dataclass(frozen=True)
class DispatchResult:
    event_id: str
    event_type: str
    outcome: str
    subscription_id: Optional[int] = None
    status: Optional[str] = None
    previous_status: Optional[str] = None
    replayed: bool = field(default=False, compare=False)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("replayed")
        return data

    @classmethod
    def from_ledger(cls, entry: ProcessedEvent) -> "DispatchResult":
        result = dict(entry.result or {})
        return cls(
            event_id=entry.event_id,
            event_type=entry.event_type,
            outcome=entry.outcome,
            subscription_id=result.get("subscription_id", entry.subscription_id),
            status=result.get("status"),
            previous_status=result.get("previous_status"),
            replayed=True,
        )


# -- handlers -------------------------------------------------------------

Handler = Callable[[SubscriptionTransition, ProviderEvent, datetime], None]


def _payload_instant(event: ProviderEvent, key: str) -> Optional[datetime]:
    try:
        return parse_instant(event.payload.get(key))
    except ValidationError as exc:
        raise ValidationError(exc.message, context={"event_id": event.external_event_id, "field": key}) from exc


def _sync_periods(transition: SubscriptionTransition, event: ProviderEvent) -> None:
    values = {}
    for key in ("current_period_start", "current_period_end", "trial_start", "trial_end"):
        if key in event.payload:
            instant = _payload_instant(event, key)
            if instant is not None:
                values[key] = instant
    if event.payload.get("customer_reference"):
        values["customer_reference"] = event.payload["customer_reference"]
    if values:
        transition.set(**values)


def _sync_quantity(transition: SubscriptionTransition, event: ProviderEvent) -> None:
    subscription = transition.subscription
    quantity = event.payload.get("quantity")
    if not subscription.is_organization or quantity in (None, ""):
        return
    try:
        quantity = int(quantity)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            f"Quantity {quantity!r} is not an integer.",
            context={"event_id": event.external_event_id, "field": "quantity"},
        ) from exc
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1.", context={"event_id": event.external_event_id})
    if quantity == subscription.seat_limit:
        return
    if quantity < subscription.used_seats and not subscription.auto_add_seats:
        raise Conflict(
            f"Provider quantity {quantity} is below the {subscription.used_seats} seats in use.",
            subscription_id=subscription.pk,
            transition="seat_limit_sync",
            current_state=subscription.status,
        )
    transition.set(quantity=quantity, seat_limit=quantity)
    transition.record(
        AuditEvent.SEATS_CHANGED,
        reason="provider_update",
        seat_limit=quantity,
        used_seats=subscription.used_seats,
    )


def _sync_plan(transition: SubscriptionTransition, event: ProviderEvent, now: datetime) -> None:
    plan = find_plan_by_price(event.payload.get("price_id"))
    subscription = transition.subscription
    if plan is None or plan.pk == subscription.plan_id:
        return
    if subscription.status not in (Status.ACTIVE, Status.TRIALING):
        logger.info(
            "Skipping provider plan change for %s subscription %s.",
            subscription.status,
            subscription.pk,
        )
        return
    transition.substitute_plan(plan, at=now)


def _on_subscription_created(transition: SubscriptionTransition, event: ProviderEvent, now: datetime) -> None:
    # The subscription already exists (created through another path); treat as an update.
    _on_subscription_updated(transition, event, now)


def _on_subscription_updated(transition: SubscriptionTransition, event: ProviderEvent, now: datetime) -> None:
    subscription = transition.subscription
    _sync_periods(transition, event)
    _sync_plan(transition, event, now)
    _sync_quantity(transition, event)

    target = event.payload.get("status")
    if target:
        transition.apply_status(target, at=now)

    if "cancel_at_period_end" in event.payload and subscription.status in LIVE_STATUSES:
        wants_cancel = bool(event.payload["cancel_at_period_end"])
        if wants_cancel and not subscription.cancel_at_period_end:
            transition.cancel_at_period_end(at=now, reason="provider_update")
        elif not wants_cancel and subscription.cancel_at_period_end:
            transition.reactivate(at=now)


def _on_subscription_deleted(transition: SubscriptionTransition, event: ProviderEvent, now: datetime) -> None:
    ended_at = _payload_instant(event, "ended_at") or event.provider_timestamp or now
    transition.cancel(at=now, boundary=min(ended_at, now), reason="provider_deleted")


def _on_payment_succeeded(transition: SubscriptionTransition, event: ProviderEvent, now: datetime) -> None:
    subscription = transition.subscription
    previous = subscription.status
    transition.activate(at=now)
    period_end = _payload_instant(event, "period_end")
    if period_end is not None and (subscription.current_period_end is None or period_end > subscription.current_period_end):
        transition.set(current_period_end=period_end)
    transition.record(
        AuditEvent.PAYMENT_SUCCEEDED,
        invoice_id=event.payload.get("invoice_id", ""),
        amount_paid=event.payload.get("amount_paid"),
        currency=event.payload.get("currency", ""),
        recovered=previous == Status.PAST_DUE,
    )


def _on_payment_failed(transition: SubscriptionTransition, event: ProviderEvent, now: datetime) -> None:
    transition.mark_past_due(at=now)
    transition.record(
        AuditEvent.PAYMENT_FAILED,
        invoice_id=event.payload.get("invoice_id", ""),
        amount_due=event.payload.get("amount_due"),
        attempt_count=event.payload.get("attempt_count"),
    )


_HANDLERS: Dict[EventType, Handler] = {
    EventType.SUBSCRIPTION_CREATED: _on_subscription_created,
    EventType.SUBSCRIPTION_UPDATED: _on_subscription_updated,
    EventType.SUBSCRIPTION_DELETED: _on_subscription_deleted,
    EventType.PAYMENT_SUCCEEDED: _on_payment_succeeded,
    EventType.PAYMENT_FAILED: _on_payment_failed,
}

_UNHANDLED = set(EventType) - set(_HANDLERS)
if _UNHANDLED:
    raise ImproperlyConfigured(
        f"No dispatcher handler registered for: {', '.join(sorted(t.value for t in _UNHANDLED))}"
    )


def handler_for(event_type: EventType) -> Handler:
    return _HANDLERS[EventType.parse(event_type)]


# -- subscription creation ------------------------------------------------


def _resolve_plan(event: ProviderEvent) -> Plan:
    plan = find_plan_by_price(event.payload.get("price_id"))
    if plan is None and event.payload.get("plan_id"):
        plan = get_plan(event.payload["plan_id"])
    if plan is None:
        raise ValidationError(
            "Event does not identify a known plan.",
            context={"event_id": event.external_event_id, "price_id": event.payload.get("price_id")},
        )
    return plan


def _resolve_owner(event: ProviderEvent) -> Dict[str, Any]:
    owner = event.payload.get("owner") or {}
    user_id = owner.get("user_id")
    organization_id = owner.get("organization_id")
    if bool(user_id) == bool(organization_id):
        raise ValidationError(
            "Subscription events must name exactly one owner (user or organization).",
            context={"event_id": event.external_event_id},
        )
    if user_id:
        user = get_user_model().objects.filter(pk=user_id).first()
        if user is None:
            raise NotFound("Subscription owner does not exist.", context={"user_id": user_id})
        return {"user": user}
    organization = Organization.objects.filter(pk=organization_id, is_active=True).first()
    if organization is None:
        raise NotFound("Organization does not exist.", context={"organization_id": organization_id})
    return {"organization": organization}


def _create_subscription(event: ProviderEvent, now: datetime) -> Tuple[Subscription, List[AuditRecord]]:
    plan = _resolve_plan(event)
    owner = _resolve_owner(event)
    owner_type = Subscription.Type.ORGANIZATION if "organization" in owner else Subscription.Type.INDIVIDUAL
    if not plan.allows_owner_type(owner_type):
        raise Conflict(
            f"Plan {plan.plan_id} is not available for {owner_type} subscriptions.",
            transition="create",
            context={"event_id": event.external_event_id},
        )

    existing = Subscription.objects.select_for_update().filter(is_active=True, deleted_at__isnull=True, **owner).first()
    if existing is not None:
        if existing.status in LIVE_STATUSES:
            raise Conflict(
                "Owner already has an active subscription.",
                subscription_id=existing.pk,
                transition="create",
                current_state=existing.status,
            )
        # A cancelled subscription inside its reactivation window is superseded.
        existing.is_active = False
        existing.save(update_fields=["is_active", "updated_at"])

    status = event.payload.get("status") or (Status.TRIALING if plan.has_free_trial else Status.ACTIVE)
    if status not in LIVE_STATUSES:
        raise ValidationError(
            f"Cannot create a subscription in status {status}.",
            context={"event_id": event.external_event_id},
        )

    trial_start = _payload_instant(event, "trial_start")
    trial_end = _payload_instant(event, "trial_end")
    if status == Status.TRIALING:
        trial_start = trial_start or now
        trial_end = trial_end or now + timedelta(days=plan.trial_period_days)

    used_seats = 1
    quantity = 1
    auto_add_seats = bool(event.payload.get("auto_add_seats", False))
    if owner_type == Subscription.Type.ORGANIZATION:
        used_seats = max(1, owner["organization"].active_member_count)
        quantity = int(event.payload.get("quantity") or max(plan.min_seats, used_seats))
        if used_seats > quantity and not auto_add_seats:
            raise Conflict(
                f"Organization has {used_seats} active members but only {quantity} seats were purchased.",
                transition="create",
                context={"event_id": event.external_event_id},
            )

    try:
        with transaction.atomic():
            subscription = Subscription.objects.create(
                external_id=event.subject_reference,
                customer_reference=event.payload.get("customer_reference") or "",
                plan=plan,
                status=status,
                quantity=quantity,
                seat_limit=max(quantity, used_seats) if auto_add_seats else quantity,
                used_seats=used_seats,
                auto_add_seats=auto_add_seats,
                unit_amount=plan.amount,
                currency=plan.currency,
                start_date=now,
                trial_start=trial_start,
                trial_end=trial_end,
                current_period_start=_payload_instant(event, "current_period_start") or now,
                current_period_end=_payload_instant(event, "current_period_end"),
                last_event_at=event.provider_timestamp,
                **owner,
            )
    except (DjangoValidationError, IntegrityError) as exc:
        raise Conflict(
            "Subscription could not be created.",
            transition="create",
            context={"event_id": event.external_event_id, "error": str(exc)},
        ) from exc

    records = [
        AuditRecord(
            AuditEvent.SUBSCRIPTION_CREATED,
            {"plan": f"{plan.plan_id}@v{plan.version}", "status": status, "owner_type": owner_type},
        )
    ]
    if status == Status.TRIALING:
        records.append(AuditRecord(AuditEvent.TRIAL_STARTED, {"trial_end": trial_end.isoformat()}))
    return subscription, records


# -- ledger ---------------------------------------------------------------


def _write_ledger(
    event: ProviderEvent,
    result: DispatchResult,
    *,
    subscription_id: Optional[int],
    error: Optional[BillingError] = None,
) -> ProcessedEvent:
    return ProcessedEvent.objects.create(
        event_id=event.external_event_id,
        event_type=event.type.value,
        subject_reference=event.subject_reference,
        subscription_id=subscription_id,
        provider_timestamp=event.provider_timestamp,
        payload_hash=event.payload_hash,
        outcome=result.outcome,
        error_code=error.code if error else "",
        detail=error.message if error else "",
        result=result.as_dict(),
    )


def _replay(entry: ProcessedEvent, event: ProviderEvent) -> DispatchResult:
    if entry.payload_hash and entry.payload_hash != event.payload_hash:
        logger.warning("Event %s redelivered with a different payload; replaying recorded outcome.", entry.event_id)
    if entry.outcome == Outcome.REJECTED:
        raise error_from_code(entry.error_code, entry.detail, context={"event_id": entry.event_id, "replayed": True})
    logger.info("Event %s already processed with outcome %s.", entry.event_id, entry.outcome)
    return DispatchResult.from_ledger(entry)


def _record_rejection(event: ProviderEvent, error: BillingError) -> None:
    subscription_id = find_subscription_id(external_id=event.subject_reference)
    result = DispatchResult(
        event_id=event.external_event_id,
        event_type=event.type.value,
        outcome=Outcome.REJECTED,
        subscription_id=subscription_id,
    )
    try:
        with transaction.atomic():
            _write_ledger(event, result, subscription_id=subscription_id, error=error)
    except IntegrityError:
        logger.info("Rejection of event %s was already recorded.", event.external_event_id)


# -- entry point ----------------------------------------------------------


def _process(event: ProviderEvent, now: datetime) -> Tuple[DispatchResult, List[AuditRecord], Optional[Subscription]]:
    subscription_id = find_subscription_id(external_id=event.subject_reference)

    if subscription_id is None:
        if event.type != EventType.SUBSCRIPTION_CREATED:
            raise NotFound(
                "No subscription matches the event subject.",
                context={"event_id": event.external_event_id, "subject_reference": event.subject_reference},
            )
        subscription, records = _create_subscription(event, now)
        result = DispatchResult(
            event_id=event.external_event_id,
            event_type=event.type.value,
            outcome=Outcome.APPLIED,
            subscription_id=subscription.pk,
            status=subscription.status,
        )
        _write_ledger(event, result, subscription_id=subscription.pk)
        sync_billing_projection(subscription)
        return result, records, subscription

    subscription = lock_subscription(subscription_id)

    # A concurrent delivery may have committed while we waited for the lock.
    entry = ProcessedEvent.objects.filter(event_id=event.external_event_id).first()
    if entry is not None:
        return _replay(entry, event), [], None

    transition = SubscriptionTransition(subscription)
    transition.advance(at=now)

    last_applied = subscription.last_event_at
    if subscription.status == Status.EXPIRED:
        outcome = Outcome.IGNORED
        logger.info(
            "Ignoring %s for expired subscription %s (event %s).",
            event.type.value,
            subscription.pk,
            event.external_event_id,
        )
    elif event.provider_timestamp and last_applied and event.provider_timestamp < last_applied:
        outcome = Outcome.STALE
        logger.info(
            "Event %s predates the last applied event for subscription %s; recorded as stale.",
            event.external_event_id,
            subscription.pk,
        )
    else:
        outcome = Outcome.APPLIED
        _HANDLERS[event.type](transition, event, now)
        if event.provider_timestamp:
            transition.set(last_event_at=event.provider_timestamp)

    transitioned = transition.commit()
    result = DispatchResult(
        event_id=event.external_event_id,
        event_type=event.type.value,
        outcome=outcome,
        subscription_id=subscription.pk,
        status=subscription.status,
        previous_status=transitioned.previous_status,
    )
    _write_ledger(event, result, subscription_id=subscription.pk)
    sync_billing_projection(subscription)
    return result, list(transitioned.audit_records), subscription


def handle(
    event: ProviderEvent,
    *,
    context: Optional[RequestContext] = None,
    now: Optional[datetime] = None,
) -> DispatchResult:
    """Apply ``event`` exactly once and return its outcome."""
    entry = ProcessedEvent.objects.filter(event_id=event.external_event_id).first()
    if entry is not None:
        return _replay(entry, event)

    context = context or RequestContext.system(source=SOURCE_WEBHOOK, actor="provider")
    now = now or timezone.now()

    try:
        with transaction.atomic():
            result, records, subscription = _process(event, now)
    except IntegrityError as exc:
        entry = ProcessedEvent.objects.filter(event_id=event.external_event_id).first()
        if entry is None:
            raise TransientStoreError(
                "Event could not be recorded; retry the delivery.",
                context={"event_id": event.external_event_id},
            ) from exc
        return _replay(entry, event)
    except _RECORDED_ERRORS as exc:
        _record_rejection(event, exc)
        EVENT_DISPATCH_COUNT.labels(event_type=event.type.value, outcome=Outcome.REJECTED).inc()
        log_billing_event(
            message="billing_event_rejected",
            request_id=context.request_id,
            actor=context.actor,
            extra={"event_id": event.external_event_id, "event_type": event.type.value, "error": exc.as_dict()},
            level=logging.WARNING,
        )
        raise

    if result.replayed:
        return result

    EVENT_DISPATCH_COUNT.labels(event_type=event.type.value, outcome=result.outcome).inc()
    emit(records, subscription=subscription, context=context, external_event_id=event.external_event_id)
    return result


__all__ = ["DispatchResult", "handle", "handler_for"]
