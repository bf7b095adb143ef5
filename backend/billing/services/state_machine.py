"""
Subscription state machine.

States move ``trialing -> active <-> past_due -> canceled -> expired``; plan
upgrades and downgrades are plan substitutions inside ``active``/``trialing``.
Callers hold the subscription row lock (see ``billing.services.locking``) and
drive a ``SubscriptionTransition``; ``commit()`` persists the touched fields
and returns the audit records describing what happened.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from django.conf import settings

from billing.errors import Conflict, NotFound
from billing.models import BillingAuditLog, Plan, Subscription, SubscriptionChange
from billing.observability.metrics import SUBSCRIPTION_TRANSITION_COUNT
from billing.services.audit import AuditRecord
from billing.services.plan_catalog import get_plan_for_tier

logger = logging.getLogger(__name__)

Status = Subscription.Status
AuditEvent = BillingAuditLog.EventType

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    Status.TRIALING: frozenset({Status.ACTIVE, Status.CANCELED, Status.EXPIRED}),
    Status.ACTIVE: frozenset({Status.PAST_DUE, Status.CANCELED}),
    Status.PAST_DUE: frozenset({Status.ACTIVE, Status.CANCELED}),
    Status.CANCELED: frozenset({Status.ACTIVE, Status.EXPIRED}),
    Status.EXPIRED: frozenset(),
}

LIVE_STATUSES = frozenset({Status.TRIALING, Status.ACTIVE, Status.PAST_DUE})
PLAN_CHANGE_STATUSES = frozenset({Status.TRIALING, Status.ACTIVE})


def access_window_end(boundary: datetime) -> datetime:
    """Last instant a subscription cancelled at ``boundary`` may be reactivated."""
    return boundary + timedelta(days=getattr(settings, "BILLING_REACTIVATION_WINDOW_DAYS", 30))


def trial_lapse_at(subscription: Subscription) -> Optional[datetime]:
    if subscription.trial_end is None:
        return None
    return subscription.trial_end + timedelta(days=getattr(settings, "BILLING_TRIAL_GRACE_DAYS", 3))


def _plan_label(plan: Plan) -> str:
    return f"{plan.plan_id}@v{plan.version}"


def is_upgrade(current: Plan, target: Plan) -> bool:
    return (target.tier_rank, target.amount) > (current.tier_rank, current.amount)


@dataclass(frozen=True)
class TransitionResult:
    subscription: Subscription
    previous_status: str
    audit_records: Tuple[AuditRecord, ...] = ()

    @property
    def status(self) -> str:
        return self.subscription.status

    @property
    def changed(self) -> bool:
        return self.previous_status != self.subscription.status


class SubscriptionTransition:
    """Accumulates state changes for one locked subscription until ``commit()``."""

    def __init__(self, subscription: Subscription):
        self.subscription = subscription
        self.previous_status = subscription.status
        self._dirty: Set[str] = set()
        self._moves: List[Tuple[str, str]] = []
        self._records: List[AuditRecord] = []

    # -- primitives -----------------------------------------------------

    def set(self, **values) -> None:
        for field, value in values.items():
            if getattr(self.subscription, field) != value:
                setattr(self.subscription, field, value)
                self._dirty.add(field)

    def record(self, event_type: str, **details) -> None:
        self._records.append(AuditRecord(event_type=event_type, details=details))

    def _move(self, target: str) -> None:
        current = self.subscription.status
        if target == current:
            return
        if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise Conflict(
                f"Cannot move subscription {self.subscription.pk} from {current} to {target}.",
                subscription_id=self.subscription.pk,
                transition=f"{current}->{target}",
                current_state=current,
            )
        self.subscription.status = target
        self._dirty.add("status")
        self._moves.append((current, target))

    def commit(self) -> TransitionResult:
        if self._dirty:
            self.subscription.save(update_fields=[*sorted(self._dirty), "updated_at"])
            for from_status, to_status in self._moves:
                SUBSCRIPTION_TRANSITION_COUNT.labels(from_status=from_status, to_status=to_status).inc()
                logger.info(
                    "Subscription %s moved from %s to %s.",
                    self.subscription.pk,
                    from_status,
                    to_status,
                )
        result = TransitionResult(
            subscription=self.subscription,
            previous_status=self.previous_status,
            audit_records=tuple(self._records),
        )
        self._dirty.clear()
        self._moves.clear()
        return result

    # -- status transitions --------------------------------------------

    def activate(self, *, at: datetime, reason: str = "payment_succeeded") -> None:
        """Move a trialing or past-due subscription to active."""
        subscription = self.subscription
        current = subscription.status
        if current == Status.ACTIVE:
            return
        if current not in (Status.TRIALING, Status.PAST_DUE):
            raise Conflict(
                f"Cannot activate a {current} subscription; reactivate it instead.",
                subscription_id=subscription.pk,
                transition=f"{current}->{Status.ACTIVE}",
                current_state=current,
            )
        self._move(Status.ACTIVE)
        if current == Status.TRIALING:
            self.record(
                AuditEvent.TRIAL_TO_PAID_UPGRADE,
                plan=_plan_label(subscription.plan),
                reason=reason,
                converted_at=at.isoformat(),
            )

    def mark_past_due(self, *, at: datetime) -> None:
        if self.subscription.status == Status.PAST_DUE:
            return
        self._move(Status.PAST_DUE)

    def cancel(self, *, at: datetime, boundary: Optional[datetime] = None, reason: str = "") -> None:
        """End the subscription now (or at ``boundary``) and open the reactivation window."""
        subscription = self.subscription
        if subscription.status == Status.CANCELED:
            return
        boundary = boundary or at
        self._move(Status.CANCELED)
        access_expires_at = access_window_end(boundary)
        self.set(
            canceled_at=subscription.canceled_at or at,
            ended_at=boundary,
            cancel_at_period_end=False,
            access_expires_at=access_expires_at,
        )
        self.record(
            AuditEvent.SUBSCRIPTION_CANCELLED,
            immediate=True,
            effective_at=boundary.isoformat(),
            access_expires_at=access_expires_at.isoformat(),
            reason=reason,
        )

    def cancel_at_period_end(self, *, at: datetime, reason: str = "") -> None:
        """Flag the subscription to cancel when its current period ends."""
        subscription = self.subscription
        period_end = subscription.current_period_end
        if subscription.status not in LIVE_STATUSES:
            raise Conflict(
                f"Cannot cancel a {subscription.status} subscription.",
                subscription_id=subscription.pk,
                transition=f"{subscription.status}->{Status.CANCELED}",
                current_state=subscription.status,
            )
        if period_end is None or period_end <= at:
            self.cancel(at=at, reason=reason)
            return
        if subscription.cancel_at_period_end:
            return
        self.set(cancel_at_period_end=True, canceled_at=at)
        self.record(
            AuditEvent.SUBSCRIPTION_CANCELLED,
            immediate=False,
            effective_at=period_end.isoformat(),
            reason=reason,
        )

    def reactivate(self, *, at: datetime) -> None:
        """Undo a cancellation while the access window is still open."""
        subscription = self.subscription
        current = subscription.status

        if current == Status.CANCELED:
            if not subscription.is_active:
                raise Conflict(
                    "Subscription was superseded by a newer subscription.",
                    subscription_id=subscription.pk,
                    transition=f"{current}->{Status.ACTIVE}",
                    current_state=current,
                )
            if subscription.access_expires_at is not None and at >= subscription.access_expires_at:
                raise Conflict(
                    "The reactivation window for this subscription has closed.",
                    subscription_id=subscription.pk,
                    transition=f"{current}->{Status.ACTIVE}",
                    current_state=current,
                    context={"access_expires_at": subscription.access_expires_at.isoformat()},
                )
            self._move(Status.ACTIVE)
            self.set(canceled_at=None, ended_at=None, access_expires_at=None, cancel_at_period_end=False)
            self.record(AuditEvent.SUBSCRIPTION_REACTIVATED, from_status=current)
            return

        if current in LIVE_STATUSES and subscription.cancel_at_period_end:
            self.set(cancel_at_period_end=False, canceled_at=None)
            self.record(AuditEvent.SUBSCRIPTION_REACTIVATED, from_status=current, pending_cancellation=True)
            return

        raise Conflict(
            f"A {current} subscription has no cancellation to undo.",
            subscription_id=subscription.pk,
            transition=f"{current}->{Status.ACTIVE}",
            current_state=current,
        )

    def expire(self, *, at: datetime) -> None:
        subscription = self.subscription
        current = subscription.status
        if current == Status.EXPIRED:
            return
        self._move(Status.EXPIRED)
        self.set(is_active=False, ended_at=subscription.ended_at or at, cancel_at_period_end=False)
        event_type = AuditEvent.TRIAL_EXPIRED if current == Status.TRIALING else AuditEvent.SUBSCRIPTION_EXPIRED
        self.record(event_type, expired_at=at.isoformat())

    def apply_status(self, target: str, *, at: datetime) -> None:
        """Drive the subscription toward a status reported by the provider."""
        current = self.subscription.status
        if target == current:
            return
        if target == Status.ACTIVE:
            if current == Status.CANCELED:
                self.reactivate(at=at)
            else:
                self.activate(at=at, reason="provider_update")
        elif target == Status.PAST_DUE:
            self.mark_past_due(at=at)
        elif target == Status.CANCELED:
            self.cancel(at=at, reason="provider_update")
        elif target == Status.EXPIRED:
            if current in (Status.ACTIVE, Status.PAST_DUE):
                self.cancel(at=at, reason="provider_update")
            self.expire(at=at)
        else:
            self._move(target)

    # -- plan substitution ---------------------------------------------

    def substitute_plan(self, plan: Plan, *, at: datetime, change: Optional[SubscriptionChange] = None) -> None:
        """Swap the subscription onto ``plan`` without leaving its current status."""
        subscription = self.subscription
        current_plan = subscription.plan
        if subscription.status not in PLAN_CHANGE_STATUSES:
            raise Conflict(
                f"Cannot change the plan of a {subscription.status} subscription.",
                subscription_id=subscription.pk,
                transition=f"{current_plan.plan_id}->{plan.plan_id}",
                current_state=subscription.status,
            )
        if plan.pk == current_plan.pk:
            return
        if not plan.allows_owner_type(subscription.subscription_type):
            raise Conflict(
                f"Plan {plan.plan_id} is not available for {subscription.subscription_type} subscriptions.",
                subscription_id=subscription.pk,
                transition=f"{current_plan.plan_id}->{plan.plan_id}",
                current_state=subscription.status,
            )

        seat_values = {}
        if subscription.is_organization:
            if plan.max_seats is not None and subscription.used_seats > plan.max_seats:
                raise Conflict(
                    f"{subscription.used_seats} seats are in use but plan {plan.plan_id} allows {plan.max_seats}.",
                    subscription_id=subscription.pk,
                    transition=f"{current_plan.plan_id}->{plan.plan_id}",
                    current_state=subscription.status,
                    context={"used_seats": subscription.used_seats, "max_seats": plan.max_seats},
                )
            seat_limit = max(subscription.seat_limit, plan.min_seats)
            if plan.max_seats is not None:
                seat_limit = min(seat_limit, plan.max_seats)
            seat_values = {"seat_limit": seat_limit, "quantity": seat_limit}

        upgrade = is_upgrade(current_plan, plan)
        self.set(plan=plan, unit_amount=plan.amount, currency=plan.currency, **seat_values)
        self.record(
            AuditEvent.SUBSCRIPTION_UPGRADED if upgrade else AuditEvent.SUBSCRIPTION_DOWNGRADED,
            from_plan=_plan_label(current_plan),
            to_plan=_plan_label(plan),
            from_tier=current_plan.tier,
            to_tier=plan.tier,
            change_id=getattr(change, "pk", None),
        )
        if upgrade and subscription.status == Status.TRIALING:
            self.activate(at=at, reason="upgrade")

    # -- change records -------------------------------------------------

    def apply_change(self, change: SubscriptionChange, *, at: datetime) -> None:
        """Apply a recorded change now and mark it applied."""
        change_type = change.change_type
        ChangeType = SubscriptionChange.ChangeType
        if change_type in (ChangeType.UPGRADE, ChangeType.DOWNGRADE):
            plan = change.target_plan or get_plan_for_tier(
                change.to_tier,
                owner_type=self.subscription.subscription_type,
            )
            self.substitute_plan(plan, at=at, change=change)
        elif change_type == ChangeType.CANCELLATION:
            if change.metadata.get("at_period_end"):
                self.cancel_at_period_end(at=at, reason=change.reason)
            else:
                self.cancel(at=at, boundary=min(change.effective_date, at), reason=change.reason)
        elif change_type == ChangeType.REACTIVATION:
            self.reactivate(at=at)
        else:
            raise Conflict(f"Unsupported change type: {change_type}", subscription_id=self.subscription.pk)
        _close_change(change, SubscriptionChange.Status.APPLIED, at=at)

    def apply_due_changes(self, *, at: datetime) -> None:
        due = (
            self.subscription.changes.filter(
                status=SubscriptionChange.Status.SCHEDULED,
                effective_date__lte=at,
            )
            .select_related("target_plan")
            .order_by("effective_date", "id")
        )
        for change in due:
            try:
                self.apply_change(change, at=at)
            except (Conflict, NotFound) as exc:
                logger.warning("Scheduled change %s could not be applied: %s", change.pk, exc)
                _close_change(change, SubscriptionChange.Status.FAILED, at=at)
                self.record(
                    AuditEvent.PLAN_CHANGE_FAILED,
                    change_id=change.pk,
                    change_type=change.change_type,
                    to_tier=change.to_tier,
                    error=exc.message,
                )

    def advance(self, *, at: datetime) -> None:
        """Apply everything that has come due by ``at``; expired subscriptions are left alone."""
        subscription = self.subscription
        if subscription.status == Status.EXPIRED:
            return

        self.apply_due_changes(at=at)

        period_end = subscription.current_period_end
        if (
            subscription.cancel_at_period_end
            and subscription.status in LIVE_STATUSES
            and period_end is not None
            and at >= period_end
        ):
            self.cancel(at=at, boundary=period_end, reason="period_end")

        if (
            subscription.status == Status.CANCELED
            and subscription.access_expires_at is not None
            and at >= subscription.access_expires_at
        ):
            self.expire(at=subscription.access_expires_at)

        lapse_at = trial_lapse_at(subscription)
        if subscription.status == Status.TRIALING and lapse_at is not None and at >= lapse_at:
            self.expire(at=at)


def _close_change(change: SubscriptionChange, status: str, *, at: datetime) -> None:
    change.status = status
    change.processed_at = at
    change.save(update_fields=["status", "processed_at"])


def advance(subscription: Subscription, *, at: datetime) -> TransitionResult:
    transition = SubscriptionTransition(subscription)
    transition.advance(at=at)
    return transition.commit()


__all__ = [
    "ALLOWED_TRANSITIONS",
    "LIVE_STATUSES",
    "PLAN_CHANGE_STATUSES",
    "SubscriptionTransition",
    "TransitionResult",
    "access_window_end",
    "advance",
    "is_upgrade",
    "trial_lapse_at",
]
