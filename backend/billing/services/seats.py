"""Seat arithmetic and limit enforcement for organization subscriptions."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from django.utils import timezone

from billing.errors import Conflict, TransientStoreError, ValidationError
from billing.models import Subscription
from billing.observability.metrics import SEAT_CONFLICT_COUNT

logger = logging.getLogger(__name__)

NEAR_LIMIT_PERCENT = 80.0

_SEAT_MUTABLE_STATUSES = {
    Subscription.Status.TRIALING,
    Subscription.Status.ACTIVE,
    Subscription.Status.PAST_DUE,
}


class UtilizationBand(str, Enum):
    NOMINAL = "nominal"
    NEAR_LIMIT = "near_limit"
    AT_LIMIT = "at_limit"


@dataclass(frozen=True)
class SeatAvailability:
    seat_limit: int
    used_seats: int
    available: int
    utilization: float
    band: UtilizationBand
    auto_add_seats: bool

    @property
    def can_activate_member(self) -> bool:
        return self.band != UtilizationBand.AT_LIMIT or self.auto_add_seats


def utilization_band(used_seats: int, seat_limit: int) -> UtilizationBand:
    if seat_limit <= 0:
        return UtilizationBand.AT_LIMIT
    percent = used_seats * 100.0 / seat_limit
    if percent >= 100.0:
        return UtilizationBand.AT_LIMIT
    if percent >= NEAR_LIMIT_PERCENT:
        return UtilizationBand.NEAR_LIMIT
    return UtilizationBand.NOMINAL


def compute_availability(subscription: Subscription) -> SeatAvailability:
    limit = subscription.seat_limit
    used = subscription.used_seats
    utilization = round(used * 100.0 / limit, 1) if limit else 100.0
    return SeatAvailability(
        seat_limit=limit,
        used_seats=used,
        available=max(limit - used, 0),
        utilization=utilization,
        band=utilization_band(used, limit),
        auto_add_seats=subscription.auto_add_seats,
    )


def add_seats(subscription: Subscription, count: int = 1) -> SeatAvailability:
    """Occupy ``count`` seats, growing the limit only when auto-add is enabled."""
    _validate_seat_operation(subscription, count)

    used = subscription.used_seats
    limit = subscription.seat_limit
    new_used = used + count
    values = {"used_seats": new_used}

    if new_used > limit:
        if not subscription.auto_add_seats:
            SEAT_CONFLICT_COUNT.labels(operation="add_seats").inc()
            raise Conflict(
                f"Seat limit reached ({used}/{limit}); increase the seat limit before adding members.",
                subscription_id=subscription.pk,
                transition="add_seats",
                current_state=subscription.status,
                context={"used_seats": used, "seat_limit": limit, "requested": count},
            )
        values["seat_limit"] = new_used
        values["quantity"] = max(subscription.quantity, new_used)
        logger.info("Auto-adding %s seat(s) to subscription %s.", new_used - limit, subscription.pk)

    _compare_and_swap(subscription, expected_used=used, expected_limit=limit, **values)
    return compute_availability(subscription)


def remove_seats(subscription: Subscription, count: int = 1) -> SeatAvailability:
    """Release ``count`` seats; an active subscription always keeps at least one."""
    _validate_seat_operation(subscription, count)

    used = subscription.used_seats
    limit = subscription.seat_limit
    _compare_and_swap(
        subscription,
        expected_used=used,
        expected_limit=limit,
        used_seats=max(1, used - count),
    )
    return compute_availability(subscription)


def adjust_seat_limit(subscription: Subscription, delta: int) -> SeatAvailability:
    """Change the purchased seat count (quantity and limit) by ``delta``."""
    if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
        raise ValidationError("Seat change must be a non-zero integer.")
    _validate_seat_operation(subscription, abs(delta))

    used = subscription.used_seats
    limit = subscription.seat_limit
    plan = subscription.plan
    floor = max(1, plan.min_seats)
    new_limit = max(floor, limit + delta)

    if plan.max_seats is not None and new_limit > plan.max_seats:
        SEAT_CONFLICT_COUNT.labels(operation="adjust_seat_limit").inc()
        raise Conflict(
            f"Plan {plan.plan_id} allows at most {plan.max_seats} seats.",
            subscription_id=subscription.pk,
            transition="adjust_seat_limit",
            current_state=subscription.status,
            context={"requested_limit": new_limit, "max_seats": plan.max_seats},
        )
    if new_limit < used and not subscription.auto_add_seats:
        SEAT_CONFLICT_COUNT.labels(operation="adjust_seat_limit").inc()
        raise Conflict(
            f"Cannot reduce the seat limit below the {used} seats in use.",
            subscription_id=subscription.pk,
            transition="adjust_seat_limit",
            current_state=subscription.status,
            context={"requested_limit": new_limit, "used_seats": used},
        )

    _compare_and_swap(
        subscription,
        expected_used=used,
        expected_limit=limit,
        seat_limit=new_limit,
        quantity=new_limit,
    )
    return compute_availability(subscription)


def _validate_seat_operation(subscription: Subscription, count: int) -> None:
    if not isinstance(count, int) or isinstance(count, bool) or count <= 0:
        raise ValidationError("Seat count must be a positive integer.")
    if not subscription.is_organization:
        raise ValidationError("Seat operations apply to organization subscriptions only.")
    if subscription.status not in _SEAT_MUTABLE_STATUSES:
        raise Conflict(
            f"Seats cannot change while the subscription is {subscription.status}.",
            subscription_id=subscription.pk,
            transition="seat_change",
            current_state=subscription.status,
        )


def _compare_and_swap(subscription: Subscription, *, expected_used: int, expected_limit: int, **values) -> None:
    updated = Subscription.objects.filter(
        pk=subscription.pk,
        used_seats=expected_used,
        seat_limit=expected_limit,
    ).update(updated_at=timezone.now(), **values)
    if updated != 1:
        raise TransientStoreError(
            "Seat counts changed concurrently; retry the request.",
            context={"subscription_id": subscription.pk},
        )
    for field, value in values.items():
        setattr(subscription, field, value)


__all__ = [
    "NEAR_LIMIT_PERCENT",
    "SeatAvailability",
    "UtilizationBand",
    "add_seats",
    "adjust_seat_limit",
    "compute_availability",
    "remove_seats",
    "utilization_band",
]
