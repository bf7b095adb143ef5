"""
Provider-agnostic billing events.

``ProviderEvent`` is the only shape the dispatcher accepts. Stripe webhook
payloads are translated at the edge by ``normalize_stripe_event``; anything the
engine does not model is dropped there.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from enum import Enum
from typing import Any, Dict, Optional

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from billing.errors import ValidationError
from billing.models import Subscription


class EventType(str, Enum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"

    @classmethod
    def parse(cls, value) -> "EventType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError as exc:
            raise ValidationError(f"Unsupported event type: {value!r}") from exc


def parse_instant(value: Any) -> Optional[datetime]:
    """Accept datetimes, ISO strings or epoch seconds; always return an aware datetime."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        instant = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        instant = datetime.fromtimestamp(value, tz=dt_timezone.utc)
    else:
        instant = parse_datetime(str(value))
        if instant is None:
            raise ValidationError(f"Invalid timestamp: {value!r}")
    if timezone.is_naive(instant):
        instant = timezone.make_aware(instant, dt_timezone.utc)
    return instant


@dataclass(frozen=True)
class ProviderEvent:
    external_event_id: str
    type: EventType
    subject_reference: str
    payload: Dict[str, Any] = field(default_factory=dict)
    provider_timestamp: Optional[datetime] = None

    def __post_init__(self):
        if not self.external_event_id:
            raise ValidationError("externalEventId is required.")
        if not self.subject_reference:
            raise ValidationError("subjectReference is required.", context={"event_id": self.external_event_id})
        object.__setattr__(self, "type", EventType.parse(self.type))
        object.__setattr__(self, "provider_timestamp", parse_instant(self.provider_timestamp))

    @property
    def payload_hash(self) -> str:
        encoded = json.dumps(self.payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_event_id": self.external_event_id,
            "type": self.type.value,
            "subject_reference": self.subject_reference,
            "payload": self.payload,
            "provider_timestamp": self.provider_timestamp.isoformat() if self.provider_timestamp else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderEvent":
        if not isinstance(data, dict):
            raise ValidationError("Event must be an object.")
        return cls(
            external_event_id=data.get("external_event_id") or data.get("externalEventId") or "",
            type=data.get("type") or "",
            subject_reference=data.get("subject_reference") or data.get("subjectReference") or "",
            payload=dict(data.get("payload") or {}),
            provider_timestamp=data.get("provider_timestamp") or data.get("providerTimestamp"),
        )


STRIPE_EVENT_TYPES = {
    "customer.subscription.created": EventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventType.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": EventType.PAYMENT_SUCCEEDED,
    "invoice.paid": EventType.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventType.PAYMENT_FAILED,
}

# Stripe states without a counterpart (incomplete, paused) are omitted.
STRIPE_STATUSES = {
    "trialing": Subscription.Status.TRIALING,
    "active": Subscription.Status.ACTIVE,
    "past_due": Subscription.Status.PAST_DUE,
    "unpaid": Subscription.Status.PAST_DUE,
    "canceled": Subscription.Status.CANCELED,
    "incomplete_expired": Subscription.Status.EXPIRED,
}


def _iso(epoch: Any) -> Optional[str]:
    instant = parse_instant(epoch) if epoch not in (None, "") else None
    return instant.isoformat() if instant else None


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _subscription_payload(obj: Dict[str, Any]) -> Dict[str, Any]:
    metadata = obj.get("metadata") or {}
    item = _first_item(obj)
    price = item.get("price") or {}
    # Newer API versions report billing periods per item.
    period_start = obj.get("current_period_start") or item.get("current_period_start")
    period_end = obj.get("current_period_end") or item.get("current_period_end")
    payload = {
        "status": STRIPE_STATUSES.get(obj.get("status") or ""),
        "customer_reference": obj.get("customer") or "",
        "price_id": price.get("id") or "",
        "plan_id": metadata.get("plan_id") or "",
        "quantity": item.get("quantity") or obj.get("quantity"),
        "current_period_start": _iso(period_start),
        "current_period_end": _iso(period_end),
        "trial_start": _iso(obj.get("trial_start")),
        "trial_end": _iso(obj.get("trial_end")),
        "cancel_at_period_end": bool(obj.get("cancel_at_period_end")),
        "canceled_at": _iso(obj.get("canceled_at")),
        "ended_at": _iso(obj.get("ended_at")),
    }
    owner = {}
    if metadata.get("organization_id"):
        owner["organization_id"] = metadata["organization_id"]
    elif metadata.get("user_id"):
        owner["user_id"] = metadata["user_id"]
    if owner:
        payload["owner"] = owner
    if "auto_add_seats" in metadata:
        payload["auto_add_seats"] = str(metadata["auto_add_seats"]).lower() in {"1", "true", "yes"}
    return payload


def _invoice_subscription(obj: Dict[str, Any]) -> str:
    reference = obj.get("subscription")
    if isinstance(reference, dict):
        reference = reference.get("id")
    if not reference:
        details = ((obj.get("parent") or {}).get("subscription_details") or {})
        reference = details.get("subscription")
    return reference or ""


def _invoice_payload(obj: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "invoice_id": obj.get("id") or "",
        "amount_paid": obj.get("amount_paid"),
        "amount_due": obj.get("amount_due"),
        "currency": (obj.get("currency") or "").lower(),
        "attempt_count": obj.get("attempt_count"),
        "period_end": _iso(obj.get("period_end")),
    }


def normalize_stripe_event(event: Dict[str, Any]) -> Optional[ProviderEvent]:
    """Translate a Stripe event dict; ``None`` for events the engine does not model."""
    event_type = STRIPE_EVENT_TYPES.get(event.get("type") or "")
    if event_type is None:
        return None

    obj = ((event.get("data") or {}).get("object")) or {}
    if event_type in (EventType.PAYMENT_SUCCEEDED, EventType.PAYMENT_FAILED):
        subject_reference = _invoice_subscription(obj)
        if not subject_reference:
            # One-off invoices are not tied to a subscription.
            return None
        payload = _invoice_payload(obj)
    else:
        subject_reference = obj.get("id") or ""
        payload = _subscription_payload(obj)

    return ProviderEvent(
        external_event_id=event.get("id") or "",
        type=event_type,
        subject_reference=subject_reference,
        payload=payload,
        provider_timestamp=event.get("created"),
    )


__all__ = [
    "EventType",
    "ProviderEvent",
    "STRIPE_EVENT_TYPES",
    "STRIPE_STATUSES",
    "normalize_stripe_event",
    "parse_instant",
]
