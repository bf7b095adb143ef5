"""Stripe helpers for webhook verification and billing portal sessions."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import stripe
from django.conf import settings

from billing.errors import BillingError, ExternalProviderError, ValidationError

logger = logging.getLogger(__name__)


class StripeConfigurationError(BillingError):
    """Raised when mandatory Stripe configuration is missing."""

    code = "provider_not_configured"
    http_status = 500


class StripeWebhookSignatureError(ValidationError):
    """Raised when webhook signature validation fails."""

    code = "invalid_signature"


def _configure_stripe() -> None:
    secret_key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not secret_key:
        raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured.")

    stripe.api_key = secret_key
    api_version = getattr(settings, "STRIPE_API_VERSION", None)
    if api_version:
        stripe.api_version = api_version


def _to_dict(obj: Any) -> Dict[str, Any]:
    try:
        return obj.to_dict_recursive()  # type: ignore[attr-defined]
    except AttributeError:
        pass
    try:
        return obj.to_dict()  # type: ignore[attr-defined]
    except AttributeError:
        return dict(obj)


def parse_event(payload: str, sig_header: str, secret: Optional[str] = None) -> Dict[str, Any]:
    """Validate a Stripe webhook payload and return the event as a plain dictionary."""

    if not sig_header:
        raise StripeWebhookSignatureError("Stripe-Signature header is missing.")

    webhook_secret = secret or getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    if not webhook_secret:
        raise StripeConfigurationError("STRIPE_WEBHOOK_SECRET is not configured.")

    try:
        event = stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=webhook_secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise StripeWebhookSignatureError("Stripe webhook signature verification failed.") from exc
    except ValueError as exc:
        logger.error("Received malformed Stripe webhook payload: %s", exc)
        raise ValidationError("Malformed Stripe webhook payload.") from exc
    return _to_dict(event)


def create_billing_portal_session(*, customer_id: str, return_url: str) -> Dict[str, Any]:
    """Open a Stripe customer portal session for ``customer_id``."""

    if not customer_id:
        raise ValidationError("A Stripe customer is required to open the billing portal.")

    _configure_stripe()

    try:
        session = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)
    except stripe.StripeError as exc:
        logger.warning("Failed to create billing portal session for %s: %s", customer_id, exc)
        raise ExternalProviderError(
            "Unable to create billing portal session.",
            context={"provider_error": str(exc)},
        ) from exc
    return _to_dict(session)


__all__ = [
    "StripeConfigurationError",
    "StripeWebhookSignatureError",
    "create_billing_portal_session",
    "parse_event",
]
