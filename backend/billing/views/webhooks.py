"""Stripe webhook endpoint for provider billing events."""
from __future__ import annotations

import logging
from typing import Optional

from django.http import HttpResponse
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.errors import BillingError, ValidationError
from billing.services.events import normalize_stripe_event
from billing.services.stripe_gateway import (
    StripeConfigurationError,
    StripeWebhookSignatureError,
    parse_event,
)
from billing.tasks import process_provider_event_async

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name="dispatch")
class StripeWebhookView(APIView):
    """Receive Stripe webhook events and enqueue them for asynchronous processing."""

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):  # noqa: D401 - DRF signature
        sig_header = request.headers.get("Stripe-Signature")
        payload = self._decode_payload(request.body)
        if payload is None:
            logger.error("Unable to decode Stripe webhook payload.")
            return HttpResponse(status=400)

        try:
            raw_event = parse_event(payload=payload, sig_header=sig_header or "")
        except StripeWebhookSignatureError:
            logger.warning("Stripe webhook signature verification failed.")
            return HttpResponse(status=400)
        except StripeConfigurationError as exc:
            logger.error("Stripe webhook configuration error: %s", exc)
            return HttpResponse(status=500)
        except ValidationError as exc:
            logger.warning("Stripe webhook rejected due to malformed payload: %s", exc)
            return HttpResponse(status=400)

        try:
            event = normalize_stripe_event(raw_event)
        except BillingError as exc:
            logger.warning("Stripe event %s could not be normalized: %s", raw_event.get("id"), exc)
            return Response(exc.as_dict(), status=400)

        if event is None:
            logger.info("Ignoring unsupported Stripe event %s (%s).", raw_event.get("id"), raw_event.get("type"))
            return Response({"status": "ignored"}, status=200)

        request_id = getattr(request, "billing_request_id", "")
        process_provider_event_async.delay(event.to_dict(), request_id)
        logger.info("Queued Stripe event %s (%s) for processing.", event.external_event_id, event.type.value)
        return Response({"status": "queued", "event_id": event.external_event_id}, status=202)

    @staticmethod
    def _decode_payload(body: bytes) -> Optional[str]:
        if not body:
            return ""
        try:
            return body.decode("utf-8")
        except UnicodeDecodeError:
            return None
