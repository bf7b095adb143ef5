"""Middleware assigning a correlation id to API requests and recording billing request metrics."""
from __future__ import annotations

import time
import uuid

from django.utils.deprecation import MiddlewareMixin

from billing.observability.metrics import BILLING_REQUEST_COUNT, BILLING_REQUEST_LATENCY

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128


class RequestIdMiddleware(MiddlewareMixin):
    """Attach ``request.billing_request_id`` and echo it back on the response."""

    def process_request(self, request):
        incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
        request.billing_request_id = incoming[:MAX_REQUEST_ID_LENGTH] or uuid.uuid4().hex
        request._billing_started_at = time.monotonic()
        return None

    def process_response(self, request, response):
        request_id = getattr(request, "billing_request_id", None)
        if request_id:
            response[REQUEST_ID_HEADER] = request_id

        if request.path.startswith("/api/"):
            endpoint = self._endpoint_name(request)
            method = request.method.upper()
            BILLING_REQUEST_COUNT.labels(endpoint=endpoint, method=method, status=str(response.status_code)).inc()
            started_at = getattr(request, "_billing_started_at", None)
            if started_at is not None:
                BILLING_REQUEST_LATENCY.labels(endpoint=endpoint, method=method).observe(
                    time.monotonic() - started_at
                )
        return response

    @staticmethod
    def _endpoint_name(request) -> str:
        resolver_match = getattr(request, "resolver_match", None)
        if resolver_match and resolver_match.view_name:
            return resolver_match.view_name
        return "unresolved"
