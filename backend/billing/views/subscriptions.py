"""Subscription management and organization billing endpoints."""
from __future__ import annotations

import logging
from typing import Any, Dict

from rest_framework import status
from rest_framework.authentication import SessionAuthentication, TokenAuthentication
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.context import SOURCE_WEB, RequestContext
from billing.errors import BillingError, ValidationError
from billing.permissions import billing_error_response
from billing.serializers import (
    BillingPortalSerializer,
    OrganizationSubscriptionUpdateSerializer,
    SubscriptionChangeSerializer,
    SubscriptionManageSerializer,
    SubscriptionSerializer,
)
from billing.services import management

logger = logging.getLogger(__name__)


def _status_payload(snapshot: management.SubscriptionStatusSnapshot) -> Dict[str, Any]:
    if snapshot.subscription is None:
        return {"subscription": None, "scheduledChange": None, "changes": []}
    scheduled = snapshot.scheduled_change
    return {
        "subscription": SubscriptionSerializer(snapshot.subscription).data,
        "scheduledChange": SubscriptionChangeSerializer(scheduled).data if scheduled else None,
        "changes": SubscriptionChangeSerializer(snapshot.changes, many=True).data,
    }


class SubscriptionManageView(APIView):
    """Request subscription changes (POST) and read current status with history (GET)."""

    authentication_classes = [TokenAuthentication, SessionAuthentication]
    permission_classes = [IsAuthenticated]

    def get(self, request):
        organization_id = request.query_params.get("organizationId")
        if organization_id is not None and not str(organization_id).isdigit():
            return billing_error_response(ValidationError("organizationId must be an integer."))

        context = RequestContext.from_request(request, source=SOURCE_WEB)
        try:
            snapshot = management.get_status(
                context,
                organization_id=int(organization_id) if organization_id is not None else None,
            )
        except BillingError as exc:
            return billing_error_response(exc)
        return Response(_status_payload(snapshot))

    def post(self, request):
        serializer = SubscriptionManageSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        context = RequestContext.from_request(request, source=SOURCE_WEB)
        try:
            result = management.request_change(
                context,
                action=data["action"],
                to_tier=data.get("to_tier", ""),
                from_tier=data.get("from_tier", ""),
                subscription_id=data.get("subscription_id"),
                effective_date=data.get("effective_date"),
                organization_id=data.get("organization_id"),
                seat_change=data.get("seat_change"),
                reason=data.get("reason", ""),
            )
        except BillingError as exc:
            return billing_error_response(exc)

        return Response(
            {
                "success": result.success,
                "changeId": result.change_id,
                "status": result.status,
                "subscriptionStatus": result.subscription_status,
                "effectiveDate": result.effective_date.isoformat() if result.effective_date else None,
            },
            status=status.HTTP_201_CREATED,
        )


class OrganizationSubscriptionView(APIView):
    """Seat, plan and billing-setting actions on an organization subscription."""

    authentication_classes = [TokenAuthentication, SessionAuthentication]
    permission_classes = [IsAuthenticated]
    http_method_names = ["get", "patch", "options"]

    def get(self, request, organization_id):
        context = RequestContext.from_request(request, source=SOURCE_WEB)
        try:
            snapshot = management.get_status(context, organization_id=organization_id)
        except BillingError as exc:
            return billing_error_response(exc)
        return Response(_status_payload(snapshot))

    def patch(self, request, organization_id):
        serializer = OrganizationSubscriptionUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        context = RequestContext.from_request(request, source=SOURCE_WEB)
        try:
            subscription = management.update_organization_subscription(
                context,
                organization_id=organization_id,
                action=data["action"],
                seat_count=data.get("seat_count"),
                plan_id=data.get("plan_id"),
                auto_add_seats=data.get("auto_add_seats"),
                billing_email=data.get("billing_email"),
            )
        except BillingError as exc:
            return billing_error_response(exc)

        logger.info(
            "Organization %s subscription updated via %s by %s.",
            organization_id,
            data["action"],
            context.actor,
        )
        return Response(SubscriptionSerializer(subscription).data)


class BillingPortalView(APIView):
    authentication_classes = [TokenAuthentication, SessionAuthentication]
    permission_classes = [IsAuthenticated]

    def post(self, request, organization_id):
        serializer = BillingPortalSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        context = RequestContext.from_request(request, source=SOURCE_WEB)
        try:
            url = management.create_billing_portal_session(
                context,
                organization_id=organization_id,
                return_url=serializer.validated_data.get("return_url"),
            )
        except BillingError as exc:
            return billing_error_response(exc)
        return Response({"url": url})
