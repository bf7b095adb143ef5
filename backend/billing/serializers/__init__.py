from __future__ import annotations

from typing import Any, Dict

from django.utils.translation import gettext_lazy as _
from rest_framework import serializers

from billing.models import BillingAuditLog, Plan, Subscription, SubscriptionChange
from billing.services.management import ORGANIZATION_ACTIONS
from billing.services.seats import compute_availability

_PLAN_CHANGE_ACTIONS = (SubscriptionChange.ChangeType.UPGRADE, SubscriptionChange.ChangeType.DOWNGRADE)


class PlanSerializer(serializers.ModelSerializer):
    class Meta:
        model = Plan
        fields = (
            "plan_id",
            "version",
            "name",
            "description",
            "tier",
            "plan_type",
            "is_per_seat",
            "min_seats",
            "max_seats",
            "seat_price",
            "amount",
            "currency",
            "interval",
            "interval_count",
            "trial_period_days",
            "features",
            "feature_limits",
            "member_limit",
            "project_limit",
            "storage_limit",
            "is_legacy",
        )
        read_only_fields = fields


def serialize_seats(subscription: Subscription) -> Dict[str, Any]:
    availability = compute_availability(subscription)
    return {
        "seat_limit": availability.seat_limit,
        "used_seats": availability.used_seats,
        "available": availability.available,
        "utilization": availability.utilization,
        "band": availability.band.value,
        "auto_add_seats": availability.auto_add_seats,
        "can_activate_member": availability.can_activate_member,
    }


class SubscriptionSerializer(serializers.ModelSerializer):
    plan = PlanSerializer(read_only=True)
    seats = serializers.SerializerMethodField()

    class Meta:
        model = Subscription
        fields = (
            "id",
            "external_id",
            "subscription_type",
            "user_id",
            "organization_id",
            "status",
            "plan",
            "quantity",
            "seat_limit",
            "used_seats",
            "auto_add_seats",
            "seats",
            "unit_amount",
            "currency",
            "billing_email",
            "start_date",
            "trial_start",
            "trial_end",
            "current_period_start",
            "current_period_end",
            "cancel_at_period_end",
            "canceled_at",
            "ended_at",
            "access_expires_at",
            "is_active",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields

    def get_seats(self, obj: Subscription):
        if not obj.is_organization:
            return None
        return serialize_seats(obj)


class SubscriptionChangeSerializer(serializers.ModelSerializer):
    target_plan = serializers.SerializerMethodField()
    requested_by_id = serializers.IntegerField(read_only=True)

    class Meta:
        model = SubscriptionChange
        fields = (
            "id",
            "subscription_id",
            "change_type",
            "from_tier",
            "to_tier",
            "target_plan",
            "seat_change",
            "effective_date",
            "status",
            "reason",
            "source",
            "requested_by_id",
            "processed_at",
            "created_at",
        )
        read_only_fields = fields

    def get_target_plan(self, obj: SubscriptionChange):
        if obj.target_plan is None:
            return None
        return f"{obj.target_plan.plan_id}@v{obj.target_plan.version}"


class BillingAuditLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = BillingAuditLog
        fields = (
            "id",
            "subscription_id",
            "organization_id",
            "event_type",
            "source",
            "actor",
            "request_id",
            "external_event_id",
            "details",
            "created_at",
        )
        read_only_fields = fields


class SubscriptionManageSerializer(serializers.Serializer):
    """Serializer for subscription change requests (camelCase wire names)."""

    action = serializers.ChoiceField(choices=SubscriptionChange.ChangeType.values)
    fromTier = serializers.CharField(source="from_tier", required=False, allow_blank=True, default="")
    toTier = serializers.CharField(source="to_tier", required=False, allow_blank=True, default="")
    subscriptionId = serializers.IntegerField(source="subscription_id", required=False, allow_null=True, default=None)
    effectiveDate = serializers.DateTimeField(source="effective_date", required=False, allow_null=True, default=None)
    organizationId = serializers.IntegerField(source="organization_id", required=False, allow_null=True, default=None)
    seatChange = serializers.IntegerField(source="seat_change", required=False, allow_null=True, default=None)
    reason = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        attrs = super().validate(attrs)
        if attrs["action"] in _PLAN_CHANGE_ACTIONS and not attrs.get("to_tier"):
            raise serializers.ValidationError({"toTier": [_("This field is required for plan changes.")]})
        if attrs.get("seat_change") == 0:
            raise serializers.ValidationError({"seatChange": [_("Seat change cannot be zero.")]})
        return attrs


class OrganizationSubscriptionUpdateSerializer(serializers.Serializer):
    """Serializer for organization subscription PATCH actions."""

    action = serializers.ChoiceField(choices=ORGANIZATION_ACTIONS)
    seatCount = serializers.IntegerField(source="seat_count", min_value=1, required=False)
    planId = serializers.CharField(source="plan_id", required=False)
    autoAddSeats = serializers.BooleanField(source="auto_add_seats", required=False)
    billingEmail = serializers.EmailField(source="billing_email", required=False)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        attrs = super().validate(attrs)
        action = attrs["action"]
        if action == "change_plan" and not attrs.get("plan_id"):
            raise serializers.ValidationError({"planId": [_("This field is required for change_plan.")]})
        if action == "update_billing" and "auto_add_seats" not in attrs and "billing_email" not in attrs:
            raise serializers.ValidationError(
                {"non_field_errors": [_("Provide autoAddSeats or billingEmail to update billing settings.")]}
            )
        return attrs


class BillingPortalSerializer(serializers.Serializer):
    returnUrl = serializers.URLField(source="return_url", required=False)
