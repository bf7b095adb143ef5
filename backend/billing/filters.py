"""FilterSet definitions for billing endpoints."""
from __future__ import annotations

import django_filters

from billing.models import BillingAuditLog


class BillingAuditLogFilter(django_filters.FilterSet):
    event_type = django_filters.CharFilter(field_name="event_type", lookup_expr="iexact")
    source = django_filters.CharFilter(field_name="source", lookup_expr="iexact")
    subscription_id = django_filters.NumberFilter(field_name="subscription_id")
    external_event_id = django_filters.CharFilter(field_name="external_event_id")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = BillingAuditLog
        fields = ["event_type", "source"]
