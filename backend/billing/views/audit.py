"""Organization billing audit log endpoints."""
from __future__ import annotations

from rest_framework.permissions import IsAuthenticated
from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.filters import BillingAuditLogFilter
from billing.models import BillingAuditLog
from billing.pagination import BoundedPageNumberPagination
from billing.permissions import check_organization_billing_permission
from billing.serializers import BillingAuditLogSerializer
from organizations.roles import Permission


class OrganizationBillingAuditLogViewSet(ReadOnlyModelViewSet):
    serializer_class = BillingAuditLogSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = BoundedPageNumberPagination
    filterset_class = BillingAuditLogFilter
    ordering_fields = ("created_at", "event_type")
    ordering = ("-created_at",)

    def get_queryset(self):
        organization, _ = check_organization_billing_permission(
            user=self.request.user,
            organization_id=self.kwargs["organization_id"],
            permission=Permission.VIEW_BILLING,
        )
        self.request.organization = organization
        return BillingAuditLog.objects.filter(organization=organization).order_by("-created_at", "-id")
