"""URL routes for billing endpoints."""
from django.urls import path

from .views import (
    BillingPortalView,
    OrganizationBillingAuditLogViewSet,
    OrganizationSubscriptionView,
    PlanListView,
    StripeWebhookView,
    SubscriptionManageView,
)

app_name = "billing"

urlpatterns = [
    path("billing/webhook/stripe/", StripeWebhookView.as_view(), name="stripe-webhook"),
    path("billing/plans/", PlanListView.as_view(), name="plan-list"),
    path("subscriptions/manage/", SubscriptionManageView.as_view(), name="subscription-manage"),
    path(
        "organizations/<int:organization_id>/subscriptions/",
        OrganizationSubscriptionView.as_view(),
        name="organization-subscription",
    ),
    path(
        "organizations/<int:organization_id>/billing-portal/",
        BillingPortalView.as_view(),
        name="organization-billing-portal",
    ),
    path(
        "organizations/<int:organization_id>/billing/audit/",
        OrganizationBillingAuditLogViewSet.as_view({"get": "list"}),
        name="organization-billing-audit",
    ),
]
