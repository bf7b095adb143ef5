"""Billing API views."""
from billing.views.audit import OrganizationBillingAuditLogViewSet
from billing.views.plans import PlanListView
from billing.views.subscriptions import BillingPortalView, OrganizationSubscriptionView, SubscriptionManageView
from billing.views.webhooks import StripeWebhookView

__all__ = [
    "BillingPortalView",
    "OrganizationBillingAuditLogViewSet",
    "OrganizationSubscriptionView",
    "PlanListView",
    "StripeWebhookView",
    "SubscriptionManageView",
]
