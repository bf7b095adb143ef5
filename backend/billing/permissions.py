"""
Organization billing permission checks for the HTTP layer.

Role and permission resolution lives in ``organizations.roles``; this module
turns its answers (and the typed billing errors) into DRF responses.
"""
import logging

from rest_framework import status
from rest_framework.exceptions import NotAuthenticated, NotFound, PermissionDenied
from rest_framework.response import Response

from billing.errors import BillingError
from organizations.models import Organization, OrganizationMembership
from organizations.roles import Permission, authorize
from organizations.services import get_active_membership

logger = logging.getLogger(__name__)


def check_organization_billing_permission(
    user,
    organization_id,
    permission: Permission = Permission.VIEW_BILLING,
) -> tuple[Organization, OrganizationMembership]:
    """
    Convenience function: check organization billing permission

    Raises:
        NotAuthenticated: User not logged in
        NotFound: Organization does not exist
        PermissionDenied: Not an active member, or missing ``permission``
    """
    if user is None or not user.is_authenticated:
        raise NotAuthenticated("Authentication credentials were not provided.")

    organization = Organization.objects.filter(pk=organization_id, is_active=True).first()
    if organization is None:
        raise NotFound("Organization does not exist")

    membership = get_active_membership(organization, user)
    if membership is None:
        raise PermissionDenied("You are not a member of this organization.")
    if not authorize(membership, permission):
        raise PermissionDenied(f"Missing permission: {permission.value}")

    return organization, membership


def billing_error_response(exc: BillingError) -> Response:
    """Translate a typed billing error into the matching HTTP response."""
    if exc.http_status >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("Billing request failed (%s): %s", exc.code, exc.message)
    else:
        logger.info("Billing request rejected (%s): %s", exc.code, exc.message)
    return Response(exc.as_dict(), status=exc.http_status)
