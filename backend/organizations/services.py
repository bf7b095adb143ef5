"""Organization and membership operations that touch billing seats."""
from __future__ import annotations

import logging
from typing import List, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.text import slugify

from billing.context import SOURCE_API, RequestContext
from billing.errors import Conflict, NotFound, PermissionDenied, ValidationError
from billing.models import BillingAuditLog, Subscription
from billing.services.audit import AuditRecord, emit
from billing.services.locking import lock_subscription
from billing.services.seats import add_seats, remove_seats

from .models import Organization, OrganizationMembership
from .roles import Permission, Role, authorize

logger = logging.getLogger(__name__)

_SEAT_HOLDING_STATUSES = {
    Subscription.Status.TRIALING,
    Subscription.Status.ACTIVE,
    Subscription.Status.PAST_DUE,
}


def _parse_role(value) -> Role:
    try:
        return Role.parse(value)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def get_active_membership(organization: Organization, user) -> Optional[OrganizationMembership]:
    if user is None or not getattr(user, "is_authenticated", False):
        return None
    return OrganizationMembership.objects.filter(
        organization=organization,
        user=user,
        is_active=True,
        status=OrganizationMembership.Status.ACTIVE,
    ).first()


def require_permission(organization: Organization, user, required) -> OrganizationMembership:
    """Return the caller's membership or raise ``PermissionDenied``."""
    membership = get_active_membership(organization, user)
    if membership is None:
        raise PermissionDenied(
            "You are not an active member of this organization.",
            context={"organization_id": organization.pk},
        )
    if not authorize(membership, required):
        raise PermissionDenied(
            f"This action requires {required.value}.",
            context={"organization_id": organization.pk, "role": membership.role},
        )
    return membership


def get_organization(organization_id) -> Organization:
    organization = Organization.objects.filter(pk=organization_id, is_active=True).first()
    if organization is None:
        raise NotFound("Organization does not exist.", context={"organization_id": organization_id})
    return organization


def active_subscription_id(organization: Organization) -> Optional[int]:
    return (
        Subscription.objects.filter(organization=organization, is_active=True, deleted_at__isnull=True)
        .values_list("pk", flat=True)
        .first()
    )


def sync_billing_projection(subscription: Subscription) -> None:
    """Copy the subscription's billing state onto its organization row."""
    if not subscription.organization_id:
        return

    values = {"subscription_status": subscription.status, "updated_at": timezone.now()}
    if subscription.is_active:
        expires_at = subscription.current_period_end
        if subscription.status == Subscription.Status.CANCELED:
            expires_at = subscription.access_expires_at
        values.update(
            subscription_tier=subscription.plan.tier,
            subscription_expires_at=expires_at,
            member_limit=subscription.seat_limit,
            current_member_count=subscription.used_seats,
        )
    else:
        values.update(subscription_tier="free", subscription_expires_at=subscription.ended_at)
    Organization.objects.filter(pk=subscription.organization_id).update(**values)


def _refresh_member_count(organization: Organization) -> None:
    count = organization.active_member_count
    Organization.objects.filter(pk=organization.pk).update(current_member_count=count, updated_at=timezone.now())
    organization.current_member_count = count


def create_organization(*, owner, name: str, slug: Optional[str] = None, billing_email: str = "") -> Organization:
    """Create an organization; its owner becomes the first active member."""
    if not name:
        raise ValidationError("Organization name is required.")
    slug = slugify(slug or name)
    if not slug:
        raise ValidationError("Organization slug cannot be empty.")
    if Organization.objects.filter(slug=slug).exists():
        raise Conflict(f"Organization slug '{slug}' is already taken.", context={"slug": slug})

    try:
        with transaction.atomic():
            organization = Organization.objects.create(
                owner=owner,
                name=name,
                slug=slug,
                billing_email=billing_email or getattr(owner, "email", "") or "",
            )
            _refresh_member_count(organization)
    except IntegrityError as exc:
        raise Conflict(f"Organization slug '{slug}' is already taken.", context={"slug": slug}) from exc

    logger.info("Created organization %s owned by user %s.", organization.pk, owner.pk)
    return organization


def invite_member(organization: Organization, *, invited_by, user, role=Role.VIEWER) -> OrganizationMembership:
    inviter = require_permission(organization, invited_by, Permission.INVITE_MEMBERS)
    role = _parse_role(role)
    if role == Role.OWNER:
        raise ValidationError("Ownership can only be granted through an ownership transfer.")
    if not inviter.role_enum.includes(role):
        raise PermissionDenied(f"You cannot invite members with the {role.value} role.")

    now = timezone.now()
    membership = OrganizationMembership.objects.filter(organization=organization, user=user).first()
    if membership is not None and membership.is_active:
        raise Conflict(
            "User is already a member of this organization.",
            context={"organization_id": organization.pk, "status": membership.status},
        )

    if membership is None:
        membership = OrganizationMembership(organization=organization, user=user)
    membership.role = role.value
    membership.status = OrganizationMembership.Status.INVITED
    membership.is_active = True
    membership.invited_by = invited_by
    membership.invited_at = now
    membership.removed_at = None
    membership.removed_by = None
    membership.save()
    logger.info("User %s invited to organization %s as %s.", user.pk, organization.pk, role.value)
    return membership


def accept_invitation(
    membership: OrganizationMembership,
    *,
    user,
    context: Optional[RequestContext] = None,
) -> OrganizationMembership:
    """Activate an invitation, occupying one seat of the organization subscription."""
    if user.pk != membership.user_id:
        raise PermissionDenied("This invitation belongs to another user.")
    if not membership.is_active or membership.status != OrganizationMembership.Status.INVITED:
        raise Conflict("Invitation is no longer pending.", context={"membership_id": membership.pk})

    context = context or RequestContext.for_user(user, source=SOURCE_API)
    organization = membership.organization
    subscription_id = active_subscription_id(organization)
    records: List[AuditRecord] = []
    subscription = None

    with transaction.atomic():
        if subscription_id is not None:
            subscription = lock_subscription(subscription_id)
            used_before = subscription.used_seats
            availability = add_seats(subscription, 1)
            records.append(
                AuditRecord(
                    BillingAuditLog.EventType.SEATS_CHANGED,
                    {
                        "reason": "member_joined",
                        "membership_id": membership.pk,
                        "used_seats_before": used_before,
                        "used_seats": availability.used_seats,
                        "seat_limit": availability.seat_limit,
                        "band": availability.band.value,
                    },
                )
            )
        elif organization.active_member_count >= organization.member_limit:
            raise Conflict(
                f"Organization member limit of {organization.member_limit} reached.",
                context={"organization_id": organization.pk},
            )

        membership.status = OrganizationMembership.Status.ACTIVE
        membership.joined_at = timezone.now()
        membership.save()

        if subscription is not None:
            sync_billing_projection(subscription)
        else:
            _refresh_member_count(organization)

    emit(records, subscription=subscription, context=context)
    return membership


def change_role(membership: OrganizationMembership, *, new_role, changed_by) -> OrganizationMembership:
    organization = membership.organization
    actor = require_permission(organization, changed_by, Permission.MANAGE_ROLES)
    new_role = _parse_role(new_role)
    current_role = membership.role_enum

    if new_role == Role.OWNER or current_role == Role.OWNER:
        raise ValidationError("The owner role only changes through an ownership transfer.")
    if membership.pk == actor.pk:
        raise PermissionDenied("You cannot change your own role.")
    if not actor.role_enum.outranks(current_role) or not actor.role_enum.includes(new_role):
        raise PermissionDenied("You can only manage roles below your own.")
    if new_role == current_role:
        return membership

    membership.previous_role = current_role.value
    membership.role = new_role.value
    membership.role_changed_at = timezone.now()
    membership.role_changed_by = changed_by
    membership.save()
    logger.info(
        "Membership %s role changed from %s to %s.",
        membership.pk,
        current_role.value,
        new_role.value,
    )
    return membership


def transfer_ownership(organization: Organization, *, new_owner, transferred_by) -> Organization:
    current = require_permission(organization, transferred_by, Permission.TRANSFER_OWNERSHIP)
    target = get_active_membership(organization, new_owner)
    if target is None:
        raise NotFound("The new owner must be an active member.", context={"organization_id": organization.pk})
    if target.pk == current.pk:
        return organization

    now = timezone.now()
    with transaction.atomic():
        current.previous_role = current.role
        current.role = Role.ADMIN.value
        current.role_changed_at = now
        current.role_changed_by = transferred_by
        current.save()

        target.previous_role = target.role
        target.role = Role.OWNER.value
        target.role_changed_at = now
        target.role_changed_by = transferred_by
        target.save()

        organization.owner = new_owner
        organization.save(update_fields=["owner", "updated_at"])

    logger.info("Organization %s ownership transferred to user %s.", organization.pk, new_owner.pk)
    return organization


def remove_member(
    membership: OrganizationMembership,
    *,
    removed_by,
    context: Optional[RequestContext] = None,
) -> OrganizationMembership:
    """Deactivate a membership and release its seat."""
    organization = membership.organization
    if membership.role_enum == Role.OWNER:
        raise Conflict("The owner cannot be removed; transfer ownership first.")
    if removed_by.pk != membership.user_id:
        actor = require_permission(organization, removed_by, Permission.MANAGE_MEMBERS)
        if not actor.role_enum.outranks(membership.role_enum):
            raise PermissionDenied("You can only remove members below your own role.")
    if not membership.is_active:
        return membership

    context = context or RequestContext.for_user(removed_by, source=SOURCE_API)
    held_seat = membership.status == OrganizationMembership.Status.ACTIVE
    subscription_id = active_subscription_id(organization) if held_seat else None
    records: List[AuditRecord] = []
    subscription = None

    with transaction.atomic():
        membership.status = OrganizationMembership.Status.REMOVED
        membership.is_active = False
        membership.removed_at = timezone.now()
        membership.removed_by = removed_by
        membership.save()

        if subscription_id is not None:
            subscription = lock_subscription(subscription_id)
            if subscription.status in _SEAT_HOLDING_STATUSES:
                used_before = subscription.used_seats
                availability = remove_seats(subscription, 1)
                records.append(
                    AuditRecord(
                        BillingAuditLog.EventType.SEATS_CHANGED,
                        {
                            "reason": "member_removed",
                            "membership_id": membership.pk,
                            "used_seats_before": used_before,
                            "used_seats": availability.used_seats,
                            "seat_limit": availability.seat_limit,
                            "band": availability.band.value,
                        },
                    )
                )
            sync_billing_projection(subscription)
        else:
            _refresh_member_count(organization)

    emit(records, subscription=subscription, context=context)
    return membership


__all__ = [
    "accept_invitation",
    "active_subscription_id",
    "change_role",
    "create_organization",
    "get_active_membership",
    "get_organization",
    "invite_member",
    "remove_member",
    "require_permission",
    "sync_billing_projection",
    "transfer_ownership",
]
