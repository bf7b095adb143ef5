import pytest
from django.core.exceptions import ValidationError as DjangoValidationError

from billing.errors import Conflict, NotFound, PermissionDenied, ValidationError
from billing.models import BillingAuditLog, Subscription
from billing.services.plan_catalog import get_plan
from organizations.models import OrganizationMembership
from organizations.roles import Role
from organizations.services import (
    accept_invitation,
    change_role,
    create_organization,
    invite_member,
    remove_member,
    transfer_ownership,
)

Status = OrganizationMembership.Status


@pytest.mark.django_db
def test_create_organization_makes_owner_a_member(make_user):
    founder = make_user()

    organization = create_organization(owner=founder, name="Globex Corp")

    assert organization.slug == "globex-corp"
    assert organization.billing_email == founder.email
    assert organization.current_member_count == 1
    membership = OrganizationMembership.objects.get(organization=organization, user=founder)
    assert membership.role == Role.OWNER.value
    assert membership.status == Status.ACTIVE


@pytest.mark.django_db
def test_duplicate_slug_conflicts(organization, make_user):
    with pytest.raises(Conflict):
        create_organization(owner=make_user(), name="Acme")


@pytest.mark.django_db
def test_invitation_acceptance_takes_a_seat(make_subscription, organization, make_user):
    subscription = make_subscription(organization=organization, seat_limit=5, quantity=5, used_seats=1)
    invitee = make_user()

    membership = invite_member(organization, invited_by=organization.owner, user=invitee, role=Role.DEVELOPER)
    assert membership.status == Status.INVITED

    accept_invitation(membership, user=invitee)

    subscription.refresh_from_db()
    organization.refresh_from_db()
    assert subscription.used_seats == 2
    assert organization.current_member_count == 2
    log = BillingAuditLog.objects.get(subscription=subscription, event_type=BillingAuditLog.EventType.SEATS_CHANGED)
    assert log.details["reason"] == "member_joined"


@pytest.mark.django_db
def test_invitation_acceptance_blocked_at_seat_limit(make_subscription, organization, make_user):
    subscription = make_subscription(organization=organization, seat_limit=1, quantity=1, used_seats=1)
    invitee = make_user()
    membership = invite_member(organization, invited_by=organization.owner, user=invitee)

    with pytest.raises(Conflict):
        accept_invitation(membership, user=invitee)

    membership.refresh_from_db()
    subscription.refresh_from_db()
    assert membership.status == Status.INVITED
    assert subscription.used_seats == 1


@pytest.mark.django_db
def test_invitation_acceptance_without_subscription_uses_member_limit(organization, make_user):
    invitee = make_user()
    membership = invite_member(organization, invited_by=organization.owner, user=invitee)

    with pytest.raises(Conflict):
        accept_invitation(membership, user=invitee)


@pytest.mark.django_db
def test_invitation_belongs_to_invitee(organization, make_user):
    membership = invite_member(organization, invited_by=organization.owner, user=make_user())

    with pytest.raises(PermissionDenied):
        accept_invitation(membership, user=make_user())


@pytest.mark.django_db
def test_viewer_cannot_invite(organization, add_member, make_user):
    viewer = add_member(organization, Role.VIEWER).user

    with pytest.raises(PermissionDenied):
        invite_member(organization, invited_by=viewer, user=make_user())


@pytest.mark.django_db
def test_admin_cannot_invite_above_own_role(organization, add_member, make_user):
    admin = add_member(organization, Role.ADMIN).user

    with pytest.raises(ValidationError):
        invite_member(organization, invited_by=admin, user=make_user(), role=Role.OWNER)

    membership = invite_member(organization, invited_by=admin, user=make_user(), role=Role.ADMIN)
    assert membership.role == Role.ADMIN.value


@pytest.mark.django_db
def test_removing_a_member_releases_their_seat(make_subscription, organization, add_member):
    member = add_member(organization, Role.DEVELOPER)
    subscription = make_subscription(organization=organization, seat_limit=5, quantity=5, used_seats=2)

    remove_member(member, removed_by=organization.owner)

    member.refresh_from_db()
    subscription.refresh_from_db()
    assert member.status == Status.REMOVED
    assert member.is_active is False
    assert subscription.used_seats == 1


@pytest.mark.django_db
def test_owner_cannot_be_removed(organization):
    owner_membership = OrganizationMembership.objects.get(organization=organization, user=organization.owner)

    with pytest.raises(Conflict):
        remove_member(owner_membership, removed_by=organization.owner)


@pytest.mark.django_db
def test_admin_cannot_remove_peer_admin(organization, add_member):
    admin = add_member(organization, Role.ADMIN)
    peer = add_member(organization, Role.ADMIN)

    with pytest.raises(PermissionDenied):
        remove_member(peer, removed_by=admin.user)


@pytest.mark.django_db
def test_change_role_records_previous_role(organization, add_member):
    member = add_member(organization, Role.VIEWER)

    change_role(member, new_role=Role.BILLING_MANAGER, changed_by=organization.owner)

    member.refresh_from_db()
    assert member.role == Role.BILLING_MANAGER.value
    assert member.previous_role == Role.VIEWER.value
    assert member.role_changed_by == organization.owner


@pytest.mark.django_db
def test_change_role_rules(organization, add_member):
    admin = add_member(organization, Role.ADMIN)
    member = add_member(organization, Role.DEVELOPER)

    with pytest.raises(ValidationError):
        change_role(member, new_role=Role.OWNER, changed_by=organization.owner)
    with pytest.raises(PermissionDenied):
        change_role(admin, new_role=Role.VIEWER, changed_by=admin.user)
    with pytest.raises(PermissionDenied):
        change_role(member, new_role="admin", changed_by=member.user)


@pytest.mark.django_db
def test_transfer_ownership_keeps_a_single_owner(organization, add_member):
    successor = add_member(organization, Role.ADMIN)

    transfer_ownership(organization, new_owner=successor.user, transferred_by=organization.owner)

    owners = OrganizationMembership.objects.filter(organization=organization, role=Role.OWNER.value, is_active=True)
    assert [membership.user_id for membership in owners] == [successor.user_id]
    organization.refresh_from_db()
    assert organization.owner == successor.user


@pytest.mark.django_db
def test_transfer_requires_active_member(organization, make_user):
    with pytest.raises(NotFound):
        transfer_ownership(organization, new_owner=make_user(), transferred_by=organization.owner)


@pytest.mark.django_db
def test_second_active_owner_is_rejected(organization, make_user):
    with pytest.raises(DjangoValidationError):
        OrganizationMembership.objects.create(
            organization=organization,
            user=make_user(),
            role=Role.OWNER.value,
            status=Status.ACTIVE,
        )


@pytest.mark.django_db
def test_subscription_owner_is_exclusive(catalog, organization, owner):
    with pytest.raises(DjangoValidationError):
        Subscription.objects.create(
            external_id="sub_both",
            plan=get_plan("pro"),
            user=owner,
            organization=organization,
        )
