from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from .roles import Permission, Role, authorize, parse_permissions, resolve


class Organization(models.Model):
    """
    Organization - the tenant that owns an organization subscription.

    Besides identity and ownership it carries a denormalized projection of the
    active subscription (status, tier, limits) that the billing engine keeps in
    sync after every committed transition.
    """

    name = models.CharField(max_length=200, help_text="Display name of the organization")
    slug = models.SlugField(max_length=100, unique=True)
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="owned_organizations",
        help_text="User holding the owner role",
    )
    billing_email = models.EmailField(blank=True, default="")
    stripe_customer_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Stripe customer used for organization billing",
    )

    # Billing projection
    subscription_status = models.CharField(max_length=20, blank=True, default="")
    subscription_tier = models.CharField(max_length=50, blank=True, default="free")
    subscription_expires_at = models.DateTimeField(null=True, blank=True)
    member_limit = models.PositiveIntegerField(default=1)
    current_member_count = models.PositiveIntegerField(default=0)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "organizations"
        verbose_name = "Organization"
        verbose_name_plural = "Organizations"
        ordering = ["-created_at"]

    def __str__(self):
        return f"Organization<{self.slug}>"

    @property
    def active_member_count(self) -> int:
        return self.memberships.filter(is_active=True, status=OrganizationMembership.Status.ACTIVE).count()

    def save(self, *args, **kwargs):
        is_new = self._state.adding
        super().save(*args, **kwargs)
        if is_new:
            OrganizationMembership.objects.get_or_create(
                organization=self,
                user=self.owner,
                defaults={
                    "role": Role.OWNER.value,
                    "status": OrganizationMembership.Status.ACTIVE,
                    "joined_at": timezone.now(),
                },
            )


class OrganizationMembership(models.Model):
    """Links a user to an organization with a role from the ordered hierarchy."""

    class Status(models.TextChoices):
        INVITED = "invited", "Invited"
        ACTIVE = "active", "Active"
        SUSPENDED = "suspended", "Suspended"
        REMOVED = "removed", "Removed"

    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name="memberships",
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="organization_memberships",
    )
    role = models.CharField(max_length=32, choices=Role.choices(), default=Role.VIEWER.value)
    custom_permissions = models.JSONField(
        default=list,
        blank=True,
        help_text="Additional permissions granted on top of the role",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.INVITED)

    invited_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="sent_organization_invitations",
    )
    invited_at = models.DateTimeField(null=True, blank=True)
    joined_at = models.DateTimeField(null=True, blank=True)

    # Role change tracking
    previous_role = models.CharField(max_length=32, blank=True, default="")
    role_changed_at = models.DateTimeField(null=True, blank=True)
    role_changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    removed_at = models.DateTimeField(null=True, blank=True)
    removed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "organization_memberships"
        verbose_name = "Organization membership"
        verbose_name_plural = "Organization memberships"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["organization", "role", "is_active"], name="org_member_role_idx"),
            models.Index(fields=["user", "is_active"], name="org_member_user_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["organization", "user"], name="unique_organization_member"),
            # Every organization has at most one active owner
            models.UniqueConstraint(
                fields=["organization"],
                condition=Q(role="owner", is_active=True),
                name="unique_active_organization_owner",
            ),
        ]

    def __str__(self):
        return f"OrganizationMembership<{self.organization_id}:{self.user_id}:{self.role}>"

    @property
    def role_enum(self) -> Role:
        return Role.parse(self.role)

    @property
    def permission_set(self):
        return resolve(self)

    def has_permission(self, permission) -> bool:
        if not isinstance(permission, Permission):
            permission = Permission(permission)
        return authorize(self, permission)

    def clean(self):
        super().clean()
        try:
            Role.parse(self.role)
        except ValueError as exc:
            raise ValidationError({"role": str(exc)}) from exc

        try:
            overlay = parse_permissions(self.custom_permissions or [])
        except ValueError as exc:
            raise ValidationError({"custom_permissions": str(exc)}) from exc
        self.custom_permissions = sorted(permission.value for permission in overlay)

        if self.role == Role.OWNER.value and self.is_active:
            existing_owner = OrganizationMembership.objects.filter(
                organization_id=self.organization_id,
                role=Role.OWNER.value,
                is_active=True,
            )
            if self.pk:
                existing_owner = existing_owner.exclude(pk=self.pk)
            if existing_owner.exists():
                raise ValidationError("This organization already has an owner.")

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)
