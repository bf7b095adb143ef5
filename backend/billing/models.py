"""Billing models for the plan catalog, subscriptions, change history, idempotency ledger and audit log."""
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from organizations.models import Organization


def _default_currency() -> str:
    """Resolve default billing currency from settings."""
    return getattr(settings, "STRIPE_CURRENCY", "usd").lower()


class PlanTier(models.TextChoices):
    FREE = "free", "Free"
    BASIC = "basic", "Basic"
    PRO = "pro", "Pro"
    BUSINESS = "business", "Business"
    ENTERPRISE = "enterprise", "Enterprise"


# "trial" is accepted as a source tier for change requests and ranks lowest.
TIER_RANKS = {"trial": 0, **{tier.value: index + 1 for index, tier in enumerate(PlanTier)}}


def tier_rank(tier: str) -> int:
    try:
        return TIER_RANKS[str(tier).lower()]
    except KeyError as exc:
        raise ValueError(f"Unknown plan tier: {tier!r}") from exc


class Plan(models.Model):
    """A versioned plan definition. Versions referenced by live subscriptions are frozen."""

    class PlanType(models.TextChoices):
        INDIVIDUAL = "individual", "Individual"
        ORGANIZATION = "organization", "Organization"
        BOTH = "both", "Both"

    class Interval(models.TextChoices):
        MONTH = "month", "Month"
        YEAR = "year", "Year"

    # Fields that define what a subscriber pays for; frozen once referenced.
    FROZEN_FIELDS = (
        "plan_id",
        "version",
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
        "api_rate_limit",
    )

    plan_id = models.SlugField(max_length=64, help_text="Catalog key, e.g. 'pro'")
    version = models.PositiveIntegerField(default=1)
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True, default="")
    tier = models.CharField(max_length=20, choices=PlanTier.choices)
    plan_type = models.CharField(max_length=20, choices=PlanType.choices, default=PlanType.BOTH)

    is_per_seat = models.BooleanField(default=False)
    min_seats = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    max_seats = models.PositiveIntegerField(null=True, blank=True, help_text="Empty means unlimited")
    seat_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))

    amount = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal("0.00"),
        validators=[MinValueValidator(0)],
    )
    currency = models.CharField(max_length=3, default=_default_currency)
    interval = models.CharField(max_length=10, choices=Interval.choices, default=Interval.MONTH)
    interval_count = models.PositiveIntegerField(default=1)
    trial_period_days = models.PositiveIntegerField(default=0)

    features = models.JSONField(default=list, blank=True)
    feature_limits = models.JSONField(default=dict, blank=True)
    member_limit = models.PositiveIntegerField(null=True, blank=True)
    project_limit = models.PositiveIntegerField(null=True, blank=True)
    storage_limit = models.PositiveIntegerField(null=True, blank=True, help_text="Storage in GB")
    api_rate_limit = models.PositiveIntegerField(null=True, blank=True)

    stripe_price_id = models.CharField(max_length=255, blank=True, default="")
    stripe_product_id = models.CharField(max_length=255, blank=True, default="")

    is_active = models.BooleanField(default=True)
    is_public = models.BooleanField(default=True)
    is_legacy = models.BooleanField(default=False)
    sort_order = models.IntegerField(default=0)
    deleted_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscriptions_plans"
        verbose_name = "Plan"
        verbose_name_plural = "Plans"
        ordering = ["sort_order", "plan_id", "-version"]
        constraints = [
            models.UniqueConstraint(fields=["plan_id", "version"], name="plan_version_unique"),
            models.UniqueConstraint(
                fields=["stripe_price_id"],
                condition=Q(stripe_price_id__gt=""),
                name="plan_stripe_price_unique",
            ),
            models.CheckConstraint(
                condition=Q(max_seats__isnull=True) | Q(max_seats__gte=F("min_seats")),
                name="plan_seat_bounds_valid",
            ),
        ]

    def __str__(self):
        return f"Plan<{self.plan_id}@v{self.version}>"

    @property
    def tier_rank(self) -> int:
        return tier_rank(self.tier)

    @property
    def has_free_trial(self) -> bool:
        return self.trial_period_days > 0

    def allows_owner_type(self, owner_type: str) -> bool:
        return self.plan_type == self.PlanType.BOTH or self.plan_type == owner_type

    def is_referenced(self) -> bool:
        if self.pk is None:
            return False
        return Subscription.objects.filter(plan_id=self.pk, deleted_at__isnull=True).exists()

    def clean(self):
        super().clean()
        if self.currency:
            self.currency = self.currency.lower()
        if self.max_seats is not None and self.max_seats < self.min_seats:
            raise ValidationError({"max_seats": "max_seats cannot be lower than min_seats."})
        if not isinstance(self.features, list):
            raise ValidationError({"features": "Features must be a list of feature flags."})

        if self._state.adding or not self.is_referenced():
            return
        stored = Plan.objects.filter(pk=self.pk).values(*self.FROZEN_FIELDS).first()
        if stored is None:
            return
        changed = [field for field in self.FROZEN_FIELDS if stored[field] != getattr(self, field)]
        if changed:
            raise ValidationError(
                f"Plan {self.plan_id}@v{self.version} is referenced by live subscriptions; "
                f"publish a new version instead of changing {', '.join(changed)}."
            )

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)


class Subscription(models.Model):
    """
    Canonical subscription state for exactly one owner (a user or an organization).

    Mutated only through the subscription state machine; never hard-deleted.
    """

    class Status(models.TextChoices):
        TRIALING = "trialing", "Trialing"
        ACTIVE = "active", "Active"
        PAST_DUE = "past_due", "Past Due"
        CANCELED = "canceled", "Canceled"
        EXPIRED = "expired", "Expired"

    class Type(models.TextChoices):
        INDIVIDUAL = "individual", "Individual"
        ORGANIZATION = "organization", "Organization"

    external_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Payment provider subscription reference",
    )
    customer_reference = models.CharField(max_length=255, blank=True, default="")

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="subscriptions",
    )
    organization = models.ForeignKey(
        Organization,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="subscriptions",
    )
    subscription_type = models.CharField(max_length=20, choices=Type.choices)

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.TRIALING)
    plan = models.ForeignKey(Plan, on_delete=models.PROTECT, related_name="subscriptions")

    quantity = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    seat_limit = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    used_seats = models.PositiveIntegerField(default=1)
    auto_add_seats = models.BooleanField(default=False)
    unit_amount = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    currency = models.CharField(max_length=3, default=_default_currency)
    billing_email = models.EmailField(blank=True, default="")

    start_date = models.DateTimeField(default=timezone.now)
    trial_start = models.DateTimeField(null=True, blank=True)
    trial_end = models.DateTimeField(null=True, blank=True)
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    cancel_at_period_end = models.BooleanField(default=False)
    canceled_at = models.DateTimeField(null=True, blank=True)
    ended_at = models.DateTimeField(null=True, blank=True)
    access_expires_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Reactivation is allowed until this instant; afterwards the subscription expires.",
    )
    last_event_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Provider timestamp of the most recently applied event.",
    )

    is_active = models.BooleanField(default=True)
    deleted_at = models.DateTimeField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscriptions"
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="subscription_status_idx"),
            models.Index(fields=["current_period_end"], name="subscription_period_end_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(user__isnull=False, organization__isnull=True)
                | Q(user__isnull=True, organization__isnull=False),
                name="subscription_owner_xor",
            ),
            models.CheckConstraint(
                condition=Q(subscription_type="individual", user__isnull=False)
                | Q(subscription_type="organization", organization__isnull=False),
                name="subscription_type_matches_owner",
            ),
            models.CheckConstraint(
                condition=Q(auto_add_seats=True) | Q(used_seats__lte=F("seat_limit")),
                name="subscription_seats_within_limit",
            ),
            models.UniqueConstraint(
                fields=["user"],
                condition=Q(is_active=True, user__isnull=False),
                name="subscription_one_active_per_user",
            ),
            models.UniqueConstraint(
                fields=["organization"],
                condition=Q(is_active=True, organization__isnull=False),
                name="subscription_one_active_per_organization",
            ),
        ]

    def __str__(self):
        return f"Subscription<{self.external_id}:{self.status}>"

    @property
    def owner(self):
        return self.user or self.organization

    @property
    def is_organization(self) -> bool:
        return self.subscription_type == self.Type.ORGANIZATION

    @property
    def is_terminal(self) -> bool:
        return self.status == self.Status.EXPIRED

    @property
    def seats_available(self) -> int:
        return max(self.seat_limit - self.used_seats, 0)

    def clean(self):
        super().clean()
        has_user = self.user_id is not None
        has_organization = self.organization_id is not None
        if has_user == has_organization:
            raise ValidationError("Subscription must belong to exactly one owner (user or organization).")

        owner_type = self.Type.INDIVIDUAL if has_user else self.Type.ORGANIZATION
        if self.subscription_type != owner_type:
            raise ValidationError({"subscription_type": "Subscription type does not match its owner."})

        if self.currency:
            self.currency = self.currency.lower()
        if not self.auto_add_seats and self.used_seats > self.seat_limit:
            raise ValidationError({"used_seats": "Used seats exceed the seat limit."})

        if not self._state.adding:
            stored = (
                Subscription.objects.filter(pk=self.pk)
                .values("subscription_type", "user_id", "organization_id")
                .first()
            )
            if stored and (
                stored["subscription_type"] != self.subscription_type
                or stored["user_id"] != self.user_id
                or stored["organization_id"] != self.organization_id
            ):
                raise ValidationError("The owner of a subscription cannot change after creation.")

    def save(self, *args, **kwargs):
        if not self.subscription_type:
            self.subscription_type = self.Type.INDIVIDUAL if self.user_id is not None else self.Type.ORGANIZATION
        self.full_clean()
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Subscriptions are never hard-deleted; use soft_delete().")

    def soft_delete(self, *, at=None):
        self.deleted_at = at or timezone.now()
        self.is_active = False
        self.save(update_fields=["deleted_at", "is_active", "updated_at"])


class SubscriptionChange(models.Model):
    """Append-only record of a requested or scheduled transition."""

    class ChangeType(models.TextChoices):
        UPGRADE = "upgrade", "Upgrade"
        DOWNGRADE = "downgrade", "Downgrade"
        CANCELLATION = "cancellation", "Cancellation"
        REACTIVATION = "reactivation", "Reactivation"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        SCHEDULED = "scheduled", "Scheduled"
        APPLIED = "applied", "Applied"
        FAILED = "failed", "Failed"
        CANCELLED = "cancelled", "Cancelled"

    MUTABLE_FIELDS = frozenset({"status", "processed_at"})

    subscription = models.ForeignKey(Subscription, on_delete=models.PROTECT, related_name="changes")
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="subscription_changes",
    )
    change_type = models.CharField(max_length=20, choices=ChangeType.choices)
    from_tier = models.CharField(max_length=50, blank=True, default="")
    to_tier = models.CharField(max_length=50)
    target_plan = models.ForeignKey(
        Plan,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
    )
    seat_change = models.IntegerField(null=True, blank=True)
    effective_date = models.DateTimeField(default=timezone.now)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    reason = models.TextField(blank=True, default="")
    source = models.CharField(max_length=20, default="api")
    metadata = models.JSONField(default=dict, blank=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "subscription_changes"
        verbose_name = "Subscription change"
        verbose_name_plural = "Subscription changes"
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["subscription", "status", "effective_date"], name="sub_change_due_idx"),
        ]

    def __str__(self):
        return f"SubscriptionChange<{self.change_type}:{self.from_tier}->{self.to_tier}:{self.status}>"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            update_fields = kwargs.get("update_fields")
            if update_fields is None or not set(update_fields) <= self.MUTABLE_FIELDS:
                raise ValidationError("Subscription changes are append-only; only status may be updated.")
        self.full_clean()
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Subscription changes cannot be deleted.")


class ProcessedEvent(models.Model):
    """Idempotency ledger: one row per external event id with its recorded outcome."""

    class Outcome(models.TextChoices):
        APPLIED = "applied", "Applied"
        IGNORED = "ignored", "Ignored"
        STALE = "stale", "Stale"
        REJECTED = "rejected", "Rejected"

    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=64)
    subject_reference = models.CharField(max_length=255, blank=True, default="")
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="processed_events",
    )
    provider_timestamp = models.DateTimeField(null=True, blank=True)
    payload_hash = models.CharField(
        max_length=64,
        blank=True,
        default="",
        help_text="SHA256 of the normalized payload for drift detection.",
    )
    outcome = models.CharField(max_length=20, choices=Outcome.choices)
    error_code = models.CharField(max_length=64, blank=True, default="")
    detail = models.TextField(blank=True, default="")
    result = models.JSONField(default=dict, blank=True)
    processed_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "billing_processed_event"
        verbose_name = "Processed event"
        verbose_name_plural = "Processed events"
        ordering = ["-processed_at"]
        indexes = [
            models.Index(fields=["outcome"], name="processed_event_outcome_idx"),
            models.Index(fields=["event_type"], name="processed_event_type_idx"),
        ]

    def __str__(self):
        return f"ProcessedEvent<{self.event_id}:{self.outcome}>"


class BillingAuditLog(models.Model):
    """Structured, append-only audit log for billing lifecycle events."""

    class EventType(models.TextChoices):
        SUBSCRIPTION_CREATED = "billing_subscription_created", "Subscription created"
        SUBSCRIPTION_UPGRADED = "billing_subscription_upgraded", "Subscription upgraded"
        SUBSCRIPTION_DOWNGRADED = "billing_subscription_downgraded", "Subscription downgraded"
        SUBSCRIPTION_CANCELLED = "billing_subscription_cancelled", "Subscription cancelled"
        SUBSCRIPTION_REACTIVATED = "billing_subscription_reactivated", "Subscription reactivated"
        SUBSCRIPTION_EXPIRED = "billing_subscription_expired", "Subscription expired"
        TRIAL_STARTED = "billing_trial_started", "Trial started"
        TRIAL_EXPIRED = "billing_trial_expired", "Trial expired"
        TRIAL_TO_PAID_UPGRADE = "billing_trial_to_paid_upgrade", "Trial converted to paid"
        PAYMENT_SUCCEEDED = "billing_payment_succeeded", "Payment succeeded"
        PAYMENT_FAILED = "billing_payment_failed", "Payment failed"
        DOWNGRADE_SCHEDULED = "billing_downgrade_scheduled", "Downgrade scheduled"
        DOWNGRADE_CANCELLED = "billing_downgrade_cancelled", "Downgrade cancelled"
        PLAN_CHANGE_INITIATED = "billing_plan_change_initiated", "Plan change initiated"
        PLAN_CHANGE_FAILED = "billing_plan_change_failed", "Plan change failed"
        SEATS_CHANGED = "billing_seats_changed", "Seats changed"
        SETTINGS_UPDATED = "billing_settings_updated", "Billing settings updated"

    class Source(models.TextChoices):
        WEB = "web", "Web"
        API = "api", "API"
        WEBHOOK = "webhook", "Webhook"
        ADMIN = "admin", "Admin"
        CRON = "cron", "Cron"

    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs",
    )
    organization = models.ForeignKey(
        Organization,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="billing_audit_logs",
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="billing_audit_logs",
        help_text="Subscription owner for individual subscriptions.",
    )
    event_type = models.CharField(max_length=100, choices=EventType.choices)
    source = models.CharField(max_length=20, choices=Source.choices, default=Source.API)
    actor = models.CharField(max_length=255, blank=True, help_text="Auth user or system actor responsible.")
    request_id = models.CharField(max_length=255, blank=True, help_text="Correlation id for tracing.")
    external_event_id = models.CharField(max_length=255, blank=True, default="")
    details = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_audit_log"
        verbose_name = "Billing audit log"
        verbose_name_plural = "Billing audit logs"
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["organization", "event_type"], name="billing_audit_org_event_idx"),
            models.Index(fields=["subscription", "event_type"], name="billing_audit_sub_event_idx"),
        ]

    def __str__(self):
        return f"BillingAuditLog<{self.subscription_id}:{self.event_type}>"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("Billing audit log entries are immutable.")
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Billing audit log entries are immutable.")
