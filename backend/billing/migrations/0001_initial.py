import billing.models
from decimal import Decimal

from django.conf import settings
import django.core.validators
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("organizations", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Plan",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("plan_id", models.SlugField(help_text="Catalog key, e.g. 'pro'", max_length=64)),
                ("version", models.PositiveIntegerField(default=1)),
                ("name", models.CharField(max_length=100)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "tier",
                    models.CharField(
                        choices=[
                            ("free", "Free"),
                            ("basic", "Basic"),
                            ("pro", "Pro"),
                            ("business", "Business"),
                            ("enterprise", "Enterprise"),
                        ],
                        max_length=20,
                    ),
                ),
                (
                    "plan_type",
                    models.CharField(
                        choices=[("individual", "Individual"), ("organization", "Organization"), ("both", "Both")],
                        default="both",
                        max_length=20,
                    ),
                ),
                ("is_per_seat", models.BooleanField(default=False)),
                (
                    "min_seats",
                    models.PositiveIntegerField(default=1, validators=[django.core.validators.MinValueValidator(1)]),
                ),
                ("max_seats", models.PositiveIntegerField(blank=True, help_text="Empty means unlimited", null=True)),
                ("seat_price", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                (
                    "amount",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("0.00"),
                        max_digits=10,
                        validators=[django.core.validators.MinValueValidator(0)],
                    ),
                ),
                ("currency", models.CharField(default=billing.models._default_currency, max_length=3)),
                (
                    "interval",
                    models.CharField(choices=[("month", "Month"), ("year", "Year")], default="month", max_length=10),
                ),
                ("interval_count", models.PositiveIntegerField(default=1)),
                ("trial_period_days", models.PositiveIntegerField(default=0)),
                ("features", models.JSONField(blank=True, default=list)),
                ("feature_limits", models.JSONField(blank=True, default=dict)),
                ("member_limit", models.PositiveIntegerField(blank=True, null=True)),
                ("project_limit", models.PositiveIntegerField(blank=True, null=True)),
                ("storage_limit", models.PositiveIntegerField(blank=True, help_text="Storage in GB", null=True)),
                ("api_rate_limit", models.PositiveIntegerField(blank=True, null=True)),
                ("stripe_price_id", models.CharField(blank=True, default="", max_length=255)),
                ("stripe_product_id", models.CharField(blank=True, default="", max_length=255)),
                ("is_active", models.BooleanField(default=True)),
                ("is_public", models.BooleanField(default=True)),
                ("is_legacy", models.BooleanField(default=False)),
                ("sort_order", models.IntegerField(default=0)),
                ("deleted_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Plan",
                "verbose_name_plural": "Plans",
                "db_table": "subscriptions_plans",
                "ordering": ["sort_order", "plan_id", "-version"],
                "constraints": [
                    models.UniqueConstraint(fields=("plan_id", "version"), name="plan_version_unique"),
                    models.UniqueConstraint(
                        condition=models.Q(("stripe_price_id__gt", "")),
                        fields=("stripe_price_id",),
                        name="plan_stripe_price_unique",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("max_seats__isnull", True),
                            ("max_seats__gte", models.F("min_seats")),
                            _connector="OR",
                        ),
                        name="plan_seat_bounds_valid",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "external_id",
                    models.CharField(help_text="Payment provider subscription reference", max_length=255, unique=True),
                ),
                ("customer_reference", models.CharField(blank=True, default="", max_length=255)),
                (
                    "subscription_type",
                    models.CharField(
                        choices=[("individual", "Individual"), ("organization", "Organization")],
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("trialing", "Trialing"),
                            ("active", "Active"),
                            ("past_due", "Past Due"),
                            ("canceled", "Canceled"),
                            ("expired", "Expired"),
                        ],
                        default="trialing",
                        max_length=20,
                    ),
                ),
                (
                    "quantity",
                    models.PositiveIntegerField(default=1, validators=[django.core.validators.MinValueValidator(1)]),
                ),
                (
                    "seat_limit",
                    models.PositiveIntegerField(default=1, validators=[django.core.validators.MinValueValidator(1)]),
                ),
                ("used_seats", models.PositiveIntegerField(default=1)),
                ("auto_add_seats", models.BooleanField(default=False)),
                ("unit_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ("currency", models.CharField(default=billing.models._default_currency, max_length=3)),
                ("billing_email", models.EmailField(blank=True, default="", max_length=254)),
                ("start_date", models.DateTimeField(default=django.utils.timezone.now)),
                ("trial_start", models.DateTimeField(blank=True, null=True)),
                ("trial_end", models.DateTimeField(blank=True, null=True)),
                ("current_period_start", models.DateTimeField(blank=True, null=True)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("cancel_at_period_end", models.BooleanField(default=False)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("ended_at", models.DateTimeField(blank=True, null=True)),
                (
                    "access_expires_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Reactivation is allowed until this instant; afterwards the subscription expires.",
                        null=True,
                    ),
                ),
                (
                    "last_event_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Provider timestamp of the most recently applied event.",
                        null=True,
                    ),
                ),
                ("is_active", models.BooleanField(default=True)),
                ("deleted_at", models.DateTimeField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "organization",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="organizations.organization",
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.plan",
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "db_table": "subscriptions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status"], name="subscription_status_idx"),
                    models.Index(fields=["current_period_end"], name="subscription_period_end_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("organization__isnull", True), ("user__isnull", False)),
                            models.Q(("organization__isnull", False), ("user__isnull", True)),
                            _connector="OR",
                        ),
                        name="subscription_owner_xor",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("subscription_type", "individual"), ("user__isnull", False)),
                            models.Q(("organization__isnull", False), ("subscription_type", "organization")),
                            _connector="OR",
                        ),
                        name="subscription_type_matches_owner",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("auto_add_seats", True),
                            ("used_seats__lte", models.F("seat_limit")),
                            _connector="OR",
                        ),
                        name="subscription_seats_within_limit",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("is_active", True), ("user__isnull", False)),
                        fields=("user",),
                        name="subscription_one_active_per_user",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("is_active", True), ("organization__isnull", False)),
                        fields=("organization",),
                        name="subscription_one_active_per_organization",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionChange",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "change_type",
                    models.CharField(
                        choices=[
                            ("upgrade", "Upgrade"),
                            ("downgrade", "Downgrade"),
                            ("cancellation", "Cancellation"),
                            ("reactivation", "Reactivation"),
                        ],
                        max_length=20,
                    ),
                ),
                ("from_tier", models.CharField(blank=True, default="", max_length=50)),
                ("to_tier", models.CharField(max_length=50)),
                ("seat_change", models.IntegerField(blank=True, null=True)),
                ("effective_date", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("scheduled", "Scheduled"),
                            ("applied", "Applied"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("reason", models.TextField(blank=True, default="")),
                ("source", models.CharField(default="api", max_length=20)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="changes",
                        to="billing.subscription",
                    ),
                ),
                (
                    "requested_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="subscription_changes",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "target_plan",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to="billing.plan",
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription change",
                "verbose_name_plural": "Subscription changes",
                "db_table": "subscription_changes",
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["subscription", "status", "effective_date"], name="sub_change_due_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ProcessedEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("event_type", models.CharField(max_length=64)),
                ("subject_reference", models.CharField(blank=True, default="", max_length=255)),
                ("provider_timestamp", models.DateTimeField(blank=True, null=True)),
                (
                    "payload_hash",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="SHA256 of the normalized payload for drift detection.",
                        max_length=64,
                    ),
                ),
                (
                    "outcome",
                    models.CharField(
                        choices=[
                            ("applied", "Applied"),
                            ("ignored", "Ignored"),
                            ("stale", "Stale"),
                            ("rejected", "Rejected"),
                        ],
                        max_length=20,
                    ),
                ),
                ("error_code", models.CharField(blank=True, default="", max_length=64)),
                ("detail", models.TextField(blank=True, default="")),
                ("result", models.JSONField(blank=True, default=dict)),
                ("processed_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="processed_events",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Processed event",
                "verbose_name_plural": "Processed events",
                "db_table": "billing_processed_event",
                "ordering": ["-processed_at"],
                "indexes": [
                    models.Index(fields=["outcome"], name="processed_event_outcome_idx"),
                    models.Index(fields=["event_type"], name="processed_event_type_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillingAuditLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "event_type",
                    models.CharField(
                        choices=[
                            ("billing_subscription_created", "Subscription created"),
                            ("billing_subscription_upgraded", "Subscription upgraded"),
                            ("billing_subscription_downgraded", "Subscription downgraded"),
                            ("billing_subscription_cancelled", "Subscription cancelled"),
                            ("billing_subscription_reactivated", "Subscription reactivated"),
                            ("billing_subscription_expired", "Subscription expired"),
                            ("billing_trial_started", "Trial started"),
                            ("billing_trial_expired", "Trial expired"),
                            ("billing_trial_to_paid_upgrade", "Trial converted to paid"),
                            ("billing_payment_succeeded", "Payment succeeded"),
                            ("billing_payment_failed", "Payment failed"),
                            ("billing_downgrade_scheduled", "Downgrade scheduled"),
                            ("billing_downgrade_cancelled", "Downgrade cancelled"),
                            ("billing_plan_change_initiated", "Plan change initiated"),
                            ("billing_plan_change_failed", "Plan change failed"),
                            ("billing_seats_changed", "Seats changed"),
                            ("billing_settings_updated", "Billing settings updated"),
                        ],
                        max_length=100,
                    ),
                ),
                (
                    "source",
                    models.CharField(
                        choices=[
                            ("web", "Web"),
                            ("api", "API"),
                            ("webhook", "Webhook"),
                            ("admin", "Admin"),
                            ("cron", "Cron"),
                        ],
                        default="api",
                        max_length=20,
                    ),
                ),
                (
                    "actor",
                    models.CharField(blank=True, help_text="Auth user or system actor responsible.", max_length=255),
                ),
                ("request_id", models.CharField(blank=True, help_text="Correlation id for tracing.", max_length=255)),
                ("external_event_id", models.CharField(blank=True, default="", max_length=255)),
                ("details", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="audit_logs",
                        to="billing.subscription",
                    ),
                ),
                (
                    "organization",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="billing_audit_logs",
                        to="organizations.organization",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        help_text="Subscription owner for individual subscriptions.",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="billing_audit_logs",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Billing audit log",
                "verbose_name_plural": "Billing audit logs",
                "db_table": "billing_audit_log",
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["organization", "event_type"], name="billing_audit_org_event_idx"),
                    models.Index(fields=["subscription", "event_type"], name="billing_audit_sub_event_idx"),
                ],
            },
        ),
    ]
