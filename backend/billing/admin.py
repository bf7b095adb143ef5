from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html

from .models import BillingAuditLog, Plan, ProcessedEvent, Subscription, SubscriptionChange


def _organization_link(obj):
    if not obj.organization_id:
        return "-"
    url = reverse("admin:organizations_organization_change", args=[obj.organization_id])
    return format_html('<a href="{}">{}</a>', url, obj.organization.name)


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    """Plan catalog versions; referenced versions reject changes to frozen fields on save."""

    list_display = (
        "plan_id",
        "version",
        "name",
        "tier",
        "plan_type",
        "amount",
        "currency",
        "is_per_seat",
        "is_active",
        "is_public",
        "is_legacy",
    )
    search_fields = ("plan_id", "name", "stripe_price_id", "stripe_product_id")
    list_filter = ("tier", "plan_type", "is_active", "is_public", "is_legacy")
    readonly_fields = ("created_at", "updated_at")
    ordering = ("sort_order", "plan_id", "-version")

    fieldsets = (
        ("Identity", {"fields": ("plan_id", "version", "name", "description", "tier", "plan_type")}),
        (
            "Pricing",
            {
                "fields": (
                    "amount",
                    "currency",
                    "interval",
                    "interval_count",
                    "trial_period_days",
                    "is_per_seat",
                    "seat_price",
                    "min_seats",
                    "max_seats",
                )
            },
        ),
        (
            "Limits",
            {"fields": ("features", "feature_limits", "member_limit", "project_limit", "storage_limit", "api_rate_limit")},
        ),
        ("Stripe", {"fields": ("stripe_price_id", "stripe_product_id")}),
        (
            "Visibility",
            {"fields": ("is_active", "is_public", "is_legacy", "sort_order", "deleted_at", "created_at", "updated_at")},
        ),
    )


class SubscriptionChangeInline(admin.TabularInline):
    model = SubscriptionChange
    extra = 0
    fields = ("change_type", "from_tier", "to_tier", "effective_date", "status", "source", "processed_at")
    readonly_fields = fields
    can_delete = False
    show_change_link = True

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Read-only view of subscription state; changes go through the billing services."""

    list_display = (
        "external_id",
        "subscription_type",
        "owner_display",
        "status",
        "plan",
        "used_seats",
        "seat_limit",
        "current_period_end",
        "cancel_at_period_end",
        "is_active",
    )
    search_fields = ("external_id", "customer_reference", "user__username", "user__email", "organization__name")
    list_filter = ("status", "subscription_type", "is_active", "cancel_at_period_end")
    list_select_related = ("user", "organization", "plan")
    raw_id_fields = ("user", "organization", "plan")
    ordering = ("-created_at",)
    inlines = [SubscriptionChangeInline]

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    @admin.display(description="Owner")
    def owner_display(self, obj):
        if obj.organization_id:
            return _organization_link(obj)
        return obj.user.get_username() if obj.user_id else "-"


@admin.register(SubscriptionChange)
class SubscriptionChangeAdmin(admin.ModelAdmin):
    list_display = (
        "subscription",
        "change_type",
        "from_tier",
        "to_tier",
        "effective_date",
        "status",
        "source",
        "requested_by",
        "created_at",
    )
    search_fields = ("subscription__external_id", "requested_by__username", "requested_by__email")
    list_filter = ("change_type", "status", "source", "effective_date")
    list_select_related = ("subscription", "requested_by")
    ordering = ("-created_at",)

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(ProcessedEvent)
class ProcessedEventAdmin(admin.ModelAdmin):
    """Idempotency ledger explorer."""

    list_display = ("event_id", "event_type", "outcome", "error_code", "subscription", "processed_at")
    search_fields = ("event_id", "subject_reference", "error_code")
    list_filter = ("outcome", "event_type", "processed_at")
    ordering = ("-processed_at",)

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(BillingAuditLog)
class BillingAuditLogAdmin(admin.ModelAdmin):
    """Audit log explorer for billing lifecycle events."""

    list_display = (
        "organization_link",
        "subscription",
        "event_type",
        "source",
        "actor",
        "created_at",
    )
    search_fields = ("event_type", "external_event_id", "organization__name", "actor", "request_id")
    list_filter = ("event_type", "source", "created_at")
    readonly_fields = (
        "subscription",
        "organization",
        "user",
        "event_type",
        "source",
        "actor",
        "request_id",
        "external_event_id",
        "details",
        "created_at",
    )
    ordering = ("-created_at",)

    fieldsets = (
        ("Event", {"fields": ("subscription", "organization", "user", "event_type", "source")}),
        ("Tracing", {"fields": ("actor", "request_id", "external_event_id")}),
        ("Details", {"fields": ("details", "created_at")}),
    )

    @admin.display(description="Organization")
    def organization_link(self, obj):
        return _organization_link(obj)

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
