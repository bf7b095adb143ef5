"""Django admin configuration for organizations and memberships."""

from django.contrib import admin

from .models import Organization, OrganizationMembership


class MembershipInline(admin.TabularInline):
    """Memberships shown on the organization page."""

    model = OrganizationMembership
    extra = 0
    fields = ['user', 'role', 'status', 'is_active', 'invited_by', 'joined_at']
    readonly_fields = ['joined_at']
    raw_id_fields = ['user', 'invited_by']
    fk_name = 'organization'

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('user', 'invited_by')


@admin.register(Organization)
class OrganizationAdmin(admin.ModelAdmin):
    list_display = [
        'name',
        'slug',
        'owner',
        'subscription_status',
        'subscription_tier',
        'current_member_count',
        'member_limit',
        'is_active',
        'created_at',
    ]
    list_filter = ['subscription_status', 'subscription_tier', 'is_active', 'created_at']
    search_fields = ['name', 'slug', 'owner__username', 'owner__email', 'billing_email']
    raw_id_fields = ['owner']
    # The billing projection is written by the billing engine only.
    readonly_fields = [
        'subscription_status',
        'subscription_tier',
        'subscription_expires_at',
        'member_limit',
        'current_member_count',
        'created_at',
        'updated_at',
    ]
    inlines = [MembershipInline]


@admin.register(OrganizationMembership)
class OrganizationMembershipAdmin(admin.ModelAdmin):
    list_display = ['organization', 'user', 'role', 'status', 'is_active', 'joined_at']
    list_filter = ['role', 'status', 'is_active']
    search_fields = ['organization__name', 'user__username', 'user__email']
    raw_id_fields = ['organization', 'user', 'invited_by', 'role_changed_by', 'removed_by']
    readonly_fields = ['previous_role', 'role_changed_at', 'removed_at', 'created_at', 'updated_at']
