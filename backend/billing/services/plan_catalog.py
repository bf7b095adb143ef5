"""Plan catalog lookups, seeding and versioned publishing."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Max

from billing.errors import NotFound, ValidationError
from billing.models import Plan, PlanTier

logger = logging.getLogger(__name__)

_DECIMAL_FIELDS = {"amount", "seat_price"}
_CATALOG_FIELDS = {
    "name",
    "description",
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
    "stripe_price_id",
    "stripe_product_id",
    "is_public",
    "sort_order",
}


def _normalise_definition(plan_id: str, definition: Dict[str, Any], *, defaults: bool = True) -> Dict[str, Any]:
    unknown = set(definition) - _CATALOG_FIELDS
    if unknown:
        raise ValidationError(f"Unknown plan catalog fields for '{plan_id}': {', '.join(sorted(unknown))}")
    values = dict(definition)
    if defaults:
        values.setdefault("name", plan_id.title())
        values.setdefault("tier", plan_id)
    for field in _DECIMAL_FIELDS:
        if field in values:
            values[field] = Decimal(str(values[field]))
    return values


def latest_version(plan_id: str) -> Optional[Plan]:
    return (
        Plan.objects.filter(plan_id=plan_id, deleted_at__isnull=True)
        .order_by("-version")
        .first()
    )


def get_plan(plan_id: str, *, version: Optional[int] = None) -> Plan:
    """Return the requested plan version, or the newest active one."""
    queryset = Plan.objects.filter(plan_id=plan_id, deleted_at__isnull=True)
    if version is not None:
        plan = queryset.filter(version=version).first()
    else:
        plan = queryset.filter(is_active=True).order_by("-version").first()
    if plan is None:
        raise NotFound(f"Plan '{plan_id}' does not exist.", context={"plan_id": plan_id})
    return plan


def get_plan_for_tier(tier: str, *, owner_type: str) -> Plan:
    """Newest active plan of a tier that can be held by the given owner type."""
    candidates = (
        Plan.objects.filter(tier=str(tier).lower(), is_active=True, deleted_at__isnull=True)
        .order_by("sort_order", "-version")
    )
    for plan in candidates:
        if plan.allows_owner_type(owner_type):
            return plan
    raise NotFound(
        f"No active '{tier}' plan is available for {owner_type} subscriptions.",
        context={"tier": tier, "owner_type": owner_type},
    )


def find_plan_by_price(stripe_price_id: Optional[str]) -> Optional[Plan]:
    if not stripe_price_id:
        return None
    return Plan.objects.filter(stripe_price_id=stripe_price_id, deleted_at__isnull=True).first()


def list_public_plans(*, owner_type: Optional[str] = None) -> List[Plan]:
    """Newest public, non-legacy version of each catalog entry."""
    queryset = Plan.objects.filter(is_active=True, is_public=True, is_legacy=False, deleted_at__isnull=True)
    newest = dict(queryset.values_list("plan_id").annotate(max_version=Max("version")))
    plans = [
        plan
        for plan in queryset.order_by("sort_order", "plan_id")
        if newest.get(plan.plan_id) == plan.version
    ]
    if owner_type:
        plans = [plan for plan in plans if plan.allows_owner_type(owner_type)]
    return plans


def publish_plan_version(plan_id: str, **changes: Any) -> Plan:
    """
    Create the next version of a plan with ``changes`` applied.

    The previous version stays untouched for its existing subscribers and is
    flagged as legacy so it disappears from the public catalog.
    """
    changes = _normalise_definition(plan_id, changes, defaults=False) if changes else {}
    with transaction.atomic():
        current = Plan.objects.select_for_update().filter(plan_id=plan_id, deleted_at__isnull=True).order_by("-version").first()
        if current is None:
            raise NotFound(f"Plan '{plan_id}' does not exist.", context={"plan_id": plan_id})

        values = {field: getattr(current, field) for field in _CATALOG_FIELDS}
        values.update(changes)

        current.is_legacy = True
        update_fields = ["is_legacy", "updated_at"]
        if values.get("stripe_price_id") and values["stripe_price_id"] == current.stripe_price_id:
            # A price id identifies exactly one plan version; it moves to the new one.
            current.stripe_price_id = ""
            update_fields.append("stripe_price_id")
        current.save(update_fields=update_fields)

        new_plan = Plan.objects.create(plan_id=plan_id, version=current.version + 1, **values)

    logger.info("Published plan %s version %s.", plan_id, new_plan.version)
    return new_plan


def ensure_plan_catalog(catalog: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, List[str]]:
    """Make the stored catalog match ``BILLING_PLAN_CATALOG``."""
    if catalog is None:
        catalog = getattr(settings, "BILLING_PLAN_CATALOG", {}) or {}

    created: List[str] = []
    updated: List[str] = []
    versioned: List[str] = []

    for plan_id, definition in catalog.items():
        values = _normalise_definition(plan_id, definition)
        if values["tier"] not in PlanTier.values:
            raise ValidationError(f"Plan '{plan_id}' uses unknown tier '{values['tier']}'.")

        plan = latest_version(plan_id)
        if plan is None:
            Plan.objects.create(plan_id=plan_id, version=1, **values)
            created.append(plan_id)
            continue

        changed = _changed_fields(plan, values)
        if not changed:
            continue

        frozen_changes = [field for field in changed if field in Plan.FROZEN_FIELDS]
        if frozen_changes and plan.is_referenced():
            publish_plan_version(plan_id, **{field: values[field] for field in changed})
            versioned.append(plan_id)
            continue

        for field in changed:
            setattr(plan, field, values[field])
        plan.save(update_fields=[*changed, "updated_at"])
        updated.append(plan_id)

    if created or updated or versioned:
        logger.info(
            "Plan catalog initialisation completed. created=%s updated=%s versioned=%s",
            created,
            updated,
            versioned,
        )
    return {"created": created, "updated": updated, "versioned": versioned}


def _changed_fields(plan: Plan, values: Dict[str, Any]) -> List[str]:
    changed = []
    for field, expected in values.items():
        current = getattr(plan, field)
        if field in _DECIMAL_FIELDS:
            current = Decimal(str(current))
        if current != expected:
            changed.append(field)
    return changed


__all__ = [
    "ensure_plan_catalog",
    "find_plan_by_price",
    "get_plan",
    "get_plan_for_tier",
    "latest_version",
    "list_public_plans",
    "publish_plan_version",
]
