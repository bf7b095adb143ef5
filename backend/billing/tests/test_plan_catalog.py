from decimal import Decimal

import pytest
from django.core.exceptions import ValidationError as DjangoValidationError

from billing.errors import NotFound, ValidationError
from billing.models import Plan, tier_rank
from billing.services.plan_catalog import (
    ensure_plan_catalog,
    get_plan,
    get_plan_for_tier,
    list_public_plans,
    publish_plan_version,
)


@pytest.mark.django_db
def test_catalog_contains_configured_plans(catalog):
    assert {"free", "basic", "pro", "business", "enterprise"} <= set(catalog)
    assert catalog["pro"].version == 1
    assert catalog["pro"].trial_period_days == 14


@pytest.mark.django_db
def test_ensure_plan_catalog_is_idempotent(catalog):
    summary = ensure_plan_catalog()

    assert summary == {"created": [], "updated": [], "versioned": []}
    assert Plan.objects.filter(plan_id="pro").count() == 1


@pytest.mark.django_db
def test_ensure_plan_catalog_rejects_unknown_fields(catalog):
    with pytest.raises(ValidationError):
        ensure_plan_catalog({"pro": {"tier": "pro", "colour": "blue"}})


@pytest.mark.django_db
def test_public_catalog_hides_private_plans_and_filters_owner_type(catalog):
    public_ids = [plan.plan_id for plan in list_public_plans()]
    individual_ids = [plan.plan_id for plan in list_public_plans(owner_type="individual")]

    assert "enterprise" not in public_ids
    assert "business" in public_ids
    assert "business" not in individual_ids
    assert "pro" in individual_ids


@pytest.mark.django_db
def test_get_plan_for_tier_respects_owner_type(catalog):
    assert get_plan_for_tier("business", owner_type="organization").plan_id == "business"

    with pytest.raises(NotFound):
        get_plan_for_tier("business", owner_type="individual")


@pytest.mark.django_db
def test_unknown_plan_raises_not_found(catalog):
    with pytest.raises(NotFound):
        get_plan("platinum")


@pytest.mark.django_db
def test_referenced_plan_fields_are_frozen(make_subscription, make_user):
    subscription = make_subscription(user=make_user())
    plan = subscription.plan
    plan.amount = Decimal("39.00")

    with pytest.raises(DjangoValidationError):
        plan.save()

    plan.refresh_from_db()
    plan.description = "Marketing copy can change."
    plan.save()


@pytest.mark.django_db
def test_publishing_a_version_keeps_existing_subscribers_on_the_old_one(make_subscription, make_user):
    subscription = make_subscription(user=make_user())
    original = subscription.plan

    new_plan = publish_plan_version("pro", amount="39")

    original.refresh_from_db()
    subscription.refresh_from_db()
    assert new_plan.version == original.version + 1
    assert new_plan.amount == Decimal("39")
    assert new_plan.name == original.name
    assert original.is_legacy is True
    assert subscription.plan_id == original.pk
    assert get_plan("pro").pk == new_plan.pk
    assert [plan.pk for plan in list_public_plans() if plan.plan_id == "pro"] == [new_plan.pk]


def test_tier_ranking_orders_trial_below_paid_tiers():
    assert tier_rank("trial") < tier_rank("free") < tier_rank("basic") < tier_rank("pro")
    assert tier_rank("PRO") == tier_rank("pro")
    with pytest.raises(ValueError):
        tier_rank("platinum")
