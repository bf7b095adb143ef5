from datetime import timedelta
from itertools import count

import pytest
from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework.test import APIClient

from billing.models import Plan, Subscription
from billing.services.events import EventType, ProviderEvent
from billing.services.plan_catalog import ensure_plan_catalog, get_plan
from organizations.models import Organization, OrganizationMembership
from organizations.roles import Role

_sequence = count(1)


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def make_user(db):
    def _make_user(username=None, **extra):
        username = username or f"user{next(_sequence)}"
        return get_user_model().objects.create_user(
            username=username,
            email=extra.pop("email", f"{username}@example.com"),
            password="pass1234",
            **extra,
        )

    return _make_user


@pytest.fixture
def catalog(db):
    ensure_plan_catalog()
    return {plan.plan_id: plan for plan in Plan.objects.filter(is_legacy=False)}


@pytest.fixture
def owner(make_user):
    return make_user("owner")


@pytest.fixture
def organization(owner):
    return Organization.objects.create(name="Acme", slug="acme", owner=owner, billing_email="billing@acme.test")


@pytest.fixture
def add_member(make_user):
    def _add_member(organization, role=Role.VIEWER, user=None, status=OrganizationMembership.Status.ACTIVE):
        user = user or make_user()
        return OrganizationMembership.objects.create(
            organization=organization,
            user=user,
            role=Role.parse(role).value,
            status=status,
            joined_at=timezone.now() if status == OrganizationMembership.Status.ACTIVE else None,
        )

    return _add_member


@pytest.fixture
def make_subscription(catalog):
    def _make_subscription(*, organization=None, user=None, plan="pro", **fields):
        now = timezone.now()
        values = {
            "external_id": f"sub_{next(_sequence)}",
            "plan": get_plan(plan) if isinstance(plan, str) else plan,
            "status": Subscription.Status.ACTIVE,
            "current_period_start": now - timedelta(days=20),
            "current_period_end": now + timedelta(days=10),
        }
        values.update(fields)
        return Subscription.objects.create(organization=organization, user=user, **values)

    return _make_subscription


@pytest.fixture
def make_event():
    def _make_event(event_type, subject, *, event_id=None, payload=None, timestamp=None):
        return ProviderEvent(
            external_event_id=event_id or f"evt_{next(_sequence)}",
            type=EventType.parse(event_type),
            subject_reference=subject,
            payload=payload or {},
            provider_timestamp=timestamp,
        )

    return _make_event
