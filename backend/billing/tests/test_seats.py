import pytest

from billing.errors import Conflict, TransientStoreError, ValidationError
from billing.models import Subscription
from billing.services.seats import (
    UtilizationBand,
    add_seats,
    adjust_seat_limit,
    compute_availability,
    remove_seats,
    utilization_band,
)


@pytest.fixture
def org_subscription(make_subscription, organization):
    def _org_subscription(**fields):
        values = {"seat_limit": 5, "quantity": 5, "used_seats": 3}
        values.update(fields)
        return make_subscription(organization=organization, **values)

    return _org_subscription


@pytest.mark.parametrize(
    "used,limit,band",
    [
        (1, 10, UtilizationBand.NOMINAL),
        (7, 10, UtilizationBand.NOMINAL),
        (8, 10, UtilizationBand.NEAR_LIMIT),
        (10, 10, UtilizationBand.AT_LIMIT),
        (12, 10, UtilizationBand.AT_LIMIT),
    ],
)
def test_utilization_band_thresholds(used, limit, band):
    assert utilization_band(used, limit) == band


@pytest.mark.django_db
def test_add_seats_at_limit_without_auto_add_conflicts(org_subscription):
    subscription = org_subscription(seat_limit=5, used_seats=5, auto_add_seats=False)

    with pytest.raises(Conflict) as exc:
        add_seats(subscription, 1)

    assert exc.value.subscription_id == subscription.pk
    subscription.refresh_from_db()
    assert subscription.used_seats == 5
    assert subscription.seat_limit == 5


@pytest.mark.django_db
def test_add_seats_with_auto_add_grows_limit_and_quantity(org_subscription):
    subscription = org_subscription(seat_limit=5, quantity=5, used_seats=5, auto_add_seats=True)

    availability = add_seats(subscription, 2)

    subscription.refresh_from_db()
    assert subscription.used_seats == 7
    assert subscription.seat_limit == 7
    assert subscription.quantity == 7
    assert availability.band == UtilizationBand.AT_LIMIT
    assert availability.can_activate_member is True


@pytest.mark.django_db
def test_add_seats_within_limit(org_subscription):
    subscription = org_subscription(seat_limit=5, used_seats=3)

    availability = add_seats(subscription)

    assert availability.used_seats == 4
    assert availability.available == 1
    assert availability.band == UtilizationBand.NEAR_LIMIT
    assert Subscription.objects.get(pk=subscription.pk).used_seats == 4


@pytest.mark.django_db
def test_remove_seats_never_drops_below_one(org_subscription):
    subscription = org_subscription(used_seats=2)

    remove_seats(subscription, 5)

    subscription.refresh_from_db()
    assert subscription.used_seats == 1


@pytest.mark.django_db
def test_adjust_seat_limit_updates_quantity(org_subscription):
    subscription = org_subscription(seat_limit=5, used_seats=3)

    availability = adjust_seat_limit(subscription, 3)

    subscription.refresh_from_db()
    assert subscription.seat_limit == 8
    assert subscription.quantity == 8
    assert availability.available == 5


@pytest.mark.django_db
def test_adjust_seat_limit_cannot_drop_below_used_seats(org_subscription):
    subscription = org_subscription(seat_limit=5, used_seats=4)

    with pytest.raises(Conflict):
        adjust_seat_limit(subscription, -2)


@pytest.mark.django_db
def test_adjust_seat_limit_respects_plan_maximum(org_subscription):
    subscription = org_subscription(plan="basic", seat_limit=9, quantity=9, used_seats=3)

    with pytest.raises(Conflict) as exc:
        adjust_seat_limit(subscription, 2)

    assert exc.value.context["max_seats"] == 10


@pytest.mark.django_db
def test_seat_operations_require_an_organization_subscription(make_subscription, make_user):
    subscription = make_subscription(user=make_user())

    with pytest.raises(ValidationError):
        add_seats(subscription, 1)


@pytest.mark.django_db
def test_seat_operations_rejected_for_cancelled_subscriptions(org_subscription):
    subscription = org_subscription(status=Subscription.Status.CANCELED)

    with pytest.raises(Conflict):
        remove_seats(subscription, 1)


@pytest.mark.django_db
@pytest.mark.parametrize("count", [0, -1, True, "2"])
def test_seat_count_must_be_a_positive_integer(org_subscription, count):
    subscription = org_subscription()

    with pytest.raises(ValidationError):
        add_seats(subscription, count)


@pytest.mark.django_db
def test_concurrent_seat_change_is_detected(org_subscription):
    subscription = org_subscription(seat_limit=5, used_seats=3)
    Subscription.objects.filter(pk=subscription.pk).update(used_seats=4)

    with pytest.raises(TransientStoreError):
        add_seats(subscription, 1)

    assert Subscription.objects.get(pk=subscription.pk).used_seats == 4


@pytest.mark.django_db
def test_compute_availability_reports_utilization(org_subscription):
    availability = compute_availability(org_subscription(seat_limit=5, used_seats=4))

    assert availability.utilization == 80.0
    assert availability.band == UtilizationBand.NEAR_LIMIT
    assert availability.can_activate_member is True
