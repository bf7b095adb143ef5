from contextlib import contextmanager
from unittest import mock

import pytest
from django.db import DatabaseError, OperationalError, transaction

from billing.errors import NotFound, TransientStoreError
from billing.models import ProcessedEvent, Subscription
from billing.services.dispatcher import handle
from billing.services.locking import lock_subscription
from billing.tasks import process_provider_event_async


@contextmanager
def _lock_fails_with(error):
    with mock.patch.object(Subscription.objects, "select_for_update") as select_for_update:
        select_for_update.return_value.get.side_effect = error
        yield


@pytest.mark.django_db
def test_lock_returns_the_subscription(make_subscription, make_user):
    subscription = make_subscription(user=make_user())

    with transaction.atomic():
        locked = lock_subscription(subscription.pk)

    assert locked.pk == subscription.pk


@pytest.mark.django_db(transaction=True)
def test_lock_requires_an_open_transaction():
    with pytest.raises(RuntimeError):
        lock_subscription(1)


@pytest.mark.django_db
def test_missing_subscription_is_not_found(catalog):
    with transaction.atomic(), pytest.raises(NotFound):
        lock_subscription(424242)


@pytest.mark.django_db
@pytest.mark.parametrize("error", [OperationalError("lock timeout"), DatabaseError("connection reset")])
def test_lock_failures_become_transient(make_subscription, make_user, error):
    subscription = make_subscription(user=make_user())
    with _lock_fails_with(error), pytest.raises(TransientStoreError) as exc:
        with transaction.atomic():
            lock_subscription(subscription.pk)

    assert exc.value.retryable is True
    assert exc.value.context == {"subscription_id": subscription.pk}


@pytest.mark.django_db
def test_busy_subscription_leaves_event_unrecorded(make_subscription, make_user, make_event):
    subscription = make_subscription(user=make_user(), external_id="sub_locked")
    event = make_event("payment.failed", "sub_locked", event_id="evt_locked")

    with _lock_fails_with(OperationalError("lock timeout")):
        with pytest.raises(TransientStoreError):
            handle(event)
        with pytest.raises(TransientStoreError):
            process_provider_event_async.run(event.to_dict())

    assert not ProcessedEvent.objects.filter(event_id="evt_locked").exists()

    result = handle(event)

    subscription.refresh_from_db()
    assert result.replayed is False
    assert subscription.status == Subscription.Status.PAST_DUE
