from datetime import datetime, timezone as dt_timezone

import pytest

from billing.errors import ValidationError
from billing.services.events import EventType, ProviderEvent, normalize_stripe_event, parse_instant


def _stripe_event(event_type, obj, event_id="evt_stripe_1", created=1_700_000_000):
    return {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}}


def test_subscription_event_is_normalized():
    event = normalize_stripe_event(
        _stripe_event(
            "customer.subscription.updated",
            {
                "id": "sub_123",
                "customer": "cus_9",
                "status": "unpaid",
                "cancel_at_period_end": True,
                "metadata": {"organization_id": "7", "plan_id": "business", "auto_add_seats": "true"},
                "items": {
                    "data": [
                        {
                            "quantity": 12,
                            "price": {"id": "price_business"},
                            "current_period_start": 1_700_000_000,
                            "current_period_end": 1_702_592_000,
                        }
                    ]
                },
            },
        )
    )

    assert event.type == EventType.SUBSCRIPTION_UPDATED
    assert event.subject_reference == "sub_123"
    assert event.provider_timestamp == datetime.fromtimestamp(1_700_000_000, tz=dt_timezone.utc)
    assert event.payload["status"] == "past_due"
    assert event.payload["quantity"] == 12
    assert event.payload["price_id"] == "price_business"
    assert event.payload["owner"] == {"organization_id": "7"}
    assert event.payload["auto_add_seats"] is True
    assert event.payload["cancel_at_period_end"] is True
    assert event.payload["current_period_end"].startswith("2023-12-14")


def test_invoice_subscription_falls_back_to_parent_details():
    event = normalize_stripe_event(
        _stripe_event(
            "invoice.payment_failed",
            {
                "id": "in_1",
                "amount_due": 2900,
                "currency": "USD",
                "attempt_count": 2,
                "parent": {"subscription_details": {"subscription": "sub_456"}},
            },
        )
    )

    assert event.type == EventType.PAYMENT_FAILED
    assert event.subject_reference == "sub_456"
    assert event.payload["currency"] == "usd"
    assert event.payload["attempt_count"] == 2


def test_one_off_invoice_is_ignored():
    assert normalize_stripe_event(_stripe_event("invoice.paid", {"id": "in_2", "amount_paid": 100})) is None


def test_unsupported_stripe_event_is_ignored():
    assert normalize_stripe_event(_stripe_event("charge.refunded", {"id": "ch_1"})) is None


def test_event_without_id_is_rejected():
    with pytest.raises(ValidationError):
        normalize_stripe_event(_stripe_event("customer.subscription.deleted", {"id": "sub_1"}, event_id=""))


def test_provider_event_survives_task_serialization():
    event = ProviderEvent(
        external_event_id="evt_1",
        type="payment.succeeded",
        subject_reference="sub_1",
        payload={"invoice_id": "in_1"},
        provider_timestamp="2024-05-01T10:00:00Z",
    )

    restored = ProviderEvent.from_dict(event.to_dict())

    assert restored == event
    assert restored.payload_hash == event.payload_hash


def test_unknown_event_type_is_rejected():
    with pytest.raises(ValidationError):
        ProviderEvent(external_event_id="evt_1", type="subscription.paused", subject_reference="sub_1")


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, None),
        ("", None),
        (0, datetime(1970, 1, 1, tzinfo=dt_timezone.utc)),
        ("2024-05-01T10:00:00", datetime(2024, 5, 1, 10, tzinfo=dt_timezone.utc)),
    ],
)
def test_parse_instant(value, expected):
    assert parse_instant(value) == expected


def test_parse_instant_rejects_garbage():
    with pytest.raises(ValidationError):
        parse_instant("next tuesday")
