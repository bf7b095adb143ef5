"""Per-subscription serialization point backed by a row-level lock."""
from __future__ import annotations

import logging
import time
from typing import Optional

from django.conf import settings
from django.db import DatabaseError, OperationalError, connection, transaction

from billing.errors import NotFound, TransientStoreError
from billing.models import Subscription
from billing.observability.metrics import SUBSCRIPTION_LOCK_WAIT

logger = logging.getLogger(__name__)


def _apply_lock_timeout() -> None:
    timeout_ms = getattr(settings, "BILLING_LOCK_TIMEOUT_MS", None)
    if not timeout_ms or connection.vendor != "postgresql":
        return
    with connection.cursor() as cursor:
        # Scoped to the surrounding transaction.
        cursor.execute(f"SET LOCAL lock_timeout = {int(timeout_ms)}")


def lock_subscription(subscription_id: int) -> Subscription:
    """
    Lock and return the subscription row for the rest of the current transaction.

    Must be called inside ``transaction.atomic()``. Waiting longer than
    ``BILLING_LOCK_TIMEOUT_MS`` raises ``TransientStoreError`` instead of queueing.
    """
    if not transaction.get_connection().in_atomic_block:
        raise RuntimeError("lock_subscription() requires an active transaction.")

    started = time.monotonic()
    try:
        _apply_lock_timeout()
        return Subscription.objects.select_for_update().get(pk=subscription_id, deleted_at__isnull=True)
    except Subscription.DoesNotExist as exc:
        raise NotFound(
            "Subscription does not exist.",
            context={"subscription_id": subscription_id},
        ) from exc
    except OperationalError as exc:
        logger.warning("Timed out acquiring lock for subscription %s: %s", subscription_id, exc)
        raise TransientStoreError(
            "Subscription is busy; retry the request.",
            context={"subscription_id": subscription_id},
        ) from exc
    except DatabaseError as exc:
        raise TransientStoreError(str(exc), context={"subscription_id": subscription_id}) from exc
    finally:
        SUBSCRIPTION_LOCK_WAIT.observe(time.monotonic() - started)


def find_subscription_id(*, external_id: str) -> Optional[int]:
    return (
        Subscription.objects.filter(external_id=external_id, deleted_at__isnull=True)
        .values_list("pk", flat=True)
        .first()
    )
