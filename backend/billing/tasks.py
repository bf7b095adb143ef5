"""Celery tasks for provider event processing and scheduled reconciliation."""
from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from celery import shared_task

from billing.context import SOURCE_WEBHOOK, RequestContext
from billing.errors import BillingError, TransientStoreError
from billing.services.dispatcher import handle
from billing.services.events import ProviderEvent
from billing.services.reconcile import sweep_due_subscriptions

logger = logging.getLogger(__name__)


@shared_task(bind=True, queue="billing", autoretry_for=(TransientStoreError,), retry_backoff=True, max_retries=5)
def process_provider_event_async(self, event_data: Dict[str, Any], request_id: str = "") -> Dict[str, Any]:
    """Dispatch a normalized provider event; transient failures are retried by Celery."""

    event = ProviderEvent.from_dict(event_data)
    context = RequestContext.system(source=SOURCE_WEBHOOK, actor="stripe", request_id=request_id)

    try:
        result = handle(event, context=context)
    except TransientStoreError:
        logger.warning("Transient failure processing event %s; retrying.", event.external_event_id)
        raise
    except BillingError as exc:
        logger.warning("Event %s rejected: %s", event.external_event_id, exc.message)
        return {"status": "rejected", "event_id": event.external_event_id, **exc.as_dict()}

    logger.info(
        "Processed event %s (%s) with outcome %s.",
        event.external_event_id,
        event.type.value,
        result.outcome,
    )
    return {"status": "processed", **result.as_dict(), "replayed": result.replayed}


@shared_task(queue="billing")
def reconcile_due_subscriptions(limit: Optional[int] = None) -> Dict[str, int]:
    """Apply scheduled changes and expiries for subscriptions that have not been touched."""

    return asdict(sweep_due_subscriptions(limit=limit))

