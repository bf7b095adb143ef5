"""Best-effort audit emission for committed billing transitions."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from django.db import DatabaseError, transaction

from billing.context import RequestContext
from billing.models import BillingAuditLog, Subscription
from billing.observability.logging import log_billing_event
from billing.observability.metrics import AUDIT_EMIT_FAILURE_COUNT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditRecord:
    event_type: str
    details: Dict[str, Any] = field(default_factory=dict)


def emit(
    records: Iterable[AuditRecord],
    *,
    subscription: Optional[Subscription],
    context: RequestContext,
    external_event_id: str = "",
) -> int:
    """Write audit rows for ``records``; failures are logged and never raised."""
    written = 0
    for record in records:
        try:
            with transaction.atomic():
                BillingAuditLog.objects.create(
                    subscription=subscription,
                    organization_id=getattr(subscription, "organization_id", None),
                    user_id=getattr(subscription, "user_id", None),
                    event_type=record.event_type,
                    source=context.source,
                    actor=context.actor,
                    request_id=context.request_id,
                    external_event_id=external_event_id,
                    details=record.details,
                )
        except DatabaseError:
            AUDIT_EMIT_FAILURE_COUNT.labels(event_type=record.event_type).inc()
            logger.exception(
                "Failed to write billing audit record %s for subscription %s",
                record.event_type,
                getattr(subscription, "pk", None),
            )
            continue

        written += 1
        log_billing_event(
            message=record.event_type,
            request_id=context.request_id,
            subscription_id=getattr(subscription, "pk", None),
            organization_id=getattr(subscription, "organization_id", None),
            actor=context.actor,
            extra={"source": context.source, **record.details},
        )
    return written
