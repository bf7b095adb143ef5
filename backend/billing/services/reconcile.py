"""Optional sweep that advances subscriptions nobody has touched since a change came due."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from billing.context import SOURCE_CRON, RequestContext
from billing.errors import BillingError
from billing.models import Subscription, SubscriptionChange
from billing.services.audit import emit
from billing.services.state_machine import SubscriptionTransition
from organizations.services import sync_billing_projection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    examined: int
    advanced: int
    skipped: int
    failed: int


def due_subscription_ids(*, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[int]:
    now = now or timezone.now()
    trial_cutoff = now - timedelta(days=getattr(settings, "BILLING_TRIAL_GRACE_DAYS", 3))
    queryset = (
        Subscription.objects.filter(deleted_at__isnull=True)
        .exclude(status=Subscription.Status.EXPIRED)
        .filter(
            Q(changes__status=SubscriptionChange.Status.SCHEDULED, changes__effective_date__lte=now)
            | Q(cancel_at_period_end=True, current_period_end__lte=now)
            | Q(status=Subscription.Status.CANCELED, access_expires_at__lte=now)
            | Q(status=Subscription.Status.TRIALING, trial_end__lte=trial_cutoff)
        )
        .order_by("pk")
        .values_list("pk", flat=True)
        .distinct()
    )
    if limit:
        queryset = queryset[:limit]
    return list(queryset)


def sweep_due_subscriptions(*, now: Optional[datetime] = None, limit: Optional[int] = None) -> SweepResult:
    """Advance every due subscription; rows locked by a live request are left for its own touch."""
    now = now or timezone.now()
    context = RequestContext.system(source=SOURCE_CRON, actor="reconciler")
    ids = due_subscription_ids(now=now, limit=limit)
    advanced = skipped = failed = 0

    for subscription_id in ids:
        try:
            with transaction.atomic():
                subscription = (
                    Subscription.objects.select_for_update(skip_locked=True)
                    .filter(pk=subscription_id, deleted_at__isnull=True)
                    .first()
                )
                if subscription is None:
                    skipped += 1
                    continue
                transition = SubscriptionTransition(subscription)
                transition.advance(at=now)
                result = transition.commit()
                sync_billing_projection(subscription)
        except BillingError:
            failed += 1
            logger.exception("Reconciliation failed for subscription %s.", subscription_id)
            continue

        if result.audit_records:
            advanced += 1
        emit(result.audit_records, subscription=subscription, context=context)

    logger.info(
        "Reconciliation sweep finished: examined=%s advanced=%s skipped=%s failed=%s",
        len(ids),
        advanced,
        skipped,
        failed,
    )
    return SweepResult(examined=len(ids), advanced=advanced, skipped=skipped, failed=failed)


__all__ = ["SweepResult", "due_subscription_ids", "sweep_due_subscriptions"]
