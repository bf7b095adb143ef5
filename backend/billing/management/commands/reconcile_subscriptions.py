"""Management command to apply scheduled changes and expiries that have come due."""
from __future__ import annotations

from typing import Optional

from django.core.management.base import BaseCommand

from billing.services.reconcile import due_subscription_ids, sweep_due_subscriptions


class Command(BaseCommand):
    help = "Advance subscriptions with due scheduled changes, period-end cancellations or elapsed access windows."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Maximum number of subscriptions to advance in this run.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List due subscriptions without changing them.",
        )

    def handle(self, *args, **options) -> None:
        limit: Optional[int] = options.get("limit")
        dry_run: bool = options.get("dry_run")

        if dry_run:
            ids = due_subscription_ids(limit=limit)
            if not ids:
                self.stdout.write(self.style.WARNING("No subscriptions are due."))
                return
            for subscription_id in ids:
                self.stdout.write(f"Would advance subscription {subscription_id}")
            self.stdout.write(self.style.WARNING(f"Dry run complete. {len(ids)} subscriptions are due."))
            return

        result = sweep_due_subscriptions(limit=limit)
        summary = (
            f"Examined {result.examined}, advanced {result.advanced}, "
            f"skipped {result.skipped}, failed {result.failed}."
        )
        if result.failed:
            self.stdout.write(self.style.ERROR(summary))
        else:
            self.stdout.write(self.style.SUCCESS(summary))
