"""
Seed the plan catalog from settings

Creates missing plans from BILLING_PLAN_CATALOG, updates editable fields in
place and publishes a new version when a plan referenced by live
subscriptions changes what subscribers pay for.
"""

from django.core.management.base import BaseCommand, CommandError

from billing.errors import ValidationError
from billing.models import Plan
from billing.services.plan_catalog import ensure_plan_catalog


class Command(BaseCommand):

    help = 'Create or update plans from BILLING_PLAN_CATALOG'

    def add_arguments(self, parser):
        parser.add_argument(
            '--list',
            action='store_true',
            help='Print the current catalog after seeding'
        )

    def handle(self, *args, **options):
        try:
            summary = ensure_plan_catalog()
        except ValidationError as exc:
            raise CommandError(exc.message) from exc

        for plan_id in summary['created']:
            self.stdout.write(self.style.SUCCESS(f'✓ Created plan: {plan_id}'))
        for plan_id in summary['updated']:
            self.stdout.write(self.style.SUCCESS(f'✓ Updated plan: {plan_id}'))
        for plan_id in summary['versioned']:
            self.stdout.write(self.style.WARNING(f'↑ Published new version of referenced plan: {plan_id}'))

        if not any(summary.values()):
            self.stdout.write(self.style.WARNING('○ Plan catalog already up to date'))

        if options['list']:
            self.stdout.write('\nCurrent plans:')
            for plan in Plan.objects.filter(deleted_at__isnull=True).order_by('sort_order', 'plan_id', '-version'):
                price_display = f"{plan.amount} {plan.currency.upper()}/{plan.interval}" if plan.amount > 0 else "Free"
                legacy = " (legacy)" if plan.is_legacy else ""
                self.stdout.write(f"  • {plan.plan_id}@v{plan.version}: {plan.name}, {price_display}{legacy}")
