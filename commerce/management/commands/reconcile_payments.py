from datetime import timedelta

from django.core.management.base import BaseCommand

from commerce.payments import PaymentReconciler
from commerce.webhooks import WebhookInbox


class Command(BaseCommand):
    help = 'Reconcile pending payments and unprocessed webhook events against Stripe'

    def add_arguments(self, parser):
        parser.add_argument(
            '--older-than',
            type=int,
            default=15,
            help='Only check payments pending for at least this many minutes',
        )
        parser.add_argument('--limit', type=int, default=100, help='Maximum webhook events to replay')

    def handle(self, *args, **options):
        reconciler = PaymentReconciler()

        inbox = WebhookInbox(reconciler=reconciler)
        processed, failed = inbox.process_pending(limit=options['limit'])
        if processed or failed:
            self.stdout.write(f'Replayed webhook events: {processed} processed, {failed} still failing.')
        if failed:
            self.stdout.write(self.style.WARNING(f'{failed} webhook event(s) will be retried on the next run.'))

        summary = reconciler.reconcile_pending(older_than=timedelta(minutes=options['older_than']))
        checked = sum(summary.values())
        if not checked:
            self.stdout.write(self.style.SUCCESS('No pending payments found.'))
            return

        self.stdout.write(f'Checked {checked} pending payment(s) with Stripe.')
        for key in ('completed', 'failed', 'cancelled', 'pending'):
            self.stdout.write(f'  {key}: {summary[key]}')
        if summary['errors']:
            self.stdout.write(self.style.ERROR(f'  errors: {summary["errors"]}'))
        self.stdout.write(self.style.SUCCESS(f'\nMarked {summary["completed"]} payment(s) as completed.'))
