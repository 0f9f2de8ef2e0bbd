import logging

from django.db.models import F
from django.utils import timezone

from .errors import StoreError, ValidationError
from .models import WebhookEvent
from .payments import PaymentReconciler

logger = logging.getLogger(__name__)


def gateway_order_id_for(event_type, obj):
    """The checkout session an event refers to, or '' for unrelated events."""
    if event_type.startswith('checkout.session.'):
        return obj.get('id') or ''
    return ''


class WebhookInbox:
    """Stores gateway events durably, then hands them to the reconciler.

    Duplicate deliveries share one row (keyed by the provider's event id)
    and are reconciled at most once successfully.
    """

    def __init__(self, reconciler=None):
        self._reconciler = reconciler

    @property
    def reconciler(self):
        if self._reconciler is None:
            self._reconciler = PaymentReconciler()
        return self._reconciler

    def ingest(self, event):
        try:
            event_id = event['id']
            event_type = event['type']
            obj = event['data']['object']
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Malformed webhook event: missing {e}") from e

        record, created = WebhookEvent.objects.get_or_create(
            event_id=event_id,
            defaults={
                'event_type': event_type,
                'gateway_order_id': gateway_order_id_for(event_type, obj),
                'payload': event,
            },
        )
        if not created:
            logger.info("Duplicate delivery of webhook event %s", event_id)
        return record, created

    def process(self, record):
        if record.processed_at is not None:
            return True
        WebhookEvent.objects.filter(pk=record.pk).update(attempts=F('attempts') + 1)
        try:
            self.reconciler.reconcile_webhook(record.event_type, record.gateway_order_id)
        except StoreError as e:
            WebhookEvent.objects.filter(pk=record.pk).update(last_error=str(e))
            logger.warning("Webhook event %s not reconciled yet: %s", record.event_id, e)
            return False
        WebhookEvent.objects.filter(pk=record.pk, processed_at__isnull=True).update(
            processed_at=timezone.now(),
            last_error='',
        )
        return True

    def process_pending(self, limit=100):
        processed = failed = 0
        for record in WebhookEvent.objects.filter(processed_at__isnull=True)[:limit]:
            if self.process(record):
                processed += 1
            else:
                failed += 1
        return processed, failed
