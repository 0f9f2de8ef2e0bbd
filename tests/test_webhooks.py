import pytest

from commerce.errors import GatewayTimeoutError, ValidationError
from commerce.models import Payment, WebhookEvent
from commerce.webhooks import WebhookInbox, gateway_order_id_for


def checkout_event(event_id, gateway_order_id, event_type='checkout.session.completed'):
    return {
        'id': event_id,
        'type': event_type,
        'data': {'object': {'id': gateway_order_id, 'payment_status': 'paid'}},
    }


@pytest.fixture
def payment(reconciler, lifecycle, user, product):
    order = lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 2}])
    return reconciler.create_payment(order.id)


@pytest.fixture
def inbox(reconciler):
    return WebhookInbox(reconciler=reconciler)


def test_gateway_order_id_only_for_checkout_events():
    assert gateway_order_id_for('checkout.session.expired', {'id': 'cs_1'}) == 'cs_1'
    assert gateway_order_id_for('charge.refunded', {'id': 'ch_1'}) == ''


def test_duplicate_delivery_is_stored_once(inbox, payment):
    event = checkout_event('evt_1', payment.gateway_order_id)

    record, created = inbox.ingest(event)
    again, created_again = inbox.ingest(event)

    assert created is True
    assert created_again is False
    assert record.pk == again.pk
    assert WebhookEvent.objects.count() == 1
    assert record.gateway_order_id == payment.gateway_order_id


def test_malformed_event(inbox, db):
    with pytest.raises(ValidationError):
        inbox.ingest({'id': 'evt_2', 'type': 'checkout.session.completed'})


def test_process_reconciles_once(inbox, payment, fake_gateway, notifier):
    record, _ = inbox.ingest(checkout_event('evt_1', payment.gateway_order_id))

    assert inbox.process(record) is True
    record.refresh_from_db()
    assert inbox.process(record) is True

    payment.refresh_from_db()
    assert payment.status == Payment.COMPLETED
    assert record.processed_at is not None
    assert record.attempts == 1
    assert len(fake_gateway.capture_calls) == 1
    assert len(notifier.invoices) == 1


def test_failed_event_is_retried_later(inbox, payment, fake_gateway):
    record, _ = inbox.ingest(checkout_event('evt_1', payment.gateway_order_id))
    fake_gateway.capture_error = GatewayTimeoutError("Stripe capture timed out")

    assert inbox.process(record) is False
    record.refresh_from_db()
    assert record.processed_at is None
    assert 'timed out' in record.last_error

    fake_gateway.capture_error = None
    assert inbox.process_pending() == (1, 0)
    record.refresh_from_db()
    payment.refresh_from_db()
    assert record.processed_at is not None
    assert record.attempts == 2
    assert payment.status == Payment.COMPLETED


def test_unrelated_event_is_marked_processed(inbox, db):
    record, _ = inbox.ingest({'id': 'evt_9', 'type': 'customer.created', 'data': {'object': {'id': 'cus_1'}}})
    assert inbox.process(record) is True
    assert inbox.process_pending() == (0, 0)
