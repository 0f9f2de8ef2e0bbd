import json
from decimal import Decimal

import pytest
from django.contrib.auth.models import User

from commerce import gateway as gw
from commerce.errors import ValidationError
from commerce.models import Product
from commerce.orders import OrderLifecycle
from commerce.payments import PaymentReconciler
from commerce.returns import ReturnRefundProcessor


class FakeGateway:
    """In-memory stand-in for StripeGateway.

    Set `capture_status`, `refund_status` or the `*_error` attributes to
    steer the next calls.
    """

    def __init__(self):
        self.sessions = {}
        self.refunds = {}
        self.voided = []
        self.capture_calls = []
        self.refund_calls = []
        self.capture_status = gw.COMPLETED
        self.captured_amount = None
        self.capture_error = None
        self.refund_status = gw.COMPLETED
        self.refund_error = None

    def create_remote_order(self, amount, reference_id):
        gateway_order_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions[gateway_order_id] = {'amount': Decimal(amount), 'reference': reference_id}
        return gw.RemoteOrder(gateway_order_id, f"https://checkout.stripe.test/{gateway_order_id}")

    def capture(self, gateway_order_id):
        self.capture_calls.append(gateway_order_id)
        if self.capture_error is not None:
            raise self.capture_error
        if self.capture_status != gw.COMPLETED:
            return gw.CaptureResult(status=self.capture_status)
        amount = self.captured_amount or self.sessions[gateway_order_id]['amount']
        return gw.CaptureResult(status=gw.COMPLETED, capture_id=f"ch_{gateway_order_id}", captured_amount=amount)

    def void(self, gateway_order_id):
        self.voided.append(gateway_order_id)

    def refund(self, capture_id, amount, note, reference_id, idempotency_key):
        self.refund_calls.append({'capture_id': capture_id, 'amount': amount, 'idempotency_key': idempotency_key})
        if self.refund_error is not None:
            raise self.refund_error
        return self.add_refund(capture_id, amount, reference_id, self.refund_status)

    def add_refund(self, capture_id, amount, reference_id, status):
        refund_id = f"re_{len(self.refunds) + 1}"
        self.refunds[refund_id] = {
            'capture_id': capture_id,
            'amount': amount,
            'reference': reference_id,
            'status': status,
        }
        return gw.RefundResult(refund_id=refund_id, status=status)

    def get_refund(self, refund_id):
        return gw.RefundResult(refund_id=refund_id, status=self.refunds[refund_id]['status'])

    def find_refund(self, capture_id, reference_id):
        for refund_id, refund in self.refunds.items():
            if refund['capture_id'] == capture_id and refund['reference'] == reference_id:
                return gw.RefundResult(refund_id=refund_id, status=refund['status'])
        return None

    def construct_event(self, payload, signature):
        try:
            return json.loads(payload)
        except ValueError as e:
            raise ValidationError(f"Invalid webhook payload: {e}") from e


class FakeNotifier:
    def __init__(self):
        self.invoices = []
        self.codes = []
        self.invoice_error = None

    def send_invoice(self, payment, order, user):
        if self.invoice_error is not None:
            raise self.invoice_error
        self.invoices.append(order.order_no)
        return True

    def send_otp(self, user, destination, code, purpose, expiry_minutes):
        self.codes.append((destination, code, purpose))


@pytest.fixture
def user(db):
    return User.objects.create_user(username='asha', email='asha@example.com', password='pass12345')


@pytest.fixture
def other_user(db):
    return User.objects.create_user(username='ravi', email='ravi@example.com', password='pass12345')


@pytest.fixture
def staff_user(db):
    return User.objects.create_user(username='ops', email='ops@example.com', password='pass12345', is_staff=True)


@pytest.fixture
def product(db):
    return Product.objects.create(name='Mouse', price=Decimal('10.00'), stock=5)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def lifecycle():
    return OrderLifecycle()


@pytest.fixture
def reconciler(fake_gateway, lifecycle, notifier):
    return PaymentReconciler(gateway=fake_gateway, orders=lifecycle, notifier=notifier)


@pytest.fixture
def processor(fake_gateway):
    return ReturnRefundProcessor(gateway=fake_gateway, window_days=30)


@pytest.fixture
def paid_order(user, product, lifecycle, reconciler):
    """Order for 2 x 10.00 of `product`, captured through the fake gateway."""
    order = lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 2}])
    payment = reconciler.create_payment(order.id)
    reconciler.capture(payment.gateway_order_id)
    order.refresh_from_db()
    return order
