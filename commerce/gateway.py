"""Stripe client used by the payment and refund services.

The adapter translates between Stripe objects and the small set of values the
services need. It never deduplicates: callers check local state first.
"""
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import stripe
from stripe._error import APIConnectionError, InvalidRequestError, SignatureVerificationError, StripeError
from django.conf import settings

from .errors import GatewayError, GatewayTimeoutError, ValidationError

logger = logging.getLogger(__name__)

COMPLETED = 'COMPLETED'
PENDING = 'PENDING'
VOIDED = 'VOIDED'
FAILED = 'FAILED'

# PaymentIntent states after which the customer can no longer pay
_VOIDED_INTENT_STATUSES = {'canceled'}
_CANCELLABLE_INTENT_STATUSES = {
    'requires_payment_method',
    'requires_confirmation',
    'requires_action',
    'requires_capture',
}
_REFUND_STATUSES = {
    'succeeded': COMPLETED,
    'pending': PENDING,
    'requires_action': PENDING,
    'failed': FAILED,
    'canceled': FAILED,
}


@dataclass(frozen=True)
class RemoteOrder:
    gateway_order_id: str
    approve_url: str


@dataclass(frozen=True)
class CaptureResult:
    status: str
    capture_id: Optional[str] = None
    captured_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str


def to_minor_units(amount) -> int:
    """Convert a decimal amount to the smallest currency unit (paise, cents)."""
    return int((Decimal(amount) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def from_minor_units(value) -> Decimal:
    return (Decimal(value) / 100).quantize(Decimal('0.01'))


def _get(obj, key, default=None):
    if obj is None:
        return default
    try:
        return obj[key]
    except (KeyError, TypeError):
        return default


def _object_id(value):
    """Stripe returns either an id string or the expanded object."""
    if value is None or isinstance(value, str):
        return value
    return value.id


@contextmanager
def _translate_errors(action):
    try:
        yield
    except APIConnectionError as e:
        logger.warning("Stripe %s: connection failed or timed out: %s", action, e)
        raise GatewayTimeoutError(f"Stripe {action} timed out", provider_message=str(e)) from e
    except StripeError as e:
        message = getattr(e, 'user_message', None) or str(e)
        logger.error("Stripe %s failed: %s", action, message)
        raise GatewayError(f"Stripe {action} failed", provider_message=message) from e


class StripeGateway:
    """Checkout Sessions with manual capture, and refunds against charges."""

    def __init__(self, api_key=None, currency=None, timeout=None, webhook_secret=None):
        stripe.api_key = api_key or settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = 2
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout or settings.PAYMENT_GATEWAY_TIMEOUT)
        self.currency = currency or settings.STORE_CURRENCY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET

    def create_remote_order(self, amount, reference_id) -> RemoteOrder:
        with _translate_errors('create checkout session'):
            session = stripe.checkout.Session.create(
                mode='payment',
                payment_method_types=['card'],
                line_items=[{
                    'price_data': {
                        'currency': self.currency,
                        'product_data': {'name': f'Order {reference_id}'},
                        'unit_amount': to_minor_units(amount),
                    },
                    'quantity': 1,
                }],
                payment_intent_data={
                    'capture_method': 'manual',
                    'metadata': {'order_no': reference_id},
                },
                client_reference_id=reference_id,
                metadata={'order_no': reference_id},
                success_url=settings.CHECKOUT_SUCCESS_URL,
                cancel_url=settings.CHECKOUT_CANCEL_URL,
            )
        logger.info("Created checkout session %s for %s", session.id, reference_id)
        return RemoteOrder(gateway_order_id=session.id, approve_url=session.url)

    def capture(self, gateway_order_id) -> CaptureResult:
        """Capture the authorised payment of a checkout session.

        Safe to call again for a session that was already captured: the
        current PaymentIntent state is read back and reported.
        """
        with _translate_errors('capture'):
            session = stripe.checkout.Session.retrieve(gateway_order_id, expand=['payment_intent'])
            intent = session.payment_intent
            if intent is None:
                status = VOIDED if session.status == 'expired' else PENDING
                return CaptureResult(status=status)
            if isinstance(intent, str):
                intent = stripe.PaymentIntent.retrieve(intent)

            if intent.status == 'requires_capture':
                try:
                    intent = stripe.PaymentIntent.capture(intent.id)
                except InvalidRequestError:
                    # Captured by a concurrent request; read the result instead
                    intent = stripe.PaymentIntent.retrieve(intent.id)

        if intent.status == 'succeeded':
            return CaptureResult(
                status=COMPLETED,
                capture_id=_object_id(intent.latest_charge),
                captured_amount=from_minor_units(intent.amount_received),
            )
        if intent.status in _VOIDED_INTENT_STATUSES:
            return CaptureResult(status=VOIDED)
        return CaptureResult(status=PENDING)

    def void(self, gateway_order_id):
        with _translate_errors('void'):
            session = stripe.checkout.Session.retrieve(gateway_order_id)
            if session.status == 'open':
                stripe.checkout.Session.expire(gateway_order_id)
                return
            intent_id = _object_id(session.payment_intent)
            if intent_id is None:
                return
            intent = stripe.PaymentIntent.retrieve(intent_id)
            if intent.status in _CANCELLABLE_INTENT_STATUSES:
                stripe.PaymentIntent.cancel(intent_id)

    def refund(self, capture_id, amount, note, reference_id, idempotency_key) -> RefundResult:
        with _translate_errors('refund'):
            refund = stripe.Refund.create(
                charge=capture_id,
                amount=to_minor_units(amount),
                reason='requested_by_customer',
                metadata={'return_reference': reference_id, 'note': note},
                idempotency_key=idempotency_key,
            )
        logger.info("Issued refund %s on charge %s (%s)", refund.id, capture_id, refund.status)
        return self._refund_result(refund)

    def get_refund(self, refund_id) -> RefundResult:
        with _translate_errors('refund lookup'):
            refund = stripe.Refund.retrieve(refund_id)
        return self._refund_result(refund)

    def find_refund(self, capture_id, reference_id) -> Optional[RefundResult]:
        """Return the refund already issued for `reference_id`, if any."""
        with _translate_errors('refund lookup'):
            refunds = stripe.Refund.list(charge=capture_id, limit=100)
            for refund in refunds.auto_paging_iter():
                if _get(refund.metadata, 'return_reference') == reference_id:
                    return self._refund_result(refund)
        return None

    def construct_event(self, payload, signature):
        """Verify and parse a webhook body. Without a secret the body is only parsed."""
        try:
            if self.webhook_secret:
                return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
            return _parse_json(payload)
        except (ValueError, SignatureVerificationError) as e:
            raise ValidationError(f"Invalid webhook payload: {e}") from e

    @staticmethod
    def _refund_result(refund):
        return RefundResult(refund_id=refund.id, status=_REFUND_STATUSES.get(refund.status, PENDING))


def _parse_json(payload):
    if isinstance(payload, bytes):
        payload = payload.decode('utf-8')
    return json.loads(payload)
