import logging
from dataclasses import dataclass
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from . import gateway as gw
from .errors import (
    CheckoutConflictError,
    GatewayError,
    InvalidTransitionError,
    InvariantViolation,
    OrderNotPayableError,
    PaymentNotCancellableError,
    PaymentNotFoundError,
)
from .models import Order, Payment
from .notifications import Notifier
from .orders import OrderLifecycle

logger = logging.getLogger(__name__)

# Checkout Session events that mean "go and look at the session again"
HANDLED_WEBHOOK_EVENTS = {
    'checkout.session.completed',
    'checkout.session.async_payment_succeeded',
    'checkout.session.async_payment_failed',
    'checkout.session.expired',
}


@dataclass
class CaptureOutcome:
    payment: Payment
    already_processed: bool = False


class PaymentReconciler:
    """Keeps Payment rows and order statuses in step with the gateway.

    The synchronous capture call, webhook deliveries and the periodic
    re-check all end in the same conditional update from `pending`, so
    whichever path arrives first completes the payment and the others
    become no-ops.
    """

    def __init__(self, gateway=None, orders=None, notifier=None):
        self.gateway = gateway or gw.StripeGateway()
        self.orders = orders or OrderLifecycle()
        self.notifier = notifier or Notifier()

    def create_payment(self, order_id, user_id=None):
        order = self.orders.get_order(order_id, user_id=user_id)
        if order.status != Order.PENDING:
            raise OrderNotPayableError(order.order_no, order.status)

        existing = order.payments.filter(status=Payment.PENDING).first()
        if existing is not None:
            logger.info("Reusing pending payment %s for order %s", existing.gateway_order_id, order.order_no)
            return existing

        # Amount always comes from the stored order total
        remote = self.gateway.create_remote_order(order.total_amount, order.order_no)
        try:
            with transaction.atomic():
                locked = Order.objects.select_for_update().get(pk=order.pk)
                if locked.status != Order.PENDING or locked.total_amount != order.total_amount:
                    raise CheckoutConflictError(order.order_no)
                payment = Payment.objects.create(
                    order=locked,
                    user_id=locked.user_id,
                    gateway_order_id=remote.gateway_order_id,
                    approve_url=remote.approve_url,
                    amount=locked.total_amount,
                    status=Payment.PENDING,
                )
        except IntegrityError:
            self._discard_remote_order(remote.gateway_order_id)
            existing = order.payments.filter(status=Payment.PENDING).first()
            if existing is None:
                raise CheckoutConflictError(order.order_no)
            return existing
        except CheckoutConflictError:
            self._discard_remote_order(remote.gateway_order_id)
            raise

        logger.info("Created payment %s for order %s (%s)", payment.gateway_order_id, order.order_no, payment.amount)
        return payment

    def capture(self, gateway_order_id):
        """Capture a payment and mark its order paid.

        Idempotent: a payment that is already terminal is returned as it is,
        without calling the gateway, changing the order or sending mail. A
        timeout propagates and leaves the payment pending.
        """
        payment = self._get_payment(gateway_order_id)
        if payment.is_terminal:
            logger.info("Payment %s already %s", gateway_order_id, payment.status)
            return CaptureOutcome(payment, already_processed=True)

        order_status = Order.objects.filter(pk=payment.order_id).values_list('status', flat=True).get()
        if order_status == Order.CANCELLED:
            logger.warning("Order for payment %s was cancelled; voiding instead of capturing", gateway_order_id)
            self._cancel_payment(payment)
            payment.refresh_from_db()
            return CaptureOutcome(payment, already_processed=False)

        result = self.gateway.capture(gateway_order_id)
        if result.status == gw.COMPLETED:
            return self._complete(payment, result)
        if result.status == gw.VOIDED:
            return self._fail(payment)
        logger.info("Payment %s not captured yet (gateway status %s)", gateway_order_id, result.status)
        return CaptureOutcome(payment, already_processed=False)

    def reconcile_webhook(self, event_type, gateway_order_id):
        """Re-check a payment after a webhook.

        The event only says which payment to look at. Its claimed status is
        never written; the gateway is asked again.
        """
        if event_type not in HANDLED_WEBHOOK_EVENTS:
            logger.debug("Ignoring webhook event %s", event_type)
            return None
        payment = Payment.objects.filter(gateway_order_id=gateway_order_id).first()
        if payment is None:
            logger.warning("Webhook %s for unknown payment %s", event_type, gateway_order_id)
            return None
        if payment.is_terminal:
            logger.info("Webhook %s replayed for %s payment %s", event_type, payment.status, gateway_order_id)
            return CaptureOutcome(payment, already_processed=True)
        return self.capture(gateway_order_id)

    def cancel(self, gateway_order_id):
        payment = self._get_payment(gateway_order_id)
        if not self._cancel_payment(payment):
            payment.refresh_from_db()
            if payment.status == Payment.COMPLETED:
                raise PaymentNotCancellableError(gateway_order_id, payment.status)
            if payment.status == Payment.CANCELLED:
                return False
        return self.orders.cancel(payment.order_id)

    def cancel_order(self, order_id, user_id=None):
        """Cancel an order together with any checkout still open for it."""
        order = self.orders.get_order(order_id, user_id=user_id)
        for payment in order.payments.filter(status=Payment.PENDING):
            self._cancel_payment(payment)
        return self.orders.cancel(order.pk)

    def reconcile_pending(self, older_than=timedelta(minutes=15)):
        """Re-query the gateway for payments left pending, e.g. after a timeout."""
        cutoff = timezone.now() - older_than
        summary = {'completed': 0, 'failed': 0, 'cancelled': 0, 'pending': 0, 'errors': 0}
        for payment in Payment.objects.filter(status=Payment.PENDING, created_at__lte=cutoff):
            try:
                outcome = self.capture(payment.gateway_order_id)
            except GatewayError as e:
                logger.warning("Could not re-check payment %s: %s", payment.gateway_order_id, e.provider_message)
                summary['errors'] += 1
                continue
            summary[outcome.payment.status] += 1
        return summary

    def _complete(self, payment, result):
        if not result.capture_id:
            logger.critical("Gateway reported %s completed without a capture id", payment.gateway_order_id)
            raise InvariantViolation(f"Completed capture without capture id for {payment.gateway_order_id}.")

        now = timezone.now()
        with transaction.atomic():
            updated = Payment.objects.filter(pk=payment.pk, status=Payment.PENDING).update(
                status=Payment.COMPLETED,
                capture_id=result.capture_id,
                captured_amount=result.captured_amount,
                paid_at=now,
                updated_at=now,
            )
            if updated:
                try:
                    self.orders.update_status(payment.order_id, Order.PAID)
                except InvalidTransitionError as e:
                    # Money was taken for an order that was cancelled meanwhile
                    Payment.objects.filter(pk=payment.pk).update(refund_required=True)
                    logger.critical(
                        "Payment %s captured but order cannot become paid (%s); refund required",
                        payment.gateway_order_id, e,
                    )
        payment.refresh_from_db()
        if not updated:
            logger.info("Payment %s was completed by another request", payment.gateway_order_id)
            return CaptureOutcome(payment, already_processed=True)

        if result.captured_amount is not None and result.captured_amount != payment.amount:
            logger.critical(
                "Captured %s for payment %s but expected %s",
                result.captured_amount, payment.gateway_order_id, payment.amount,
            )
        logger.info("Payment %s completed, capture %s", payment.gateway_order_id, payment.capture_id)
        if not payment.refund_required:
            self._send_invoice(payment)
        return CaptureOutcome(payment, already_processed=False)

    def _fail(self, payment):
        updated = Payment.objects.filter(pk=payment.pk, status=Payment.PENDING).update(
            status=Payment.FAILED,
            updated_at=timezone.now(),
        )
        payment.refresh_from_db()
        if updated:
            logger.info("Payment %s failed: checkout expired or was cancelled", payment.gateway_order_id)
        return CaptureOutcome(payment, already_processed=not updated)

    def _cancel_payment(self, payment):
        updated = Payment.objects.filter(pk=payment.pk, status=Payment.PENDING).update(
            status=Payment.CANCELLED,
            updated_at=timezone.now(),
        )
        if updated:
            logger.info("Payment %s cancelled", payment.gateway_order_id)
            self._discard_remote_order(payment.gateway_order_id)
        return bool(updated)

    def _discard_remote_order(self, gateway_order_id):
        try:
            self.gateway.void(gateway_order_id)
        except GatewayError as e:
            logger.error("Could not void checkout %s at the gateway: %s", gateway_order_id, e.provider_message)

    def _send_invoice(self, payment):
        try:
            self.notifier.send_invoice(payment, payment.order, payment.user)
        except Exception:
            logger.exception("Invoice notification failed for payment %s", payment.gateway_order_id)

    @staticmethod
    def _get_payment(gateway_order_id):
        payment = Payment.objects.filter(gateway_order_id=gateway_order_id).first()
        if payment is None:
            raise PaymentNotFoundError(gateway_order_id)
        return payment
