import logging
from datetime import timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone

from . import gateway as gw
from .errors import (
    AlreadyRefundedError,
    DuplicateReturnError,
    GatewayError,
    MissingCaptureIdError,
    NoCompletedPaymentError,
    OrderItemNotFoundError,
    OrderNotReturnableError,
    RefundInProgressError,
    RefundProcessingError,
    ReturnNotFoundError,
    ReturnNotPendingError,
    ReturnWindowExpiredError,
    StoreError,
    ValidationError,
)
from .models import Order, OrderItem, Payment, ReturnRequest
from .stock import StockLedger

logger = logging.getLogger(__name__)

RETURNABLE_ORDER_STATUSES = (Order.PAID, Order.DELIVERED)


def no_refund_in_flight():
    """Returns whose refund, if any, was never accepted by the gateway."""
    return Q(refund_status=ReturnRequest.REFUND_FAILED) | Q(
        refund_status=ReturnRequest.REFUND_PENDING, refund_id__isnull=True
    )


class ReturnRefundProcessor:
    """Return requests for single order items and the refunds behind them.

    A return becomes `approved` only after its refund completed. Refund
    work on one return is serialised by claiming `refund_status` with a
    conditional update, and a retry always asks the gateway whether a
    refund already exists before issuing another one.
    """

    def __init__(self, gateway=None, stock=None, window_days=None):
        self.gateway = gateway or gw.StripeGateway()
        self.stock = stock or StockLedger()
        self.window_days = window_days if window_days is not None else settings.RETURN_WINDOW_DAYS

    def get_return(self, return_id, user_id=None):
        returns = ReturnRequest.objects.select_related('order_item__order')
        if user_id is not None:
            returns = returns.filter(user_id=user_id)
        ret = returns.filter(pk=return_id).first()
        if ret is None:
            raise ReturnNotFoundError(return_id)
        return ret

    def request_return(self, user_id, order_item_id, reason):
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to request a return.")

        item = OrderItem.objects.select_related('order').filter(pk=order_item_id, order__user_id=user_id).first()
        if item is None:
            raise OrderItemNotFoundError(order_item_id)
        order = item.order
        if timezone.now() - order.order_date > timedelta(days=self.window_days):
            raise ReturnWindowExpiredError(self.window_days)
        if order.status not in RETURNABLE_ORDER_STATUSES:
            raise OrderNotReturnableError(order.order_no, order.status)
        if ReturnRequest.objects.filter(order_item=item).exclude(status=ReturnRequest.CANCELLED).exists():
            raise DuplicateReturnError(order_item_id)

        try:
            with transaction.atomic():
                ret = ReturnRequest.objects.create(
                    user_id=user_id,
                    order_item=item,
                    reason=reason.strip(),
                    status=ReturnRequest.PENDING,
                    refund_status=ReturnRequest.REFUND_PENDING,
                )
        except IntegrityError:
            # Lost a race with another request for the same item
            raise DuplicateReturnError(order_item_id) from None
        logger.info("Return %s requested for item %s of order %s", ret.pk, item.pk, order.order_no)
        return ret

    def update_status(self, return_id, status):
        if status not in (ReturnRequest.APPROVED, ReturnRequest.REJECTED, ReturnRequest.CANCELLED):
            raise ValidationError(f"Cannot set return status to '{status}'.")
        ret = self.get_return(return_id)
        if status == ReturnRequest.APPROVED:
            return self._approve(ret)
        if status == ReturnRequest.REJECTED:
            return self._reject(ret)
        self.cancel_return(ret.pk)
        ret.refresh_from_db()
        return ret

    def process_refund(self, return_id):
        """Refund one returned item and put its units back in stock.

        Raises AlreadyRefundedError once the refund has completed. On a
        gateway failure the return keeps `refund_status=failed` and calling
        this again is the way to recover.
        """
        ret = self.get_return(return_id)
        if ret.refund_status == ReturnRequest.REFUND_COMPLETED:
            raise AlreadyRefundedError(ret.pk)
        if ret.status in (ReturnRequest.REJECTED, ReturnRequest.CANCELLED):
            raise ReturnNotPendingError(ret.pk, ret.status)

        item = ret.order_item
        order = item.order
        if order.status == Order.CANCELLED:
            raise OrderNotReturnableError(order.order_no, order.status)
        payment = (
            Payment.objects.filter(order_id=order.pk, status=Payment.COMPLETED)
            .order_by('-paid_at')
            .first()
        )
        if payment is None:
            raise NoCompletedPaymentError(order.order_no)
        if not payment.capture_id:
            logger.critical("Completed payment %s has no capture id", payment.gateway_order_id)
            raise MissingCaptureIdError(payment.gateway_order_id)
        amount = item.price * item.quantity

        claimed = ReturnRequest.objects.filter(
            pk=ret.pk,
            refund_status__in=[ReturnRequest.REFUND_PENDING, ReturnRequest.REFUND_FAILED],
        ).update(
            refund_status=ReturnRequest.REFUND_PROCESSING,
            refund_attempts=F('refund_attempts') + 1,
            refund_error='',
        )
        if not claimed:
            ret.refresh_from_db()
            if ret.refund_status == ReturnRequest.REFUND_COMPLETED:
                raise AlreadyRefundedError(ret.pk)
            raise RefundInProgressError(ret.pk)
        ret.refresh_from_db()

        try:
            result = self._issue_or_find_refund(ret, payment, item, amount)
        except GatewayError as e:
            self._record_failure(ret, e.provider_message)
            raise
        except Exception as e:
            self._record_failure(ret, str(e))
            raise

        if result.status == gw.COMPLETED:
            self._record_completed(ret, item, result, amount)
        elif result.status == gw.PENDING:
            ReturnRequest.objects.filter(pk=ret.pk, refund_status=ReturnRequest.REFUND_PROCESSING).update(
                refund_status=ReturnRequest.REFUND_PENDING,
                refund_id=result.refund_id,
                refund_amount=amount,
            )
            logger.info("Refund %s for return %s is pending at the gateway", result.refund_id, ret.pk)
        else:
            message = f"Refund {result.refund_id} was declined by the gateway"
            self._record_failure(ret, message, refund_id=result.refund_id)
            raise GatewayError(message)

        ret.refresh_from_db()
        return ret

    def cancel_return(self, return_id, user_id=None):
        """Withdraw a pending return. Returns False if it was already cancelled."""
        ret = self.get_return(return_id, user_id=user_id)
        if ret.refund_status == ReturnRequest.REFUND_COMPLETED:
            raise AlreadyRefundedError(ret.pk)
        if ret.status == ReturnRequest.CANCELLED:
            return False
        if ret.status != ReturnRequest.PENDING:
            raise ReturnNotPendingError(ret.pk, ret.status)

        updated = ReturnRequest.objects.filter(no_refund_in_flight(), pk=ret.pk, status=ReturnRequest.PENDING).update(
            status=ReturnRequest.CANCELLED,
            decided_at=timezone.now(),
        )
        if not updated:
            ret.refresh_from_db()
            if ret.refund_status == ReturnRequest.REFUND_COMPLETED:
                raise AlreadyRefundedError(ret.pk)
            if ret.status == ReturnRequest.CANCELLED:
                return False
            if ret.status == ReturnRequest.PENDING:
                raise RefundInProgressError(ret.pk)
            raise ReturnNotPendingError(ret.pk, ret.status)
        logger.info("Return %s cancelled", ret.pk)
        return True

    def _approve(self, ret):
        if ret.status != ReturnRequest.PENDING:
            raise ReturnNotPendingError(ret.pk, ret.status)

        # Completed earlier but the approval itself was never written
        if ret.refund_status != ReturnRequest.REFUND_COMPLETED:
            order = ret.order_item.order
            if order.status == Order.CANCELLED:
                raise OrderNotReturnableError(order.order_no, order.status)
            try:
                ret = self.process_refund(ret.pk)
            except StoreError as e:
                logger.error("Approval of return %s failed: %s", ret.pk, e)
                raise RefundProcessingError(ret.pk, e) from e
            if ret.refund_status != ReturnRequest.REFUND_COMPLETED:
                return ret

        updated = ReturnRequest.objects.filter(
            pk=ret.pk,
            status=ReturnRequest.PENDING,
            refund_status=ReturnRequest.REFUND_COMPLETED,
        ).update(status=ReturnRequest.APPROVED, decided_at=timezone.now())
        ret.refresh_from_db()
        if not updated and ret.status != ReturnRequest.APPROVED:
            raise ReturnNotPendingError(ret.pk, ret.status)
        logger.info("Return %s approved, refunded %s", ret.pk, ret.refund_amount)
        return ret

    def _reject(self, ret):
        if ret.refund_status == ReturnRequest.REFUND_COMPLETED:
            raise AlreadyRefundedError(ret.pk)
        updated = ReturnRequest.objects.filter(
            no_refund_in_flight(),
            pk=ret.pk,
            status=ReturnRequest.PENDING,
        ).update(status=ReturnRequest.REJECTED, decided_at=timezone.now())
        ret.refresh_from_db()
        if not updated:
            if ret.status == ReturnRequest.PENDING:
                raise RefundInProgressError(ret.pk)
            raise ReturnNotPendingError(ret.pk, ret.status)
        logger.info("Return %s rejected", ret.pk)
        return ret

    def _issue_or_find_refund(self, ret, payment, item, amount):
        reference = f"return-{ret.pk}"
        if ret.refund_id:
            known = self.gateway.get_refund(ret.refund_id)
            if known.status != gw.FAILED:
                return known
        else:
            issued = self.gateway.find_refund(payment.capture_id, reference)
            if issued is not None and issued.status != gw.FAILED:
                logger.warning("Refund %s for return %s was already issued; reusing it", issued.refund_id, ret.pk)
                return issued

        note = f"Return of {item.quantity} x {item.product_name} from order {item.order.order_no}"
        return self.gateway.refund(
            payment.capture_id,
            amount,
            note=note,
            reference_id=reference,
            idempotency_key=f"{reference}-attempt-{ret.refund_attempts}",
        )

    def _record_completed(self, ret, item, result, amount):
        with transaction.atomic():
            # Cancelling the order takes the same lock and restocks unrefunded items itself
            order_status = (
                Order.objects.select_for_update()
                .filter(pk=item.order_id)
                .values_list('status', flat=True)
                .get()
            )
            updated = ReturnRequest.objects.filter(
                pk=ret.pk,
                refund_status=ReturnRequest.REFUND_PROCESSING,
            ).update(
                refund_status=ReturnRequest.REFUND_COMPLETED,
                refund_id=result.refund_id,
                refund_amount=amount,
                refunded_at=timezone.now(),
                refund_error='',
            )
            if updated and order_status != Order.CANCELLED:
                self.stock.release(item.product_id, item.quantity)
        if updated and order_status == Order.CANCELLED:
            logger.warning(
                "Refund %s completed for return %s after order %s was cancelled; stock already restored",
                result.refund_id, ret.pk, item.order.order_no,
            )
        elif updated:
            logger.info("Refund %s completed for return %s: %s", result.refund_id, ret.pk, amount)

    @staticmethod
    def _record_failure(ret, message, refund_id=None):
        changes = {'refund_status': ReturnRequest.REFUND_FAILED, 'refund_error': message or ''}
        if refund_id:
            changes['refund_id'] = refund_id
        ReturnRequest.objects.filter(pk=ret.pk, refund_status=ReturnRequest.REFUND_PROCESSING).update(**changes)
        logger.warning("Refund for return %s failed: %s", ret.pk, message)
