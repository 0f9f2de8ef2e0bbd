import logging
import uuid
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from .cart import CartLine, CartSource
from .errors import (
    EmptyCartError,
    InvalidTransitionError,
    OrderNotFoundError,
    OrderNotModifiableError,
    OrderNumberCollisionError,
    ProductUnavailableError,
    ValidationError,
)
from .models import Order, OrderItem, Payment, Product, ReturnRequest
from .stock import StockLedger

logger = logging.getLogger(__name__)


def generate_order_number():
    return f"ORD-{timezone.now():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8].upper()}"


class OrderLifecycle:
    """Creates orders, appends items and moves orders through their statuses.

    Stock reservations and order rows are written in the same transaction:
    a failure anywhere in a call rolls back every reservation it made.
    """

    def __init__(self, stock=None, cart=None):
        self.stock = stock or StockLedger()
        self.cart = cart or CartSource()

    def get_order(self, order_id, user_id=None):
        orders = Order.objects.all()
        if user_id is not None:
            orders = orders.filter(user_id=user_id)
        order = orders.filter(pk=order_id).first()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def create_from_cart(self, user_id):
        lines = self.cart.get_items(user_id)
        if not lines:
            raise EmptyCartError(user_id)
        return self._place_order(user_id, lines, clear_cart=True)

    def create_from_items(self, user_id, items, idempotency_key=None):
        """Create an order from an explicit list of lines.

        A retried request carrying the same idempotency key gets the order
        created by the first request back, without reserving stock again.
        """
        if not items:
            raise ValidationError("Order items cannot be empty.")
        if idempotency_key:
            existing = self._find_by_idempotency_key(user_id, idempotency_key)
            if existing is not None:
                return existing
        lines = [item if isinstance(item, CartLine) else CartLine(**item) for item in items]
        return self._place_order(user_id, lines, idempotency_key=idempotency_key)

    def add_item(self, order_id, product_id, quantity):
        with transaction.atomic():
            # Row lock keeps payment creation from reading a total that is about to change
            order = Order.objects.select_for_update().filter(pk=order_id).first()
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.status != Order.PENDING:
                raise OrderNotModifiableError(order.order_no, f"order is {order.status}")
            if order.payments.filter(status=Payment.PENDING).exists():
                raise OrderNotModifiableError(order.order_no, "checkout has already started")

            item = self._reserve_line(order, product_id, quantity)
            Order.objects.filter(pk=order.pk).update(
                total_amount=F('total_amount') + item.subtotal,
                updated_at=timezone.now(),
            )
        logger.info("Added %sx %s to order %s", quantity, item.product_name, order.order_no)
        return item

    def update_status(self, order_id, new_status):
        if new_status not in Order.TRANSITIONS:
            raise ValidationError(f"Unknown order status '{new_status}'.")
        order = self.get_order(order_id)
        if new_status == Order.CANCELLED:
            if not self.cancel(order.pk):
                order.refresh_from_db(fields=['status'])
                raise InvalidTransitionError(order.status, new_status)
            order.refresh_from_db()
            return order

        if not Order.can_transition(order.status, new_status):
            raise InvalidTransitionError(order.status, new_status)
        updated = Order.objects.filter(pk=order.pk, status=order.status).update(
            status=new_status,
            updated_at=timezone.now(),
        )
        if not updated:
            # Someone else moved the order first
            previous = order.status
            order.refresh_from_db(fields=['status'])
            logger.warning("Order %s changed from %s to %s concurrently", order.order_no, previous, order.status)
            raise InvalidTransitionError(order.status, new_status)
        order.refresh_from_db()
        logger.info("Order %s is now %s", order.order_no, new_status)
        return order

    def cancel(self, order_id):
        """Cancel a pending or paid order and put its stock back.

        Items whose return was already refunded were restocked then and are
        skipped here.

        Returns False without side effects when the order is already
        delivered or cancelled, so repeated cancel requests are harmless.
        """
        with transaction.atomic():
            # Same row lock as refund completion, so units are restored by one path only
            order = Order.objects.select_for_update().filter(pk=order_id).only('order_no', 'status').first()
            if order is None:
                raise OrderNotFoundError(order_id)
            updated = Order.objects.filter(
                pk=order_id,
                status__in=[Order.PENDING, Order.PAID],
            ).update(status=Order.CANCELLED, updated_at=timezone.now())
            if not updated:
                logger.info("Cancel ignored for order %s: already terminal", order.order_no)
                return False

            lines = (
                OrderItem.objects.filter(order_id=order_id)
                .exclude(returns__refund_status=ReturnRequest.REFUND_COMPLETED)
                .values_list('product_id', 'quantity')
            )
            for product_id, quantity in lines:
                self.stock.release(product_id, quantity)

        if order.status == Order.PAID:
            logger.warning("Order %s was cancelled after payment; refund must be issued", order.order_no)
        logger.info("Order %s cancelled", order.order_no)
        return True

    def _place_order(self, user_id, lines, clear_cart=False, idempotency_key=None):
        order_no = generate_order_number()
        try:
            with transaction.atomic():
                order = Order.objects.create(
                    user_id=user_id,
                    order_no=order_no,
                    status=Order.PENDING,
                    total_amount=Decimal('0.00'),
                    idempotency_key=idempotency_key,
                )
                total = Decimal('0.00')
                for line in lines:
                    item = self._reserve_line(order, line.product_id, line.quantity)
                    total += item.subtotal
                order.total_amount = total
                order.save(update_fields=['total_amount', 'updated_at'])
                if clear_cart:
                    self.cart.clear(user_id)
        except IntegrityError:
            if idempotency_key:
                existing = self._find_by_idempotency_key(user_id, idempotency_key)
                if existing is not None:
                    return existing
            logger.warning("Order number collision on %s", order_no)
            raise OrderNumberCollisionError(order_no)

        logger.info("Created order %s for user %s, total %s", order.order_no, user_id, order.total_amount)
        return order

    def _reserve_line(self, order, product_id, quantity):
        # Price comes from the product now, not from whatever the cart saw earlier
        product = Product.objects.filter(pk=product_id).first()
        if product is None:
            raise ProductUnavailableError(product_id)
        self.stock.reserve(product.pk, quantity)
        return OrderItem.objects.create(
            order=order,
            product=product,
            product_name=product.name,
            quantity=quantity,
            price=product.price,
        )

    @staticmethod
    def _find_by_idempotency_key(user_id, idempotency_key):
        existing = Order.objects.filter(idempotency_key=idempotency_key).first()
        if existing is not None and existing.user_id != user_id:
            raise ValidationError("This idempotency key has already been used.")
        return existing
