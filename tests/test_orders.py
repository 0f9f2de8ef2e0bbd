import re
from decimal import Decimal

import pytest

from commerce.cart import CartSource
from commerce.errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidTransitionError,
    OrderNotFoundError,
    OrderNotModifiableError,
    ProductUnavailableError,
    ValidationError,
)
from commerce.models import CartItem, Order, Product
from commerce.orders import OrderLifecycle, generate_order_number
from commerce.stock import StockLedger


def test_order_number_format():
    assert re.fullmatch(r'ORD-\d{14}-[0-9A-F]{8}', generate_order_number())


def test_create_order_reserves_stock_and_sets_total(lifecycle, user, product):
    order = lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 2}])

    product.refresh_from_db()
    assert product.stock == 3
    assert order.status == Order.PENDING
    assert order.total_amount == Decimal('20.00')
    item = order.items.get()
    assert item.product_name == 'Mouse'
    assert item.price == Decimal('10.00')
    assert order.items_total() == order.total_amount


def test_item_price_is_frozen_at_order_time(lifecycle, user, product):
    order = lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 1}])
    Product.objects.filter(pk=product.pk).update(price=Decimal('99.00'))
    assert order.items.get().price == Decimal('10.00')


def test_failed_line_rolls_back_earlier_reservations(lifecycle, user, product):
    scarce = Product.objects.create(name='Keyboard', price=Decimal('30.00'), stock=1)

    with pytest.raises(InsufficientStockError):
        lifecycle.create_from_items(user.id, [
            {'product_id': product.id, 'quantity': 2},
            {'product_id': scarce.id, 'quantity': 2},
        ])

    product.refresh_from_db()
    scarce.refresh_from_db()
    assert product.stock == 5
    assert scarce.stock == 1
    assert not Order.objects.exists()


def test_unknown_product_is_rejected(lifecycle, user, db):
    with pytest.raises(ProductUnavailableError):
        lifecycle.create_from_items(user.id, [{'product_id': 4242, 'quantity': 1}])


def test_empty_item_list_is_rejected(lifecycle, user):
    with pytest.raises(ValidationError):
        lifecycle.create_from_items(user.id, [])


def test_create_from_cart_clears_cart(lifecycle, user, product):
    CartSource().add(user.id, product.id, 2)
    CartSource().add(user.id, product.id, 1)

    order = lifecycle.create_from_cart(user.id)

    assert order.items.get().quantity == 3
    assert order.total_amount == Decimal('30.00')
    assert not CartItem.objects.filter(user=user).exists()


def test_create_from_empty_cart(lifecycle, user):
    with pytest.raises(EmptyCartError):
        lifecycle.create_from_cart(user.id)


def test_cart_kept_when_order_fails(lifecycle, user, product):
    CartSource().add(user.id, product.id, 6)
    with pytest.raises(InsufficientStockError):
        lifecycle.create_from_cart(user.id)
    assert CartItem.objects.filter(user=user).count() == 1


def test_idempotency_key_returns_first_order(lifecycle, user, product):
    items = [{'product_id': product.id, 'quantity': 2}]
    first = lifecycle.create_from_items(user.id, items, idempotency_key='req-1')
    second = lifecycle.create_from_items(user.id, items, idempotency_key='req-1')

    assert first.pk == second.pk
    product.refresh_from_db()
    assert product.stock == 3


def test_idempotency_key_of_another_user(lifecycle, user, other_user, product):
    lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 1}], idempotency_key='req-1')
    with pytest.raises(ValidationError):
        lifecycle.create_from_items(other_user.id, [{'product_id': product.id, 'quantity': 1}], idempotency_key='req-1')


def test_get_order_scoped_to_user(lifecycle, user, other_user, product):
    order = lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 1}])
    assert lifecycle.get_order(order.id, user_id=user.id) == order
    with pytest.raises(OrderNotFoundError):
        lifecycle.get_order(order.id, user_id=other_user.id)


def test_add_item_updates_total(lifecycle, user, product):
    order = lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 1}])
    cable = Product.objects.create(name='Cable', price=Decimal('2.50'), stock=10)

    item = lifecycle.add_item(order.id, cable.id, 2)

    order.refresh_from_db()
    cable.refresh_from_db()
    assert item.subtotal == Decimal('5.00')
    assert order.total_amount == Decimal('15.00')
    assert order.total_amount == order.items_total()
    assert cable.stock == 8


def test_add_item_to_paid_order(paid_order, lifecycle, product):
    with pytest.raises(OrderNotModifiableError):
        lifecycle.add_item(paid_order.id, product.id, 1)


def test_add_item_after_checkout_started(lifecycle, reconciler, user, product):
    order = lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 1}])
    reconciler.create_payment(order.id)
    with pytest.raises(OrderNotModifiableError):
        lifecycle.add_item(order.id, product.id, 1)
    product.refresh_from_db()
    assert product.stock == 4


def test_status_moves_forward(lifecycle, user, product):
    order = lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 1}])
    assert lifecycle.update_status(order.id, Order.PAID).status == Order.PAID
    assert lifecycle.update_status(order.id, Order.DELIVERED).status == Order.DELIVERED


def test_invalid_transition(lifecycle, user, product):
    order = lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 1}])
    with pytest.raises(InvalidTransitionError):
        lifecycle.update_status(order.id, Order.DELIVERED)
    order.refresh_from_db()
    assert order.status == Order.PENDING


def test_unknown_status(lifecycle, user, product):
    order = lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 1}])
    with pytest.raises(ValidationError):
        lifecycle.update_status(order.id, 'shipped')


def test_cancel_restores_stock_once(lifecycle, user, product):
    order = lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 2}])

    assert lifecycle.cancel(order.id) is True
    assert lifecycle.cancel(order.id) is False

    product.refresh_from_db()
    order.refresh_from_db()
    assert product.stock == 5
    assert order.status == Order.CANCELLED


def test_cancel_delivered_order_is_a_no_op(lifecycle, user, product):
    order = lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 2}])
    lifecycle.update_status(order.id, Order.PAID)
    lifecycle.update_status(order.id, Order.DELIVERED)

    assert lifecycle.cancel(order.id) is False
    product.refresh_from_db()
    assert product.stock == 3


def test_cancel_via_update_status(lifecycle, user, product):
    order = lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 2}])
    assert lifecycle.update_status(order.id, Order.CANCELLED).status == Order.CANCELLED
    with pytest.raises(InvalidTransitionError):
        lifecycle.update_status(order.id, Order.CANCELLED)


def test_cancel_missing_order(lifecycle, db):
    with pytest.raises(OrderNotFoundError):
        lifecycle.cancel(12345)


class InterleavedLedger(StockLedger):
    """Runs `before_reserve` once, just ahead of the first reservation."""

    def __init__(self, before_reserve):
        self.before_reserve = before_reserve

    def reserve(self, product_id, quantity):
        hook, self.before_reserve = self.before_reserve, None
        if hook is not None:
            hook()
        super().reserve(product_id, quantity)


def test_two_checkouts_for_the_last_unit(user, other_user, product):
    Product.objects.filter(pk=product.pk).update(stock=1)
    rival = OrderLifecycle()
    placed = []

    def rival_checkout():
        placed.append(rival.create_from_items(other_user.id, [{'product_id': product.id, 'quantity': 1}]))

    lifecycle = OrderLifecycle(stock=InterleavedLedger(rival_checkout))

    with pytest.raises(InsufficientStockError):
        lifecycle.create_from_items(user.id, [{'product_id': product.id, 'quantity': 1}])

    product.refresh_from_db()
    assert product.stock == 0
    assert [order.user_id for order in Order.objects.all()] == [other_user.id]
    assert placed[0].items.get().quantity == 1
