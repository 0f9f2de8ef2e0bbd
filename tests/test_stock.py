from decimal import Decimal

import pytest

from commerce.errors import InsufficientStockError, InvariantViolation, ProductUnavailableError, ValidationError
from commerce.models import Product
from commerce.stock import StockLedger


@pytest.fixture
def ledger():
    return StockLedger()


def test_reserve_decrements_stock(ledger, product):
    ledger.reserve(product.id, 2)
    product.refresh_from_db()
    assert product.stock == 3


def test_reserve_more_than_available_leaves_stock_untouched(ledger, product):
    with pytest.raises(InsufficientStockError) as exc:
        ledger.reserve(product.id, 6)
    assert exc.value.available == 5
    assert exc.value.requested == 6
    product.refresh_from_db()
    assert product.stock == 5


def test_reserve_last_units_then_nothing_left(ledger, product):
    ledger.reserve(product.id, 5)
    with pytest.raises(InsufficientStockError):
        ledger.reserve(product.id, 1)
    assert ledger.available(product.id) == 0


def test_reserve_unknown_product(ledger, db):
    with pytest.raises(ProductUnavailableError):
        ledger.reserve(9999, 1)


@pytest.mark.parametrize('quantity', [0, -1, 1.5, True])
def test_reserve_rejects_bad_quantity(ledger, product, quantity):
    with pytest.raises(ValidationError):
        ledger.reserve(product.id, quantity)


def test_release_returns_units(ledger, product):
    ledger.reserve(product.id, 3)
    ledger.release(product.id, 3)
    assert ledger.available(product.id) == 5


def test_release_for_deleted_product_is_an_invariant_violation(ledger, db):
    gone = Product.objects.create(name='Old', price=Decimal('1.00'), stock=0)
    gone_id = gone.id
    gone.delete()
    with pytest.raises(InvariantViolation):
        ledger.release(gone_id, 1)
