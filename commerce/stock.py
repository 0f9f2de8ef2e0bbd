import logging

from django.db.models import F

from .errors import InsufficientStockError, InvariantViolation, ProductUnavailableError, ValidationError
from .models import Product

logger = logging.getLogger(__name__)


class StockLedger:
    """Reserve and release product units with conditional updates.

    The check and the write happen in one UPDATE statement, so two workers
    racing for the last unit cannot both succeed.
    """

    def reserve(self, product_id, quantity):
        self._check_quantity(quantity)
        updated = Product.objects.filter(pk=product_id, stock__gte=quantity).update(
            stock=F('stock') - quantity
        )
        if updated:
            logger.debug("Reserved %s unit(s) of product %s", quantity, product_id)
            return
        product = Product.objects.filter(pk=product_id).only('name', 'stock').first()
        if product is None:
            raise ProductUnavailableError(product_id)
        raise InsufficientStockError(product.name, product.stock, quantity)

    def release(self, product_id, quantity):
        self._check_quantity(quantity)
        updated = Product.objects.filter(pk=product_id).update(stock=F('stock') + quantity)
        if not updated:
            logger.critical("Cannot restore %s unit(s): product %s no longer exists", quantity, product_id)
            raise InvariantViolation(f"Stock release for missing product {product_id}.")
        logger.debug("Released %s unit(s) of product %s", quantity, product_id)

    def available(self, product_id):
        stock = Product.objects.filter(pk=product_id).values_list('stock', flat=True).first()
        if stock is None:
            raise ProductUnavailableError(product_id)
        return stock

    @staticmethod
    def _check_quantity(quantity):
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError(f"Quantity must be a positive whole number, got {quantity!r}.")
