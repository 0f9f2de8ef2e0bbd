from dataclasses import dataclass

from .models import CartItem


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int


class CartSource:
    """Read access to a user's cart, backed by CartItem rows."""

    def get_items(self, user_id):
        rows = CartItem.objects.filter(user_id=user_id).values_list('product_id', 'quantity')
        return [CartLine(product_id=product_id, quantity=quantity) for product_id, quantity in rows]

    def add(self, user_id, product_id, quantity=1):
        item, created = CartItem.objects.get_or_create(
            user_id=user_id,
            product_id=product_id,
            defaults={'quantity': quantity},
        )
        if not created:
            item.quantity += quantity
            item.save(update_fields=['quantity'])
        return item

    def clear(self, user_id):
        CartItem.objects.filter(user_id=user_id).delete()
