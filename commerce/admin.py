from django.contrib import admin
from .models import Product, CartItem, Order, OrderItem, Payment, ReturnRequest, OneTimePassword, WebhookEvent


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['name', 'price', 'stock', 'created_at']
    list_filter = ['created_at']
    search_fields = ['name', 'description']


@admin.register(CartItem)
class CartItemAdmin(admin.ModelAdmin):
    list_display = ['user', 'product', 'quantity', 'added_at']
    search_fields = ['user__username', 'product__name']


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ['product', 'product_name', 'quantity', 'price']


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    fields = ['gateway_order_id', 'status', 'amount', 'capture_id', 'paid_at', 'refund_required']
    readonly_fields = fields


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ['order_no', 'user', 'status', 'total_amount', 'order_date']
    list_filter = ['status', 'order_date']
    search_fields = ['order_no', 'user__username']
    readonly_fields = ['order_no', 'status', 'total_amount', 'order_date', 'updated_at', 'idempotency_key']
    inlines = [OrderItemInline, PaymentInline]

    def has_add_permission(self, request):
        return False  # Orders should only be created through OrderLifecycle


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ['gateway_order_id', 'order', 'status', 'amount', 'captured_amount', 'paid_at', 'refund_required']
    list_filter = ['status', 'method', 'refund_required']
    search_fields = ['gateway_order_id', 'capture_id', 'order__order_no']
    readonly_fields = [f.name for f in Payment._meta.fields]

    def has_add_permission(self, request):
        return False


@admin.register(ReturnRequest)
class ReturnRequestAdmin(admin.ModelAdmin):
    list_display = ['id', 'order_item', 'status', 'refund_status', 'refund_amount', 'requested_at']
    list_filter = ['status', 'refund_status']
    search_fields = ['order_item__order__order_no', 'refund_id']
    # Decisions and refunds go through ReturnRefundProcessor
    readonly_fields = [
        'status', 'decided_at', 'refund_status', 'refund_id', 'refund_amount',
        'refunded_at', 'refund_attempts', 'refund_error',
    ]

    def has_add_permission(self, request):
        return False


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    list_display = ['event_id', 'event_type', 'gateway_order_id', 'received_at', 'processed_at', 'attempts']
    list_filter = ['event_type']
    search_fields = ['event_id', 'gateway_order_id']


@admin.register(OneTimePassword)
class OneTimePasswordAdmin(admin.ModelAdmin):
    list_display = ['user', 'purpose', 'expires_at', 'is_used', 'attempts']
    list_filter = ['purpose', 'is_used']
    exclude = ['code_hash']
