from django.db import models
from django.db.models import Q
from django.conf import settings
from django.core.validators import MinValueValidator
from django.utils import timezone
from decimal import Decimal


class Product(models.Model):
    """Products available for purchase. `stock` is the reservation ledger."""
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    price = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(Decimal('0.01'))])
    stock = models.IntegerField(default=0, validators=[MinValueValidator(0)])
    image_url = models.URLField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['name']
        constraints = [
            models.CheckConstraint(condition=Q(stock__gte=0), name='product_stock_non_negative'),
        ]

    def __str__(self):
        return self.name


class CartItem(models.Model):
    """A line in a user's cart. Read and cleared when an order is placed."""
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='cart_items')
    product = models.ForeignKey(Product, on_delete=models.CASCADE)
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    added_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ['user', 'product']
        ordering = ['added_at', 'id']

    def __str__(self):
        return f"{self.quantity}x {self.product.name} in cart of user #{self.user_id}"


class Order(models.Model):
    """Order placed by a user."""
    PENDING = 'pending'
    PAID = 'paid'
    DELIVERED = 'delivered'
    CANCELLED = 'cancelled'

    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (PAID, 'Paid'),
        (DELIVERED, 'Delivered'),
        (CANCELLED, 'Cancelled'),
    ]

    # Legal targets for each status; delivered and cancelled are terminal.
    TRANSITIONS = {
        PENDING: {PAID, CANCELLED},
        PAID: {DELIVERED, CANCELLED},
        DELIVERED: set(),
        CANCELLED: set(),
    }

    order_no = models.CharField(max_length=40, unique=True)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='orders')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    order_date = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    # Idempotency key to prevent duplicate orders from retried requests
    idempotency_key = models.CharField(max_length=255, unique=True, null=True, blank=True)

    class Meta:
        ordering = ['-order_date']

    def __str__(self):
        return f"Order {self.order_no} - {self.status} - {self.total_amount}"

    @classmethod
    def can_transition(cls, current, new):
        return new in cls.TRANSITIONS.get(current, set())

    @property
    def is_terminal(self):
        return not self.TRANSITIONS[self.status]

    def items_total(self):
        return sum((item.subtotal for item in self.items.all()), Decimal('0.00'))


class OrderItem(models.Model):
    """Items in an order. Name and price are frozen at order time."""
    order = models.ForeignKey(Order, related_name='items', on_delete=models.CASCADE)
    product = models.ForeignKey(Product, on_delete=models.PROTECT)
    product_name = models.CharField(max_length=200)
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    price = models.DecimalField(max_digits=10, decimal_places=2, help_text="Price at time of purchase")

    class Meta:
        ordering = ['id']

    def __str__(self):
        return f"{self.quantity}x {self.product_name} in Order {self.order.order_no}"

    @property
    def subtotal(self):
        return self.quantity * self.price


class Payment(models.Model):
    """One attempt to collect money for an order through the gateway."""
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (COMPLETED, 'Completed'),
        (FAILED, 'Failed'),
        (CANCELLED, 'Cancelled'),
    ]

    TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED)

    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name='payments')
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='payments')
    method = models.CharField(max_length=50, default='stripe')
    gateway_order_id = models.CharField(max_length=255, unique=True, help_text="Stripe Checkout Session ID")
    approve_url = models.URLField(max_length=1000, blank=True)
    capture_id = models.CharField(max_length=255, null=True, blank=True, help_text="Stripe charge ID, required for refunds")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    captured_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING)
    created_at = models.DateTimeField(auto_now_add=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)
    refund_required = models.BooleanField(
        default=False,
        help_text="Captured after its order was cancelled; the money must be returned",
    )

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['order'],
                condition=Q(status='pending'),
                name='one_pending_payment_per_order',
            ),
        ]

    def __str__(self):
        return f"Payment {self.gateway_order_id} - {self.status} - {self.amount}"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES


class ReturnRequest(models.Model):
    """A customer's request to return one order item, with its refund record."""
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'

    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (APPROVED, 'Approved'),
        (REJECTED, 'Rejected'),
        (CANCELLED, 'Cancelled'),
    ]

    REFUND_PENDING = 'pending'
    REFUND_PROCESSING = 'processing'
    REFUND_COMPLETED = 'completed'
    REFUND_FAILED = 'failed'

    REFUND_STATUS_CHOICES = [
        (REFUND_PENDING, 'Pending'),
        (REFUND_PROCESSING, 'Processing'),
        (REFUND_COMPLETED, 'Completed'),
        (REFUND_FAILED, 'Failed'),
    ]

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='returns')
    order_item = models.ForeignKey(OrderItem, on_delete=models.PROTECT, related_name='returns')
    reason = models.TextField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING)
    requested_at = models.DateTimeField(default=timezone.now)
    decided_at = models.DateTimeField(null=True, blank=True)

    refund_id = models.CharField(max_length=255, null=True, blank=True, help_text="Stripe refund ID")
    refund_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    refund_status = models.CharField(max_length=20, choices=REFUND_STATUS_CHOICES, default=REFUND_PENDING)
    refund_attempts = models.PositiveIntegerField(default=0)
    refund_error = models.TextField(blank=True)

    class Meta:
        ordering = ['-requested_at']
        constraints = [
            models.UniqueConstraint(
                fields=['order_item'],
                condition=~Q(status='cancelled'),
                name='one_active_return_per_item',
            ),
        ]

    def __str__(self):
        return f"Return #{self.id} for item #{self.order_item_id} - {self.status}"


class OneTimePassword(models.Model):
    """Short-lived step-up code. Only the HMAC of the code is stored."""
    LOGIN = 'login'
    PASSWORD_RESET = 'passwordreset'
    EMAIL_VERIFICATION = 'emailverification'
    PAYMENT = 'payment'

    PURPOSE_CHOICES = [
        (LOGIN, 'Login'),
        (PASSWORD_RESET, 'Password reset'),
        (EMAIL_VERIFICATION, 'Email verification'),
        (PAYMENT, 'Payment'),
    ]

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='one_time_passwords')
    purpose = models.CharField(max_length=30, choices=PURPOSE_CHOICES)
    code_hash = models.CharField(max_length=128)
    expires_at = models.DateTimeField()
    is_used = models.BooleanField(default=False)
    attempts = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['-created_at', '-id']

    def __str__(self):
        return f"OTP #{self.id} ({self.purpose}) for user #{self.user_id}"


class WebhookEvent(models.Model):
    """Gateway event stored before it is reconciled."""
    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=100)
    gateway_order_id = models.CharField(max_length=255, blank=True)
    payload = models.JSONField(default=dict)
    received_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)

    class Meta:
        ordering = ['received_at']

    def __str__(self):
        return f"{self.event_type} ({self.event_id})"
