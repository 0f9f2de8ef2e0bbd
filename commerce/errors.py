"""Exceptions raised by the order, payment and return services.

Every error belongs to one of five kinds. Views map the kind to an HTTP
status; callers branch on the class or on ``kind``, never on the message.
"""


class StoreError(Exception):
    """Base exception for all store errors."""

    kind = 'error'
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(StoreError):
    """Raised when input has the wrong shape. Never retried."""

    kind = 'validation'
    status_code = 400


class NotFoundError(StoreError):
    """Raised when a referenced entity does not exist."""

    kind = 'not_found'
    status_code = 404


class StateConflictError(StoreError):
    """Raised when the current state forbids the operation.

    The caller should refresh its view of the data before trying again.
    """

    kind = 'conflict'
    status_code = 409


class GatewayError(StoreError):
    """Raised when the payment provider fails or rejects a call."""

    kind = 'gateway'
    status_code = 502
    public_message = 'Payment could not be processed, please retry.'

    def __init__(self, message: str, provider_message: str | None = None):
        self.provider_message = provider_message or message
        super().__init__(message)


class GatewayTimeoutError(GatewayError):
    """Raised when a gateway call timed out or lost its connection.

    The outcome is unknown: re-query the gateway before acting on it.
    """

    status_code = 504


class InvariantViolation(StoreError):
    """Raised when stored data breaks an invariant. Indicates a bug."""

    kind = 'invariant'
    status_code = 500


# Orders

class EmptyCartError(ValidationError):
    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__("Your cart is empty. Please add items before placing an order.")


class ProductUnavailableError(NotFoundError):
    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} is no longer available.")


class InsufficientStockError(StateConflictError):
    def __init__(self, product_name: str, available: int, requested: int):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Not enough stock for '{product_name}'. Available: {available}, Requested: {requested}."
        )


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found.")


class OrderNotModifiableError(StateConflictError):
    def __init__(self, order_no: str, reason: str):
        self.order_no = order_no
        super().__init__(f"Cannot add items to order {order_no}: {reason}.")


class InvalidTransitionError(StateConflictError):
    def __init__(self, current: str, new: str):
        self.current = current
        self.new = new
        super().__init__(f"Cannot change order status from '{current}' to '{new}'.")


class OrderNumberCollisionError(StateConflictError):
    """Raised when a generated order number already exists. Safe to retry."""

    def __init__(self, order_no: str):
        self.order_no = order_no
        super().__init__(f"Order number {order_no} is already taken, please retry.")


# Payments

class PaymentNotFoundError(NotFoundError):
    def __init__(self, gateway_order_id: str):
        self.gateway_order_id = gateway_order_id
        super().__init__(f"Payment {gateway_order_id} not found.")


class OrderNotPayableError(StateConflictError):
    def __init__(self, order_no: str, status: str):
        self.order_no = order_no
        self.status = status
        super().__init__(f"Order {order_no} cannot be paid while it is {status}.")


class CheckoutConflictError(StateConflictError):
    def __init__(self, order_no: str):
        self.order_no = order_no
        super().__init__(f"Order {order_no} changed while checkout was starting, please retry.")


class PaymentNotCancellableError(StateConflictError):
    def __init__(self, gateway_order_id: str, status: str):
        self.gateway_order_id = gateway_order_id
        self.status = status
        super().__init__(f"Payment {gateway_order_id} is {status} and cannot be cancelled.")


# Returns

class ReturnNotFoundError(NotFoundError):
    def __init__(self, return_id):
        self.return_id = return_id
        super().__init__(f"Return {return_id} not found.")


class OrderItemNotFoundError(NotFoundError):
    def __init__(self, order_item_id):
        self.order_item_id = order_item_id
        super().__init__(f"Order item {order_item_id} not found.")


class ReturnWindowExpiredError(StateConflictError):
    def __init__(self, days: int):
        self.days = days
        super().__init__(f"Returns are only accepted within {days} days of the order date.")


class OrderNotReturnableError(StateConflictError):
    def __init__(self, order_no: str, status: str):
        self.order_no = order_no
        self.status = status
        super().__init__(f"Items of order {order_no} cannot be returned while it is {status}.")


class DuplicateReturnError(StateConflictError):
    def __init__(self, order_item_id):
        self.order_item_id = order_item_id
        super().__init__("A return request for this order item already exists.")


class ReturnNotPendingError(StateConflictError):
    def __init__(self, return_id, status: str):
        self.return_id = return_id
        self.status = status
        super().__init__(f"Return {return_id} is already {status}.")


class AlreadyRefundedError(StateConflictError):
    def __init__(self, return_id):
        self.return_id = return_id
        super().__init__(f"Return {return_id} has already been refunded.")


class RefundInProgressError(StateConflictError):
    def __init__(self, return_id):
        self.return_id = return_id
        super().__init__(f"A refund for return {return_id} is already being processed.")


class NoCompletedPaymentError(StateConflictError):
    def __init__(self, order_no: str):
        self.order_no = order_no
        super().__init__(f"Order {order_no} has no completed payment to refund.")


class MissingCaptureIdError(InvariantViolation):
    def __init__(self, gateway_order_id: str):
        self.gateway_order_id = gateway_order_id
        super().__init__(f"Completed payment {gateway_order_id} has no capture id; cannot refund.")


class RefundProcessingError(StoreError):
    """Raised when approving a return failed because its refund failed.

    Carries the kind and status of the underlying cause.
    """

    def __init__(self, return_id, cause: StoreError):
        self.return_id = return_id
        self.cause = cause
        self.kind = cause.kind
        self.status_code = cause.status_code
        super().__init__(f"Refund for return {return_id} failed: {cause.message}")


# One-time passwords

class OtpDeliveryError(StoreError):
    kind = 'delivery'
    status_code = 502

    def __init__(self, destination: str):
        self.destination = destination
        super().__init__(f"Could not deliver verification code to {destination}.")
