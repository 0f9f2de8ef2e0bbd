import json
import logging
from functools import wraps

from django.http import JsonResponse, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from .cart import CartLine
from .errors import (
    GatewayError,
    InvariantViolation,
    PaymentNotFoundError,
    RefundProcessingError,
    StoreError,
    ValidationError,
)
from .gateway import StripeGateway
from .models import Payment
from .orders import OrderLifecycle
from .otp import OtpStepUpAuthority
from .payments import PaymentReconciler
from .returns import ReturnRefundProcessor
from .webhooks import WebhookInbox

logger = logging.getLogger(__name__)


def get_gateway():
    return StripeGateway()


def get_reconciler():
    return PaymentReconciler(gateway=get_gateway())


def get_return_processor():
    return ReturnRefundProcessor(gateway=get_gateway())


def error_response(error):
    """Map a store error to a JSON response without leaking provider details."""
    cause = error.cause if isinstance(error, RefundProcessingError) else error
    message = error.message
    if isinstance(cause, GatewayError):
        logger.warning("Gateway failure: %s (%s)", error.message, cause.provider_message)
        message = GatewayError.public_message
        if isinstance(error, RefundProcessingError):
            message = "Refund could not be processed, please retry."
    elif isinstance(cause, InvariantViolation):
        logger.critical("Invariant violation: %s", error.message)
        message = "Internal error, the request was not completed."
    return JsonResponse({'error': message, 'kind': error.kind}, status=error.status_code)


def json_endpoint(staff_only=False):
    """Require a signed-in user and turn store errors into JSON responses."""
    def decorator(view):
        @wraps(view)
        def wrapper(request, *args, **kwargs):
            if not request.user.is_authenticated:
                return JsonResponse({'error': 'Authentication required'}, status=401)
            if staff_only and not request.user.is_staff:
                return JsonResponse({'error': 'Only allowed to staff'}, status=403)
            try:
                return view(request, *args, **kwargs)
            except json.JSONDecodeError:
                return JsonResponse({'error': 'Invalid JSON'}, status=400)
            except StoreError as e:
                return error_response(e)
        return wrapper
    return decorator


def read_json(request):
    if not request.body:
        return {}
    data = json.loads(request.body)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def require_int(data, key):
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object.")
    value = data.get(key)
    if isinstance(value, bool):
        value = None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{key}' must be an integer.") from None


def order_to_dict(order):
    return {
        'id': order.id,
        'orderNo': order.order_no,
        'status': order.status,
        'totalAmount': str(order.total_amount),
        'orderDate': order.order_date.isoformat(),
        'items': [item_to_dict(item) for item in order.items.all()],
    }


def item_to_dict(item):
    return {
        'id': item.id,
        'productId': item.product_id,
        'productName': item.product_name,
        'quantity': item.quantity,
        'price': str(item.price),
        'subtotal': str(item.subtotal),
    }


def payment_to_dict(payment):
    return {
        'paymentId': payment.gateway_order_id,
        'orderId': payment.order_id,
        'status': payment.status,
        'amount': str(payment.amount),
        'approveUrl': payment.approve_url,
        'paidAt': payment.paid_at.isoformat() if payment.paid_at else None,
        'refundRequired': payment.refund_required,
    }


def return_to_dict(ret):
    return {
        'id': ret.id,
        'orderItemId': ret.order_item_id,
        'reason': ret.reason,
        'status': ret.status,
        'requestedAt': ret.requested_at.isoformat(),
        'refundStatus': ret.refund_status,
        'refundAmount': str(ret.refund_amount) if ret.refund_amount is not None else None,
        'refundedAt': ret.refunded_at.isoformat() if ret.refunded_at else None,
    }


@require_http_methods(["POST"])
@json_endpoint()
def create_order(request):
    """Place an order from the cart, or from an explicit item list."""
    data = read_json(request)
    lifecycle = OrderLifecycle()
    items = data.get('items')
    if items:
        if not isinstance(items, list):
            raise ValidationError("'items' must be a list.")
        lines = [
            CartLine(product_id=require_int(item, 'product_id'), quantity=require_int(item, 'quantity'))
            for item in items
        ]
        order = lifecycle.create_from_items(request.user.id, lines, idempotency_key=data.get('idempotency_key'))
    else:
        order = lifecycle.create_from_cart(request.user.id)
    return JsonResponse(order_to_dict(order), status=201)


@require_http_methods(["GET"])
@json_endpoint()
def order_detail(request, order_id):
    order = OrderLifecycle().get_order(order_id, user_id=request.user.id)
    return JsonResponse(order_to_dict(order))


@require_http_methods(["POST"])
@json_endpoint()
def add_order_item(request, order_id):
    data = read_json(request)
    lifecycle = OrderLifecycle()
    order = lifecycle.get_order(order_id, user_id=request.user.id)
    item = lifecycle.add_item(order.pk, require_int(data, 'product_id'), require_int(data, 'quantity'))
    return JsonResponse(item_to_dict(item), status=201)


@require_http_methods(["POST"])
@json_endpoint()
def cancel_order(request, order_id):
    reconciler = get_reconciler()
    cancelled = reconciler.cancel_order(order_id, user_id=request.user.id)
    order = reconciler.orders.get_order(order_id)
    return JsonResponse({'cancelled': cancelled, 'order': order_to_dict(order)})


@require_http_methods(["PUT"])
@json_endpoint(staff_only=True)
def update_order_status(request, order_id):
    data = read_json(request)
    status = data.get('status')
    if not isinstance(status, str):
        raise ValidationError("'status' is required.")
    order = OrderLifecycle().update_status(order_id, status.lower())
    return JsonResponse(order_to_dict(order))


@require_http_methods(["POST"])
@json_endpoint()
def create_payment(request):
    """Start checkout for an order. The amount is always the order total."""
    data = read_json(request)
    payment = get_reconciler().create_payment(require_int(data, 'order_id'), user_id=request.user.id)
    return JsonResponse({
        'approveUrl': payment.approve_url,
        'paymentId': payment.gateway_order_id,
        'amount': str(payment.amount),
    }, status=201)


@require_http_methods(["POST"])
@json_endpoint()
def capture_payment(request):
    gateway_order_id = request.GET.get('orderId')
    if not gateway_order_id:
        raise ValidationError("'orderId' query parameter is required.")
    _check_payment_owner(request, gateway_order_id)
    outcome = get_reconciler().capture(gateway_order_id)
    body = payment_to_dict(outcome.payment)
    body['alreadyProcessed'] = outcome.already_processed
    return JsonResponse(body)


@require_http_methods(["GET"])
@json_endpoint()
def payment_detail(request, gateway_order_id):
    _check_payment_owner(request, gateway_order_id)
    return JsonResponse(payment_to_dict(Payment.objects.get(gateway_order_id=gateway_order_id)))


@require_http_methods(["POST"])
@json_endpoint()
def cancel_payment(request, gateway_order_id):
    _check_payment_owner(request, gateway_order_id)
    cancelled = get_reconciler().cancel(gateway_order_id)
    payment = Payment.objects.get(gateway_order_id=gateway_order_id)
    return JsonResponse({'cancelled': cancelled, 'payment': payment_to_dict(payment)})


@csrf_exempt
@require_http_methods(["POST"])
def stripe_webhook(request):
    """Store a Stripe event, then reconcile it.

    Answers 200 as soon as the event is stored, even when reconciliation
    has to wait for `manage.py reconcile_payments`.
    """
    payload = request.body
    sig_header = request.META.get('HTTP_STRIPE_SIGNATURE')
    inbox = WebhookInbox(reconciler=get_reconciler())
    try:
        get_gateway().construct_event(payload, sig_header)
        record, created = inbox.ingest(json.loads(payload))
    except (ValidationError, ValueError) as e:
        logger.warning("Rejected webhook: %s", e)
        return HttpResponse(status=400)

    try:
        inbox.process(record)
    except Exception:
        logger.exception("Webhook event %s stored but reconciliation crashed", record.event_id)
    return HttpResponse(status=200)


@require_http_methods(["POST"])
@json_endpoint()
def create_return(request):
    data = read_json(request)
    ret = get_return_processor().request_return(
        request.user.id,
        require_int(data, 'order_item_id'),
        data.get('reason') or '',
    )
    return JsonResponse(return_to_dict(ret), status=201)


@require_http_methods(["GET", "PUT"])
def return_detail(request, return_id):
    """Read a return, or decide it (staff only)."""
    if request.method == 'PUT':
        return update_return(request, return_id)
    return show_return(request, return_id)


@json_endpoint()
def show_return(request, return_id):
    user_id = None if request.user.is_staff else request.user.id
    ret = get_return_processor().get_return(return_id, user_id=user_id)
    return JsonResponse(return_to_dict(ret))


@require_http_methods(["PUT"])
@json_endpoint(staff_only=True)
def update_return(request, return_id):
    data = read_json(request)
    status = data.get('status')
    if not isinstance(status, str):
        raise ValidationError("'status' is required.")
    ret = get_return_processor().update_status(return_id, status.lower())
    return JsonResponse(return_to_dict(ret))


@require_http_methods(["PUT"])
@json_endpoint()
def cancel_return(request, return_id):
    processor = get_return_processor()
    user_id = None if request.user.is_staff else request.user.id
    cancelled = processor.cancel_return(return_id, user_id=user_id)
    return JsonResponse({'cancelled': cancelled, 'return': return_to_dict(processor.get_return(return_id))})


@require_http_methods(["POST"])
@json_endpoint()
def request_otp(request):
    data = read_json(request)
    destination = data.get('destination') or request.user.email
    OtpStepUpAuthority().request(request.user, data.get('purpose') or '', destination)
    return JsonResponse({'sent': True}, status=201)


@require_http_methods(["POST"])
@json_endpoint()
def verify_otp(request):
    data = read_json(request)
    verified = OtpStepUpAuthority().verify(request.user, data.get('purpose') or '', data.get('code') or '')
    return JsonResponse({'verified': verified}, status=200 if verified else 400)


def _check_payment_owner(request, gateway_order_id):
    payments = Payment.objects.filter(gateway_order_id=gateway_order_id)
    if not request.user.is_staff:
        payments = payments.filter(user_id=request.user.id)
    if not payments.exists():
        raise PaymentNotFoundError(gateway_order_id)
