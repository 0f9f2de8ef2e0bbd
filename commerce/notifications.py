import logging
from smtplib import SMTPException

from django.conf import settings
from django.core.mail import send_mail

from .errors import OtpDeliveryError

logger = logging.getLogger(__name__)


class Notifier:
    """Customer emails sent on behalf of the order and OTP services."""

    def send_invoice(self, payment, order, user):
        """Email the invoice for a completed payment.

        Fire-and-forget: a delivery failure is logged and never undoes the
        payment it reports on.
        """
        if not user.email:
            logger.warning("No email address for user %s; invoice for %s not sent", user.pk, order.order_no)
            return False
        lines = [
            f"Hi {user.get_full_name() or user.get_username()},",
            "",
            f"Thank you for your order {order.order_no}.",
            "",
        ]
        for item in order.items.all():
            lines.append(f"  {item.quantity} x {item.product_name} @ {item.price} = {item.subtotal}")
        lines += [
            "",
            f"Total paid: {payment.amount} {settings.STORE_CURRENCY.upper()}",
            f"Payment reference: {payment.capture_id}",
        ]
        try:
            send_mail(
                subject=f"Invoice for order {order.order_no}",
                message="\n".join(lines),
                from_email=settings.DEFAULT_FROM_EMAIL,
                recipient_list=[user.email],
            )
        except (SMTPException, OSError):
            logger.exception("Could not send invoice for order %s", order.order_no)
            return False
        logger.info("Invoice for order %s sent to %s", order.order_no, user.email)
        return True

    def send_otp(self, user, destination, code, purpose, expiry_minutes):
        name = user.get_full_name() or user.get_username()
        message = (
            f"Hi {name},\n\n"
            f"Please use the following code to continue with your {purpose}:\n\n"
            f"    {code}\n\n"
            f"This verification code will expire in {expiry_minutes} minutes.\n"
            "For your security, please do not share this code with anyone."
        )
        try:
            send_mail(
                subject=f"Your {purpose} verification code",
                message=message,
                from_email=settings.DEFAULT_FROM_EMAIL,
                recipient_list=[destination],
            )
        except (SMTPException, OSError) as e:
            logger.exception("Could not send %s code to %s", purpose, destination)
            raise OtpDeliveryError(destination) from e
