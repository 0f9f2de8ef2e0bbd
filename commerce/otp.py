import logging
from datetime import timedelta

from django.conf import settings
from django.db.models import F
from django.utils.crypto import constant_time_compare, get_random_string, salted_hmac
from django.utils import timezone

from .errors import ValidationError
from .models import OneTimePassword
from .notifications import Notifier

logger = logging.getLogger(__name__)

ALLOWED_PURPOSES = {purpose for purpose, _ in OneTimePassword.PURPOSE_CHOICES}


class OtpStepUpAuthority:
    """Issues and checks short-lived numeric codes for sensitive actions.

    Codes are stored only as an HMAC. A code is rejected once it expired,
    was used, or after too many wrong guesses, whichever comes first.
    """

    def __init__(self, notifier=None, secret=None, length=None, expiry_minutes=None, max_attempts=None):
        self.notifier = notifier or Notifier()
        self.secret = secret or settings.OTP_SECRET
        self.length = length or settings.OTP_LENGTH
        self.expiry_minutes = expiry_minutes or settings.OTP_EXPIRY_MINUTES
        self.max_attempts = max_attempts or settings.OTP_MAX_ATTEMPTS

    def request(self, user, purpose, destination):
        purpose = self._check_purpose(purpose)
        if not destination or '@' not in destination:
            raise ValidationError("No valid destination to send the verification code to.")

        code = self.generate_code()
        # Only the newest code for a purpose stays usable
        OneTimePassword.objects.filter(user=user, purpose=purpose, is_used=False).update(is_used=True)
        otp = OneTimePassword.objects.create(
            user=user,
            purpose=purpose,
            code_hash=self.hash_code(code),
            expires_at=timezone.now() + timedelta(minutes=self.expiry_minutes),
        )
        self.notifier.send_otp(user, destination, code, purpose, self.expiry_minutes)
        logger.info("Issued %s code for user %s", purpose, user.pk)
        return otp

    def verify(self, user, purpose, code):
        purpose = self._check_purpose(purpose)
        if user is None:
            return False
        otp = OneTimePassword.objects.filter(user=user, purpose=purpose, is_used=False).first()
        if otp is None:
            return False
        if otp.attempts >= self.max_attempts:
            logger.warning("Too many attempts on %s code for user %s", purpose, user.pk)
            return False
        if otp.expires_at < timezone.now():
            return False

        if not constant_time_compare(otp.code_hash, self.hash_code(str(code or ''))):
            OneTimePassword.objects.filter(pk=otp.pk, attempts__lt=self.max_attempts).update(
                attempts=F('attempts') + 1
            )
            return False

        # Consume once even if the same code is submitted concurrently
        used = OneTimePassword.objects.filter(
            pk=otp.pk,
            is_used=False,
            attempts__lt=self.max_attempts,
        ).update(is_used=True)
        return bool(used)

    def generate_code(self):
        return get_random_string(self.length, allowed_chars='0123456789')

    def hash_code(self, code):
        return salted_hmac('commerce.otp', code, secret=self.secret, algorithm='sha256').hexdigest()

    @staticmethod
    def _check_purpose(purpose):
        purpose = (purpose or '').lower()
        if purpose not in ALLOWED_PURPOSES:
            raise ValidationError(f"Invalid verification purpose '{purpose}'.")
        return purpose
