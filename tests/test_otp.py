from datetime import timedelta
from smtplib import SMTPException
from unittest import mock

import pytest
from django.utils import timezone

from commerce.errors import OtpDeliveryError, ValidationError
from commerce.models import OneTimePassword
from commerce.notifications import Notifier
from commerce.otp import OtpStepUpAuthority


@pytest.fixture
def authority(notifier):
    return OtpStepUpAuthority(notifier=notifier, secret='test-secret', length=6, expiry_minutes=5, max_attempts=3)


def sent_code(notifier):
    return notifier.codes[-1][1]


def test_request_sends_code_and_stores_only_its_hash(authority, notifier, user):
    otp = authority.request(user, 'payment', user.email)

    destination, code, purpose = notifier.codes[0]
    assert destination == 'asha@example.com'
    assert purpose == 'payment'
    assert len(code) == 6 and code.isdigit()
    assert otp.code_hash != code
    assert len(otp.code_hash) == 64


def test_correct_code_verifies_once(authority, notifier, user):
    authority.request(user, 'payment', user.email)
    code = sent_code(notifier)

    assert authority.verify(user, 'payment', code) is True
    assert authority.verify(user, 'payment', code) is False


def test_code_is_bound_to_purpose(authority, notifier, user):
    authority.request(user, 'payment', user.email)
    assert authority.verify(user, 'login', sent_code(notifier)) is False


def test_wrong_guesses_lock_the_code(authority, notifier, user):
    authority.request(user, 'login', user.email)
    code = sent_code(notifier)
    wrong = '000000' if code != '000000' else '111111'

    for _ in range(3):
        assert authority.verify(user, 'login', wrong) is False

    assert OneTimePassword.objects.get(user=user).attempts == 3
    assert authority.verify(user, 'login', code) is False


def test_expired_code_is_rejected(authority, notifier, user):
    otp = authority.request(user, 'login', user.email)
    OneTimePassword.objects.filter(pk=otp.pk).update(expires_at=timezone.now() - timedelta(seconds=1))
    assert authority.verify(user, 'login', sent_code(notifier)) is False


def test_new_request_replaces_older_code(authority, notifier, user):
    authority.request(user, 'passwordreset', user.email)
    old_code = sent_code(notifier)
    authority.request(user, 'passwordreset', user.email)
    new_code = sent_code(notifier)

    if old_code != new_code:
        assert authority.verify(user, 'passwordreset', old_code) is False
    assert authority.verify(user, 'passwordreset', new_code) is True


def test_unknown_purpose(authority, user):
    with pytest.raises(ValidationError):
        authority.request(user, 'transfer', user.email)


def test_missing_destination(authority, user):
    with pytest.raises(ValidationError):
        authority.request(user, 'login', '')


def test_purpose_is_case_insensitive(authority, notifier, user):
    authority.request(user, 'EmailVerification', user.email)
    assert authority.verify(user, 'emailverification', sent_code(notifier)) is True


def test_delivery_failure_raises(user):
    authority = OtpStepUpAuthority(notifier=Notifier(), secret='test-secret')
    with mock.patch('commerce.notifications.send_mail', side_effect=SMTPException('relay denied')):
        with pytest.raises(OtpDeliveryError):
            authority.request(user, 'login', user.email)


def test_hash_depends_on_secret(authority):
    other = OtpStepUpAuthority(secret='another-secret')

    assert authority.hash_code('123456') == authority.hash_code('123456')
    assert authority.hash_code('123456') != other.hash_code('123456')
    assert authority.hash_code('123456') != authority.hash_code('123457')
