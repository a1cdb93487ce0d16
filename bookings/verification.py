"""
One-time email verification codes.

A code is verified by ``verify_code`` (stamps ``verified_at``) and consumed by
booking intake (stamps ``used_at``). Verifying an already verified, unconsumed
code succeeds again without side effects; a consumed code never verifies.
"""
import logging
import secrets
from datetime import timedelta

from django.conf import settings
from django.db import DatabaseError
from django.utils import timezone

from .errors import (
    CodeAlreadyUsed, CodeExpired, EmailNotVerified, ExternalServiceError,
    InvalidCode, PersistenceError, RateLimited, TransientInfraError,
)
from .models import EmailVerification
from .notifications import get_notifier

logger = logging.getLogger(__name__)


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


class VerificationService:
    def __init__(self, notifier=None, ttl_minutes=None, window_minutes=None, max_codes=None):
        self.notifier = notifier or get_notifier()
        self.ttl_minutes = ttl_minutes or settings.EMAIL_VERIFICATION_TTL_MINUTES
        self.window_minutes = window_minutes or settings.BOOKING_RATE_LIMIT_WINDOW_MINUTES
        self.max_codes = max_codes or settings.BOOKING_RATE_LIMIT_MAX_ATTEMPTS

    def request_code(self, email, now=None):
        now = now or timezone.now()
        window_start = now - timedelta(minutes=self.window_minutes)

        try:
            issued = EmailVerification.objects.filter(email=email, created_at__gte=window_start).count()
        except DatabaseError:
            logger.exception("Verification rate limit check failed")
            raise TransientInfraError('Unable to process request. Please try again.')

        if issued >= self.max_codes:
            raise RateLimited(f'Too many verification requests. Please wait {self.window_minutes} minutes.')

        code = generate_code()
        try:
            EmailVerification.objects.create(
                email=email,
                code=code,
                expires_at=now + timedelta(minutes=self.ttl_minutes),
            )
        except DatabaseError:
            logger.exception("Failed to store verification code")
            raise PersistenceError('Unable to send verification code. Please try again.')

        sent = self.notifier.send_verification_code(email, code, self.ttl_minutes)
        if not sent.ok:
            logger.error("Failed to send verification email to %s: %s", email, sent.error)
            raise ExternalServiceError('Unable to send verification email. Please try again.')

        logger.info("Verification code sent to %s", email)
        return {'success': True, 'expiresIn': self.ttl_minutes * 60}

    def verify_code(self, email, code, now=None):
        now = now or timezone.now()
        try:
            verification = (
                EmailVerification.objects
                .filter(email=email, code=code)
                .order_by('-created_at', '-id')
                .first()
            )
        except DatabaseError:
            logger.exception("Verification lookup failed")
            raise TransientInfraError('Unable to verify code. Please try again.')

        if verification is None:
            raise InvalidCode()
        if verification.is_expired(now):
            raise CodeExpired()
        if verification.used_at:
            raise CodeAlreadyUsed()

        if verification.verified_at is None:
            try:
                EmailVerification.objects.filter(pk=verification.pk, verified_at__isnull=True).update(verified_at=now)
            except DatabaseError:
                logger.exception("Failed to update verification")
                raise PersistenceError('Unable to complete verification. Please try again.')
            logger.info("Email verified: %s", email)

        return {'success': True, 'verified': True}


def require_verified_email(email, now=None):
    """Newest verified and unconsumed verification for ``email`` still inside
    the validity window."""
    now = now or timezone.now()
    valid_since = now - timedelta(minutes=settings.EMAIL_VERIFICATION_VALID_FOR_MINUTES)
    try:
        verification = (
            EmailVerification.objects
            .filter(email=email, verified_at__gte=valid_since, used_at__isnull=True)
            .order_by('-verified_at')
            .first()
        )
    except DatabaseError:
        logger.exception("Verified email lookup failed")
        raise TransientInfraError()
    if verification is None:
        raise EmailNotVerified()
    return verification


def consume_verification(verification, now):
    """Mark a verification as used. Returns False if it was consumed concurrently."""
    return EmailVerification.objects.filter(
        pk=verification.pk, used_at__isnull=True
    ).update(used_at=now) == 1
