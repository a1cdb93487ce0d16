"""
Sliding-window rate limiting over append-only attempt logs.

The enforcement signal is simply the number of rows inside the trailing
window, counted per email and per hashed device fingerprint.
"""
import hashlib
import logging
from datetime import timedelta
from typing import NamedTuple, Optional

from django.conf import settings
from django.db import DatabaseError
from django.utils import timezone

from .errors import RateLimited, TransientInfraError
from .models import BookingRateLimit

logger = logging.getLogger(__name__)


def client_ip(request) -> Optional[str]:
    forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if forwarded_for:
        first = forwarded_for.split(',')[0].strip()
        if first:
            return first
    return (
        request.META.get('HTTP_CF_CONNECTING_IP')
        or request.META.get('HTTP_X_REAL_IP')
        or request.META.get('REMOTE_ADDR')
        or None
    )


def hash_identifier(value: str) -> str:
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def fingerprint_request(request) -> Optional[str]:
    """One-way hash of client IP and user agent. The raw IP is never stored."""
    ip = client_ip(request)
    if not ip:
        return None
    user_agent = request.META.get('HTTP_USER_AGENT', '')
    return hash_identifier(f"{ip}:{user_agent}")


class RateLimitStatus(NamedTuple):
    window_minutes: int
    max_attempts: int
    email_count: int
    fingerprint_count: int

    @property
    def attempts_remaining(self) -> int:
        used = max(self.email_count, self.fingerprint_count) + 1
        return max(self.max_attempts - used, 0)

    def as_dict(self):
        return {
            'windowMinutes': self.window_minutes,
            'maxAttempts': self.max_attempts,
            'attemptsRemaining': self.attempts_remaining,
        }


class RateLimiter:
    """Counts intake attempts in the trailing window.

    ``check`` only reads; ``record`` appends. Intake calls ``record`` after a
    booking is stored, so rejected attempts do not consume the allowance.
    """

    email_message = 'Too many requests. Please try again later.'
    device_message = 'Too many requests from this device. Please wait before trying again.'

    def __init__(self, window_minutes=None, max_attempts=None, model=BookingRateLimit):
        self.window_minutes = window_minutes or settings.BOOKING_RATE_LIMIT_WINDOW_MINUTES
        self.max_attempts = max_attempts or settings.BOOKING_RATE_LIMIT_MAX_ATTEMPTS
        self.model = model

    def window_start(self, now):
        return now - timedelta(minutes=self.window_minutes)

    def _count(self, now, **lookup):
        try:
            return self.model.objects.filter(created_at__gte=self.window_start(now), **lookup).count()
        except DatabaseError:
            logger.exception("Rate limit lookup failed")
            raise TransientInfraError()

    def check(self, email, fingerprint=None, now=None) -> RateLimitStatus:
        now = now or timezone.now()

        email_count = self._count(now, email=email)
        if email_count >= self.max_attempts:
            raise RateLimited(self.email_message)

        fingerprint_count = 0
        if fingerprint:
            fingerprint_count = self._count(now, ip_hash=fingerprint)
            if fingerprint_count >= self.max_attempts:
                raise RateLimited(self.device_message)

        return RateLimitStatus(self.window_minutes, self.max_attempts, email_count, fingerprint_count)

    def record(self, email, fingerprint=None):
        return self.model.objects.create(email=email, ip_hash=fingerprint)
