"""
Booking intake: turns a validated request into a ``pending`` hold.
"""
import logging
from typing import NamedTuple

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from .catalog import get_package, quote
from .errors import DateUnavailable, EmailNotVerified, PersistenceError, SuspiciousSubmission, ValidationError
from .models import Booking, PENDING
from .ratelimit import RateLimiter, RateLimitStatus
from .serializers import BookingHoldSerializer, first_error_message
from .state import date_is_available, release_stale_holds
from .verification import consume_verification, require_verified_email

logger = logging.getLogger(__name__)


class IntakeResult(NamedTuple):
    booking: Booking
    rate_limit: RateLimitStatus


def validate_hold_request(data, now=None):
    serializer = BookingHoldSerializer(data=data, context={'now': now})
    if not serializer.is_valid():
        raise ValidationError(first_error_message(serializer.errors))
    return serializer.validated_data


def build_notes(notes, booking_quote):
    return f"{(notes or '').strip()}\n\nSelected Add-ons: {booking_quote.add_on_summary}".strip()


def create_pending_booking(validated, booking_quote, now=None, notifier=None, on_created=None):
    """Insert a ``pending`` hold for an available date.

    Lazily expired holds on the date are released first. ``on_created`` runs
    inside the insert's transaction, so anything it raises rolls the booking
    back.
    """
    now = now or timezone.now()
    customer = validated['customer']
    event = validated['event']

    release_stale_holds(event['date'], now=now, notifier=notifier)
    if not date_is_available(event['date'], now=now):
        raise DateUnavailable()

    try:
        with transaction.atomic():
            booking = Booking.objects.create(
                customer_name=customer['name'],
                customer_email=customer['email'],
                customer_phone=customer['phone'],
                event_date=event['date'],
                start_time=event['startTime'],
                end_time=event['endTime'],
                venue_name=event['venueName'],
                street_address=event['streetAddress'],
                city=event['city'],
                state=event['state'],
                zip_code=event['zipCode'],
                package_type=booking_quote.package.key,
                service_tier=booking_quote.package.name,
                selected_add_ons=booking_quote.add_ons,
                total_amount=booking_quote.total_amount,
                deposit_amount=booking_quote.deposit_amount,
                notes=build_notes(validated.get('notes'), booking_quote),
                status=PENDING,
            )
            if on_created is not None:
                on_created(booking)
    except IntegrityError:
        # Another request took the date between the check and the insert.
        logger.info("Date %s was taken concurrently", event['date'])
        raise DateUnavailable()
    except DatabaseError:
        logger.exception("Booking insert failed")
        raise PersistenceError()

    logger.info(
        "Booking hold %s created for %s (total=%s deposit=%s)",
        booking.id, booking.event_date, booking.total_amount, booking.deposit_amount,
    )
    return booking


def create_booking_hold(data, fingerprint=None, now=None, notifier=None, rate_limiter=None):
    now = now or timezone.now()
    validated = validate_hold_request(data, now=now)

    if validated.get('honeypot', '').strip():
        logger.warning("Honeypot field filled; discarding submission")
        raise SuspiciousSubmission()

    package = get_package(validated['packageType'])
    if package is None:
        raise ValidationError('Missing booking details.')

    email = validated['customer']['email']
    rate_limiter = rate_limiter or RateLimiter()
    rate_status = rate_limiter.check(email, fingerprint, now=now)

    verification = None
    if settings.BOOKING_REQUIRE_EMAIL_VERIFICATION:
        verification = require_verified_email(email, now=now)

    def finalize(booking):
        if verification is not None and not consume_verification(verification, now):
            raise EmailNotVerified()
        rate_limiter.record(email, fingerprint)

    booking = create_pending_booking(
        validated,
        quote(package, validated.get('selectedAddOns', [])),
        now=now,
        notifier=notifier,
        on_created=finalize,
    )
    return IntakeResult(booking, rate_status)
