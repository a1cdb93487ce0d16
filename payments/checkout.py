import logging
import uuid

import stripe
from django.conf import settings
from django.utils import timezone

from bookings.catalog import get_package, quote
from bookings.errors import InvalidTransition, NotFound, PaymentError, ValidationError
from bookings.intake import create_pending_booking, validate_hold_request
from bookings.models import Booking, is_hold_expired
from bookings.ratelimit import RateLimiter
from bookings.state import cancel_booking

logger = logging.getLogger(__name__)

stripe.api_key = settings.STRIPE_SECRET_KEY


def _present(values):
    return {key: value for key, value in values.items() if value is not None}


def inline_hold_payload(data):
    """Reshape the flat checkout payload into the intake request shape."""
    details = data.get('eventDetails')
    if not isinstance(details, dict):
        details = {}
    return _present({
        'packageType': data.get('packageType'),
        'selectedAddOns': data.get('selectedAddOns') or [],
        'customer': _present({
            'name': data.get('customerName'),
            'email': data.get('customerEmail'),
            'phone': data.get('customerPhone'),
        }),
        'event': _present({
            'date': data.get('eventDate'),
            'startTime': details.get('startTime'),
            'endTime': details.get('endTime'),
            'venueName': details.get('venueName'),
            'streetAddress': details.get('streetAddress'),
            'city': details.get('city'),
            'state': details.get('state'),
            'zipCode': details.get('zipCode'),
        }),
        'notes': data.get('notes') or '',
    })


def get_payable_booking(booking_id, now):
    try:
        booking = Booking.objects.get(pk=uuid.UUID(str(booking_id)))
    except (ValueError, Booking.DoesNotExist):
        raise NotFound()

    if not booking.is_hold():
        raise InvalidTransition(message=f'This booking is {booking.status} and cannot be paid.')
    if is_hold_expired(booking, now):
        raise InvalidTransition(message='This booking hold has expired. Please start a new booking.')
    return booking


def create_inline_booking(data, now, notifier=None, fingerprint=None, rate_limiter=None):
    validated = validate_hold_request(inline_hold_payload(data), now=now)
    package = get_package(validated['packageType'])
    if package is None:
        raise ValidationError('Missing booking details.')

    email = validated['customer']['email']
    rate_limiter = rate_limiter or RateLimiter()
    rate_limiter.check(email, fingerprint, now=now)

    return create_pending_booking(
        validated, quote(package, validated.get('selectedAddOns', [])), now=now, notifier=notifier,
        on_created=lambda booking: rate_limiter.record(email, fingerprint),
    )


def checkout_session_params(booking, origin):
    package = get_package(booking.package_type)
    name = package.name if package else booking.service_tier
    description = (
        f"{package.description if package and package.description else booking.service_tier}\n\n"
        f"Event Date: {booking.event_date}\n"
        f"Venue: {booking.venue_name}\n"
        f"Time: {booking.start_time} - {booking.end_time}"
    )
    booking_id = str(booking.id)
    return {
        'payment_method_types': ['card'],
        'line_items': [{
            'price_data': {
                'currency': settings.DEFAULT_CURRENCY.lower(),
                'unit_amount': booking.deposit_amount * 100,
                'product_data': {
                    'name': f'{name} - Event Deposit',
                    'description': description,
                },
            },
            'quantity': 1,
        }],
        'mode': 'payment',
        'customer_email': booking.customer_email,
        'client_reference_id': booking_id,
        'metadata': {
            'bookingId': booking_id,
            'customerName': booking.customer_name,
            'packageType': booking.package_type,
            'eventDate': booking.event_date.isoformat(),
        },
        'payment_intent_data': {
            'metadata': {'bookingId': booking_id},
        },
        'success_url': f'{origin}/booking?session_id={{CHECKOUT_SESSION_ID}}&payment_status=success&booking_id={booking_id}',
        'cancel_url': f'{origin}/booking?payment_status=cancelled&booking_id={booking_id}',
    }


def start_checkout(data, origin=None, now=None, notifier=None, fingerprint=None, rate_limiter=None):
    if not settings.PAYMENTS_ENABLED:
        raise ValidationError('Payments are not enabled for this instance')

    now = now or timezone.now()
    origin = (origin or settings.SITE_URL).rstrip('/')

    created_inline = False
    if data.get('bookingId'):
        booking = get_payable_booking(data['bookingId'], now)
    else:
        booking = create_inline_booking(
            data, now, notifier=notifier, fingerprint=fingerprint, rate_limiter=rate_limiter,
        )
        created_inline = True

    try:
        session = stripe.checkout.Session.create(**checkout_session_params(booking, origin))
    except stripe.error.StripeError as e:
        logger.error("Stripe checkout session failed for booking %s: %s", booking.id, e)
        if created_inline:
            cancel_booking(booking, now=now)
        raise PaymentError()

    fields = {'stripe_session_id': session.id}
    payment_intent = getattr(session, 'payment_intent', None)
    if payment_intent:
        fields['stripe_payment_intent'] = payment_intent
    Booking.objects.filter(pk=booking.pk).update(**fields)

    logger.info("Checkout session %s started for booking %s", session.id, booking.id)
    return {'sessionId': session.id, 'url': session.url, 'bookingId': str(booking.id)}
