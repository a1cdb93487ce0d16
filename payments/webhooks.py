"""
Stripe webhook reconciliation. Confirmation effects run after the event's
transaction commits.
"""
import logging
import uuid

from django.db import transaction
from django.utils import timezone

from bookings.models import Booking, is_hold_expired, CONFIRMED, PENDING, PAYMENT_FAILED
from bookings.state import mark_confirmed, mark_payment_failed, run_confirmation_effects

from .models import ProcessedWebhookEvent

logger = logging.getLogger(__name__)


def _metadata_booking_id(obj):
    metadata = obj.get('metadata') or {}
    return metadata.get('bookingId')


def find_booking(booking_id):
    if not booking_id:
        return None
    try:
        return Booking.objects.filter(pk=uuid.UUID(str(booking_id))).first()
    except ValueError:
        return None


def handle_checkout_completed(session, now):
    booking = find_booking(_metadata_booking_id(session))
    if booking is None:
        logger.warning("Checkout session %s has no matching booking", session.get('id'))
        return None, 'booking_not_found'

    if booking.status == CONFIRMED:
        return booking, 'already_confirmed'

    if not booking.is_hold():
        logger.warning(
            "Payment received for %s booking %s (session %s); needs operator follow-up",
            booking.status, booking.id, session.get('id'),
        )
        return booking, 'not_revived'

    if is_hold_expired(booking, now):
        logger.warning("Booking %s paid after its hold window elapsed", booking.id)

    booking = mark_confirmed(booking, now=now, payment_intent=session.get('payment_intent'))
    return booking, 'confirmed'


def handle_payment_failed(payment_intent, now):
    intent_id = payment_intent.get('id')
    booking = None
    if intent_id:
        booking = Booking.objects.filter(stripe_payment_intent=intent_id).first()
    if booking is None:
        booking = find_booking(_metadata_booking_id(payment_intent))
    if booking is None:
        logger.warning("Failed payment intent %s has no matching booking", intent_id)
        return None, 'booking_not_found'

    if booking.status == PAYMENT_FAILED:
        return booking, 'already_failed'
    if booking.status != PENDING:
        logger.info("Ignoring failed payment for %s booking %s", booking.status, booking.id)
        return booking, 'ignored'

    outcome = mark_payment_failed(booking, now=now, payment_intent=intent_id)
    return outcome.booking, 'payment_failed'


HANDLERS = {
    'checkout.session.completed': handle_checkout_completed,
    'payment_intent.payment_failed': handle_payment_failed,
}


def process_event(event, now=None, notifier=None, calendar=None):
    """Apply a verified Stripe event once. Returns a short outcome label."""
    now = now or timezone.now()
    event_id = event['id']
    event_type = event['type']

    with transaction.atomic():
        record = ProcessedWebhookEvent.mark_processed(event_id, event_type)
        if record is None:
            logger.info("Stripe event %s already processed", event_id)
            return 'duplicate'

        handler = HANDLERS.get(event_type)
        if handler is None:
            logger.info("Unhandled Stripe event type %s (%s)", event_type, event_id)
            booking, outcome = None, 'ignored'
        else:
            booking, outcome = handler(event['data']['object'], now)

        record.booking = booking
        record.outcome = outcome
        record.save(update_fields=['booking', 'outcome'])

    logger.info("Stripe event %s (%s): %s", event_id, event_type, outcome)

    if outcome == 'confirmed':
        run_confirmation_effects(booking, now=now, notifier=notifier, calendar=calendar)
    return outcome
