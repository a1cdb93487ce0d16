import logging
from datetime import datetime, time, timedelta
from typing import Dict, NamedTuple, Optional
from zoneinfo import ZoneInfo

from django.conf import settings
from django.db.models import F
from django.utils import timezone

from .calendar_sync import get_calendar_sync
from .effects import SideEffectResult, best_effort, log_result
from .errors import ConcurrentUpdate, InvalidTransition
from .models import (
    Booking, Reminder, is_hold_expired,
    CONFIRMED, EXPIRED, CANCELLED, PAYMENT_FAILED,
)
from .notifications import get_notifier

logger = logging.getLogger(__name__)


class TransitionOutcome(NamedTuple):
    booking: Booking
    changed: bool
    effects: Optional[Dict[str, SideEffectResult]] = None


def transition(booking, to_status, now=None, **fields):
    """Compare-and-swap on ``(id, version, status)``."""
    if not booking.can_transition_to(to_status):
        raise InvalidTransition(booking.status, to_status)

    now = now or timezone.now()
    from_status = booking.status
    updated = Booking.objects.filter(
        pk=booking.pk,
        version=booking.version,
        status=from_status,
    ).update(status=to_status, version=F('version') + 1, updated_at=now, **fields)

    if updated == 0:
        raise ConcurrentUpdate()

    booking.refresh_from_db()
    logger.info("Booking %s: %s -> %s", booking.id, from_status, to_status)
    return booking


def mark_confirmed(booking, now=None, payment_intent=None):
    now = now or timezone.now()
    fields = {'confirmed_at': now}
    if payment_intent:
        fields['stripe_payment_intent'] = payment_intent
    return transition(booking, CONFIRMED, now=now, **fields)


def run_confirmation_effects(booking, now=None, notifier=None, calendar=None):
    """Calendar, emails and reminders for a confirmed booking. Call after commit."""
    now = now or timezone.now()
    notifier = notifier or get_notifier()
    calendar = calendar or get_calendar_sync()

    effects = {}
    effects['calendar'] = log_result('Calendar sync', calendar.sync(booking), booking.id)
    customer, operator = notifier.send_booking_confirmed(booking)
    effects['customer_email'] = log_result('Confirmation email (customer)', customer, booking.id)
    effects['operator_email'] = log_result('Confirmation email (operator)', operator, booking.id)
    effects['reminders'] = log_result(
        'Scheduling event reminders',
        best_effort('Scheduling event reminders', schedule_event_reminders, booking, now),
        booking.id,
    )
    return effects


def confirm_booking(booking, now=None, notifier=None, calendar=None, payment_intent=None):
    if booking.status == CONFIRMED:
        return TransitionOutcome(booking, changed=False, effects={})

    now = now or timezone.now()
    booking = mark_confirmed(booking, now=now, payment_intent=payment_intent)
    effects = run_confirmation_effects(booking, now=now, notifier=notifier, calendar=calendar)
    return TransitionOutcome(booking, changed=True, effects=effects)


def expire_booking(booking, now=None, notifier=None, force=False):
    """Expire a hold. Without ``force`` the hold window must have elapsed."""
    now = now or timezone.now()
    if not force and booking.is_hold() and not is_hold_expired(booking, now):
        raise InvalidTransition(message='Hold window has not elapsed yet.')

    booking = transition(booking, EXPIRED, now=now, expired_at=now)

    notifier = notifier or get_notifier()
    customer, operator = notifier.send_hold_expired(booking)
    effects = {
        'customer_email': log_result('Expiry email (customer)', customer, booking.id),
        'operator_email': log_result('Expiry email (operator)', operator, booking.id),
    }
    return TransitionOutcome(booking, changed=True, effects=effects)


def cancel_booking(booking, now=None, calendar=None):
    now = now or timezone.now()
    booking = transition(booking, CANCELLED, now=now, cancelled_at=now)

    effects = {}
    if booking.google_calendar_event_id:
        calendar = calendar or get_calendar_sync()
        effects['calendar'] = log_result('Calendar cancellation update', calendar.sync(booking), booking.id)
    return TransitionOutcome(booking, changed=True, effects=effects)


def mark_payment_failed(booking, now=None, payment_intent=None):
    if booking.status == PAYMENT_FAILED:
        return TransitionOutcome(booking, changed=False, effects={})

    fields = {}
    if payment_intent and not booking.stripe_payment_intent:
        fields['stripe_payment_intent'] = payment_intent
    booking = transition(booking, PAYMENT_FAILED, now=now, **fields)
    return TransitionOutcome(booking, changed=True, effects={})


def release_stale_holds(event_date, now=None, notifier=None):
    """Materialize lazily expired holds on ``event_date`` so the date can be rebooked."""
    now = now or timezone.now()
    released = []
    for booking in Booking.objects.on_date(event_date).holds():
        if not is_hold_expired(booking, now):
            continue
        try:
            released.append(expire_booking(booking, now=now, notifier=notifier).booking)
        except ConcurrentUpdate:
            booking.refresh_from_db()
            logger.info("Booking %s changed while being released; now %s", booking.id, booking.status)
    return released


def date_is_available(event_date, now=None):
    now = now or timezone.now()
    return not any(
        not is_hold_expired(booking, now)
        for booking in Booking.objects.on_date(event_date)
    )


def event_reminder_times(booking):
    tz = ZoneInfo(settings.BOOKING_TIME_ZONE)
    hours, minutes = (booking.start_time or '18:00').split(':')[:2]
    starts_at = datetime.combine(booking.event_date, time(int(hours), int(minutes)), tzinfo=tz)
    return {
        '72h_before': starts_at - timedelta(hours=72),
        '24h_before': starts_at - timedelta(hours=24),
        'day_of': datetime.combine(booking.event_date, time(9, 0), tzinfo=tz),
    }


def schedule_event_reminders(booking, now):
    scheduled = []
    for reminder_type, when in event_reminder_times(booking).items():
        if when <= now:
            continue
        reminder, created = Reminder.objects.get_or_create(
            booking=booking,
            reminder_type=reminder_type,
            defaults={'scheduled_for': when},
        )
        if created:
            scheduled.append(reminder)
    return scheduled
