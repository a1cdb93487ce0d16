"""Hold reminders, hold expiry and event reminder delivery."""
import hmac
import logging

from django.conf import settings
from django.utils import timezone

from .errors import AuthorizationError, BookingError
from .models import Booking, Reminder, CONFIRMED
from .notifications import get_notifier
from .state import expire_booking

logger = logging.getLogger(__name__)


def check_sweep_secret(provided):
    expected = settings.HOLD_SWEEP_SECRET
    if not expected or not provided:
        raise AuthorizationError()
    if not hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8')):
        raise AuthorizationError()


def _result(booking, action, success, error=None):
    result = {'booking_id': str(booking.id), 'action': action, 'success': success}
    if error:
        result['error'] = error
    return result


def remind_hold(booking, now, notifier):
    customer, operator = notifier.send_hold_reminder(booking)
    if not operator.ok and not operator.skipped:
        logger.warning("Hold reminder operator notice failed for %s: %s", booking.id, operator.error)

    if not customer.ok:
        # Guard stays unset so the next run retries.
        return _result(booking, 'reminder', False, customer.error or 'Reminder email failed')

    stamped = Booking.objects.filter(
        pk=booking.pk, reminder_sent_at__isnull=True,
    ).update(reminder_sent_at=now)
    if not stamped:
        logger.info("Hold reminder for %s was already recorded", booking.id)
    return _result(booking, 'reminder', True)


def run_hold_sweep(now=None, notifier=None):
    now = now or timezone.now()
    notifier = notifier or get_notifier()
    results = []

    for booking in Booking.objects.due_hold_reminders(now):
        try:
            results.append(remind_hold(booking, now, notifier))
        except Exception as e:
            logger.exception("Hold reminder failed for booking %s", booking.id)
            results.append(_result(booking, 'reminder', False, str(e) or type(e).__name__))

    for booking in Booking.objects.expired_holds(now):
        try:
            expire_booking(booking, now=now, notifier=notifier)
            results.append(_result(booking, 'expired', True))
        except BookingError as e:
            logger.info("Booking %s not expired: %s", booking.id, e.message)
            results.append(_result(booking, 'expired', False, e.message))
        except Exception as e:
            logger.exception("Expiring booking %s failed", booking.id)
            results.append(_result(booking, 'expired', False, str(e) or type(e).__name__))

    if not results:
        return {'message': 'No holds to process', 'count': 0, 'results': []}

    logger.info("Hold sweep processed %d booking(s)", len(results))
    return {
        'message': f'Processed {len(results)} booking(s)',
        'count': len(results),
        'results': results,
    }


def deliver_reminder(reminder, now, notifier):
    if reminder.booking.status != CONFIRMED:
        sent = None
        error = f'Booking is {reminder.booking.status}'
    else:
        sent = notifier.send_event_reminder(reminder)
        error = None if sent.ok else (sent.error or 'Email send failed')

    if error:
        Reminder.objects.filter(pk=reminder.pk).update(status='failed', error_message=error)
        return {'reminder_id': reminder.pk, 'status': 'failed', 'error': error}

    Reminder.objects.filter(pk=reminder.pk).update(status='sent', sent_at=now, error_message='')
    return {'reminder_id': reminder.pk, 'status': 'sent', 'email': reminder.booking.customer_email}


def process_due_reminders(now=None, notifier=None, limit=None):
    now = now or timezone.now()
    notifier = notifier or get_notifier()
    limit = limit or settings.EVENT_REMINDER_BATCH_SIZE

    due = (
        Reminder.objects
        .filter(status='pending', scheduled_for__lte=now)
        .select_related('booking')
        .order_by('scheduled_for')[:limit]
    )

    results = []
    for reminder in due:
        try:
            results.append(deliver_reminder(reminder, now, notifier))
        except Exception as e:
            logger.exception("Reminder %s could not be processed", reminder.pk)
            results.append({'reminder_id': reminder.pk, 'status': 'failed', 'error': str(e) or type(e).__name__})

    if not results:
        return {'message': 'No pending reminders to process', 'count': 0, 'results': []}

    logger.info("Processed %d event reminder(s)", len(results))
    return {'message': f'Processed {len(results)} reminders', 'count': len(results), 'results': results}
