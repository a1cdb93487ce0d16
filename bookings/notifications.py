from django.conf import settings
from django.core.mail import send_mail
from django.template.loader import render_to_string

from .effects import SideEffectResult, best_effort


EVENT_REMINDER_SUBJECTS = {
    '72h_before': 'Your Event is in 3 Days!',
    '24h_before': "Tomorrow's the Big Day!",
    'day_of': "Today's the Day!",
}


class BookingNotifier:
    """Customer and operator emails. Sends return ``SideEffectResult``s, never raise."""

    def __init__(self, from_email=None, operator_email=None, business_name=None, connection=None):
        self.from_email = from_email or settings.DEFAULT_FROM_EMAIL
        self.operator_email = operator_email if operator_email is not None else settings.BOOKING_OPERATOR_EMAIL
        self.business_name = business_name or settings.BOOKING_BUSINESS_NAME
        self.connection = connection

    def _render_and_send(self, template, to, subject, context):
        body = render_to_string(f'bookings/email/{template}.txt', context)
        return send_mail(
            subject,
            body,
            self.from_email,
            [to],
            fail_silently=False,
            connection=self.connection,
        )

    def _send(self, template, to, subject, context) -> SideEffectResult:
        if not to:
            return SideEffectResult.skip('No recipient address')
        context = dict(context, business_name=self.business_name)
        return best_effort(f'Email {template} to {to}', self._render_and_send, template, to, subject, context)

    def _booking_context(self, booking):
        return {
            'booking': booking,
            'location': booking.location(),
            'balance_due': booking.total_amount - booking.deposit_amount,
            'hold_hours': settings.BOOKING_HOLD_WINDOW_HOURS,
            'site_url': settings.SITE_URL,
        }

    def send_verification_code(self, email, code, ttl_minutes) -> SideEffectResult:
        return self._send(
            'verification_code',
            email,
            f'Your Verification Code - {self.business_name}',
            {'code': code, 'ttl_minutes': ttl_minutes},
        )

    def send_booking_confirmed(self, booking):
        context = self._booking_context(booking)
        customer = self._send(
            'booking_confirmed_customer',
            booking.customer_email,
            f'Your booking is confirmed for {booking.event_date:%B %d, %Y}',
            context,
        )
        operator = self._send(
            'booking_confirmed_operator',
            self.operator_email,
            f'Deposit received: {booking.customer_name} on {booking.event_date}',
            context,
        )
        return customer, operator

    def send_hold_reminder(self, booking):
        context = self._booking_context(booking)
        customer = self._send(
            'hold_reminder_customer',
            booking.customer_email,
            '24 hours left to secure your event date',
            context,
        )
        operator = self._send(
            'hold_reminder_operator',
            self.operator_email,
            f'Hold expiring in 24 hours: {booking.customer_name} on {booking.event_date}',
            context,
        )
        return customer, operator

    def send_hold_expired(self, booking):
        context = self._booking_context(booking)
        customer = self._send(
            'hold_expired_customer',
            booking.customer_email,
            f'Your booking hold for {booking.event_date:%B %d, %Y} has expired',
            context,
        )
        operator = self._send(
            'hold_expired_operator',
            self.operator_email,
            f'Hold expired: {booking.customer_name} on {booking.event_date}',
            context,
        )
        return customer, operator

    def send_event_reminder(self, reminder) -> SideEffectResult:
        booking = reminder.booking
        context = self._booking_context(booking)
        context['reminder_type'] = reminder.reminder_type
        subject = EVENT_REMINDER_SUBJECTS.get(
            reminder.reminder_type, f'Event Reminder from {self.business_name}'
        )
        return self._send('event_reminder', booking.customer_email, subject, context)


def get_notifier():
    return BookingNotifier()
