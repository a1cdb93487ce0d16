import json
import random
from datetime import date, datetime, timedelta
from io import StringIO
from smtplib import SMTPException
from unittest.mock import MagicMock, patch
from zoneinfo import ZoneInfo

from django.contrib.auth import get_user_model
from django.core import mail
from django.core.management import call_command
from django.db import DatabaseError, IntegrityError, transaction
from django.template import TemplateSyntaxError
from django.template.loader import render_to_string
from django.test import TestCase, Client, override_settings
from django.utils import timezone

from .calendar_sync import CalendarSync, GoogleCalendarClient, event_window
from .catalog import get_package, quote
from .effects import SideEffectResult
from .errors import ConcurrentUpdate, EmailNotVerified, InvalidTransition
from .models import (
    Booking, BookingRateLimit, EmailVerification, Reminder, TRANSITIONS,
    PENDING, CONFIRMED, EXPIRED, CANCELLED, PAYMENT_FAILED,
)
from .serializers import business_today
from .state import (
    cancel_booking, confirm_booking, expire_booking, schedule_event_reminders, transition,
)
from .sweep import deliver_reminder, process_due_reminders, run_hold_sweep
from .verification import require_verified_email


def future_date(days=30):
    return timezone.localdate() + timedelta(days=days)


def make_booking(event_date=None, status=PENDING, created_at=None, **fields):
    values = {
        'customer_name': 'Ava Stone',
        'customer_email': 'ava@example.com',
        'customer_phone': '5551234567',
        'event_date': event_date or future_date(),
        'start_time': '18:00',
        'end_time': '22:00',
        'venue_name': 'The Loft',
        'street_address': '12 Main St',
        'city': 'Atlanta',
        'state': 'GA',
        'zip_code': '30301',
        'package_type': 'essentialVibe',
        'service_tier': 'Essential Vibe',
        'total_amount': 620,
        'deposit_amount': 310,
        'status': status,
    }
    values.update(fields)
    booking = Booking.objects.create(**values)
    if created_at is not None:
        Booking.objects.filter(pk=booking.pk).update(created_at=created_at)
        booking.refresh_from_db()
    return booking


def verify_email(email, verified_at=None):
    now = timezone.now()
    return EmailVerification.objects.create(
        email=email,
        code='123456',
        expires_at=now + timedelta(minutes=10),
        verified_at=verified_at or now,
    )


def hold_payload(event_date, **overrides):
    payload = {
        'packageType': 'essentialVibe',
        'selectedAddOns': ['Basic Lighting Package'],
        'customer': {
            'name': 'Ava Stone',
            'email': 'ava@example.com',
            'phone': '(555) 123-4567',
        },
        'event': {
            'date': event_date.isoformat(),
            'startTime': '18:00',
            'endTime': '23:00',
            'venueName': 'The Loft',
            'streetAddress': '12 Main St',
            'city': 'Atlanta',
            'state': 'GA',
            'zipCode': '30301',
        },
        'notes': 'Mostly 90s hip hop please',
        'honeypot': '',
    }
    payload.update(overrides)
    return payload


class CatalogTest(TestCase):
    def test_half_deposit_with_add_on(self):
        q = quote(get_package('essentialVibe'), ['Basic Lighting Package'])
        self.assertEqual(q.total_amount, 620)
        self.assertEqual(q.deposit_amount, 310)

    def test_half_deposit_rounds_half_up(self):
        q = quote(get_package('essentialVibe'))
        self.assertEqual(q.total_amount, 495)
        self.assertEqual(q.deposit_amount, 248)

    def test_fixed_deposit_packages(self):
        q = quote(get_package('option2'), ['Extra Hour'])
        self.assertEqual(q.total_amount, 675)
        self.assertEqual(q.deposit_amount, 150)

    def test_unknown_add_ons_dropped(self):
        q = quote(get_package('premiumExperience'), ['Fog Machine', 'Extra Hour', 'Extra Hour'])
        self.assertEqual(q.add_ons, ['Extra Hour'])
        self.assertEqual(q.total_amount, 820)

    def test_unknown_package(self):
        self.assertIsNone(get_package('platinum'))
        self.assertIsNone(get_package(None))


class BookingIntakeTest(TestCase):
    def setUp(self):
        self.client = Client()

    def post(self, payload):
        return self.client.post('/api/bookings/', data=json.dumps(payload), content_type='application/json')

    def test_creates_pending_hold_with_quoted_totals(self):
        verification = verify_email('ava@example.com')
        payload = hold_payload(future_date(40), selectedAddOns=['Basic Lighting Package', 'Disco Ball'])

        response = self.post(payload)

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data['booking']['status'], 'pending')
        self.assertEqual(data['booking']['total_amount'], 620)
        self.assertEqual(data['booking']['deposit_amount'], 310)
        self.assertEqual(data['booking']['selected_add_ons'], ['Basic Lighting Package'])
        self.assertEqual(data['rateLimit'], {'windowMinutes': 10, 'maxAttempts': 3, 'attemptsRemaining': 2})

        booking = Booking.objects.get(id=data['booking']['id'])
        self.assertEqual(booking.customer_phone, '5551234567')
        self.assertEqual(booking.service_tier, 'Essential Vibe')
        self.assertIn('Selected Add-ons: Basic Lighting Package', booking.notes)
        self.assertTrue(booking.notes.startswith('Mostly 90s hip hop please'))

        verification.refresh_from_db()
        self.assertIsNotNone(verification.used_at)
        self.assertEqual(BookingRateLimit.objects.filter(email='ava@example.com').count(), 1)

    def test_email_is_normalized(self):
        verify_email('ava@example.com')
        payload = hold_payload(future_date(41))
        payload['customer']['email'] = '  Ava@Example.COM '

        response = self.post(payload)

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['booking']['customer_email'], 'ava@example.com')

    def test_unverified_email_rejected(self):
        response = self.post(hold_payload(future_date(42)))

        self.assertEqual(response.status_code, 403)
        self.assertEqual(Booking.objects.count(), 0)
        self.assertEqual(BookingRateLimit.objects.count(), 0)

    def test_stale_verification_rejected(self):
        verify_email('ava@example.com', verified_at=timezone.now() - timedelta(minutes=31))

        response = self.post(hold_payload(future_date(42)))

        self.assertEqual(response.status_code, 403)

    def test_consumed_verification_cannot_be_reused(self):
        verify_email('ava@example.com')
        self.assertEqual(self.post(hold_payload(future_date(43))).status_code, 201)

        response = self.post(hold_payload(future_date(44)))

        self.assertEqual(response.status_code, 403)

    def test_honeypot_returns_success_shape_and_stores_nothing(self):
        verify_email('ava@example.com')
        response = self.post(hold_payload(future_date(45), honeypot='http://spam.example'))

        self.assertEqual(response.status_code, 202)
        self.assertTrue(response.json()['success'])
        self.assertNotIn('booking', response.json())
        self.assertEqual(Booking.objects.count(), 0)
        self.assertEqual(BookingRateLimit.objects.count(), 0)

    def test_invalid_json(self):
        response = self.client.post('/api/bookings/', data='{not json', content_type='application/json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Invalid JSON')

    def test_past_date_rejected(self):
        response = self.post(hold_payload(timezone.localdate() - timedelta(days=1)))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Event date must be in the future.')

    def test_today_rejected(self):
        response = self.post(hold_payload(business_today()))
        self.assertEqual(response.status_code, 400)

    def test_bad_phone_rejected(self):
        payload = hold_payload(future_date(46))
        payload['customer']['phone'] = '555-1234'
        response = self.post(payload)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Please enter a valid phone number.')

    def test_bad_state_and_zip_rejected(self):
        payload = hold_payload(future_date(46))
        payload['event']['state'] = 'XX'
        self.assertEqual(self.post(payload).status_code, 400)

        payload = hold_payload(future_date(46))
        payload['event']['zipCode'] = '3030'
        response = self.post(payload)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'ZIP code must be 5 digits.')

    def test_bad_time_rejected(self):
        payload = hold_payload(future_date(46))
        payload['event']['startTime'] = '7pm'
        response = self.post(payload)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Start time must be in HH:MM format.')

    def test_notes_too_long_rejected(self):
        response = self.post(hold_payload(future_date(46), notes='x' * 1001))
        self.assertEqual(response.status_code, 400)

    def test_missing_customer_rejected(self):
        payload = hold_payload(future_date(46))
        del payload['customer']
        response = self.post(payload)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Missing booking details.')

    def test_unknown_package_rejected(self):
        verify_email('ava@example.com')
        response = self.post(hold_payload(future_date(47), packageType='platinum'))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(Booking.objects.count(), 0)

    def test_held_date_unavailable(self):
        event_date = future_date(48)
        make_booking(event_date=event_date, customer_email='other@example.com')
        verify_email('ava@example.com')

        response = self.post(hold_payload(event_date))

        self.assertEqual(response.status_code, 409)
        self.assertEqual(Booking.objects.filter(event_date=event_date).count(), 1)

    def test_lazily_expired_hold_released_on_intake(self):
        event_date = future_date(49)
        stale = make_booking(
            event_date=event_date,
            customer_email='other@example.com',
            created_at=timezone.now() - timedelta(hours=73),
        )
        verify_email('ava@example.com')

        response = self.post(hold_payload(event_date))

        self.assertEqual(response.status_code, 201)
        stale.refresh_from_db()
        self.assertEqual(stale.status, EXPIRED)
        self.assertIsNotNone(stale.expired_at)
        self.assertIn('other@example.com', [m.to[0] for m in mail.outbox])

    def test_date_taken_concurrently_rolls_back(self):
        event_date = future_date(50)
        make_booking(event_date=event_date, customer_email='other@example.com')
        verification = verify_email('ava@example.com')

        with patch('bookings.intake.date_is_available', return_value=True):
            response = self.post(hold_payload(event_date))

        self.assertEqual(response.status_code, 409)
        verification.refresh_from_db()
        self.assertIsNone(verification.used_at)
        self.assertEqual(BookingRateLimit.objects.count(), 0)

    def test_insert_failure_returns_500(self):
        verify_email('ava@example.com')
        with patch.object(Booking.objects, 'create', side_effect=DatabaseError('disk full')):
            response = self.post(hold_payload(future_date(51)))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()['error'], 'Unable to save booking. Please try again.')

    def test_rate_limit_lookup_failure_returns_503(self):
        verify_email('ava@example.com')
        with patch.object(BookingRateLimit.objects, 'filter', side_effect=DatabaseError('timeout')):
            response = self.post(hold_payload(future_date(52)))

        self.assertEqual(response.status_code, 503)
        self.assertEqual(Booking.objects.count(), 0)


@override_settings(BOOKING_REQUIRE_EMAIL_VERIFICATION=False)
class BookingRateLimitTest(TestCase):
    def setUp(self):
        self.client = Client()

    def post(self, payload):
        return self.client.post('/api/bookings/', data=json.dumps(payload), content_type='application/json')

    def test_fourth_attempt_from_same_email_is_limited(self):
        remaining = []
        for offset in range(3):
            response = self.post(hold_payload(future_date(60 + offset)))
            self.assertEqual(response.status_code, 201)
            remaining.append(response.json()['rateLimit']['attemptsRemaining'])
        self.assertEqual(remaining, [2, 1, 0])

        response = self.post(hold_payload(future_date(63)))

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()['error'], 'Too many requests. Please try again later.')
        self.assertEqual(Booking.objects.count(), 3)

    def test_fourth_attempt_from_same_device_is_limited(self):
        for offset in range(3):
            payload = hold_payload(future_date(70 + offset))
            payload['customer']['email'] = f'guest{offset}@example.com'
            self.assertEqual(self.post(payload).status_code, 201)

        payload = hold_payload(future_date(73))
        payload['customer']['email'] = 'guest9@example.com'
        response = self.post(payload)

        self.assertEqual(response.status_code, 429)
        self.assertEqual(
            response.json()['error'],
            'Too many requests from this device. Please wait before trying again.',
        )

    def test_attempts_outside_window_do_not_count(self):
        for _ in range(3):
            BookingRateLimit.objects.create(email='ava@example.com')
        BookingRateLimit.objects.update(created_at=timezone.now() - timedelta(minutes=11))

        response = self.post(hold_payload(future_date(74)))

        self.assertEqual(response.status_code, 201)

    def test_rejected_attempts_do_not_consume_allowance(self):
        held = future_date(75)
        make_booking(event_date=held, customer_email='other@example.com')
        for _ in range(3):
            self.assertEqual(self.post(hold_payload(held)).status_code, 409)

        response = self.post(hold_payload(future_date(76)))

        self.assertEqual(response.status_code, 201)

    def test_fingerprint_is_hashed(self):
        self.client.post(
            '/api/bookings/',
            data=json.dumps(hold_payload(future_date(77))),
            content_type='application/json',
            HTTP_X_FORWARDED_FOR='203.0.113.9, 10.0.0.1',
            HTTP_USER_AGENT='pytest',
        )
        row = BookingRateLimit.objects.get()
        self.assertEqual(len(row.ip_hash), 64)
        self.assertNotIn('203.0.113.9', row.ip_hash)


class EmailVerificationTest(TestCase):
    def setUp(self):
        self.client = Client()

    def request_code(self, email='ava@example.com'):
        return self.client.post(
            '/api/bookings/verification/request/',
            data=json.dumps({'email': email}),
            content_type='application/json',
        )

    def verify(self, code, email='ava@example.com'):
        return self.client.post(
            '/api/bookings/verification/verify/',
            data=json.dumps({'email': email, 'code': code}),
            content_type='application/json',
        )

    def test_request_sends_code(self):
        response = self.request_code('Ava@Example.com')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'success': True, 'expiresIn': 600})
        verification = EmailVerification.objects.get()
        self.assertEqual(verification.email, 'ava@example.com')
        self.assertEqual(len(verification.code), 6)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['ava@example.com'])
        self.assertIn(verification.code, mail.outbox[0].body)

    def test_request_is_rate_limited(self):
        for _ in range(3):
            self.assertEqual(self.request_code().status_code, 200)

        response = self.request_code()

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()['error'], 'Too many verification requests. Please wait 10 minutes.')

    def test_invalid_email(self):
        response = self.request_code('not-an-email')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Invalid email address')

    def test_send_failure_returns_500(self):
        with patch('bookings.notifications.send_mail', side_effect=SMTPException('relay down')):
            response = self.request_code()

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()['error'], 'Unable to send verification email. Please try again.')

    def test_verify_correct_code(self):
        self.request_code()
        code = EmailVerification.objects.get().code

        response = self.verify(code)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'success': True, 'verified': True})
        verification = EmailVerification.objects.get()
        self.assertIsNotNone(verification.verified_at)
        self.assertIsNone(verification.used_at)

    def test_verify_twice_before_use_succeeds(self):
        self.request_code()
        code = EmailVerification.objects.get().code
        self.verify(code)
        first_verified_at = EmailVerification.objects.get().verified_at

        response = self.verify(code)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(EmailVerification.objects.get().verified_at, first_verified_at)

    def test_wrong_code(self):
        self.request_code()
        code = EmailVerification.objects.get().code
        wrong = '000000' if code != '000000' else '111111'

        response = self.verify(wrong)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Invalid verification code.')

    def test_malformed_code(self):
        response = self.verify('12ab')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Code must be 6 digits')

    def test_expired_code(self):
        self.request_code()
        verification = EmailVerification.objects.get()
        EmailVerification.objects.update(expires_at=timezone.now() - timedelta(seconds=1))

        response = self.verify(verification.code)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Verification code has expired. Please request a new one.')

    def test_used_code(self):
        self.request_code()
        verification = EmailVerification.objects.get()
        EmailVerification.objects.update(verified_at=timezone.now(), used_at=timezone.now())

        response = self.verify(verification.code)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'This code has already been used. Please request a new one.')

    def test_require_verified_email(self):
        with self.assertRaises(EmailNotVerified):
            require_verified_email('ava@example.com')

        verification = verify_email('ava@example.com')
        self.assertEqual(require_verified_email('ava@example.com'), verification)


class BookingStateMachineTest(TestCase):
    def test_allowed_transition_bumps_version(self):
        booking = make_booking()
        transition(booking, PAYMENT_FAILED)
        self.assertEqual(booking.status, PAYMENT_FAILED)
        self.assertEqual(booking.version, 2)

    def test_terminal_states_reject_transitions(self):
        booking = make_booking(status=EXPIRED)
        for target in (PENDING, CONFIRMED, CANCELLED, PAYMENT_FAILED):
            with self.assertRaises(InvalidTransition):
                transition(booking, target)
        booking.refresh_from_db()
        self.assertEqual(booking.status, EXPIRED)
        self.assertEqual(booking.version, 1)

    def test_stale_copy_loses_compare_and_swap(self):
        booking = make_booking()
        stale = Booking.objects.get(pk=booking.pk)

        confirm_booking(booking)

        with self.assertRaises(ConcurrentUpdate):
            transition(stale, EXPIRED)
        booking.refresh_from_db()
        self.assertEqual(booking.status, CONFIRMED)

    def test_random_transition_sequences(self):
        rng = random.Random(20240917)
        statuses = [PENDING, CONFIRMED, EXPIRED, CANCELLED, PAYMENT_FAILED]
        for trial in range(20):
            booking = make_booking(event_date=future_date(100 + trial))
            for _ in range(6):
                target = rng.choice(statuses)
                before_status, before_version = booking.status, booking.version
                if target in TRANSITIONS[before_status]:
                    transition(booking, target)
                    self.assertEqual(booking.status, target)
                    self.assertEqual(booking.version, before_version + 1)
                else:
                    with self.assertRaises(InvalidTransition):
                        transition(booking, target)
                    booking.refresh_from_db()
                    self.assertEqual(booking.status, before_status)
                    self.assertEqual(booking.version, before_version)

    def test_event_date_is_immutable(self):
        booking = make_booking(event_date=future_date(30))
        booking = Booking.objects.get(pk=booking.pk)
        booking.event_date = future_date(31)
        with self.assertRaises(ValueError):
            booking.save()

    def test_one_blocking_booking_per_date(self):
        event_date = future_date(32)
        make_booking(event_date=event_date)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                make_booking(event_date=event_date, customer_email='b@example.com')

        make_booking(event_date=event_date, status=CANCELLED, customer_email='c@example.com')
        self.assertEqual(Booking.objects.filter(event_date=event_date).count(), 2)

    def test_deposit_cannot_exceed_total(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                make_booking(total_amount=100, deposit_amount=150)

    def test_confirm_sends_emails_once(self):
        booking = make_booking(event_date=future_date(33))

        outcome = confirm_booking(booking, payment_intent='pi_123')

        self.assertTrue(outcome.changed)
        self.assertEqual(outcome.booking.stripe_payment_intent, 'pi_123')
        self.assertIsNotNone(outcome.booking.confirmed_at)
        self.assertEqual(len(mail.outbox), 2)
        self.assertTrue(outcome.effects['calendar'].skipped)
        self.assertEqual(Reminder.objects.filter(booking=booking).count(), 3)

        again = confirm_booking(outcome.booking)
        self.assertFalse(again.changed)
        self.assertEqual(len(mail.outbox), 2)

    def test_side_effect_failure_keeps_confirmation(self):
        booking = make_booking(event_date=future_date(34))
        calendar = MagicMock()
        calendar.sync.return_value = SideEffectResult.failure('calendar down')

        with patch('bookings.notifications.send_mail', side_effect=SMTPException('relay down')):
            outcome = confirm_booking(booking, calendar=calendar)

        self.assertEqual(outcome.booking.status, CONFIRMED)
        self.assertFalse(outcome.effects['calendar'].ok)
        self.assertFalse(outcome.effects['customer_email'].ok)
        booking.refresh_from_db()
        self.assertEqual(booking.status, CONFIRMED)

    def test_template_error_reported_not_raised(self):
        booking = make_booking(event_date=future_date(36))

        with patch('bookings.notifications.render_to_string', side_effect=TemplateSyntaxError('bad template')):
            outcome = confirm_booking(booking)

        self.assertEqual(outcome.booking.status, CONFIRMED)
        self.assertFalse(outcome.effects['customer_email'].ok)
        self.assertIn('bad template', outcome.effects['operator_email'].error)
        self.assertEqual(len(mail.outbox), 0)

    def test_unchanged_outcomes_have_own_effects(self):
        first = confirm_booking(make_booking(event_date=future_date(37), status=CONFIRMED))
        second = confirm_booking(make_booking(event_date=future_date(38), status=CONFIRMED))

        first.effects['note'] = SideEffectResult.success()

        self.assertEqual(second.effects, {})

    def test_expire_requires_elapsed_window(self):
        booking = make_booking(event_date=future_date(35))
        with self.assertRaises(InvalidTransition):
            expire_booking(booking)

        outcome = expire_booking(booking, force=True)
        self.assertEqual(outcome.booking.status, EXPIRED)

    def test_cancel_confirmed_booking(self):
        booking = confirm_booking(make_booking(event_date=future_date(36))).booking
        outcome = cancel_booking(booking)
        self.assertEqual(outcome.booking.status, CANCELLED)
        self.assertIsNotNone(outcome.booking.cancelled_at)

    def test_event_reminders_skip_past_times(self):
        tz = ZoneInfo('America/New_York')
        now = datetime(2030, 6, 1, 12, 0, tzinfo=tz)
        booking = make_booking(event_date=date(2030, 6, 3), status=CONFIRMED)

        scheduled = schedule_event_reminders(booking, now)

        self.assertEqual(sorted(r.reminder_type for r in scheduled), ['24h_before', 'day_of'])
        day_of = Reminder.objects.get(booking=booking, reminder_type='day_of')
        self.assertEqual(day_of.scheduled_for, datetime(2030, 6, 3, 9, 0, tzinfo=tz))
        self.assertEqual(schedule_event_reminders(booking, now), [])


class HoldSweepTest(TestCase):
    def setUp(self):
        self.client = Client()
        self.now = timezone.now()

    def hold(self, hours_ago, days_ahead, **fields):
        return make_booking(
            event_date=future_date(days_ahead),
            created_at=self.now - timedelta(hours=hours_ago),
            **fields
        )

    def test_expires_holds_past_window(self):
        booking = self.hold(73, 80)

        summary = run_hold_sweep(now=self.now)

        booking.refresh_from_db()
        self.assertEqual(booking.status, EXPIRED)
        self.assertEqual(summary['count'], 1)
        self.assertEqual(summary['results'], [
            {'booking_id': str(booking.id), 'action': 'expired', 'success': True},
        ])
        recipients = sorted(m.to[0] for m in mail.outbox)
        self.assertEqual(recipients, ['ava@example.com', 'operator@example.com'])
        self.assertIn('released', mail.outbox[0].body + mail.outbox[1].body)

    def test_window_boundaries(self):
        at_expiry = self.hold(72, 81)
        before_expiry = self.hold(71.99, 82)
        at_reminder = self.hold(48, 83)
        before_reminder = self.hold(47.99, 84)

        run_hold_sweep(now=self.now)

        for booking in (at_expiry, before_expiry, at_reminder, before_reminder):
            booking.refresh_from_db()
        self.assertEqual(at_expiry.status, EXPIRED)
        self.assertEqual(before_expiry.status, PENDING)
        self.assertIsNotNone(before_expiry.reminder_sent_at)
        self.assertIsNotNone(at_reminder.reminder_sent_at)
        self.assertIsNone(before_reminder.reminder_sent_at)

    def test_payment_failed_holds_expire(self):
        booking = self.hold(80, 85, status=PAYMENT_FAILED)
        run_hold_sweep(now=self.now)
        booking.refresh_from_db()
        self.assertEqual(booking.status, EXPIRED)

    def test_confirmed_bookings_untouched(self):
        booking = self.hold(200, 86, status=CONFIRMED)
        summary = run_hold_sweep(now=self.now)
        booking.refresh_from_db()
        self.assertEqual(booking.status, CONFIRMED)
        self.assertEqual(summary['count'], 0)

    def test_sweep_is_idempotent(self):
        self.hold(73, 87)
        self.hold(50, 88)

        first = run_hold_sweep(now=self.now)
        sent = len(mail.outbox)
        second = run_hold_sweep(now=self.now)

        self.assertEqual(first['count'], 2)
        self.assertEqual(second['count'], 0)
        self.assertEqual(len(mail.outbox), sent)

    def test_failed_reminder_leaves_guard_unset(self):
        booking = self.hold(50, 89)

        with patch('bookings.notifications.send_mail', side_effect=SMTPException('relay down')):
            summary = run_hold_sweep(now=self.now)

        booking.refresh_from_db()
        self.assertIsNone(booking.reminder_sent_at)
        self.assertFalse(summary['results'][0]['success'])

        run_hold_sweep(now=self.now)
        booking.refresh_from_db()
        self.assertIsNotNone(booking.reminder_sent_at)

    def test_reminder_template_error_does_not_block_expiry(self):
        reminded = self.hold(50, 92)
        stale = self.hold(80, 93)

        def render(template_name, context=None):
            if 'hold_reminder_customer' in template_name:
                raise TemplateSyntaxError('bad template')
            return render_to_string(template_name, context)

        with patch('bookings.notifications.render_to_string', side_effect=render):
            summary = run_hold_sweep(now=self.now)

        reminded.refresh_from_db()
        stale.refresh_from_db()
        self.assertIsNone(reminded.reminder_sent_at)
        self.assertEqual(stale.status, EXPIRED)
        results = {r['booking_id']: r for r in summary['results']}
        self.assertFalse(results[str(reminded.id)]['success'])
        self.assertIn('bad template', results[str(reminded.id)]['error'])
        self.assertTrue(results[str(stale.id)]['success'])

    def test_unexpected_error_isolated_per_booking(self):
        broken = self.hold(80, 94)
        healthy = self.hold(80, 95)

        def expire(booking, **kwargs):
            if booking.pk == broken.pk:
                raise RuntimeError('notifier crashed')
            return expire_booking(booking, **kwargs)

        with patch('bookings.sweep.expire_booking', side_effect=expire):
            summary = run_hold_sweep(now=self.now)

        broken.refresh_from_db()
        healthy.refresh_from_db()
        self.assertEqual(broken.status, PENDING)
        self.assertEqual(healthy.status, EXPIRED)
        self.assertEqual(summary['count'], 2)
        self.assertIn(
            {'booking_id': str(broken.id), 'action': 'expired', 'success': False, 'error': 'notifier crashed'},
            summary['results'],
        )

    def test_endpoint_requires_secret(self):
        self.assertEqual(self.client.post('/api/bookings/sweep/').status_code, 401)
        response = self.client.post('/api/bookings/sweep/', HTTP_X_SWEEP_SECRET='wrong')
        self.assertEqual(response.status_code, 401)

    @override_settings(HOLD_SWEEP_SECRET='')
    def test_endpoint_rejects_when_secret_unset(self):
        response = self.client.post('/api/bookings/sweep/', HTTP_X_SWEEP_SECRET='')
        self.assertEqual(response.status_code, 401)

    def test_endpoint_runs_sweep(self):
        self.hold(90, 90)
        response = self.client.post('/api/bookings/sweep/', HTTP_X_SWEEP_SECRET='test-sweep-secret')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['count'], 1)

    def test_management_command(self):
        booking = self.hold(90, 91)
        out = StringIO()
        call_command('sweep_holds', stdout=out)
        booking.refresh_from_db()
        self.assertEqual(booking.status, EXPIRED)
        self.assertIn('Sweep complete', out.getvalue())


class EventReminderTest(TestCase):
    def setUp(self):
        self.client = Client()
        self.now = timezone.now()

    def test_due_reminder_sent(self):
        booking = make_booking(event_date=future_date(1), status=CONFIRMED)
        reminder = Reminder.objects.create(
            booking=booking, reminder_type='24h_before', scheduled_for=self.now - timedelta(minutes=1),
        )
        later = Reminder.objects.create(
            booking=booking, reminder_type='day_of', scheduled_for=self.now + timedelta(hours=10),
        )

        summary = process_due_reminders(now=self.now)

        reminder.refresh_from_db()
        later.refresh_from_db()
        self.assertEqual(summary['count'], 1)
        self.assertEqual(reminder.status, 'sent')
        self.assertEqual(reminder.sent_at, self.now)
        self.assertEqual(later.status, 'pending')
        self.assertEqual(mail.outbox[0].subject, "Tomorrow's the Big Day!")

    def test_reminder_for_cancelled_booking_fails(self):
        booking = make_booking(event_date=future_date(2), status=CANCELLED)
        reminder = Reminder.objects.create(
            booking=booking, reminder_type='72h_before', scheduled_for=self.now - timedelta(minutes=1),
        )

        process_due_reminders(now=self.now)

        reminder.refresh_from_db()
        self.assertEqual(reminder.status, 'failed')
        self.assertEqual(reminder.error_message, 'Booking is cancelled')
        self.assertEqual(len(mail.outbox), 0)

    def test_unexpected_error_isolated_per_reminder(self):
        booking = make_booking(event_date=future_date(3), status=CONFIRMED)
        broken = Reminder.objects.create(
            booking=booking, reminder_type='72h_before', scheduled_for=self.now - timedelta(minutes=5),
        )
        healthy = Reminder.objects.create(
            booking=booking, reminder_type='24h_before', scheduled_for=self.now - timedelta(minutes=1),
        )

        def deliver(reminder, now, notifier):
            if reminder.pk == broken.pk:
                raise RuntimeError('lookup failed')
            return deliver_reminder(reminder, now, notifier)

        with patch('bookings.sweep.deliver_reminder', side_effect=deliver):
            summary = process_due_reminders(now=self.now)

        healthy.refresh_from_db()
        self.assertEqual(healthy.status, 'sent')
        self.assertEqual(summary['results'][0], {'reminder_id': broken.pk, 'status': 'failed', 'error': 'lookup failed'})

    def test_endpoint_requires_secret(self):
        self.assertEqual(self.client.post('/api/bookings/reminders/').status_code, 401)
        response = self.client.post('/api/bookings/reminders/', HTTP_X_SWEEP_SECRET='test-sweep-secret')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['message'], 'No pending reminders to process')


class AvailabilityAndStatusTest(TestCase):
    def setUp(self):
        self.client = Client()

    def post(self, url, payload):
        return self.client.post(url, data=json.dumps(payload), content_type='application/json')

    def test_free_date_available(self):
        event_date = future_date(20)
        response = self.post('/api/bookings/availability/', {'date': event_date.isoformat()})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'available': True, 'date': event_date.isoformat()})

    def test_held_and_confirmed_dates_unavailable(self):
        make_booking(event_date=future_date(21))
        make_booking(event_date=future_date(22), status=CONFIRMED)
        make_booking(event_date=future_date(23), status=PAYMENT_FAILED)
        for days in (21, 22, 23):
            response = self.post('/api/bookings/availability/', {'date': future_date(days).isoformat()})
            self.assertFalse(response.json()['available'])

    def test_lazily_expired_hold_does_not_block(self):
        make_booking(event_date=future_date(24), created_at=timezone.now() - timedelta(hours=72))
        response = self.post('/api/bookings/availability/', {'date': future_date(24).isoformat()})
        self.assertTrue(response.json()['available'])

    def test_availability_requires_date(self):
        response = self.post('/api/bookings/availability/', {})
        self.assertEqual(response.status_code, 400)

    def test_status_requires_both_ids(self):
        response = self.post('/api/bookings/status/', {'bookingId': 'abc'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'bookingId and sessionId are required')

    def test_status_requires_matching_session(self):
        booking = make_booking(event_date=future_date(25), stripe_session_id='cs_test_1')

        response = self.post('/api/bookings/status/', {'bookingId': str(booking.id), 'sessionId': 'cs_other'})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {'error': 'No booking found'})

        response = self.post('/api/bookings/status/', {'bookingId': 'not-a-uuid', 'sessionId': 'cs_test_1'})
        self.assertEqual(response.status_code, 404)

    def test_status_returns_booking(self):
        booking = make_booking(event_date=future_date(26), stripe_session_id='cs_test_2')
        response = self.post('/api/bookings/status/', {'bookingId': str(booking.id), 'sessionId': 'cs_test_2'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['booking']['id'], str(booking.id))
        self.assertEqual(response.json()['booking']['status'], 'pending')


class CalendarSyncTest(TestCase):
    def setUp(self):
        self.session = MagicMock()
        token = MagicMock(status_code=200)
        token.json.return_value = {'access_token': 'ya29.token'}
        self.token_response = token
        client = GoogleCalendarClient('client-id', 'client-secret', 'refresh-token', session=self.session)
        self.sync = CalendarSync(client=client, time_zone='America/New_York', business_name='Vibe Zone Entertainment')

    def created_response(self, event_id='gcal_123'):
        response = MagicMock(ok=True)
        response.json.return_value = {'id': event_id}
        return response

    def test_creates_event_and_stores_id(self):
        booking = make_booking(event_date=future_date(10), status=CONFIRMED)
        self.session.post.side_effect = [self.token_response, self.created_response()]

        result = self.sync.sync(booking)

        self.assertTrue(result.ok)
        booking.refresh_from_db()
        self.assertEqual(booking.google_calendar_event_id, 'gcal_123')
        body = self.session.post.call_args_list[1].kwargs['json']
        self.assertEqual(body['start']['timeZone'], 'America/New_York')
        self.assertEqual(body['attendees'], [{'email': 'ava@example.com'}])

    def test_existing_event_is_updated(self):
        booking = make_booking(event_date=future_date(11), status=CONFIRMED, google_calendar_event_id='gcal_9')
        self.session.post.side_effect = [self.token_response]
        self.session.patch.return_value = self.created_response('gcal_9')

        result = self.sync.sync(booking)

        self.assertTrue(result.ok)
        self.session.patch.assert_called_once()
        self.assertTrue(self.session.patch.call_args.args[0].endswith('/events/gcal_9'))

    def test_cancellation_marks_summary(self):
        booking = make_booking(event_date=future_date(12), status=CONFIRMED, google_calendar_event_id='gcal_7')
        self.session.post.side_effect = [self.token_response]
        self.session.patch.return_value = self.created_response('gcal_7')

        cancel_booking(booking, calendar=self.sync)

        body = self.session.patch.call_args.kwargs['json']
        self.assertTrue(body['summary'].startswith('CANCELLED - '))

    def test_api_failure_is_reported_not_raised(self):
        booking = make_booking(event_date=future_date(13), status=CONFIRMED)
        failed = MagicMock(ok=False, text='quota exceeded')
        self.session.post.side_effect = [self.token_response, failed]

        result = self.sync.sync(booking)

        self.assertFalse(result.ok)
        booking.refresh_from_db()
        self.assertIsNone(booking.google_calendar_event_id)

    def test_unconfigured_is_skipped(self):
        sync = CalendarSync(client=GoogleCalendarClient('', '', ''))
        result = sync.sync(make_booking(event_date=future_date(14)))
        self.assertTrue(result.skipped)

    def test_overnight_event_ends_next_day(self):
        booking = make_booking(event_date=date(2030, 12, 31), start_time='21:00', end_time='01:00')
        start, end = event_window(booking)
        self.assertEqual(start, datetime(2030, 12, 31, 21, 0))
        self.assertEqual(end, datetime(2031, 1, 1, 1, 0))


class BookingAdminActionTest(TestCase):
    def setUp(self):
        self.client = Client()
        user = get_user_model().objects.create_superuser('admin', 'admin@example.com', 'password')
        self.client.force_login(user)
        self.url = '/admin/bookings/booking/'

    def run_action(self, action, booking):
        return self.client.post(self.url, {'action': action, '_selected_action': [str(booking.pk)]}, follow=True)

    def test_confirm_action(self):
        booking = make_booking(event_date=future_date(15))
        self.run_action('confirm_selected', booking)
        booking.refresh_from_db()
        self.assertEqual(booking.status, CONFIRMED)

    def test_expire_action_forces_fresh_hold(self):
        booking = make_booking(event_date=future_date(16))
        self.run_action('expire_selected', booking)
        booking.refresh_from_db()
        self.assertEqual(booking.status, EXPIRED)

    def test_invalid_transition_reported(self):
        booking = make_booking(event_date=future_date(17), status=EXPIRED)
        response = self.run_action('confirm_selected', booking)
        booking.refresh_from_db()
        self.assertEqual(booking.status, EXPIRED)
        self.assertContains(response, 'Cannot move booking from expired to confirmed.')
