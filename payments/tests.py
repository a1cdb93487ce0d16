from datetime import timedelta
from django.core import mail
from django.db import DatabaseError
from django.template import TemplateDoesNotExist
from django.test import TestCase, Client, override_settings
from django.utils import timezone
from unittest.mock import patch, MagicMock
import json
import stripe

from bookings.effects import SideEffectResult
from bookings.models import Booking, BookingRateLimit, Reminder, CONFIRMED, EXPIRED, CANCELLED, PAYMENT_FAILED
from bookings.tests import future_date, make_booking
from .models import ProcessedWebhookEvent


def checkout_session(session_id='cs_test_123', payment_intent=None):
    return MagicMock(
        id=session_id,
        url=f'https://checkout.stripe.com/c/pay/{session_id}',
        payment_intent=payment_intent,
    )


class CheckoutExistingBookingTest(TestCase):
    def setUp(self):
        self.client = Client()

    def post(self, payload):
        return self.client.post(
            '/api/payments/checkout/',
            data=json.dumps(payload),
            content_type='application/json',
            HTTP_ORIGIN='https://vzentertainment.fun',
        )

    @patch('payments.checkout.stripe.checkout.Session.create')
    def test_starts_checkout_for_pending_hold(self, mock_session_create):
        mock_session_create.return_value = checkout_session()
        booking = make_booking(event_date=future_date(30))

        response = self.post({'bookingId': str(booking.id)})

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['sessionId'], 'cs_test_123')
        self.assertEqual(data['url'], 'https://checkout.stripe.com/c/pay/cs_test_123')

        params = mock_session_create.call_args.kwargs
        self.assertEqual(params['line_items'][0]['price_data']['unit_amount'], 31000)
        self.assertEqual(params['line_items'][0]['price_data']['currency'], 'usd')
        self.assertEqual(params['metadata']['bookingId'], str(booking.id))
        self.assertEqual(params['payment_intent_data']['metadata']['bookingId'], str(booking.id))
        self.assertEqual(params['customer_email'], 'ava@example.com')
        self.assertTrue(params['success_url'].startswith('https://vzentertainment.fun/booking?session_id={CHECKOUT_SESSION_ID}'))

        booking.refresh_from_db()
        self.assertEqual(booking.stripe_session_id, 'cs_test_123')
        self.assertEqual(booking.status, 'pending')

    @patch('payments.checkout.stripe.checkout.Session.create')
    def test_payment_failed_hold_can_retry(self, mock_session_create):
        mock_session_create.return_value = checkout_session('cs_retry', payment_intent='pi_retry')
        booking = make_booking(event_date=future_date(31), status=PAYMENT_FAILED)

        response = self.post({'bookingId': str(booking.id)})

        self.assertEqual(response.status_code, 200)
        booking.refresh_from_db()
        self.assertEqual(booking.stripe_session_id, 'cs_retry')
        self.assertEqual(booking.stripe_payment_intent, 'pi_retry')

    @patch('payments.checkout.stripe.checkout.Session.create')
    def test_closed_bookings_rejected(self, mock_session_create):
        for offset, status in enumerate([CONFIRMED, EXPIRED, CANCELLED]):
            booking = make_booking(event_date=future_date(32 + offset), status=status)
            response = self.post({'bookingId': str(booking.id)})
            self.assertEqual(response.status_code, 409)
        mock_session_create.assert_not_called()

    @patch('payments.checkout.stripe.checkout.Session.create')
    def test_lazily_expired_hold_rejected(self, mock_session_create):
        booking = make_booking(event_date=future_date(35), created_at=timezone.now() - timedelta(hours=73))

        response = self.post({'bookingId': str(booking.id)})

        self.assertEqual(response.status_code, 409)
        mock_session_create.assert_not_called()

    def test_unknown_booking(self):
        response = self.post({'bookingId': '4f1c2a9e-8d7b-4c11-9f0e-2b6a3c5d7e90'})
        self.assertEqual(response.status_code, 404)

        response = self.post({'bookingId': 'nope'})
        self.assertEqual(response.status_code, 404)

    @patch('payments.checkout.stripe.checkout.Session.create')
    def test_stripe_error_returns_400(self, mock_session_create):
        mock_session_create.side_effect = stripe.error.StripeError('card network down')
        booking = make_booking(event_date=future_date(36))

        response = self.post({'bookingId': str(booking.id)})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Unable to start payment, please try again.')
        booking.refresh_from_db()
        self.assertEqual(booking.status, 'pending')

    @override_settings(PAYMENTS_ENABLED=False)
    def test_payments_disabled(self):
        booking = make_booking(event_date=future_date(37))
        response = self.post({'bookingId': str(booking.id)})
        self.assertEqual(response.status_code, 400)

    def test_invalid_json(self):
        response = self.client.post('/api/payments/checkout/', data='nope', content_type='application/json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Invalid JSON')


class CheckoutInlineBookingTest(TestCase):
    def setUp(self):
        self.client = Client()

    def payload(self, event_date, **overrides):
        payload = {
            'packageType': 'option1',
            'customerEmail': 'Sam@Example.com',
            'customerName': 'Sam Rivera',
            'customerPhone': '404-555-0199',
            'eventDate': event_date.isoformat(),
            'eventDetails': {
                'venueName': 'Community Hall',
                'streetAddress': '400 Peachtree St',
                'city': 'Atlanta',
                'state': 'GA',
                'zipCode': '30308',
                'startTime': '19:00',
                'endTime': '23:30',
            },
            'notes': 'Outdoor patio',
        }
        payload.update(overrides)
        return payload

    def post(self, payload):
        return self.client.post('/api/payments/checkout/', data=json.dumps(payload), content_type='application/json')

    @patch('payments.checkout.stripe.checkout.Session.create')
    def test_creates_booking_and_session(self, mock_session_create):
        mock_session_create.return_value = checkout_session('cs_inline')

        response = self.post(self.payload(future_date(40)))

        self.assertEqual(response.status_code, 200)
        booking = Booking.objects.get(id=response.json()['bookingId'])
        self.assertEqual(booking.status, 'pending')
        self.assertEqual(booking.customer_email, 'sam@example.com')
        self.assertEqual(booking.total_amount, 400)
        self.assertEqual(booking.deposit_amount, 100)
        self.assertEqual(booking.stripe_session_id, 'cs_inline')
        params = mock_session_create.call_args.kwargs
        self.assertEqual(params['line_items'][0]['price_data']['unit_amount'], 10000)
        self.assertEqual(params['line_items'][0]['price_data']['product_data']['name'], 'Plug-and-Play - Event Deposit')

    @patch('payments.checkout.stripe.checkout.Session.create')
    def test_taken_date_rejected(self, mock_session_create):
        event_date = future_date(41)
        make_booking(event_date=event_date)

        response = self.post(self.payload(event_date))

        self.assertEqual(response.status_code, 409)
        mock_session_create.assert_not_called()

    def test_invalid_fields_rejected(self):
        response = self.post(self.payload(future_date(42), customerPhone='123'))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(Booking.objects.count(), 0)

    def test_missing_event_details_rejected(self):
        payload = self.payload(future_date(43))
        del payload['eventDetails']
        response = self.post(payload)
        self.assertEqual(response.status_code, 400)

    @patch('payments.checkout.stripe.checkout.Session.create')
    def test_stripe_error_releases_inline_booking(self, mock_session_create):
        mock_session_create.side_effect = stripe.error.StripeError('boom')
        event_date = future_date(44)

        response = self.post(self.payload(event_date))

        self.assertEqual(response.status_code, 400)
        booking = Booking.objects.get(event_date=event_date)
        self.assertEqual(booking.status, CANCELLED)

    @patch('payments.checkout.stripe.checkout.Session.create')
    def test_inline_bookings_rate_limited(self, mock_session_create):
        mock_session_create.return_value = checkout_session('cs_inline')

        for days in (45, 46, 47):
            self.assertEqual(self.post(self.payload(future_date(days))).status_code, 200)
        response = self.post(self.payload(future_date(48)))

        self.assertEqual(response.status_code, 429)
        self.assertEqual(Booking.objects.count(), 3)
        self.assertEqual(mock_session_create.call_count, 3)
        self.assertEqual(BookingRateLimit.objects.filter(email='sam@example.com').count(), 3)
        self.assertFalse(BookingRateLimit.objects.filter(ip_hash__isnull=True).exists())


class WebhookSignatureTest(TestCase):
    def setUp(self):
        self.client = Client()

    def test_webhook_rejects_missing_signature(self):
        payload = json.dumps({'type': 'checkout.session.completed'})
        response = self.client.post(
            '/api/payments/webhook/stripe/',
            data=payload,
            content_type='application/json'
        )
        self.assertEqual(response.status_code, 400)

    @patch('payments.views.stripe.Webhook.construct_event')
    def test_webhook_rejects_invalid_signature(self, mock_construct_event):
        mock_construct_event.side_effect = stripe.error.SignatureVerificationError(
            'Invalid signature', 'sig_header'
        )

        payload = json.dumps({'type': 'checkout.session.completed'})
        response = self.client.post(
            '/api/payments/webhook/stripe/',
            data=payload,
            content_type='application/json',
            HTTP_STRIPE_SIGNATURE='invalid_signature'
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(ProcessedWebhookEvent.objects.count(), 0)

    @override_settings(STRIPE_WEBHOOK_SECRET='')
    def test_webhook_requires_configured_secret(self):
        response = self.client.post(
            '/api/payments/webhook/stripe/',
            data='{}',
            content_type='application/json',
            HTTP_STRIPE_SIGNATURE='t=1,v1=abc'
        )
        self.assertEqual(response.status_code, 500)


class StripeWebhookTest(TestCase):
    def setUp(self):
        self.client = Client()

    def deliver(self, event):
        with patch('payments.views.stripe.Webhook.construct_event', return_value=event):
            return self.client.post(
                '/api/payments/webhook/stripe/',
                data=json.dumps(event),
                content_type='application/json',
                HTTP_STRIPE_SIGNATURE='t=1,v1=signed'
            )

    def completed_event(self, booking, event_id='evt_completed_1'):
        return {
            'id': event_id,
            'type': 'checkout.session.completed',
            'data': {'object': {
                'id': 'cs_test_123',
                'payment_intent': 'pi_test_123',
                'metadata': {'bookingId': str(booking.id)},
            }},
        }

    def failed_event(self, intent_id, booking=None, event_id='evt_failed_1'):
        metadata = {'bookingId': str(booking.id)} if booking else {}
        return {
            'id': event_id,
            'type': 'payment_intent.payment_failed',
            'data': {'object': {'id': intent_id, 'metadata': metadata}},
        }

    def test_completed_checkout_confirms_booking(self):
        booking = make_booking(event_date=future_date(50), stripe_session_id='cs_test_123')

        response = self.deliver(self.completed_event(booking))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['outcome'], 'confirmed')
        booking.refresh_from_db()
        self.assertEqual(booking.status, CONFIRMED)
        self.assertEqual(booking.stripe_payment_intent, 'pi_test_123')
        self.assertIsNotNone(booking.confirmed_at)
        self.assertEqual(sorted(m.to[0] for m in mail.outbox), ['ava@example.com', 'operator@example.com'])
        self.assertEqual(Reminder.objects.filter(booking=booking).count(), 3)

        record = ProcessedWebhookEvent.objects.get(event_id='evt_completed_1')
        self.assertEqual(record.booking, booking)
        self.assertEqual(record.outcome, 'confirmed')

    def test_duplicate_delivery_is_ignored(self):
        booking = make_booking(event_date=future_date(51))
        event = self.completed_event(booking)

        self.deliver(event)
        version = Booking.objects.get(pk=booking.pk).version
        response = self.deliver(event)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['outcome'], 'duplicate')
        self.assertEqual(len(mail.outbox), 2)
        self.assertEqual(Booking.objects.get(pk=booking.pk).version, version)
        self.assertEqual(ProcessedWebhookEvent.objects.count(), 1)

    @patch('bookings.state.get_calendar_sync')
    def test_redelivery_syncs_calendar_once(self, mock_get_calendar_sync):
        calendar = MagicMock()
        calendar.sync.return_value = SideEffectResult.success('gcal_1')
        mock_get_calendar_sync.return_value = calendar
        booking = make_booking(event_date=future_date(59))
        event = self.completed_event(booking, event_id='evt_calendar')

        self.deliver(event)
        self.deliver(event)

        calendar.sync.assert_called_once()
        self.assertEqual(calendar.sync.call_args.args[0].pk, booking.pk)

    @patch('bookings.state.get_calendar_sync')
    def test_email_failure_after_confirm_is_not_rolled_back(self, mock_get_calendar_sync):
        calendar = MagicMock()
        calendar.sync.return_value = SideEffectResult.success('gcal_1')
        mock_get_calendar_sync.return_value = calendar
        booking = make_booking(event_date=future_date(60))
        event = self.completed_event(booking, event_id='evt_render')

        with patch('bookings.notifications.render_to_string', side_effect=TemplateDoesNotExist('booking_confirmed_customer')):
            first = self.deliver(event)

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()['outcome'], 'confirmed')
        booking.refresh_from_db()
        self.assertEqual(booking.status, CONFIRMED)

        second = self.deliver(event)

        self.assertEqual(second.json()['outcome'], 'duplicate')
        calendar.sync.assert_called_once()
        self.assertEqual(len(mail.outbox), 0)

    @patch('bookings.state.get_calendar_sync')
    def test_failed_event_record_runs_no_effects(self, mock_get_calendar_sync):
        calendar = MagicMock()
        calendar.sync.return_value = SideEffectResult.success('gcal_1')
        mock_get_calendar_sync.return_value = calendar
        booking = make_booking(event_date=future_date(61))
        event = self.completed_event(booking, event_id='evt_record')
        original_save = ProcessedWebhookEvent.save

        def failing_save(instance, *args, **kwargs):
            if kwargs.get('update_fields'):
                raise DatabaseError('write failed')
            return original_save(instance, *args, **kwargs)

        with patch.object(ProcessedWebhookEvent, 'save', failing_save):
            first = self.deliver(event)

        self.assertEqual(first.status_code, 500)
        booking.refresh_from_db()
        self.assertEqual(booking.status, 'pending')
        self.assertEqual(ProcessedWebhookEvent.objects.count(), 0)
        self.assertEqual(len(mail.outbox), 0)
        calendar.sync.assert_not_called()

        second = self.deliver(event)

        self.assertEqual(second.json()['outcome'], 'confirmed')
        booking.refresh_from_db()
        self.assertEqual(booking.status, CONFIRMED)
        self.assertEqual(len(mail.outbox), 2)
        calendar.sync.assert_called_once()

    def test_second_event_for_confirmed_booking_sends_nothing(self):
        booking = make_booking(event_date=future_date(52))
        self.deliver(self.completed_event(booking, event_id='evt_a'))

        response = self.deliver(self.completed_event(booking, event_id='evt_b'))

        self.assertEqual(response.json()['outcome'], 'already_confirmed')
        self.assertEqual(len(mail.outbox), 2)

    def test_expired_booking_not_revived(self):
        booking = make_booking(event_date=future_date(53), status=EXPIRED)

        response = self.deliver(self.completed_event(booking))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['outcome'], 'not_revived')
        booking.refresh_from_db()
        self.assertEqual(booking.status, EXPIRED)
        self.assertEqual(len(mail.outbox), 0)

    def test_late_payment_on_unswept_hold_confirms(self):
        booking = make_booking(event_date=future_date(54), created_at=timezone.now() - timedelta(hours=80))

        response = self.deliver(self.completed_event(booking))

        self.assertEqual(response.json()['outcome'], 'confirmed')
        booking.refresh_from_db()
        self.assertEqual(booking.status, CONFIRMED)

    def test_unknown_booking_acknowledged(self):
        event = {
            'id': 'evt_orphan',
            'type': 'checkout.session.completed',
            'data': {'object': {'id': 'cs_orphan', 'metadata': {}}},
        }
        response = self.deliver(event)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['outcome'], 'booking_not_found')

    def test_payment_failed_by_stored_intent(self):
        booking = make_booking(event_date=future_date(55), stripe_payment_intent='pi_declined')

        response = self.deliver(self.failed_event('pi_declined'))

        self.assertEqual(response.json()['outcome'], 'payment_failed')
        booking.refresh_from_db()
        self.assertEqual(booking.status, PAYMENT_FAILED)

    def test_payment_failed_falls_back_to_metadata(self):
        booking = make_booking(event_date=future_date(56))

        self.deliver(self.failed_event('pi_unknown', booking=booking))

        booking.refresh_from_db()
        self.assertEqual(booking.status, PAYMENT_FAILED)
        self.assertEqual(booking.stripe_payment_intent, 'pi_unknown')

    def test_retry_after_failure_confirms(self):
        booking = make_booking(event_date=future_date(57), stripe_payment_intent='pi_first')
        self.deliver(self.failed_event('pi_first'))

        self.deliver(self.completed_event(booking, event_id='evt_retry'))

        booking.refresh_from_db()
        self.assertEqual(booking.status, CONFIRMED)

    def test_payment_failed_ignored_for_confirmed_booking(self):
        booking = make_booking(event_date=future_date(58), status=CONFIRMED, stripe_payment_intent='pi_late')

        response = self.deliver(self.failed_event('pi_late'))

        self.assertEqual(response.json()['outcome'], 'ignored')
        booking.refresh_from_db()
        self.assertEqual(booking.status, CONFIRMED)

    def test_other_events_acknowledged(self):
        response = self.deliver({
            'id': 'evt_refund',
            'type': 'charge.refunded',
            'data': {'object': {'id': 'ch_1'}},
        })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['outcome'], 'ignored')

    def test_event_idempotency(self):
        first = ProcessedWebhookEvent.mark_processed('evt_test123', 'checkout.session.completed')
        self.assertIsNotNone(first)

        second = ProcessedWebhookEvent.mark_processed('evt_test123', 'checkout.session.completed')
        self.assertIsNone(second)
