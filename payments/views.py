import logging

import stripe
from django.conf import settings
from django.db import DatabaseError
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from bookings.errors import BookingError
from bookings.ratelimit import fingerprint_request
from bookings.views import error_response, parse_json

from .checkout import start_checkout
from .webhooks import process_event

logger = logging.getLogger(__name__)


@csrf_exempt
@require_http_methods(["POST"])
def create_checkout_session(request):
    data, error = parse_json(request)
    if error:
        return error

    try:
        result = start_checkout(
            data, origin=request.headers.get('Origin'), fingerprint=fingerprint_request(request),
        )
    except BookingError as e:
        return error_response(e)
    except DatabaseError:
        logger.exception("Checkout failed")
        return JsonResponse({'error': 'Unable to start payment, please try again.'}, status=500)

    return JsonResponse(result)


@csrf_exempt
@require_http_methods(["POST"])
def stripe_webhook(request):
    payload = request.body
    sig_header = request.META.get('HTTP_STRIPE_SIGNATURE')

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        return JsonResponse({'error': 'Webhook secret not configured'}, status=500)

    if not sig_header:
        return JsonResponse({'error': 'Missing signature'}, status=400)

    try:
        event = stripe.Webhook.construct_event(
            payload, sig_header, settings.STRIPE_WEBHOOK_SECRET
        )
    except ValueError:
        return JsonResponse({'error': 'Invalid payload'}, status=400)
    except stripe.error.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        return JsonResponse({'error': 'Invalid signature'}, status=400)

    try:
        outcome = process_event(event)
    except BookingError as e:
        logger.warning("Stripe event %s not applied: %s", event['id'], e.message)
        return error_response(e)
    except DatabaseError:
        logger.exception("Stripe event %s failed", event['id'])
        return JsonResponse({'error': 'Webhook processing failed'}, status=500)

    return JsonResponse({'received': True, 'outcome': outcome})
