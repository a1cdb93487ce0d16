import json
import logging
import uuid

from django.db import DatabaseError
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from .errors import BookingError, NotFound, SuspiciousSubmission, ValidationError
from .intake import create_booking_hold
from .models import Booking
from .ratelimit import fingerprint_request
from .serializers import (
    AvailabilitySerializer, BookingStatusSerializer, VerificationCodeSerializer,
    VerificationRequestSerializer, first_error_message,
)
from .state import date_is_available
from .sweep import check_sweep_secret, process_due_reminders, run_hold_sweep
from .verification import VerificationService

logger = logging.getLogger(__name__)


def error_response(error):
    return JsonResponse({'error': error.message}, status=error.status_code)


def parse_json(request):
    try:
        data = json.loads(request.body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None, JsonResponse({'error': 'Invalid JSON'}, status=400)
    if not isinstance(data, dict):
        return None, JsonResponse({'error': 'Invalid JSON'}, status=400)
    return data, None


def validated(serializer_class, data):
    serializer = serializer_class(data=data)
    if not serializer.is_valid():
        raise ValidationError(first_error_message(serializer.errors))
    return serializer.validated_data


def serialize_booking(booking):
    return {
        'id': str(booking.id),
        'status': booking.status,
        'customer_name': booking.customer_name,
        'customer_email': booking.customer_email,
        'customer_phone': booking.customer_phone,
        'event_date': booking.event_date.isoformat(),
        'event_type': booking.event_type,
        'start_time': booking.start_time,
        'end_time': booking.end_time,
        'venue_name': booking.venue_name,
        'street_address': booking.street_address,
        'city': booking.city,
        'state': booking.state,
        'zip_code': booking.zip_code,
        'package_type': booking.package_type,
        'service_tier': booking.service_tier,
        'selected_add_ons': booking.selected_add_ons,
        'total_amount': booking.total_amount,
        'deposit_amount': booking.deposit_amount,
        'notes': booking.notes,
        'created_at': booking.created_at.isoformat(),
        'hold_expires_at': booking.hold_expires_at.isoformat() if booking.is_hold() else None,
    }


@csrf_exempt
@require_http_methods(["POST"])
def create_booking(request):
    data, error = parse_json(request)
    if error:
        return error

    try:
        result = create_booking_hold(data, fingerprint=fingerprint_request(request))
    except SuspiciousSubmission as e:
        return JsonResponse({'success': True, 'message': e.message}, status=e.status_code)
    except BookingError as e:
        return error_response(e)
    except DatabaseError:
        logger.exception("Booking intake failed")
        return JsonResponse({'error': 'Unable to save booking. Please try again.'}, status=500)

    return JsonResponse({
        'booking': serialize_booking(result.booking),
        'rateLimit': result.rate_limit.as_dict(),
    }, status=201)


@csrf_exempt
@require_http_methods(["POST"])
def check_availability(request):
    data, error = parse_json(request)
    if error:
        return error

    try:
        event_date = validated(AvailabilitySerializer, data)['date']
        available = date_is_available(event_date, now=timezone.now())
    except BookingError as e:
        return error_response(e)
    except DatabaseError:
        logger.exception("Availability lookup failed")
        return JsonResponse({'error': 'Unable to check availability'}, status=500)

    return JsonResponse({'available': available, 'date': event_date.isoformat()})


@csrf_exempt
@require_http_methods(["POST"])
def get_booking_status(request):
    data, error = parse_json(request)
    if error:
        return error

    try:
        params = validated(BookingStatusSerializer, data)
        try:
            booking_id = uuid.UUID(params['bookingId'])
        except ValueError:
            raise NotFound()
        booking = Booking.objects.filter(pk=booking_id, stripe_session_id=params['sessionId']).first()
        if booking is None:
            raise NotFound()
    except BookingError as e:
        return error_response(e)
    except DatabaseError:
        logger.exception("Booking status lookup failed")
        return JsonResponse({'error': 'Unable to look up booking'}, status=500)

    return JsonResponse({'booking': serialize_booking(booking)})


@csrf_exempt
@require_http_methods(["POST"])
def request_verification_code(request):
    data, error = parse_json(request)
    if error:
        return error

    try:
        email = validated(VerificationRequestSerializer, data)['email']
        return JsonResponse(VerificationService().request_code(email))
    except BookingError as e:
        return error_response(e)


@csrf_exempt
@require_http_methods(["POST"])
def verify_email_code(request):
    data, error = parse_json(request)
    if error:
        return error

    try:
        params = validated(VerificationCodeSerializer, data)
        return JsonResponse(VerificationService().verify_code(params['email'], params['code']))
    except BookingError as e:
        return error_response(e)


@csrf_exempt
@require_http_methods(["POST"])
def sweep_holds(request):
    try:
        check_sweep_secret(request.headers.get('X-Sweep-Secret'))
    except BookingError as e:
        return error_response(e)
    return JsonResponse(run_hold_sweep())


@csrf_exempt
@require_http_methods(["POST"])
def send_due_reminders(request):
    try:
        check_sweep_secret(request.headers.get('X-Sweep-Secret'))
    except BookingError as e:
        return error_response(e)
    return JsonResponse(process_due_reminders())
