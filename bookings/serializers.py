import re
from zoneinfo import ZoneInfo

from django.conf import settings
from django.utils import timezone
from rest_framework import serializers


NAME_RE = re.compile(r"^[A-Za-zÀ-ÖØ-öø-ÿ' .,-]+$")
TIME_RE = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')
ZIP_RE = re.compile(r'^\d{5}$')
CODE_RE = re.compile(r'^\d{6}$')

US_STATES = {
    'AL', 'AK', 'AZ', 'AR', 'CA', 'CO', 'CT', 'DE', 'FL', 'GA',
    'HI', 'ID', 'IL', 'IN', 'IA', 'KS', 'KY', 'LA', 'ME', 'MD',
    'MA', 'MI', 'MN', 'MS', 'MO', 'MT', 'NE', 'NV', 'NH', 'NJ',
    'NM', 'NY', 'NC', 'ND', 'OH', 'OK', 'OR', 'PA', 'RI', 'SC',
    'SD', 'TN', 'TX', 'UT', 'VT', 'VA', 'WA', 'WV', 'WI', 'WY',
    'DC', 'PR', 'VI', 'GU', 'AS', 'MP',
}


def first_error_message(errors):
    """Flatten DRF's nested error structure down to its first message."""
    if isinstance(errors, dict):
        for value in errors.values():
            message = first_error_message(value)
            if message:
                return message
    elif isinstance(errors, (list, tuple)):
        for item in errors:
            message = first_error_message(item)
            if message:
                return message
    elif errors:
        return str(errors)
    return None


def business_today(now=None):
    return timezone.localdate(now or timezone.now(), timezone=ZoneInfo(settings.BOOKING_TIME_ZONE))


def normalize_email(value):
    return value.strip().lower()


class CustomerSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100, error_messages={
        'required': 'Name is required.',
        'blank': 'Name is required.',
        'max_length': 'Name must be 100 characters or fewer.',
    })
    email = serializers.EmailField(max_length=255, error_messages={
        'required': 'Email is required.',
        'blank': 'Email is required.',
        'invalid': 'Please enter a valid email address.',
    })
    phone = serializers.CharField(max_length=30, error_messages={
        'required': 'Phone is required.',
        'blank': 'Phone is required.',
        'max_length': 'Please enter a valid phone number.',
    })

    def validate_name(self, value):
        if not NAME_RE.match(value):
            raise serializers.ValidationError('Name may only contain letters, spaces and punctuation.')
        return value

    def validate_email(self, value):
        return normalize_email(value)

    def validate_phone(self, value):
        digits = re.sub(r'\D', '', value)
        if not 10 <= len(digits) <= 15:
            raise serializers.ValidationError('Please enter a valid phone number.')
        return digits


class EventSerializer(serializers.Serializer):
    date = serializers.DateField(error_messages={
        'required': 'Event date is required.',
        'invalid': 'Event date must be a valid date (YYYY-MM-DD).',
    })
    startTime = serializers.CharField(error_messages={
        'required': 'Event start time is required.',
        'blank': 'Event start time is required.',
    })
    endTime = serializers.CharField(error_messages={
        'required': 'Event end time is required.',
        'blank': 'Event end time is required.',
    })
    venueName = serializers.CharField(max_length=200, error_messages={
        'required': 'Venue name is required.',
        'blank': 'Venue name is required.',
    })
    streetAddress = serializers.CharField(max_length=200, error_messages={
        'required': 'Street address is required.',
        'blank': 'Street address is required.',
    })
    city = serializers.CharField(max_length=100, error_messages={
        'required': 'City is required.',
        'blank': 'City is required.',
    })
    state = serializers.CharField(error_messages={
        'required': 'State is required.',
        'blank': 'State is required.',
    })
    zipCode = serializers.CharField(error_messages={
        'required': 'ZIP code is required.',
        'blank': 'ZIP code is required.',
    })

    def validate_date(self, value):
        if value <= business_today(self.context.get('now')):
            raise serializers.ValidationError('Event date must be in the future.')
        return value

    def validate_startTime(self, value):
        if not TIME_RE.match(value):
            raise serializers.ValidationError('Start time must be in HH:MM format.')
        return value

    def validate_endTime(self, value):
        if not TIME_RE.match(value):
            raise serializers.ValidationError('End time must be in HH:MM format.')
        return value

    def validate_state(self, value):
        value = value.upper()
        if value not in US_STATES:
            raise serializers.ValidationError('Please select a valid US state.')
        return value

    def validate_zipCode(self, value):
        if not ZIP_RE.match(value):
            raise serializers.ValidationError('ZIP code must be 5 digits.')
        return value


class BookingHoldSerializer(serializers.Serializer):
    packageType = serializers.CharField(error_messages={
        'required': 'Missing booking details.',
        'blank': 'Missing booking details.',
    })
    selectedAddOns = serializers.ListField(
        child=serializers.CharField(allow_blank=True), required=False, default=list,
    )
    customer = CustomerSerializer(error_messages={'required': 'Missing booking details.'})
    event = EventSerializer(error_messages={'required': 'Missing booking details.'})
    notes = serializers.CharField(max_length=1000, required=False, allow_blank=True, default='', error_messages={
        'max_length': 'Notes must be 1000 characters or fewer.',
    })
    honeypot = serializers.CharField(required=False, allow_blank=True, default='')


class AvailabilitySerializer(serializers.Serializer):
    date = serializers.DateField(error_messages={
        'required': 'Date is required',
        'invalid': 'Date must be a valid date (YYYY-MM-DD).',
    })


class BookingStatusSerializer(serializers.Serializer):
    bookingId = serializers.CharField(error_messages={
        'required': 'bookingId and sessionId are required',
        'blank': 'bookingId and sessionId are required',
    })
    sessionId = serializers.CharField(error_messages={
        'required': 'bookingId and sessionId are required',
        'blank': 'bookingId and sessionId are required',
    })


class VerificationRequestSerializer(serializers.Serializer):
    email = serializers.EmailField(max_length=255, error_messages={
        'required': 'Invalid email address',
        'blank': 'Invalid email address',
        'invalid': 'Invalid email address',
    })

    def validate_email(self, value):
        return normalize_email(value)


class VerificationCodeSerializer(VerificationRequestSerializer):
    code = serializers.CharField(error_messages={
        'required': 'Code must be 6 digits',
        'blank': 'Code must be 6 digits',
    })

    def validate_code(self, value):
        if not CODE_RE.match(value):
            raise serializers.ValidationError('Code must be 6 digits')
        return value
