"""
Error taxonomy for the booking hold lifecycle.

Every error carries the HTTP status it maps to and a message that is safe to
show the customer. Infrastructure details are logged where they are caught
and never placed in ``message``.
"""


class BookingError(Exception):
    status_code = 400
    default_message = 'Unable to process booking request.'

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(BookingError):
    status_code = 400
    default_message = 'Invalid booking details.'


class SuspiciousSubmission(BookingError):
    # Honeypot tripped. Rendered success-shaped so bots get no signal.
    status_code = 202
    default_message = 'Booking request received.'


class RateLimited(BookingError):
    status_code = 429
    default_message = 'Too many requests. Please try again later.'


class AuthorizationError(BookingError):
    status_code = 401
    default_message = 'Unauthorized'


class EmailNotVerified(BookingError):
    status_code = 403
    default_message = 'Please verify your email address before booking.'


class NotFound(BookingError):
    status_code = 404
    default_message = 'No booking found'


class DateUnavailable(BookingError):
    status_code = 409
    default_message = 'That date is no longer available. Please choose another date.'


class InvalidTransition(BookingError):
    status_code = 409
    default_message = 'This booking can no longer be changed.'

    def __init__(self, from_status=None, to_status=None, message=None):
        self.from_status = from_status
        self.to_status = to_status
        if message is None and from_status and to_status:
            message = f'Cannot move booking from {from_status} to {to_status}.'
        super().__init__(message)


class ConcurrentUpdate(BookingError):
    status_code = 409
    default_message = 'This booking was updated by another request. Please retry.'


class InvalidCode(BookingError):
    status_code = 400
    default_message = 'Invalid verification code.'


class CodeExpired(BookingError):
    status_code = 400
    default_message = 'Verification code has expired. Please request a new one.'


class CodeAlreadyUsed(BookingError):
    status_code = 400
    default_message = 'This code has already been used. Please request a new one.'


class TransientInfraError(BookingError):
    status_code = 503
    default_message = 'Unable to verify request. Please try again shortly.'


class PersistenceError(BookingError):
    status_code = 500
    default_message = 'Unable to save booking. Please try again.'


class ExternalServiceError(BookingError):
    status_code = 500
    default_message = 'Unable to reach an external service. Please try again.'


class PaymentError(BookingError):
    status_code = 400
    default_message = 'Unable to start payment, please try again.'
