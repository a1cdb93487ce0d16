import uuid
from datetime import timedelta

from django.conf import settings
from django.db import models
from django.db.models import F, Q


PENDING = 'pending'
CONFIRMED = 'confirmed'
EXPIRED = 'expired'
CANCELLED = 'cancelled'
PAYMENT_FAILED = 'payment_failed'

# Statuses that are still waiting on a deposit.
HOLD_STATUSES = (PENDING, PAYMENT_FAILED)
# Statuses that keep the event date off the market.
BLOCKING_STATUSES = (PENDING, PAYMENT_FAILED, CONFIRMED)

TRANSITIONS = {
    PENDING: {CONFIRMED, EXPIRED, CANCELLED, PAYMENT_FAILED},
    PAYMENT_FAILED: {CONFIRMED, EXPIRED, CANCELLED},
    CONFIRMED: {CANCELLED},
    EXPIRED: set(),
    CANCELLED: set(),
}


def hold_window():
    return timedelta(hours=settings.BOOKING_HOLD_WINDOW_HOURS)


def reminder_after():
    return timedelta(hours=settings.BOOKING_REMINDER_AFTER_HOURS)


def is_hold_expired(booking, now):
    """A hold is logically expired once the window has elapsed, whether or not
    the sweep has written ``expired`` yet."""
    return booking.status in HOLD_STATUSES and now - booking.created_at >= hold_window()


class BookingQuerySet(models.QuerySet):
    def holds(self):
        return self.filter(status__in=HOLD_STATUSES)

    def on_date(self, event_date):
        return self.filter(event_date=event_date, status__in=BLOCKING_STATUSES)

    def expired_holds(self, now):
        return self.holds().filter(created_at__lte=now - hold_window())

    def due_hold_reminders(self, now):
        return self.holds().filter(
            reminder_sent_at__isnull=True,
            created_at__gt=now - hold_window(),
            created_at__lte=now - reminder_after(),
        )


class Booking(models.Model):
    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (CONFIRMED, 'Confirmed'),
        (EXPIRED, 'Expired'),
        (CANCELLED, 'Cancelled'),
        (PAYMENT_FAILED, 'Payment Failed'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    customer_name = models.CharField(max_length=100)
    customer_email = models.EmailField(max_length=255, db_index=True)
    customer_phone = models.CharField(max_length=15)
    notes = models.TextField(blank=True)

    event_date = models.DateField(db_index=True)
    start_time = models.CharField(max_length=5)
    end_time = models.CharField(max_length=5)
    venue_name = models.CharField(max_length=200, blank=True)
    street_address = models.CharField(max_length=200, blank=True)
    city = models.CharField(max_length=100, blank=True)
    state = models.CharField(max_length=2, blank=True)
    zip_code = models.CharField(max_length=5, blank=True)
    event_type = models.CharField(max_length=100, default='DJ Service')

    package_type = models.CharField(max_length=50)
    service_tier = models.CharField(max_length=100)
    selected_add_ons = models.JSONField(default=list, blank=True)
    total_amount = models.PositiveIntegerField()
    deposit_amount = models.PositiveIntegerField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING, db_index=True)
    version = models.PositiveIntegerField(default=1)

    stripe_session_id = models.CharField(max_length=255, blank=True, null=True, db_index=True)
    stripe_payment_intent = models.CharField(max_length=255, blank=True, null=True, db_index=True)
    google_calendar_event_id = models.CharField(max_length=255, blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)
    reminder_sent_at = models.DateTimeField(null=True, blank=True)
    expired_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    objects = BookingQuerySet.as_manager()

    class Meta:
        db_table = 'bookings_booking'
        ordering = ['-created_at']
        constraints = [
            models.CheckConstraint(
                condition=Q(deposit_amount__lte=F('total_amount')),
                name='booking_deposit_not_above_total',
            ),
            models.UniqueConstraint(
                fields=['event_date'],
                condition=Q(status__in=BLOCKING_STATUSES),
                name='booking_one_active_per_date',
            ),
        ]

    def __str__(self):
        return f"{self.customer_name} - {self.event_date} - {self.status}"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_event_date = instance.__dict__.get('event_date')
        return instance

    def save(self, *args, **kwargs):
        loaded = getattr(self, '_loaded_event_date', None)
        if loaded is not None:
            field = self._meta.get_field('event_date')
            if field.to_python(self.event_date) != field.to_python(loaded):
                raise ValueError('event_date cannot change once a booking exists')
        super().save(*args, **kwargs)
        self._loaded_event_date = self.event_date

    @property
    def hold_expires_at(self):
        return self.created_at + hold_window()

    def is_hold(self):
        return self.status in HOLD_STATUSES

    def can_transition_to(self, status):
        return status in TRANSITIONS.get(self.status, set())

    def requires_payment(self):
        return self.deposit_amount > 0

    def location(self):
        parts = [self.venue_name, self.street_address, self.city, self.state, self.zip_code]
        return ', '.join(p for p in parts if p)


class BookingRateLimit(models.Model):
    """Append-only log of accepted intake attempts."""

    email = models.EmailField(max_length=255, blank=True, null=True, db_index=True)
    ip_hash = models.CharField(max_length=64, blank=True, null=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = 'bookings_ratelimit'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.email or self.ip_hash} @ {self.created_at}"


class EmailVerification(models.Model):
    email = models.EmailField(max_length=255, db_index=True)
    code = models.CharField(max_length=6)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    expires_at = models.DateTimeField()
    verified_at = models.DateTimeField(null=True, blank=True)
    used_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'bookings_emailverification'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.email} ({self.created_at})"

    def is_expired(self, now):
        return self.expires_at < now


class Reminder(models.Model):
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('sent', 'Sent'),
        ('failed', 'Failed'),
    ]
    TYPE_CHOICES = [
        ('72h_before', '72 hours before'),
        ('24h_before', '24 hours before'),
        ('day_of', 'Day of event'),
    ]

    booking = models.ForeignKey(Booking, on_delete=models.PROTECT, related_name='reminders')
    reminder_type = models.CharField(max_length=20, choices=TYPE_CHOICES)
    scheduled_for = models.DateTimeField(db_index=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='pending', db_index=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'bookings_reminder'
        ordering = ['scheduled_for']
        constraints = [
            models.UniqueConstraint(
                fields=['booking', 'reminder_type'],
                name='reminder_once_per_type',
            ),
        ]

    def __str__(self):
        return f"{self.reminder_type} for {self.booking_id} ({self.status})"
