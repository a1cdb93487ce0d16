from django.db import IntegrityError, models, transaction


class ProcessedWebhookEvent(models.Model):
    """One row per Stripe event id that has been handled."""

    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=100)
    booking = models.ForeignKey(
        'bookings.Booking', on_delete=models.SET_NULL, null=True, blank=True,
        related_name='webhook_events',
    )
    outcome = models.CharField(max_length=50, blank=True)
    processed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'payments_processed_webhook_event'
        ordering = ['-processed_at']

    def __str__(self):
        return f"{self.event_id} ({self.event_type})"

    @classmethod
    def mark_processed(cls, event_id, event_type):
        """Record ``event_id``; returns None if it was already recorded."""
        try:
            with transaction.atomic():
                return cls.objects.create(event_id=event_id, event_type=event_type)
        except IntegrityError:
            return None
