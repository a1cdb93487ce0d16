from django.contrib import admin
from .models import ProcessedWebhookEvent


@admin.register(ProcessedWebhookEvent)
class ProcessedWebhookEventAdmin(admin.ModelAdmin):
    list_display = ['event_id', 'event_type', 'booking', 'outcome', 'processed_at']
    list_filter = ['event_type', 'outcome', 'processed_at']
    search_fields = ['event_id', 'booking__customer_email']
    readonly_fields = ['event_id', 'event_type', 'booking', 'outcome', 'processed_at']
