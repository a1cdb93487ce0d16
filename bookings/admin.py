from django.contrib import admin, messages

from .errors import BookingError
from .models import Booking, BookingRateLimit, EmailVerification, Reminder
from .state import cancel_booking, confirm_booking, expire_booking


def _apply(modeladmin, request, queryset, func, verb, **kwargs):
    changed = 0
    for booking in queryset:
        try:
            outcome = func(booking, **kwargs)
        except BookingError as e:
            modeladmin.message_user(request, f"{booking}: {e.message}", level=messages.ERROR)
            continue
        if outcome.changed:
            changed += 1
        failed = [name for name, result in outcome.effects.items() if not result.ok and not result.skipped]
        if failed:
            modeladmin.message_user(
                request,
                f"{booking}: {verb}, but {', '.join(failed)} did not complete.",
                level=messages.WARNING,
            )
    if changed:
        modeladmin.message_user(request, f"{changed} booking(s) {verb}.", level=messages.SUCCESS)


@admin.action(description='Confirm selected bookings')
def confirm_selected(modeladmin, request, queryset):
    _apply(modeladmin, request, queryset, confirm_booking, 'confirmed')


@admin.action(description='Cancel selected bookings')
def cancel_selected(modeladmin, request, queryset):
    _apply(modeladmin, request, queryset, cancel_booking, 'cancelled')


@admin.action(description='Expire selected holds')
def expire_selected(modeladmin, request, queryset):
    _apply(modeladmin, request, queryset, expire_booking, 'expired', force=True)


class ReminderInline(admin.TabularInline):
    model = Reminder
    extra = 0
    readonly_fields = ['reminder_type', 'scheduled_for', 'status', 'sent_at', 'error_message']
    can_delete = False


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    list_display = ['id', 'customer_name', 'event_date', 'service_tier', 'status', 'deposit_display', 'created_at']
    list_filter = ['status', 'package_type', 'event_date', 'created_at']
    search_fields = ['customer_name', 'customer_email', 'stripe_session_id', 'stripe_payment_intent']
    readonly_fields = [
        'status', 'version', 'event_date', 'total_amount', 'deposit_amount',
        'stripe_session_id', 'stripe_payment_intent', 'google_calendar_event_id',
        'created_at', 'updated_at', 'confirmed_at', 'reminder_sent_at', 'expired_at', 'cancelled_at',
    ]
    actions = [confirm_selected, cancel_selected, expire_selected]
    inlines = [ReminderInline]

    fieldsets = (
        ('Customer', {
            'fields': ('customer_name', 'customer_email', 'customer_phone', 'notes')
        }),
        ('Event', {
            'fields': ('event_date', 'start_time', 'end_time', 'event_type',
                       'venue_name', 'street_address', 'city', 'state', 'zip_code')
        }),
        ('Package', {
            'fields': ('package_type', 'service_tier', 'selected_add_ons', 'total_amount', 'deposit_amount')
        }),
        ('Status', {
            'fields': ('status', 'version', 'created_at', 'updated_at', 'confirmed_at',
                       'reminder_sent_at', 'expired_at', 'cancelled_at')
        }),
        ('Integrations', {
            'fields': ('stripe_session_id', 'stripe_payment_intent', 'google_calendar_event_id')
        }),
    )

    def deposit_display(self, obj):
        return f"${obj.deposit_amount:,} of ${obj.total_amount:,}"
    deposit_display.short_description = 'Deposit'


@admin.register(BookingRateLimit)
class BookingRateLimitAdmin(admin.ModelAdmin):
    list_display = ['id', 'email', 'ip_hash', 'created_at']
    search_fields = ['email', 'ip_hash']
    readonly_fields = ['email', 'ip_hash', 'created_at']


@admin.register(EmailVerification)
class EmailVerificationAdmin(admin.ModelAdmin):
    list_display = ['id', 'email', 'created_at', 'expires_at', 'verified_at', 'used_at']
    list_filter = ['created_at']
    search_fields = ['email']
    readonly_fields = ['email', 'created_at', 'expires_at', 'verified_at', 'used_at']
    exclude = ['code']


@admin.register(Reminder)
class ReminderAdmin(admin.ModelAdmin):
    list_display = ['id', 'booking', 'reminder_type', 'scheduled_for', 'status', 'sent_at']
    list_filter = ['status', 'reminder_type', 'scheduled_for']
    search_fields = ['booking__customer_name', 'booking__customer_email']
    readonly_fields = ['created_at', 'sent_at']
    raw_id_fields = ['booking']
