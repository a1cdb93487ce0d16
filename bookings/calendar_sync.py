import logging
from datetime import datetime, time, timedelta

import requests
from django.conf import settings

from .effects import SideEffectResult, best_effort
from .models import Booking, CANCELLED

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

DEFAULT_START = "18:00"
DEFAULT_END = "22:00"


class CalendarError(Exception):
    pass


class GoogleCalendarClient:
    def __init__(self, client_id, client_secret, refresh_token, calendar_id='primary', session=None, timeout=10):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.calendar_id = calendar_id or 'primary'
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_settings(cls):
        return cls(
            client_id=settings.GOOGLE_CALENDAR_CLIENT_ID,
            client_secret=settings.GOOGLE_CALENDAR_CLIENT_SECRET,
            refresh_token=settings.GOOGLE_CALENDAR_REFRESH_TOKEN,
            calendar_id=settings.GOOGLE_CALENDAR_ID,
        )

    def is_configured(self):
        return all([self.client_id, self.client_secret, self.refresh_token])

    def access_token(self) -> str:
        response = self.session.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
            timeout=self.timeout,
        )
        if response.status_code != 200:
            raise CalendarError(f"Token refresh failed: {response.text}")
        token = response.json().get("access_token")
        if not token:
            raise CalendarError("No access token in refresh response")
        return token

    def _events_url(self, event_id=None):
        url = f"{GOOGLE_CALENDAR_API}/calendars/{self.calendar_id}/events"
        return f"{url}/{event_id}" if event_id else url

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.access_token()}",
            "Content-Type": "application/json",
        }

    def create_event(self, body) -> str:
        response = self.session.post(self._events_url(), json=body, headers=self._headers(), timeout=self.timeout)
        if not response.ok:
            raise CalendarError(f"Failed to create calendar event: {response.text}")
        return response.json()["id"]

    def update_event(self, event_id, body) -> str:
        response = self.session.patch(
            self._events_url(event_id), json=body, headers=self._headers(), timeout=self.timeout
        )
        if not response.ok:
            raise CalendarError(f"Failed to update calendar event {event_id}: {response.text}")
        return response.json().get("id", event_id)


def _parse_clock(value, fallback):
    try:
        hours, minutes = (value or fallback).split(":")[:2]
        return time(int(hours), int(minutes))
    except (ValueError, TypeError):
        hours, minutes = fallback.split(":")
        return time(int(hours), int(minutes))


def event_window(booking):
    """Start and end datetimes; an end at or before the start rolls to the next day."""
    start = datetime.combine(booking.event_date, _parse_clock(booking.start_time, DEFAULT_START))
    end = datetime.combine(booking.event_date, _parse_clock(booking.end_time, DEFAULT_END))
    if end <= start:
        end += timedelta(days=1)
    return start, end


def build_event(booking, time_zone, business_name):
    start, end = event_window(booking)
    summary = f"{business_name} - {booking.event_type}"
    if booking.status == CANCELLED:
        summary = f"CANCELLED - {summary}"

    description = "\n".join([
        f"{business_name} Booking",
        "",
        f"Customer: {booking.customer_name}",
        f"Email: {booking.customer_email}",
        f"Phone: {booking.customer_phone}",
        "",
        f"Event Type: {booking.event_type}",
        f"Service Tier: {booking.service_tier}",
        f"Package: {booking.package_type or 'Standard'}",
        "",
        f"Location: {booking.location()}",
        "",
        f"Total Amount: ${booking.total_amount}",
        f"Deposit: ${booking.deposit_amount}",
        "",
        f"Status: {booking.status}",
        f"Booking ID: {booking.id}",
        f"Confirmed: {booking.confirmed_at.isoformat() if booking.confirmed_at else 'Not confirmed'}",
        "",
        f"Notes: {booking.notes or 'None'}",
    ])

    return {
        "summary": summary,
        "description": description,
        "location": booking.location(),
        "start": {"dateTime": start.isoformat(), "timeZone": time_zone},
        "end": {"dateTime": end.isoformat(), "timeZone": time_zone},
        "attendees": [{"email": booking.customer_email}],
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": 24 * 60},
                {"method": "popup", "minutes": 60},
            ],
        },
    }


class CalendarSync:
    def __init__(self, client=None, time_zone=None, business_name=None):
        self.client = client or GoogleCalendarClient.from_settings()
        self.time_zone = time_zone or settings.BOOKING_TIME_ZONE
        self.business_name = business_name or settings.BOOKING_BUSINESS_NAME

    def sync(self, booking) -> SideEffectResult:
        if not self.client.is_configured():
            return SideEffectResult.skip("Google Calendar credentials not configured")

        body = build_event(booking, self.time_zone, self.business_name)

        if booking.google_calendar_event_id:
            return best_effort(
                f"Calendar update for booking {booking.id}",
                self.client.update_event,
                booking.google_calendar_event_id,
                body,
            )

        created = best_effort(f"Calendar create for booking {booking.id}", self.client.create_event, body)
        if not created.ok:
            return created

        event_id = created.value
        stored = best_effort(
            f"Storing calendar event id for booking {booking.id}",
            self._store_event_id,
            booking,
            event_id,
        )
        if stored.ok and not stored.value:
            logger.warning(
                "Booking %s already linked to a calendar event; created event %s is a duplicate",
                booking.id, event_id,
            )
        booking.google_calendar_event_id = booking.google_calendar_event_id or event_id
        return SideEffectResult.success(event_id)

    @staticmethod
    def _store_event_id(booking, event_id):
        return Booking.objects.filter(
            pk=booking.pk, google_calendar_event_id__isnull=True
        ).update(google_calendar_event_id=event_id)


def get_calendar_sync():
    return CalendarSync()
