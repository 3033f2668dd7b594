"""Google Calendar client and iCalendar invitation builder."""

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from urllib.parse import quote

import httpx
import structlog

from app.core.exceptions import CalendarProvisioningError

logger = structlog.get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_URL = "https://www.googleapis.com/calendar/v3"

# Reminder offsets before the start, in minutes (24h and 1h)
DEFAULT_REMINDER_MINUTES = (24 * 60, 60)


@dataclass
class CalendarAttendee:
    """Calendar participant."""

    email: str
    name: str | None = None


@dataclass
class CalendarEvent:
    """Appointment mirrored into a calendar."""

    summary: str
    start: datetime
    end: datetime
    timezone: str
    description: str = ""
    location: str | None = None
    attendees: list[CalendarAttendee] = field(default_factory=list)
    reminder_minutes: tuple[int, ...] = DEFAULT_REMINDER_MINUTES

    def to_google_body(self) -> dict:
        """Render as a Calendar v3 event resource."""
        body: dict = {
            "summary": self.summary,
            "description": self.description,
            "start": {"dateTime": self.start.isoformat(), "timeZone": self.timezone},
            "end": {"dateTime": self.end.isoformat(), "timeZone": self.timezone},
            "attendees": [
                {"email": a.email, **({"displayName": a.name} if a.name else {})}
                for a in self.attendees
            ],
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": method, "minutes": minutes}
                    for minutes in self.reminder_minutes
                    for method in ("email", "popup")
                ],
            },
        }
        if self.location:
            body["location"] = self.location
        return body


class GoogleCalendarClient:
    """Calendar v3 client authenticated with a stored OAuth refresh token."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        calendar_id: str = "primary",
        http_client: httpx.AsyncClient | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.calendar_id = calendar_id
        self._http = http_client or httpx.AsyncClient(timeout=10.0)
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)

    async def _headers(self) -> dict[str, str]:
        if not self.configured:
            raise CalendarProvisioningError("Google Calendar credentials are not configured")

        # Refresh a minute early to avoid racing the expiry
        if self._access_token is None or time.monotonic() > self._token_expires_at - 60:
            try:
                response = await self._http.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "refresh_token": self.refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise CalendarProvisioningError(f"Token refresh failed: {e}") from e

            token = response.json()
            self._access_token = token["access_token"]
            self._token_expires_at = time.monotonic() + int(token.get("expires_in", 3600))

        return {"Authorization": f"Bearer {self._access_token}"}

    def _events_url(self, event_id: str | None = None) -> str:
        url = f"{GOOGLE_CALENDAR_URL}/calendars/{quote(self.calendar_id, safe='')}/events"
        return f"{url}/{event_id}" if event_id else url

    async def create_event(self, event: CalendarEvent) -> str:
        """Insert the event and return its Google event id."""
        headers = await self._headers()
        try:
            response = await self._http.post(
                self._events_url(),
                params={"sendUpdates": "all"},
                json=event.to_google_body(),
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise CalendarProvisioningError(f"Failed to create event: {e}") from e

        event_id = response.json()["id"]
        logger.info("calendar_event_created", event_id=event_id, summary=event.summary)
        return event_id

    async def update_event(self, event_id: str, event: CalendarEvent) -> None:
        """Patch an existing event with new details."""
        headers = await self._headers()
        try:
            response = await self._http.patch(
                self._events_url(event_id),
                params={"sendUpdates": "all"},
                json=event.to_google_body(),
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise CalendarProvisioningError(f"Failed to update event: {e}") from e

        logger.info("calendar_event_updated", event_id=event_id)

    async def delete_event(self, event_id: str) -> None:
        """Delete an event; one that no longer exists counts as deleted."""
        headers = await self._headers()
        try:
            response = await self._http.delete(
                self._events_url(event_id),
                params={"sendUpdates": "all"},
                headers=headers,
            )
            if response.status_code not in (404, 410):
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise CalendarProvisioningError(f"Failed to delete event: {e}") from e

        logger.info("calendar_event_deleted", event_id=event_id)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()


def _ics_escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,").replace("\n", "\\n")
    )


def _ics_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def build_ics(
    uid: str,
    event: CalendarEvent,
    organizer_email: str,
    organizer_name: str,
) -> str:
    """
    Render an iCalendar (RFC 5545) invitation for an email attachment.

    Times are written in UTC; each reminder offset becomes a display alarm.
    """
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:-//{_ics_escape(organizer_name)}//Appointments//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:REQUEST",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"DTSTAMP:{_ics_time(datetime.now(UTC))}",
        f"DTSTART:{_ics_time(event.start)}",
        f"DTEND:{_ics_time(event.end)}",
        f"SUMMARY:{_ics_escape(event.summary)}",
        f"DESCRIPTION:{_ics_escape(event.description)}",
        "STATUS:CONFIRMED",
        "TRANSP:OPAQUE",
        f"ORGANIZER;CN={_ics_escape(organizer_name)}:mailto:{organizer_email}",
    ]
    if event.location:
        lines.append(f"LOCATION:{_ics_escape(event.location)}")
        lines.append(f"URL:{event.location}")
    for attendee in event.attendees:
        cn = f";CN={_ics_escape(attendee.name)}" if attendee.name else ""
        lines.append(
            f"ATTENDEE{cn};ROLE=REQ-PARTICIPANT;PARTSTAT=NEEDS-ACTION;RSVP=TRUE"
            f":mailto:{attendee.email}"
        )
    for minutes in event.reminder_minutes:
        label = f"{minutes // 60} hour" if minutes % 60 == 0 else f"{minutes} minute"
        plural = "" if minutes in (1, 60) else "s"
        lines.extend(
            [
                "BEGIN:VALARM",
                "ACTION:DISPLAY",
                f"DESCRIPTION:Reminder: appointment in {label}{plural}",
                f"TRIGGER:-PT{minutes}M",
                "END:VALARM",
            ]
        )
    lines.extend(["END:VEVENT", "END:VCALENDAR"])
    return "\r\n".join(lines) + "\r\n"
