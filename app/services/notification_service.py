"""Appointment emails: booking confirmations and cancellation notices."""

from datetime import datetime
from html import escape
from zoneinfo import ZoneInfo

import structlog

from app.config import settings
from app.core.calendar import CalendarEvent, build_ics
from app.core.email import EmailAttachment, SmtpEmailClient

logger = structlog.get_logger(__name__)


def _local(value: datetime) -> datetime:
    return value.astimezone(ZoneInfo(settings.clinic_timezone))


def _clock(value: datetime) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def format_appointment_time(starts_at: datetime, ends_at: datetime) -> str:
    """
    Human-readable window in clinic-local time.

    e.g. "Sat 1 Mar 2025, 8:00 PM - 8:30 PM (AEDT)"
    """
    start, end = _local(starts_at), _local(ends_at)
    return (
        f"{start:%a} {start.day} {start:%b %Y}, {_clock(start)} - {_clock(end)} "
        f"({start.tzname()})"
    )


def wrap_email(content: str) -> str:
    """Shared clinic email layout."""
    return f"""<!DOCTYPE html>
<html lang="en">
<body style="margin:0;padding:0;font-family:Arial,sans-serif;background-color:#f8fafc;">
  <div style="max-width:600px;margin:0 auto;background-color:#ffffff;">
    <div style="background-color:#0D9488;padding:32px 24px;text-align:center;">
      <h1 style="margin:0;color:#ffffff;font-size:24px;">{escape(settings.clinic_name)}</h1>
    </div>
    <div style="padding:32px 24px;color:#0A2540;line-height:1.6;">
      {content}
    </div>
    <div style="padding:24px;text-align:center;color:#64748b;font-size:14px;
                border-top:1px solid #e2e8f0;">
      <p>{escape(settings.clinic_name)} | {escape(settings.clinic_email)}</p>
      <p style="font-size:12px;color:#94a3b8;">
        You received this email because you booked an appointment with us.
      </p>
    </div>
  </div>
</body>
</html>"""


class NotificationService:
    """Compose and send patient-facing appointment emails."""

    def __init__(self, email_client: SmtpEmailClient):
        self.email = email_client

    async def send_booking_confirmation(
        self,
        to_email: str,
        patient_name: str | None,
        clinician_name: str | None,
        appointment_id: int,
        event: CalendarEvent,
        video_room_url: str | None = None,
    ) -> None:
        """
        Send the confirmation with an attached calendar invitation.

        Raises:
            EmailDeliveryError: If delivery fails; callers treat this as best-effort
        """
        when = format_appointment_time(event.start, event.end)
        video_html = (
            f'<p><a href="{escape(video_room_url)}" style="display:inline-block;'
            f"padding:12px 24px;background-color:#0D9488;color:#ffffff;"
            f'text-decoration:none;border-radius:6px;">Join video consultation</a></p>'
            if video_room_url
            else "<p>Your video link will be sent to you before the appointment.</p>"
        )
        html = wrap_email(
            f"<p>Hi {escape(patient_name or 'there')},</p>"
            f"<p>Your appointment is confirmed.</p>"
            f'<div style="background-color:#f1f5f9;border-left:4px solid #0D9488;'
            f'padding:16px;margin:16px 0;">'
            f"<p><strong>{escape(event.summary)}</strong></p>"
            f"<p>When: {escape(when)}</p>"
            f"<p>Clinician: {escape(clinician_name or 'Your clinician')}</p>"
            f"<p>Reference: #{appointment_id}</p>"
            f"</div>{video_html}"
            f"<p>A calendar invitation is attached.</p>"
        )
        text = (
            f"Your appointment is confirmed.\n\n{event.summary}\nWhen: {when}\n"
            f"Clinician: {clinician_name or 'Your clinician'}\nReference: #{appointment_id}\n"
            + (f"Video link: {video_room_url}\n" if video_room_url else "")
        )
        ics = build_ics(
            uid=f"appointment-{appointment_id}@{settings.smtp_from_email.split('@')[-1]}",
            event=event,
            organizer_email=settings.clinic_email,
            organizer_name=settings.clinic_name,
        )

        await self.email.send_email(
            to_email,
            subject=f"Appointment confirmed: {when}",
            html_content=html,
            text_content=text,
            attachments=[
                EmailAttachment(
                    filename="appointment.ics",
                    content=ics,
                    content_type="text/calendar; method=REQUEST",
                )
            ],
        )
        logger.info("booking_confirmation_sent", appointment_id=appointment_id)

    async def send_cancellation_notice(
        self,
        to_email: str,
        patient_name: str | None,
        appointment_id: int,
        starts_at: datetime,
        ends_at: datetime,
    ) -> None:
        """Tell the patient their appointment was cancelled."""
        when = format_appointment_time(starts_at, ends_at)
        html = wrap_email(
            f"<p>Hi {escape(patient_name or 'there')},</p>"
            f"<p>Your appointment #{appointment_id} on {escape(when)} has been cancelled.</p>"
            f"<p>If this was unexpected, please book a new time or contact us.</p>"
        )
        await self.email.send_email(
            to_email,
            subject=f"Appointment cancelled: {when}",
            html_content=html,
            text_content=f"Your appointment #{appointment_id} on {when} has been cancelled.",
        )
        logger.info("cancellation_notice_sent", appointment_id=appointment_id)
