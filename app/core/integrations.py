"""External service clients, constructed once at startup."""

from dataclasses import dataclass

from app.config import Settings
from app.core.calendar import GoogleCalendarClient
from app.core.email import SmtpEmailClient
from app.core.payments import StripeGateway
from app.core.video import DailyVideoClient


@dataclass
class Integrations:
    """Clients handed to the booking workflow and the webhook ledger."""

    video: DailyVideoClient
    calendar: GoogleCalendarClient
    email: SmtpEmailClient
    payments: StripeGateway

    def status(self) -> dict[str, str]:
        """Which external services have credentials."""
        configured = {
            "video": bool(self.video.api_key),
            "calendar": self.calendar.configured,
            "email": bool(self.email.host),
            "payments": bool(self.payments.secret_key and self.payments.webhook_secret),
        }
        return {name: "configured" if ok else "not_configured" for name, ok in configured.items()}

    async def aclose(self) -> None:
        """Release HTTP connection pools."""
        await self.video.aclose()
        await self.calendar.aclose()


def build_integrations(settings: Settings) -> Integrations:
    """Create every client from application settings."""
    return Integrations(
        video=DailyVideoClient(
            api_key=settings.daily_api_key,
            base_url=settings.daily_api_url,
        ),
        calendar=GoogleCalendarClient(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            refresh_token=settings.google_refresh_token,
            calendar_id=settings.google_calendar_id,
        ),
        email=SmtpEmailClient(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            from_email=settings.smtp_from_email,
            from_name=settings.smtp_from_name,
            use_tls=settings.smtp_use_tls,
        ),
        payments=StripeGateway(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            currency=settings.stripe_currency,
            tolerance=settings.stripe_webhook_tolerance,
        ),
    )
