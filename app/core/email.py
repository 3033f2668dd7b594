"""SMTP email client for transactional messages."""

import asyncio
import smtplib
from dataclasses import dataclass
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import structlog

from app.core.exceptions import EmailDeliveryError

logger = structlog.get_logger(__name__)


@dataclass
class EmailAttachment:
    """File attached to an outgoing message."""

    filename: str
    content: str
    content_type: str = "text/plain"


class SmtpEmailClient:
    """Send HTML email over SMTP without blocking the event loop."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str = "",
        password: str = "",
        from_email: str = "noreply@example.com",
        from_name: str = "Clinic",
        use_tls: bool = True,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email
        self.from_name = from_name
        self.use_tls = use_tls

    def build_message(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: str | None = None,
        attachments: list[EmailAttachment] | None = None,
    ) -> MIMEMultipart:
        """Assemble a mixed message with an alternative text/HTML body."""
        msg = MIMEMultipart("mixed")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email

        body = MIMEMultipart("alternative")
        if text_content:
            body.attach(MIMEText(text_content, "plain"))
        body.attach(MIMEText(html_content, "html"))
        msg.attach(body)

        for attachment in attachments or []:
            maintype, subtype = attachment.content_type.split("/", 1)
            if maintype == "text":
                # Parameters such as ;method=REQUEST stay on the subtype
                subtype, _, params = subtype.partition(";")
                part = MIMEText(attachment.content, subtype.strip())
                if params:
                    key, _, value = params.strip().partition("=")
                    part.set_param(key, value)
            else:
                part = MIMEBase(maintype, subtype)
                part.set_payload(attachment.content)
            part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
            msg.attach(part)

        return msg

    def send_email_sync(self, msg: MIMEMultipart) -> None:
        """Send via SMTP (synchronous, use via asyncio.to_thread)."""
        if not self.host:
            raise EmailDeliveryError("SMTP_HOST is not configured")

        try:
            if self.port == 465:
                server: smtplib.SMTP = smtplib.SMTP_SSL(self.host, self.port, timeout=15)
            else:
                server = smtplib.SMTP(self.host, self.port, timeout=15)
            with server:
                if self.use_tls and self.port != 465:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise EmailDeliveryError(str(e)) from e

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: str | None = None,
        attachments: list[EmailAttachment] | None = None,
    ) -> None:
        """
        Send an email.

        Raises:
            EmailDeliveryError: If SMTP is not configured or delivery fails
        """
        msg = self.build_message(to_email, subject, html_content, text_content, attachments)
        await asyncio.to_thread(self.send_email_sync, msg)
        logger.info("email_sent", to=to_email, subject=subject)
