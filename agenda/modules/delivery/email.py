"""Email delivery over SMTP with the PDF attached."""

from __future__ import annotations

import asyncio
import email.encoders
import email.mime.base
import email.mime.multipart
import email.mime.text
import smtplib
from typing import Optional

from jinja2 import Template
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from agenda.clock import to_datetime
from agenda.config import Settings, get_settings
from agenda.errors import DeliveryError
from agenda.logging_config import get_logger
from agenda.modules.delivery.base import DeliveryAdapter, DeliveryMetadata
from agenda.modules.schedules.models import Channel, Recipient

logger = get_logger(__name__)

SUBJECT = Template("Scheduled export: {{ name }}")

BODY_TEXT = Template(
    "Hello,\n\n"
    "Your scheduled export \"{{ name }}\" is attached.\n"
    "It contains {{ count }} {{ 'entry' if count == 1 else 'entries' }}, "
    "generated on {{ generated }}.\n\n"
    "Attachment: {{ file_name }}\n"
)

BODY_HTML = Template(
    """<html>
  <body style="font-family: Helvetica, Arial, sans-serif; color: #222;">
    <p>Hello,</p>
    <p>Your scheduled export <strong>{{ name }}</strong> is attached.</p>
    <p>It contains {{ count }} {{ 'entry' if count == 1 else 'entries' }},
       generated on {{ generated }}.</p>
    <p style="color: #888; font-size: 12px;">Attachment: {{ file_name }}</p>
  </body>
</html>
""",
    autoescape=True,
)

# Connection-level problems worth another attempt; refusals and auth errors are not.
TRANSIENT_SMTP_ERRORS = (
    smtplib.SMTPServerDisconnected,
    smtplib.SMTPConnectError,
    ConnectionError,
    TimeoutError,
)


class EmailDelivery(DeliveryAdapter):
    """Sends the export as a PDF attachment via SMTP."""

    channel = Channel.EMAIL

    def __init__(
        self,
        settings: Optional[Settings] = None,
        attempts: Optional[int] = None,
        retry_wait: float = 1.0,
    ) -> None:
        self._settings = settings or get_settings()
        self._attempts = attempts or self._settings.agenda_delivery_retries
        self._retry_wait = retry_wait

    @property
    def is_configured(self) -> bool:
        return self._settings.smtp_configured

    @property
    def sender(self) -> str:
        return self._settings.smtp_from or self._settings.smtp_username

    def build_message(
        self, recipient: Recipient, document: bytes, metadata: DeliveryMetadata,
    ) -> email.mime.multipart.MIMEMultipart:
        variables = {
            "name": metadata.schedule_name,
            "count": metadata.entry_count,
            "generated": to_datetime(metadata.generated_at).strftime("%Y-%m-%d %H:%M UTC"),
            "file_name": metadata.file_name,
        }
        msg = email.mime.multipart.MIMEMultipart("mixed")
        msg["Subject"] = SUBJECT.render(**variables)
        msg["From"] = self.sender
        msg["To"] = recipient.address

        body_part = email.mime.multipart.MIMEMultipart("alternative")
        body_part.attach(email.mime.text.MIMEText(BODY_TEXT.render(**variables), "plain"))
        body_part.attach(email.mime.text.MIMEText(BODY_HTML.render(**variables), "html"))
        msg.attach(body_part)

        part = email.mime.base.MIMEBase("application", "pdf")
        part.set_payload(document)
        email.encoders.encode_base64(part)
        part.add_header("Content-Disposition", f'attachment; filename="{metadata.file_name}"')
        msg.attach(part)
        return msg

    def _send(self, msg: email.mime.multipart.MIMEMultipart, to: str) -> None:
        s = self._settings
        timeout = s.agenda_delivery_timeout_seconds
        if s.smtp_use_ssl:
            server = smtplib.SMTP_SSL(s.smtp_server, s.smtp_port, timeout=timeout)
        else:
            server = smtplib.SMTP(s.smtp_server, s.smtp_port, timeout=timeout)
        with server:
            if s.smtp_use_tls and not s.smtp_use_ssl:
                server.starttls()
            if s.smtp_username:
                server.login(s.smtp_username, s.smtp_password)
            server.sendmail(msg["From"], [to], msg.as_string())

    async def deliver(self, recipient: Recipient, document: bytes, metadata: DeliveryMetadata) -> None:
        if recipient.channel is not Channel.EMAIL:
            raise DeliveryError(f"Email adapter cannot deliver to {recipient.channel}")
        msg = self.build_message(recipient, document, metadata)

        send = retry(
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(multiplier=self._retry_wait, max=10),
            retry=retry_if_exception_type(TRANSIENT_SMTP_ERRORS),
            reraise=True,
        )(asyncio.to_thread)
        try:
            await send(self._send, msg, recipient.address)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"SMTP delivery failed: {exc}") from exc
        logger.info("email_sent", schedule_id=metadata.schedule_id, to=recipient.address,
                    attachment=metadata.file_name)
