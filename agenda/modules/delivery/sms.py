"""SMS notices through the Twilio REST API."""

from __future__ import annotations

from typing import Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from agenda.config import Settings, get_settings
from agenda.errors import DeliveryError
from agenda.logging_config import get_logger
from agenda.modules.delivery.base import DeliveryAdapter, DeliveryMetadata
from agenda.modules.schedules.models import Channel, Recipient

logger = get_logger(__name__)


def notice_text(metadata: DeliveryMetadata) -> str:
    noun = "entry" if metadata.entry_count == 1 else "entries"
    return (
        f"Your scheduled export with {metadata.entry_count} {noun} has been sent "
        f"({metadata.file_name}). Check your email for the PDF."
    )


class SmsDelivery(DeliveryAdapter):
    """Sends a short text notice; SMS cannot carry the PDF itself."""

    channel = Channel.SMS

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        attempts: Optional[int] = None,
        retry_wait: float = 1.0,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport
        self._attempts = attempts or self._settings.agenda_delivery_retries
        self._retry_wait = retry_wait

    @property
    def is_configured(self) -> bool:
        return self._settings.sms_configured

    @property
    def messages_url(self) -> str:
        s = self._settings
        return f"{s.twilio_api_base.rstrip('/')}/Accounts/{s.twilio_account_sid}/Messages.json"

    async def _post(self, data: dict[str, str]) -> httpx.Response:
        s = self._settings
        async with httpx.AsyncClient(
            timeout=s.agenda_delivery_timeout_seconds,
            transport=self._transport,
        ) as client:
            return await client.post(
                self.messages_url,
                data=data,
                auth=(s.twilio_account_sid, s.twilio_auth_token),
            )

    async def deliver(self, recipient: Recipient, document: bytes, metadata: DeliveryMetadata) -> None:
        if recipient.channel is not Channel.SMS:
            raise DeliveryError(f"SMS adapter cannot deliver to {recipient.channel}")
        data = {
            "To": recipient.address,
            "From": self._settings.twilio_from_number,
            "Body": notice_text(metadata),
        }
        post = retry(
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(multiplier=self._retry_wait, max=10),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )(self._post)
        try:
            resp = await post(data)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"SMS gateway unreachable: {exc}") from exc

        if resp.status_code >= 400:
            try:
                detail = resp.json().get("message", resp.text)
            except ValueError:
                detail = resp.text
            raise DeliveryError(f"SMS gateway returned {resp.status_code}: {detail}")
        try:
            sid = resp.json().get("sid")
        except ValueError:
            sid = None
        logger.info("sms_sent", schedule_id=metadata.schedule_id, to=recipient.address, sid=sid)
