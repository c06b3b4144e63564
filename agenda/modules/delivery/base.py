"""Delivery adapter interface and the channel router."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional

from agenda.errors import DeliveryError
from agenda.logging_config import get_logger
from agenda.modules.schedules.models import Channel, Recipient

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeliveryMetadata:
    """What every adapter may say about the document it sends."""

    schedule_id: str
    schedule_name: str
    entry_count: int
    file_name: str
    generated_at: int


@dataclass(frozen=True)
class DeliveryResult:
    recipient: Recipient
    ok: bool
    error: Optional[str] = None


class DeliveryAdapter(ABC):
    """Sends a rendered document to one recipient over one channel."""

    channel: Channel

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """True when the adapter has the credentials it needs."""

    @abstractmethod
    async def deliver(self, recipient: Recipient, document: bytes, metadata: DeliveryMetadata) -> None:
        """Deliver or raise DeliveryError."""


class DeliveryRouter:
    """Maps each channel to its adapter and fans a document out to recipients."""

    def __init__(self, adapters: Iterable[DeliveryAdapter]) -> None:
        self._adapters: dict[Channel, DeliveryAdapter] = {a.channel: a for a in adapters}

    def adapter_for(self, channel: Channel) -> DeliveryAdapter:
        adapter = self._adapters.get(channel)
        if adapter is None:
            raise DeliveryError(f"No delivery adapter for channel {channel}")
        return adapter

    def status(self) -> dict[str, bool]:
        return {str(channel): adapter.is_configured for channel, adapter in self._adapters.items()}

    async def deliver(
        self,
        recipient: Recipient,
        document: bytes,
        metadata: DeliveryMetadata,
        timeout: float,
    ) -> DeliveryResult:
        """Deliver to one recipient. Failures are returned, never raised."""
        try:
            adapter = self.adapter_for(recipient.channel)
            if not adapter.is_configured:
                raise DeliveryError(f"{recipient.channel} delivery is not configured")
            await asyncio.wait_for(adapter.deliver(recipient, document, metadata), timeout=timeout)
        except asyncio.TimeoutError:
            error = f"{recipient.address}: delivery timed out after {timeout:g}s"
        except DeliveryError as exc:
            error = f"{recipient.address}: {exc.message}"
        except Exception as exc:
            error = f"{recipient.address}: {exc}"
        else:
            logger.info("delivery_succeeded", schedule_id=metadata.schedule_id,
                        channel=recipient.channel, recipient=recipient.address)
            return DeliveryResult(recipient=recipient, ok=True)

        logger.warning("delivery_failed", schedule_id=metadata.schedule_id,
                       channel=recipient.channel, error=error)
        return DeliveryResult(recipient=recipient, ok=False, error=error)

    async def fan_out(
        self,
        recipients: list[Recipient],
        document: bytes,
        metadata: DeliveryMetadata,
        timeout: float,
    ) -> list[DeliveryResult]:
        """Deliver to every recipient concurrently, preserving recipient order."""
        return list(await asyncio.gather(
            *(self.deliver(r, document, metadata, timeout) for r in recipients)
        ))
