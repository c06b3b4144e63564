"""Wires the stores, the engine and the trigger loop into one runtime."""

from __future__ import annotations

import time
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from agenda import __version__
from agenda.clock import Clock, SystemClock
from agenda.config import Settings, get_settings
from agenda.database import get_engine, init_db
from agenda.logging_config import get_logger
from agenda.modules.delivery.base import DeliveryAdapter, DeliveryRouter
from agenda.modules.delivery.email import EmailDelivery
from agenda.modules.delivery.sms import SmsDelivery
from agenda.modules.documents.service import DocumentRenderer
from agenda.modules.scheduler.engine import ExecutionEngine
from agenda.modules.scheduler.trigger import TriggerLoop
from agenda.modules.schedules.service import ScheduleService
from agenda.modules.schedules.store import ScheduleStore
from agenda.security.credentials import CredentialStore
from agenda.security.encryption import KeyCustody, PassphraseCodec

logger = get_logger(__name__)


class Orchestrator:
    """Owns every long-lived service of the export server."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine: Optional[AsyncEngine] = None,
        clock: Optional[Clock] = None,
        adapters: Optional[Iterable[DeliveryAdapter]] = None,
        custody: Optional[KeyCustody] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.engine = engine or get_engine()
        self.clock = clock or SystemClock()
        self.session_factory = async_sessionmaker(
            bind=self.engine, class_=AsyncSession, expire_on_commit=False,
        )

        self.codec = PassphraseCodec(self.settings.agenda_kdf_iterations)
        if custody is None and self.settings.agenda_unattended_execution:
            custody = KeyCustody(self.settings.agenda_custody_key)
        self.custody = custody

        self.credentials = CredentialStore(
            self.session_factory, salt=self.settings.agenda_api_key_salt, clock=self.clock,
        )
        self.store = ScheduleStore(self.session_factory, clock=self.clock)
        self.router = DeliveryRouter(
            adapters if adapters is not None
            else [EmailDelivery(self.settings), SmsDelivery(self.settings)]
        )
        self.executor = ExecutionEngine(
            self.store,
            self.router,
            renderer=DocumentRenderer(),
            codec=self.codec,
            custody=self.custody,
            clock=self.clock,
            settings=self.settings,
        )
        self.trigger = TriggerLoop(self.store, self.executor, clock=self.clock, settings=self.settings)
        self.schedules = ScheduleService(
            self.store,
            codec=self.codec,
            custody=self.custody,
            clock=self.clock,
            trigger=self.trigger,
            unattended=self.settings.agenda_unattended_execution,
        )
        self._started_monotonic: Optional[float] = None

    @property
    def uptime_seconds(self) -> float:
        if self._started_monotonic is None:
            return 0.0
        return time.monotonic() - self._started_monotonic

    async def startup(self, start_trigger: bool = True) -> None:
        await init_db(self.engine)
        recovered = await self.store.recover_interrupted(self.clock.now_ms())
        if recovered:
            logger.warning("interrupted_executions_released", count=recovered)
        if start_trigger:
            await self.trigger.start()
        self._started_monotonic = time.monotonic()
        logger.info(
            "agenda_ready",
            version=__version__,
            env=self.settings.agenda_env,
            channels=self.router.status(),
            unattended=self.custody is not None,
        )

    async def shutdown(self) -> None:
        await self.trigger.stop()
        logger.info("agenda_stopped")

    async def health(self) -> dict:
        """Liveness snapshot. Store failures degrade the status instead of raising."""
        status = "ok"
        try:
            pending: Optional[int] = await self.store.count_pending()
        except Exception as exc:
            logger.warning("health_store_check_failed", error=str(exc))
            pending = None
            status = "degraded"
        return {
            "status": status,
            "timestamp": self.clock.now_ms(),
            "uptime": round(self.uptime_seconds, 3),
            "activeSchedules": pending,
            "inFlightExecutions": self.trigger.in_flight,
            "unfinishedWrites": self.executor.unfinished,
            "triggerRunning": self.trigger.is_running,
            "channels": self.router.status(),
            "metrics": self.executor.metrics.as_dict(),
        }
