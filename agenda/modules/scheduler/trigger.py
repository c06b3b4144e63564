"""Trigger loop: polls the store for due schedules and feeds the worker pool."""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from agenda.clock import Clock, SystemClock
from agenda.config import Settings, get_settings
from agenda.errors import StoreUnavailable
from agenda.logging_config import get_logger
from agenda.modules.scheduler.engine import ExecutionEngine
from agenda.modules.schedules.models import Claim
from agenda.modules.schedules.store import ScheduleStore

logger = get_logger(__name__)

TICK_JOB_ID = "agenda-trigger-tick"


class TriggerLoop:
    """Ticks on an interval, claims due schedules and runs them concurrently."""

    def __init__(
        self,
        store: ScheduleStore,
        engine: ExecutionEngine,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._engine = engine
        self._clock = clock or SystemClock()
        self._poll_interval = settings.agenda_poll_interval_seconds
        self._max_concurrent = settings.agenda_max_concurrent_executions
        self._shutdown_grace = settings.agenda_shutdown_grace_seconds
        self._slots = asyncio.Semaphore(self._max_concurrent)
        self._in_flight: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        """Start ticking (idempotent)."""
        if self.is_running:
            return
        self._stopping.clear()
        self._scheduler = AsyncIOScheduler(
            job_defaults={
                "misfire_grace_time": max(1, int(self._poll_interval)),
                "coalesce": True,
                "max_instances": 1,
            },
        )
        self._scheduler.add_listener(self._on_job_event, EVENT_JOB_ERROR | EVENT_JOB_MISSED)
        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self._poll_interval),
            id=TICK_JOB_ID,
            name="claim due schedules",
            next_run_time=dt.datetime.now(dt.UTC),
        )
        self._scheduler.start()
        logger.info("trigger_loop_started", interval=self._poll_interval, workers=self._max_concurrent)

    @staticmethod
    def _on_job_event(event) -> None:
        if event.code == EVENT_JOB_ERROR:
            logger.error("trigger_tick_error", error=str(getattr(event, "exception", "")))
        elif event.code == EVENT_JOB_MISSED:
            logger.warning("trigger_tick_missed")

    async def stop(self) -> None:
        """Stop ticking and wait up to the shutdown grace for in-flight work (idempotent)."""
        self._stopping.set()
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("trigger_loop_stopped")
        if not self._in_flight:
            return
        _, pending = await asyncio.wait(set(self._in_flight), timeout=self._shutdown_grace)
        if pending:
            # Left claimed; recovered as interrupted on the next start.
            logger.warning("trigger_shutdown_grace_exceeded", still_running=len(pending))

    async def tick(self) -> int:
        """Claim due schedules while worker slots are free. Returns the number claimed."""
        if self._engine.unfinished:
            await self._engine.retry_unfinished()
        claimed = 0
        while not self._stopping.is_set() and len(self._in_flight) < self._max_concurrent:
            try:
                claim = await self._store.claim_due(self._clock.now_ms())
            except StoreUnavailable as exc:
                logger.warning("trigger_tick_store_unavailable", error=exc.message)
                break
            if claim is None:
                break
            self.submit(claim)
            claimed += 1
        if claimed:
            logger.info("trigger_tick_claimed", count=claimed, in_flight=len(self._in_flight))
        return claimed

    def submit(self, claim: Claim, passphrase: Optional[str] = None) -> asyncio.Task:
        """Run a claimed schedule on the worker pool without waiting for it."""
        task = asyncio.create_task(self._run(claim, passphrase), name=f"execute-{claim.schedule.id}")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _run(self, claim: Claim, passphrase: Optional[str]) -> None:
        async with self._slots:
            try:
                await self._engine.execute(claim, passphrase=passphrase)
            except Exception:
                logger.exception("execution_task_crashed", schedule_id=claim.schedule.id)

    async def drain(self) -> None:
        """Wait for every in-flight execution to finish."""
        while self._in_flight:
            await asyncio.gather(*set(self._in_flight), return_exceptions=True)
