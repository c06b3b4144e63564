"""Execution engine: runs one claimed schedule to a terminal log.

An attempt moves through decrypting, selecting, rendering and delivering.
Whatever happens, the attempt ends with its log completed and the schedule
marked executed; the engine never raises into its caller.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import pydantic
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from agenda.clock import Clock, SystemClock
from agenda.config import Settings, get_settings
from agenda.errors import DecryptionError, ExecutionError, RenderError, SelectionError, StoreUnavailable
from agenda.logging_config import get_logger
from agenda.modules.delivery.base import DeliveryMetadata, DeliveryResult, DeliveryRouter
from agenda.modules.documents.service import DocumentRenderer
from agenda.modules.schedules.models import Claim, LogStatus, StoredPayload
from agenda.modules.schedules.selection import Entry, load_entries
from agenda.modules.schedules.store import ScheduleStore
from agenda.security.encryption import KeyCustody, PassphraseCodec

logger = get_logger(__name__)


@dataclass
class ExecutionOutcome:
    schedule_id: str
    log_id: str
    status: LogStatus
    entry_count: int = 0
    recipients_sent: int = 0
    error_message: Optional[str] = None
    duration_ms: int = 0


@dataclass
class ExecutionMetrics:
    """In-process execution counters reported by the health endpoint."""

    total: int = 0
    successes: int = 0
    failures: int = 0
    total_duration_ms: int = 0
    last_completed_at: Optional[int] = None

    def record(self, outcome: ExecutionOutcome, now: int) -> None:
        self.total += 1
        if outcome.status is LogStatus.SUCCESS:
            self.successes += 1
        else:
            self.failures += 1
        self.total_duration_ms += outcome.duration_ms
        self.last_completed_at = now

    @property
    def average_duration_ms(self) -> float:
        return self.total_duration_ms / self.total if self.total else 0.0

    def as_dict(self) -> dict:
        return {
            "totalExecutions": self.total,
            "successfulExecutions": self.successes,
            "failedExecutions": self.failures,
            "averageDurationMs": round(self.average_duration_ms, 1),
            "lastCompletedAt": self.last_completed_at,
        }


@dataclass
class _Attempt:
    entry_count: int = 0
    results: list[DeliveryResult] = field(default_factory=list)


@dataclass
class _PendingFinish:
    """A terminal write the store could not take yet."""

    claim: Claim
    outcome: ExecutionOutcome
    finished_at: int


class ExecutionEngine:
    """Decrypts, selects, renders and delivers one claimed schedule."""

    def __init__(
        self,
        store: ScheduleStore,
        router: DeliveryRouter,
        renderer: Optional[DocumentRenderer] = None,
        codec: Optional[PassphraseCodec] = None,
        custody: Optional[KeyCustody] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        retry_wait: float = 0.5,
    ) -> None:
        self._store = store
        self._router = router
        self._renderer = renderer or DocumentRenderer()
        self._codec = codec or PassphraseCodec()
        self._custody = custody
        self._clock = clock or SystemClock()
        self._settings = settings or get_settings()
        self.metrics = ExecutionMetrics()
        self._retry_wait = retry_wait
        self._unfinished: dict[str, _PendingFinish] = {}

    async def execute(self, claim: Claim, passphrase: Optional[str] = None) -> ExecutionOutcome:
        schedule = claim.schedule
        started = self._clock.now_ms()
        attempt = _Attempt()
        log = logger.bind(schedule_id=schedule.id, log_id=claim.log_id, trigger=str(claim.trigger))
        log.info("execution_started")

        status = LogStatus.FAILED
        error: Optional[str] = None
        timeout = self._settings.agenda_execution_timeout_seconds
        with structlog.contextvars.bound_contextvars(schedule_id=schedule.id):
            try:
                await asyncio.wait_for(self._run(claim, passphrase, attempt), timeout=timeout)
                status, error = self._aggregate(attempt.results)
            except asyncio.TimeoutError:
                error = f"Execution timed out after {timeout:g}s"
            except ExecutionError as exc:
                error = exc.message
            except Exception as exc:
                log.exception("execution_crashed")
                error = f"Unexpected error: {exc}"

        outcome = ExecutionOutcome(
            schedule_id=schedule.id,
            log_id=claim.log_id,
            status=status,
            entry_count=attempt.entry_count,
            recipients_sent=sum(1 for r in attempt.results if r.ok),
            error_message=error,
        )
        finished = self._clock.now_ms()
        outcome.duration_ms = max(0, finished - started)
        pending = _PendingFinish(claim, outcome, finished)
        try:
            await self._write(pending)
        except StoreUnavailable as exc:
            # Retried on later trigger ticks; startup recovery covers a restart.
            self._unfinished[claim.log_id] = pending
            log.error("execution_log_write_failed", error=exc.message, parked=len(self._unfinished))
        except Exception:
            log.exception("execution_log_write_crashed")
        self.metrics.record(outcome, finished)

        log_fn = log.info if outcome.status is LogStatus.SUCCESS else log.warning
        log_fn(
            "execution_finished",
            status=str(outcome.status),
            entries=outcome.entry_count,
            recipients_sent=outcome.recipients_sent,
            error=outcome.error_message,
            duration_ms=outcome.duration_ms,
        )
        return outcome

    @property
    def unfinished(self) -> int:
        """Attempts whose terminal write is still waiting for the store."""
        return len(self._unfinished)

    async def _write(self, pending: _PendingFinish, attempts: Optional[int] = None) -> None:
        outcome = pending.outcome
        finish = retry(
            stop=stop_after_attempt(attempts or self._settings.agenda_store_retries),
            wait=wait_exponential(multiplier=self._retry_wait, max=5),
            retry=retry_if_exception_type(StoreUnavailable),
            reraise=True,
        )(self._store.finish)
        await finish(
            pending.claim,
            outcome.status,
            entry_count=outcome.entry_count,
            recipients_sent=outcome.recipients_sent,
            error_message=outcome.error_message,
            now=pending.finished_at,
        )

    async def retry_unfinished(self) -> int:
        """Write parked terminal logs. Returns how many are still parked."""
        for log_id, pending in list(self._unfinished.items()):
            try:
                await self._write(pending, attempts=1)
            except StoreUnavailable as exc:
                logger.warning("execution_log_write_deferred", log_id=log_id, error=exc.message)
                break
            del self._unfinished[log_id]
            logger.info("execution_log_written_late", schedule_id=pending.claim.schedule.id, log_id=log_id)
        return len(self._unfinished)

    async def _run(self, claim: Claim, passphrase: Optional[str], attempt: _Attempt) -> None:
        schedule = claim.schedule

        logger.debug("execution_stage", stage="decrypting")
        entries = await asyncio.to_thread(self._decrypt, claim.payload, passphrase)

        logger.debug("execution_stage", stage="selecting")
        selected = schedule.entry_selection.select(entries)
        if not selected:
            raise SelectionError("No entries match the selection criteria")
        attempt.entry_count = len(selected)

        logger.debug("execution_stage", stage="rendering", entries=len(selected))
        generated_at = self._clock.now_ms()
        render_timeout = self._settings.agenda_render_timeout_seconds
        try:
            document = await asyncio.wait_for(
                asyncio.to_thread(self._renderer.render, selected, generated_at),
                timeout=render_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise RenderError(f"Rendering timed out after {render_timeout:g}s") from exc

        logger.debug("execution_stage", stage="delivering", recipients=len(schedule.recipients))
        metadata = DeliveryMetadata(
            schedule_id=schedule.id,
            schedule_name=schedule.name,
            entry_count=len(selected),
            file_name=self._renderer.file_name(generated_at),
            generated_at=generated_at,
        )
        attempt.results = await self._router.fan_out(
            schedule.recipients,
            document,
            metadata,
            timeout=self._settings.agenda_delivery_timeout_seconds,
        )

    def _decrypt(self, payload: StoredPayload, passphrase: Optional[str]) -> list[Entry]:
        if passphrase:
            plaintext = self._codec.decrypt(payload.encrypted_payload, passphrase)
        elif payload.sealed_key and self._custody is not None:
            key = self._custody.unseal(payload.sealed_key)
            plaintext = self._codec.decrypt_with_key(payload.encrypted_payload, key)
        else:
            raise DecryptionError("No passphrase available to decrypt the entries")
        try:
            return load_entries(plaintext)
        except pydantic.ValidationError as exc:
            raise DecryptionError("Decrypted payload is not a valid entry list") from exc

    def _aggregate(self, results: list[DeliveryResult]) -> tuple[LogStatus, Optional[str]]:
        errors = [r.error for r in results if not r.ok and r.error]
        sent = sum(1 for r in results if r.ok)
        error = "; ".join(errors) or None
        if sent == 0:
            return LogStatus.FAILED, error or "No recipients received the export"
        if errors and self._settings.agenda_require_all_recipients:
            return LogStatus.FAILED, error
        return LogStatus.SUCCESS, error
