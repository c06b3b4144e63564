"""Durable schedule store: the single source of truth for "is this job done yet".

Coordination between the trigger loop, manual executions and API mutations is
expressed as conditional updates on the ``running`` and ``executed`` columns.
No caller takes an explicit lock: a claim succeeds only if the row is still
unclaimed when the ``UPDATE`` runs, so at most one caller wins.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda.clock import Clock, SystemClock
from agenda.database import get_session_factory
from agenda.errors import NotFound, ScheduleConflict, StoreUnavailable, ValidationError
from agenda.logging_config import get_logger
from agenda.modules.schedules.models import (
    Claim,
    ExecutionLogRecord,
    LogStatus,
    RecipientRecord,
    Recipient,
    Schedule,
    ScheduleChanges,
    ScheduleDraft,
    ScheduleRecord,
    StoredPayload,
    TriggerKind,
    new_id,
    selection_columns,
)

logger = get_logger(__name__)

_CLAIM_ATTEMPTS = 5
_NO_SYNC = {"synchronize_session": False}


def _recipient_records(recipients: list[Recipient]) -> list[RecipientRecord]:
    return [
        RecipientRecord(id=new_id(), position=i, channel=r.channel.value, address=r.address)
        for i, r in enumerate(recipients)
    ]


class ScheduleStore:
    """Persistence and atomic state transitions for schedules."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._session_factory = session_factory or get_session_factory()
        self._clock = clock or SystemClock()

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        """Transactional scope that reports driver failures as StoreUnavailable."""
        try:
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except (OperationalError, InterfaceError) as exc:
            logger.warning("schedule_store_unavailable", error=str(exc))
            raise StoreUnavailable("Schedule store is unavailable") from exc

    async def _load(
        self, session: AsyncSession, schedule_id: str, owner: Optional[str] = None,
    ) -> ScheduleRecord:
        stmt = select(ScheduleRecord).where(ScheduleRecord.id == schedule_id)
        if owner is not None:
            stmt = stmt.where(ScheduleRecord.owner_id == owner)
        record = (await session.execute(stmt.execution_options(populate_existing=True))).scalar_one_or_none()
        if record is None:
            raise NotFound("Schedule not found")
        return record

    async def _raise_conflict(self, session: AsyncSession, schedule_id: str, owner: Optional[str]) -> None:
        record = await self._load(session, schedule_id, owner)
        if record.running:
            raise ScheduleConflict("Schedule is currently running")
        if record.executed:
            raise ScheduleConflict("Schedule has already been executed")
        raise ScheduleConflict("Schedule changed concurrently, try again")

    # ── CRUD ─────────────────────────────────────────────────────────

    async def create(self, owner: str, draft: ScheduleDraft) -> Schedule:
        now = self._clock.now_ms()
        if not draft.name.strip():
            raise ValidationError("Name is required")
        if not draft.recipients:
            raise ValidationError("At least one recipient is required")
        if draft.entry_count <= 0:
            raise ValidationError("No entries match the selection criteria")
        if draft.original_duration_ms <= 0 or draft.execution_time <= now:
            raise ValidationError("Execution time must be in the future")

        record = ScheduleRecord(
            id=new_id(),
            owner_id=owner,
            name=draft.name.strip(),
            execution_time=draft.execution_time,
            original_duration_ms=draft.original_duration_ms,
            encrypted_payload=draft.encrypted_payload,
            sealed_key=draft.sealed_key,
            entry_count=draft.entry_count,
            executed=False,
            running=False,
            delete_requested=False,
            created_at=now,
            updated_at=now,
            recipients=_recipient_records(draft.recipients),
            logs=[],
            **selection_columns(draft.selection),
        )
        async with self._session() as session:
            session.add(record)
            await session.flush()
            schedule = Schedule.from_record(record)
        logger.info(
            "schedule_created",
            schedule_id=schedule.id,
            owner=owner,
            execution_time=schedule.execution_time,
            recipients=len(schedule.recipients),
        )
        return schedule

    async def get(self, schedule_id: str, owner: str) -> Schedule:
        async with self._session() as session:
            return Schedule.from_record(await self._load(session, schedule_id, owner))

    async def list(self, owner: str) -> list[Schedule]:
        async with self._session() as session:
            result = await session.execute(
                select(ScheduleRecord)
                .where(ScheduleRecord.owner_id == owner)
                .order_by(ScheduleRecord.created_at.desc())
            )
            return [Schedule.from_record(r) for r in result.scalars().all()]

    async def list_pending(self, limit: int = 50) -> list[Schedule]:
        """Unexecuted schedules across all owners, earliest first (operator view)."""
        async with self._session() as session:
            result = await session.execute(
                select(ScheduleRecord)
                .where(ScheduleRecord.executed == False)  # noqa: E712
                .order_by(ScheduleRecord.execution_time)
                .limit(limit)
            )
            return [Schedule.from_record(r, with_logs=False) for r in result.scalars().all()]

    async def get_payload(self, schedule_id: str, owner: str) -> StoredPayload:
        async with self._session() as session:
            record = await self._load(session, schedule_id, owner)
            return StoredPayload(record.encrypted_payload, record.sealed_key)

    async def update(self, schedule_id: str, owner: str, changes: ScheduleChanges) -> Schedule:
        """Apply owner edits. Only allowed while unexecuted and unclaimed."""
        now = self._clock.now_ms()
        values: dict = {"updated_at": now}
        if changes.name is not None:
            if not changes.name.strip():
                raise ValidationError("Name is required")
            values["name"] = changes.name.strip()
        if changes.execution_time is not None:
            if changes.execution_time <= now or not changes.original_duration_ms:
                raise ValidationError("Execution time must be in the future")
            values["execution_time"] = changes.execution_time
            values["original_duration_ms"] = changes.original_duration_ms
        if changes.selection is not None:
            values.update(selection_columns(changes.selection))
        if changes.entry_count is not None:
            if changes.entry_count <= 0:
                raise ValidationError("No entries match the selection criteria")
            values["entry_count"] = changes.entry_count
        if changes.encrypted_payload is not None:
            values["encrypted_payload"] = changes.encrypted_payload
            values["sealed_key"] = changes.sealed_key
        if changes.recipients is not None and not changes.recipients:
            raise ValidationError("At least one recipient is required")

        async with self._session() as session:
            result = await session.execute(
                update(ScheduleRecord)
                .where(
                    ScheduleRecord.id == schedule_id,
                    ScheduleRecord.owner_id == owner,
                    ScheduleRecord.executed == False,  # noqa: E712
                    ScheduleRecord.running == False,  # noqa: E712
                )
                .values(**values)
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                await self._raise_conflict(session, schedule_id, owner)
            if changes.recipients is not None:
                await session.execute(
                    delete(RecipientRecord)
                    .where(RecipientRecord.schedule_id == schedule_id)
                    .execution_options(**_NO_SYNC)
                )
                for rec in _recipient_records(changes.recipients):
                    rec.schedule_id = schedule_id
                    session.add(rec)
                await session.flush()
            schedule = Schedule.from_record(await self._load(session, schedule_id, owner))
        logger.info("schedule_updated", schedule_id=schedule_id, fields=sorted(values))
        return schedule

    async def reset(self, schedule_id: str, owner: str) -> Schedule:
        """Fire again ``original_duration_ms`` from now. History is kept."""
        now = self._clock.now_ms()
        async with self._session() as session:
            record = await self._load(session, schedule_id, owner)
            if record.original_duration_ms <= 0:
                raise ValidationError("Schedule has no duration to reset to")
            result = await session.execute(
                update(ScheduleRecord)
                .where(
                    ScheduleRecord.id == schedule_id,
                    ScheduleRecord.running == False,  # noqa: E712
                )
                .values(
                    execution_time=now + record.original_duration_ms,
                    executed=False,
                    updated_at=now,
                )
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                raise ScheduleConflict("Schedule is currently running")
            schedule = Schedule.from_record(await self._load(session, schedule_id, owner))
        logger.info("schedule_reset", schedule_id=schedule_id, execution_time=schedule.execution_time)
        return schedule

    async def delete(self, schedule_id: str, owner: str) -> bool:
        """Remove a schedule with its recipients and logs.

        Returns True when the schedule is mid-execution: the row is then only
        flagged and disappears once its execution log has been written.
        """
        async with self._session() as session:
            result = await session.execute(
                delete(ScheduleRecord)
                .where(
                    ScheduleRecord.id == schedule_id,
                    ScheduleRecord.owner_id == owner,
                    ScheduleRecord.running == False,  # noqa: E712
                )
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount == 1:
                await self._delete_children(session, schedule_id)
                logger.info("schedule_deleted", schedule_id=schedule_id)
                return False

            result = await session.execute(
                update(ScheduleRecord)
                .where(
                    ScheduleRecord.id == schedule_id,
                    ScheduleRecord.owner_id == owner,
                    ScheduleRecord.running == True,  # noqa: E712
                )
                .values(delete_requested=True)
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                raise NotFound("Schedule not found")
        logger.info("schedule_delete_deferred", schedule_id=schedule_id)
        return True

    @staticmethod
    async def _delete_children(session: AsyncSession, schedule_id: str) -> None:
        for model in (RecipientRecord, ExecutionLogRecord):
            await session.execute(
                delete(model).where(model.schedule_id == schedule_id).execution_options(**_NO_SYNC)
            )

    async def count_pending(self) -> int:
        async with self._session() as session:
            return await session.scalar(
                select(func.count()).select_from(ScheduleRecord).where(ScheduleRecord.executed == False)  # noqa: E712
            ) or 0

    # ── Claims ───────────────────────────────────────────────────────

    async def _try_claim(
        self,
        session: AsyncSession,
        schedule_id: str,
        now: int,
        trigger: TriggerKind,
        owner: Optional[str] = None,
        due_by: Optional[int] = None,
    ) -> Optional[Claim]:
        conditions = [
            ScheduleRecord.id == schedule_id,
            ScheduleRecord.running == False,  # noqa: E712
            ScheduleRecord.executed == False,  # noqa: E712
        ]
        if owner is not None:
            conditions.append(ScheduleRecord.owner_id == owner)
        if due_by is not None:
            conditions.append(ScheduleRecord.execution_time <= due_by)

        result = await session.execute(
            update(ScheduleRecord)
            .where(*conditions)
            .values(
                running=True,
                claimed_at=now,
                executed_at=func.coalesce(ScheduleRecord.executed_at, now),
                updated_at=now,
            )
            .execution_options(**_NO_SYNC)
        )
        if result.rowcount != 1:
            return None

        log_id = await self.append_log(schedule_id, trigger, now, session=session)
        record = await self._load(session, schedule_id)
        return Claim(
            schedule=Schedule.from_record(record),
            log_id=log_id,
            payload=StoredPayload(record.encrypted_payload, record.sealed_key),
            trigger=trigger,
            claimed_at=now,
        )

    async def claim_due(self, now: Optional[int] = None) -> Optional[Claim]:
        """Claim the earliest-due unexecuted, unclaimed schedule, if any."""
        now = self._clock.now_ms() if now is None else now
        for _ in range(_CLAIM_ATTEMPTS):
            async with self._session() as session:
                candidate = await session.scalar(
                    select(ScheduleRecord.id)
                    .where(
                        ScheduleRecord.executed == False,  # noqa: E712
                        ScheduleRecord.running == False,  # noqa: E712
                        ScheduleRecord.execution_time <= now,
                    )
                    .order_by(ScheduleRecord.execution_time, ScheduleRecord.created_at)
                    .limit(1)
                )
                if candidate is None:
                    return None
                claim = await self._try_claim(session, candidate, now, TriggerKind.AUTOMATIC, due_by=now)
            if claim is not None:
                logger.info("schedule_claimed", schedule_id=claim.schedule.id, trigger=claim.trigger)
                return claim
            logger.debug("schedule_claim_lost", schedule_id=candidate)
        return None

    async def claim(
        self,
        schedule_id: str,
        owner: str,
        now: Optional[int] = None,
        trigger: TriggerKind = TriggerKind.MANUAL,
    ) -> Claim:
        """Claim a specific schedule regardless of its execution time."""
        now = self._clock.now_ms() if now is None else now
        async with self._session() as session:
            claim = await self._try_claim(session, schedule_id, now, trigger, owner=owner)
            if claim is None:
                await self._raise_conflict(session, schedule_id, owner)
        logger.info("schedule_claimed", schedule_id=schedule_id, trigger=trigger)
        return claim

    # ── Logs & completion ────────────────────────────────────────────

    async def append_log(
        self,
        schedule_id: str,
        trigger: TriggerKind,
        now: int,
        session: Optional[AsyncSession] = None,
    ) -> str:
        """Append a ``running`` execution log and return its id."""
        log = ExecutionLogRecord(
            id=new_id(),
            schedule_id=schedule_id,
            status=LogStatus.RUNNING.value,
            trigger=trigger.value,
            started_at=now,
            entry_count=0,
            recipients_sent=0,
        )
        if session is not None:
            session.add(log)
            await session.flush()
        else:
            async with self._session() as own:
                own.add(log)
        return log.id

    async def _complete_log(
        self,
        session: AsyncSession,
        log_id: str,
        status: LogStatus,
        entry_count: int,
        recipients_sent: int,
        error_message: Optional[str],
        now: int,
    ) -> bool:
        result = await session.execute(
            update(ExecutionLogRecord)
            .where(
                ExecutionLogRecord.id == log_id,
                ExecutionLogRecord.status == LogStatus.RUNNING.value,
            )
            .values(
                status=status.value,
                completed_at=now,
                entry_count=entry_count,
                recipients_sent=recipients_sent,
                error_message=error_message,
            )
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount == 1

    async def complete_log(
        self,
        log_id: str,
        status: LogStatus,
        entry_count: int = 0,
        recipients_sent: int = 0,
        error_message: Optional[str] = None,
        now: Optional[int] = None,
    ) -> bool:
        """Move a running log to a terminal status. Terminal logs never change."""
        if status is LogStatus.RUNNING:
            raise ValueError("a log can only be completed with a terminal status")
        now = self._clock.now_ms() if now is None else now
        async with self._session() as session:
            return await self._complete_log(
                session, log_id, status, entry_count, recipients_sent, error_message, now,
            )

    async def _mark_executed(self, session: AsyncSession, schedule_id: str, now: int) -> bool:
        await session.execute(
            update(ScheduleRecord)
            .where(ScheduleRecord.id == schedule_id)
            .values(
                executed=True,
                running=False,
                executed_at=func.coalesce(ScheduleRecord.executed_at, now),
                updated_at=now,
            )
            .execution_options(**_NO_SYNC)
        )
        doomed = await session.scalar(
            select(ScheduleRecord.delete_requested).where(ScheduleRecord.id == schedule_id)
        )
        if doomed:
            await session.execute(
                delete(ScheduleRecord).where(ScheduleRecord.id == schedule_id).execution_options(**_NO_SYNC)
            )
            await self._delete_children(session, schedule_id)
            logger.info("schedule_deleted_after_execution", schedule_id=schedule_id)
            return True
        return False

    async def mark_executed(self, schedule_id: str, now: Optional[int] = None) -> bool:
        """Set the terminal marker and release the claim.

        Returns True if a deferred deletion removed the schedule.
        """
        now = self._clock.now_ms() if now is None else now
        async with self._session() as session:
            return await self._mark_executed(session, schedule_id, now)

    async def finish(
        self,
        claim: Claim,
        status: LogStatus,
        entry_count: int,
        recipients_sent: int,
        error_message: Optional[str] = None,
        now: Optional[int] = None,
    ) -> None:
        """Write the terminal log and mark the schedule executed in one transaction."""
        now = self._clock.now_ms() if now is None else now
        async with self._session() as session:
            await self._complete_log(
                session, claim.log_id, status, entry_count, recipients_sent, error_message, now,
            )
            await self._mark_executed(session, claim.schedule.id, now)

    async def recover_interrupted(self, now: Optional[int] = None) -> int:
        """Release claims left behind by a process that died mid-execution.

        Their running logs are closed as failed and the schedules become
        claimable again, so the export is retried (at-least-once).
        """
        now = self._clock.now_ms() if now is None else now
        async with self._session() as session:
            ids = list((await session.execute(
                select(ScheduleRecord.id).where(ScheduleRecord.running == True)  # noqa: E712
            )).scalars().all())
            if not ids:
                return 0
            await session.execute(
                update(ExecutionLogRecord)
                .where(
                    ExecutionLogRecord.schedule_id.in_(ids),
                    ExecutionLogRecord.status == LogStatus.RUNNING.value,
                )
                .values(
                    status=LogStatus.FAILED.value,
                    completed_at=now,
                    error_message="Interrupted before completion; the export will be retried",
                )
                .execution_options(**_NO_SYNC)
            )
            await session.execute(
                update(ScheduleRecord)
                .where(ScheduleRecord.id.in_(ids))
                .values(running=False, claimed_at=None, updated_at=now)
                .execution_options(**_NO_SYNC)
            )
            doomed = list((await session.execute(
                select(ScheduleRecord.id).where(
                    ScheduleRecord.id.in_(ids),
                    ScheduleRecord.delete_requested == True,  # noqa: E712
                )
            )).scalars().all())
            for schedule_id in doomed:
                await session.execute(
                    delete(ScheduleRecord).where(ScheduleRecord.id == schedule_id).execution_options(**_NO_SYNC)
                )
                await self._delete_children(session, schedule_id)
        logger.warning("interrupted_executions_recovered", count=len(ids), deleted=len(doomed))
        return len(ids)
