"""Schedule use cases behind the HTTP API.

The service owns everything that needs plaintext entries: it encrypts the
snapshot on create, recounts the selection when it changes, and hands manual
executions to the trigger loop. Persistence rules live in the store.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from agenda.clock import Clock, SystemClock
from agenda.config import get_settings
from agenda.errors import DecryptionError, ScheduleConflict, ValidationError
from agenda.logging_config import get_logger
from agenda.modules.schedules.models import (
    Recipient,
    Schedule,
    ScheduleChanges,
    ScheduleDraft,
    StoredPayload,
)
from agenda.modules.schedules.selection import (
    AllEntries,
    DateRange,
    Entry,
    SpecificEntries,
    dump_entries,
    load_entries,
)
from agenda.modules.schedules.store import ScheduleStore
from agenda.security.encryption import SALT_BYTES, KeyCustody, PassphraseCodec

logger = get_logger(__name__)

Selection = Union[AllEntries, SpecificEntries, DateRange]

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS
MONTH_MS = 30 * DAY_MS
YEAR_MS = 365 * DAY_MS


class Delay(BaseModel):
    """A relative delay as entered by the user. Months are 30 days, years 365."""

    years: int = Field(default=0, ge=0)
    months: int = Field(default=0, ge=0)
    weeks: int = Field(default=0, ge=0)
    days: int = Field(default=0, ge=0)
    hours: int = Field(default=0, ge=0)
    minutes: int = Field(default=0, ge=0)
    seconds: int = Field(default=0, ge=0)

    def to_ms(self) -> int:
        return (
            self.years * YEAR_MS
            + self.months * MONTH_MS
            + self.weeks * WEEK_MS
            + self.days * DAY_MS
            + self.hours * HOUR_MS
            + self.minutes * MINUTE_MS
            + self.seconds * SECOND_MS
        )


def count_matching(selection: Selection, entries: list[Entry]) -> int:
    count = len(selection.select(entries))
    if count == 0:
        raise ValidationError("No entries match the selection criteria")
    return count


class ScheduleService:
    """Create, edit and trigger schedules on behalf of an owner."""

    def __init__(
        self,
        store: ScheduleStore,
        codec: Optional[PassphraseCodec] = None,
        custody: Optional[KeyCustody] = None,
        clock: Optional[Clock] = None,
        trigger: Optional[Any] = None,
        unattended: Optional[bool] = None,
    ) -> None:
        self._store = store
        self._codec = codec or PassphraseCodec()
        self._custody = custody
        self._clock = clock or SystemClock()
        self._trigger = trigger
        self._unattended = get_settings().agenda_unattended_execution if unattended is None else unattended

    def set_trigger(self, trigger: Any) -> None:
        """Attach the trigger loop that runs manual executions."""
        self._trigger = trigger

    @property
    def store(self) -> ScheduleStore:
        return self._store

    # ── Payload handling ─────────────────────────────────────────────

    def _encrypt_snapshot(self, entries: list[Entry], passphrase: str) -> tuple[str, Optional[str]]:
        """Encrypt the snapshot and, for unattended runs, seal the derived key."""
        salt = os.urandom(SALT_BYTES)
        key = self._codec.derive_key(passphrase, salt)
        token = self._codec.encrypt_with_key(dump_entries(entries), key, salt)
        sealed = self._custody.seal(key) if self._unattended and self._custody is not None else None
        return token, sealed

    async def seal_snapshot(self, entries: list[Entry], passphrase: str) -> tuple[str, Optional[str]]:
        if not passphrase:
            raise ValidationError("A passphrase is required")
        return await asyncio.to_thread(self._encrypt_snapshot, entries, passphrase)

    def _open_snapshot(self, payload: StoredPayload, passphrase: Optional[str]) -> list[Entry]:
        if passphrase:
            raw = self._codec.decrypt(payload.encrypted_payload, passphrase)
        elif payload.sealed_key and self._custody is not None:
            raw = self._codec.decrypt_with_key(payload.encrypted_payload, self._custody.unseal(payload.sealed_key))
        else:
            raise ValidationError("A passphrase is required to change the entry selection")
        return load_entries(raw)

    # ── Use cases ────────────────────────────────────────────────────

    async def create(
        self,
        owner: str,
        *,
        name: str,
        duration_ms: int,
        selection: Selection,
        entries: list[Entry],
        passphrase: str,
        recipients: list[Recipient],
    ) -> Schedule:
        if duration_ms <= 0:
            raise ValidationError("Delay must be greater than zero")
        if not recipients:
            raise ValidationError("At least one recipient is required")
        entry_count = count_matching(selection, entries)
        token, sealed = await self.seal_snapshot(entries, passphrase)
        now = self._clock.now_ms()
        draft = ScheduleDraft(
            name=name,
            execution_time=now + duration_ms,
            original_duration_ms=duration_ms,
            selection=selection,
            encrypted_payload=token,
            entry_count=entry_count,
            recipients=recipients,
            sealed_key=sealed,
        )
        return await self._store.create(owner, draft)

    async def update(
        self,
        owner: str,
        schedule_id: str,
        *,
        name: Optional[str] = None,
        duration_ms: Optional[int] = None,
        selection: Optional[Selection] = None,
        entries: Optional[list[Entry]] = None,
        recipients: Optional[list[Recipient]] = None,
        passphrase: Optional[str] = None,
    ) -> Schedule:
        current = await self._store.get(schedule_id, owner)
        if current.running:
            raise ScheduleConflict("Schedule is currently running")
        if current.executed:
            raise ScheduleConflict("Schedule has already been executed")

        changes = ScheduleChanges(name=name, recipients=recipients, selection=selection)
        if duration_ms is not None:
            if duration_ms <= 0:
                raise ValidationError("Delay must be greater than zero")
            changes.execution_time = self._clock.now_ms() + duration_ms
            changes.original_duration_ms = duration_ms

        if entries is not None:
            changes.entry_count = count_matching(selection or current.entry_selection, entries)
            if not passphrase:
                raise ValidationError("A passphrase is required to replace the entries")
            changes.encrypted_payload, changes.sealed_key = await self.seal_snapshot(entries, passphrase)
        elif selection is not None:
            payload = await self._store.get_payload(schedule_id, owner)
            try:
                stored = await asyncio.to_thread(self._open_snapshot, payload, passphrase)
            except DecryptionError as exc:
                raise ValidationError(exc.message) from exc
            changes.entry_count = count_matching(selection, stored)

        if changes.is_empty():
            return current
        return await self._store.update(schedule_id, owner, changes)

    async def reset(self, owner: str, schedule_id: str) -> Schedule:
        return await self._store.reset(schedule_id, owner)

    async def delete(self, owner: str, schedule_id: str) -> bool:
        return await self._store.delete(schedule_id, owner)

    async def execute_now(self, owner: str, schedule_id: str, passphrase: Optional[str] = None) -> Schedule:
        """Claim a schedule immediately and queue it on the worker pool."""
        if self._trigger is None:
            raise RuntimeError("no trigger loop attached")
        if not passphrase:
            payload = await self._store.get_payload(schedule_id, owner)
            if not payload.sealed_key:
                raise ValidationError("A passphrase is required to execute this schedule")
        claim = await self._store.claim(schedule_id, owner)
        self._trigger.submit(claim, passphrase=passphrase)
        logger.info("manual_execution_queued", schedule_id=schedule_id, owner=owner)
        return claim.schedule
