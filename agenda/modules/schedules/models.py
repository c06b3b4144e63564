"""Database records and domain models for scheduled exports."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Optional, Union
from uuid import uuid4

from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import BigInteger, Boolean, Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from agenda.database import Base
from agenda.modules.schedules.selection import (
    AllEntries,
    DateRange,
    EntrySelection,
    SpecificEntries,
)

_PHONE_RE = re.compile(r"^\+?[1-9]\d{6,14}$")


def new_id() -> str:
    return uuid4().hex


class Channel(StrEnum):
    """Delivery channels. Each member has exactly one delivery adapter."""

    EMAIL = "email"
    SMS = "sms"


class LogStatus(StrEnum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class TriggerKind(StrEnum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


# ── Records ──────────────────────────────────────────────────────────

class ScheduleRecord(Base):
    """A persisted one-shot export job."""

    __tablename__ = "schedules"

    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(32), ForeignKey("credentials.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    execution_time = Column(BigInteger, nullable=False, index=True)
    original_duration_ms = Column(BigInteger, nullable=False)
    selection_type = Column(String(16), nullable=False, default="all")
    selection_ids = Column(Text, nullable=True)  # JSON list for "specific"
    range_start = Column(BigInteger, nullable=True)
    range_end = Column(BigInteger, nullable=True)
    encrypted_payload = Column(Text, nullable=False)
    sealed_key = Column(Text, nullable=True)
    entry_count = Column(Integer, nullable=False)
    executed = Column(Boolean, nullable=False, default=False, index=True)
    executed_at = Column(BigInteger, nullable=True)
    running = Column(Boolean, nullable=False, default=False)
    claimed_at = Column(BigInteger, nullable=True)
    delete_requested = Column(Boolean, nullable=False, default=False)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)

    recipients = relationship(
        "RecipientRecord",
        order_by="RecipientRecord.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    logs = relationship(
        "ExecutionLogRecord",
        order_by="ExecutionLogRecord.started_at",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<ScheduleRecord(id={self.id}, name={self.name}, "
            f"due={self.execution_time}, executed={self.executed}, running={self.running})>"
        )


class RecipientRecord(Base):
    __tablename__ = "recipients"

    id = Column(String(32), primary_key=True, default=new_id)
    schedule_id = Column(String(32), ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    channel = Column(String(8), nullable=False)
    address = Column(String(320), nullable=False)


class ExecutionLogRecord(Base):
    """One attempt at running a schedule. Append-only."""

    __tablename__ = "execution_logs"

    id = Column(String(32), primary_key=True, default=new_id)
    schedule_id = Column(String(32), ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=LogStatus.RUNNING.value)
    trigger = Column(String(16), nullable=False, default=TriggerKind.AUTOMATIC.value)
    started_at = Column(BigInteger, nullable=False)
    completed_at = Column(BigInteger, nullable=True)
    entry_count = Column(Integer, nullable=False, default=0)
    recipients_sent = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)


# ── Domain models ────────────────────────────────────────────────────

class Recipient(BaseModel):
    """A delivery target: an email address or a phone number."""

    id: str = Field(default_factory=new_id)
    channel: Channel
    address: str

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_keys(cls, data):
        # Older clients send {"type": "email", "value": "..."}. Ids are assigned by the store.
        if isinstance(data, dict):
            data = dict(data)
            data.pop("id", None)
            if "channel" not in data and "type" in data:
                data["channel"] = data.pop("type")
            if "address" not in data and "value" in data:
                data["address"] = data.pop("value")
        return data

    @model_validator(mode="after")
    def _valid_address(self) -> "Recipient":
        address = self.address.strip()
        if self.channel is Channel.EMAIL:
            try:
                address = validate_email(address, check_deliverability=False).normalized
            except EmailNotValidError as exc:
                raise ValueError(f"invalid email address {self.address!r}: {exc}") from exc
        else:
            compact = re.sub(r"[\s\-().]", "", address)
            if not _PHONE_RE.match(compact):
                raise ValueError(f"invalid phone number {self.address!r}")
            address = compact
        self.address = address
        return self


class ExecutionLog(BaseModel):
    id: str
    status: LogStatus
    trigger: TriggerKind = TriggerKind.AUTOMATIC
    started_at: int
    completed_at: Optional[int] = None
    entry_count: int = 0
    recipients_sent: int = 0
    error_message: Optional[str] = None

    @classmethod
    def from_record(cls, rec: ExecutionLogRecord) -> "ExecutionLog":
        return cls(
            id=rec.id,
            status=LogStatus(rec.status),
            trigger=TriggerKind(rec.trigger),
            started_at=rec.started_at,
            completed_at=rec.completed_at,
            entry_count=rec.entry_count or 0,
            recipients_sent=rec.recipients_sent or 0,
            error_message=rec.error_message,
        )


class Schedule(BaseModel):
    """Client-facing view of a schedule. Never carries payload or key material."""

    id: str
    owner: str
    name: str
    execution_time: int
    original_duration_ms: int
    entry_selection: EntrySelection
    entry_count: int
    recipients: list[Recipient]
    executed: bool
    executed_at: Optional[int] = None
    running: bool = False
    created_at: int
    updated_at: int
    logs: list[ExecutionLog] = Field(default_factory=list)

    @classmethod
    def from_record(cls, rec: ScheduleRecord, with_logs: bool = True) -> "Schedule":
        return cls(
            id=rec.id,
            owner=rec.owner_id,
            name=rec.name,
            execution_time=rec.execution_time,
            original_duration_ms=rec.original_duration_ms,
            entry_selection=selection_from_record(rec),
            entry_count=rec.entry_count,
            recipients=[
                Recipient.model_construct(id=r.id, channel=Channel(r.channel), address=r.address)
                for r in rec.recipients
            ],
            executed=rec.executed,
            executed_at=rec.executed_at,
            running=rec.running,
            created_at=rec.created_at,
            updated_at=rec.updated_at,
            logs=[ExecutionLog.from_record(log) for log in rec.logs] if with_logs else [],
        )


def selection_from_record(rec: ScheduleRecord) -> Union[AllEntries, SpecificEntries, DateRange]:
    if rec.selection_type == "specific":
        return SpecificEntries.model_construct(ids=json.loads(rec.selection_ids or "[]"))
    if rec.selection_type == "date_range":
        return DateRange.model_construct(start=rec.range_start, end=rec.range_end)
    return AllEntries()


def selection_columns(selection: Union[AllEntries, SpecificEntries, DateRange]) -> dict:
    """Flatten a selection into ScheduleRecord column values."""
    return {
        "selection_type": selection.type,
        "selection_ids": json.dumps(selection.ids) if isinstance(selection, SpecificEntries) else None,
        "range_start": selection.start if isinstance(selection, DateRange) else None,
        "range_end": selection.end if isinstance(selection, DateRange) else None,
    }


# ── Store inputs / outputs ───────────────────────────────────────────

@dataclass
class ScheduleDraft:
    """Everything needed to persist a new schedule."""

    name: str
    execution_time: int
    original_duration_ms: int
    selection: Union[AllEntries, SpecificEntries, DateRange]
    encrypted_payload: str
    entry_count: int
    recipients: list[Recipient]
    sealed_key: Optional[str] = None


@dataclass
class ScheduleChanges:
    """Fields an owner may change before execution. ``None`` means unchanged."""

    name: Optional[str] = None
    execution_time: Optional[int] = None
    original_duration_ms: Optional[int] = None
    selection: Optional[Union[AllEntries, SpecificEntries, DateRange]] = None
    entry_count: Optional[int] = None
    recipients: Optional[list[Recipient]] = None
    encrypted_payload: Optional[str] = None
    sealed_key: Optional[str] = None

    def is_empty(self) -> bool:
        return all(getattr(self, f) is None for f in self.__dataclass_fields__)


@dataclass(frozen=True)
class StoredPayload:
    encrypted_payload: str
    sealed_key: Optional[str]


@dataclass
class Claim:
    """The right, granted to exactly one caller, to execute a schedule."""

    schedule: Schedule
    log_id: str
    payload: StoredPayload
    trigger: TriggerKind
    claimed_at: int
