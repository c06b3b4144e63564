"""API route definitions for the export server."""

from __future__ import annotations

from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from agenda.errors import StoreUnavailable
from agenda.logging_config import get_logger
from agenda.modules.schedules.models import Recipient, Schedule
from agenda.modules.schedules.selection import AllEntries, Entry, EntrySelection, load_entries
from agenda.modules.schedules.service import Delay
from agenda.orchestrator import Orchestrator
from agenda.security.credentials import Credential

logger = get_logger(__name__)

router = APIRouter()
health_router = APIRouter()


# ── Request Models ───────────────────────────────────────────────────

def _coerce_entries(value: Any) -> Any:
    # Some clients send the snapshot as a JSON string
    if isinstance(value, str):
        return [e.model_dump() for e in load_entries(value)]
    return value


class ScheduleCreateRequest(BaseModel):
    """Schedule creation request."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=200)
    delay: Optional[Delay] = None
    duration_ms: Optional[int] = Field(default=None, gt=0, alias="durationMs")
    entry_selection: EntrySelection = Field(default_factory=AllEntries, alias="entrySelection")
    entries_data: list[Entry] = Field(alias="entriesData")
    passphrase: str = Field(min_length=1)
    recipients: list[Recipient] = Field(min_length=1)

    @field_validator("entries_data", mode="before")
    @classmethod
    def _entries_from_json(cls, value: Any) -> Any:
        return _coerce_entries(value)

    @model_validator(mode="after")
    def _one_delay(self) -> "ScheduleCreateRequest":
        if (self.delay is None) == (self.duration_ms is None):
            raise ValueError("Provide exactly one of delay or duration_ms")
        return self

    def duration(self) -> int:
        return self.duration_ms if self.duration_ms is not None else self.delay.to_ms()


class ScheduleUpdateRequest(BaseModel):
    """Schedule update request. ``reset`` must be sent on its own."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    delay: Optional[Delay] = None
    duration_ms: Optional[int] = Field(default=None, gt=0, alias="durationMs")
    entry_selection: Optional[EntrySelection] = Field(default=None, alias="entrySelection")
    entries_data: Optional[list[Entry]] = Field(default=None, alias="entriesData")
    recipients: Optional[list[Recipient]] = Field(default=None, min_length=1)
    passphrase: Optional[str] = None
    reset: bool = False

    @field_validator("entries_data", mode="before")
    @classmethod
    def _entries_from_json(cls, value: Any) -> Any:
        return _coerce_entries(value)

    @model_validator(mode="after")
    def _consistent(self) -> "ScheduleUpdateRequest":
        if self.delay is not None and self.duration_ms is not None:
            raise ValueError("Provide at most one of delay or duration_ms")
        changed = {"name", "delay", "duration_ms", "entry_selection", "entries_data", "recipients"}
        if self.reset and changed & self.model_fields_set:
            raise ValueError("reset cannot be combined with other changes")
        return self

    def duration(self) -> Optional[int]:
        if self.duration_ms is not None:
            return self.duration_ms
        return self.delay.to_ms() if self.delay is not None else None


class ExecuteRequest(BaseModel):
    passphrase: Optional[str] = None


# ── Dependencies ─────────────────────────────────────────────────────

def get_orchestrator(request: Request) -> Orchestrator:
    """Return the orchestrator attached to the app, raising if not initialized."""
    orch = getattr(request.app.state, "orchestrator", None)
    if orch is None:
        raise StoreUnavailable("System not initialized")
    return orch


async def current_owner(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    orch: Orchestrator = Depends(get_orchestrator),
) -> Credential:
    return await orch.credentials.verify(x_api_key)


def summary(schedule: Schedule) -> dict[str, Any]:
    data = schedule.model_dump(mode="json", exclude={"logs"})
    data["last_status"] = schedule.logs[-1].status.value if schedule.logs else None
    return data


def detail(schedule: Schedule) -> dict[str, Any]:
    return schedule.model_dump(mode="json")


# ── Health ───────────────────────────────────────────────────────────

@health_router.get("/health")
async def health(orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    """System health check."""
    return await orch.health()


# ── Auth ─────────────────────────────────────────────────────────────

@router.post("/auth/register", status_code=201)
async def register(orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    """Issue a new API key. The key is only ever shown in this response."""
    credential, api_key = await orch.credentials.issue()
    return {"user_id": credential.id, "api_key": api_key, "created_at": credential.created_at}


@router.get("/auth/verify")
async def verify(owner: Credential = Depends(current_owner)) -> dict[str, Any]:
    return {"user_id": owner.id, "created_at": owner.created_at, "last_active": owner.last_active}


# ── Schedules ────────────────────────────────────────────────────────

@router.post("/schedules", status_code=201)
async def create_schedule(
    body: ScheduleCreateRequest,
    owner: Credential = Depends(current_owner),
    orch: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    schedule = await orch.schedules.create(
        owner.id,
        name=body.name,
        duration_ms=body.duration(),
        selection=body.entry_selection,
        entries=body.entries_data,
        passphrase=body.passphrase,
        recipients=body.recipients,
    )
    return detail(schedule)


@router.get("/schedules")
async def list_schedules(
    owner: Credential = Depends(current_owner),
    orch: Orchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    return [summary(s) for s in await orch.store.list(owner.id)]


@router.get("/schedules/{schedule_id}")
async def get_schedule(
    schedule_id: str,
    owner: Credential = Depends(current_owner),
    orch: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return detail(await orch.store.get(schedule_id, owner.id))


@router.put("/schedules/{schedule_id}")
async def update_schedule(
    schedule_id: str,
    body: ScheduleUpdateRequest,
    owner: Credential = Depends(current_owner),
    orch: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    if body.reset:
        return detail(await orch.schedules.reset(owner.id, schedule_id))
    schedule = await orch.schedules.update(
        owner.id,
        schedule_id,
        name=body.name,
        duration_ms=body.duration(),
        selection=body.entry_selection,
        entries=body.entries_data,
        recipients=body.recipients,
        passphrase=body.passphrase,
    )
    return detail(schedule)


@router.post("/schedules/{schedule_id}/reset")
async def reset_schedule(
    schedule_id: str,
    owner: Credential = Depends(current_owner),
    orch: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return detail(await orch.schedules.reset(owner.id, schedule_id))


@router.delete("/schedules/{schedule_id}")
async def delete_schedule(
    schedule_id: str,
    owner: Credential = Depends(current_owner),
    orch: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Union[bool, str]]:
    deferred = await orch.schedules.delete(owner.id, schedule_id)
    return {"deleted": True, "deferred": deferred}


@router.post("/schedules/{schedule_id}/execute", status_code=202)
async def execute_schedule(
    schedule_id: str,
    body: Optional[ExecuteRequest] = None,
    owner: Credential = Depends(current_owner),
    orch: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Run a schedule now. The export happens in the background."""
    passphrase = body.passphrase if body is not None else None
    schedule = await orch.schedules.execute_now(owner.id, schedule_id, passphrase=passphrase)
    return {"queued": True, "schedule": detail(schedule)}
