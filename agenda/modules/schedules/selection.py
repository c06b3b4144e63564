"""Journal entries and the rules that choose which of them a schedule exports."""

from __future__ import annotations

import json
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class Entry(BaseModel):
    """One journal record from the client snapshot."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    title: str = ""
    content: str = ""
    created_at: int = Field(alias="createdAt")
    updated_at: Optional[int] = Field(default=None, alias="updatedAt")


class AllEntries(BaseModel):
    type: Literal["all"] = "all"

    def select(self, entries: list[Entry]) -> list[Entry]:
        return list(entries)


class SpecificEntries(BaseModel):
    type: Literal["specific"] = "specific"
    ids: list[str] = Field(min_length=1)

    def select(self, entries: list[Entry]) -> list[Entry]:
        wanted = set(self.ids)
        return [e for e in entries if e.id in wanted]


class DateRange(BaseModel):
    """Entries created between ``start`` and ``end``, both inclusive.

    A missing bound leaves that side of the range open.
    """

    type: Literal["date_range"] = "date_range"
    start: Optional[int] = None
    end: Optional[int] = None

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError("date range start must not be after its end")
        return self

    def select(self, entries: list[Entry]) -> list[Entry]:
        return [
            e for e in entries
            if (self.start is None or self.start <= e.created_at)
            and (self.end is None or e.created_at <= self.end)
        ]


EntrySelection = Annotated[
    Union[AllEntries, SpecificEntries, DateRange],
    Field(discriminator="type"),
]

_selection_adapter: TypeAdapter = TypeAdapter(EntrySelection)
_entries_adapter: TypeAdapter = TypeAdapter(list[Entry])


def parse_selection(data: dict) -> Union[AllEntries, SpecificEntries, DateRange]:
    return _selection_adapter.validate_python(data)


def dump_entries(entries: list[Entry]) -> str:
    """Serialize a snapshot in the client wire format (camelCase)."""
    return json.dumps([e.model_dump(by_alias=True) for e in entries])


def load_entries(raw: str) -> list[Entry]:
    return _entries_adapter.validate_json(raw)
