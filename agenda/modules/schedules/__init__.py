"""Schedules module - one-shot export jobs and their durable store."""

from agenda.modules.schedules.models import Channel, LogStatus, Recipient, Schedule, TriggerKind
from agenda.modules.schedules.store import ScheduleStore

__all__ = ["Channel", "LogStatus", "Recipient", "Schedule", "ScheduleStore", "TriggerKind"]
