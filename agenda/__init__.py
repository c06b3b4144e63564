"""Agenda: scheduled, encrypted journal exports."""

__version__ = "0.1.0"
