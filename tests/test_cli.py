"""Tests for the operator CLI."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from agenda.cli.commands import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def fresh_database():
    """Each command builds its engine from the environment."""
    import agenda.database as db
    db._engine = None
    db._session_factory = None
    yield
    db._engine = None
    db._session_factory = None


class TestCli:
    """Tests for CLI commands."""

    def test_issue_key(self) -> None:
        result = runner.invoke(app, ["issue-key"])
        assert result.exit_code == 0, result.output
        assert "API key:" in result.output

    def test_pending_empty(self) -> None:
        result = runner.invoke(app, ["pending", "--limit", "5"])
        assert result.exit_code == 0, result.output
        assert "No pending schedules" in result.output

    def test_doctor_reports_warnings_only(self) -> None:
        result = runner.invoke(app, ["doctor"])
        assert result.exit_code == 0, result.output
        assert "SMTP not configured" in result.output
        assert "Custody key valid" in result.output
