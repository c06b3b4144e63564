"""Tests for the FastAPI API routes."""

from __future__ import annotations

import time
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from agenda.api.middleware import FixedWindowLimiter, RateLimitMiddleware
from agenda.clock import FrozenClock
from agenda.database import build_engine
from agenda.main import create_app
from agenda.modules.schedules.models import Channel
from agenda.orchestrator import Orchestrator
from agenda.security.encryption import KeyCustody

from conftest import CUSTODY_KEY, PASSPHRASE, START_MS, FakeAdapter, make_entries


@pytest.fixture
def mail() -> FakeAdapter:
    return FakeAdapter(Channel.EMAIL)


@pytest.fixture
def client(settings, mail):
    """A TestClient around an app with fake delivery and a frozen clock."""
    orch = Orchestrator(
        settings,
        engine=build_engine(settings.database_url),
        clock=FrozenClock(START_MS),
        adapters=[mail, FakeAdapter(Channel.SMS)],
        custody=KeyCustody(CUSTODY_KEY, persist=False),
    )
    app = create_app(orchestrator=orch, start_trigger=False)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def api_key(client: TestClient) -> str:
    resp = client.post("/api/auth/register")
    assert resp.status_code == 201
    return resp.json()["api_key"]


@pytest.fixture
def headers(api_key: str) -> dict[str, str]:
    return {"X-API-Key": api_key}


def _payload(**overrides) -> dict[str, Any]:
    body = {
        "name": "Weekly Review",
        "durationMs": 60_000,
        "entrySelection": {"type": "all"},
        "entriesData": [e.model_dump(by_alias=True) for e in make_entries(5)],
        "passphrase": PASSPHRASE,
        "recipients": [
            {"channel": "email", "address": "alice@agenda-mail.org"},
            {"channel": "sms", "address": "+15551234567"},
        ],
    }
    body.update(overrides)
    return body


def _create(client: TestClient, headers: dict, **overrides) -> dict[str, Any]:
    resp = client.post("/api/schedules", json=_payload(**overrides), headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _wait_until_executed(client: TestClient, headers: dict, schedule_id: str) -> dict[str, Any]:
    for _ in range(100):
        data = client.get(f"/api/schedules/{schedule_id}", headers=headers).json()
        if data["executed"]:
            return data
        time.sleep(0.05)
    raise AssertionError("schedule was not executed")


class TestHealthAndAuth:
    """Tests for health and API key endpoints."""

    def test_health(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["activeSchedules"] == 0
        assert data["triggerRunning"] is False
        assert data["channels"] == {"email": True, "sms": True}
        assert data["metrics"]["totalExecutions"] == 0

    def test_register_and_verify(self, client: TestClient) -> None:
        issued = client.post("/api/auth/register").json()
        assert len(issued["api_key"]) == 64
        resp = client.get("/api/auth/verify", headers={"X-API-Key": issued["api_key"]})
        assert resp.status_code == 200
        assert resp.json()["user_id"] == issued["user_id"]

    def test_missing_key(self, client: TestClient) -> None:
        resp = client.get("/api/schedules")
        assert resp.status_code == 401
        assert resp.json()["error"] == "unauthorized"

    def test_unknown_key(self, client: TestClient) -> None:
        resp = client.get("/api/schedules", headers={"X-API-Key": "f" * 64})
        assert resp.status_code == 401


class TestScheduleRoutes:
    """Tests for schedule CRUD."""

    def test_create_returns_schedule(self, client: TestClient, headers) -> None:
        data = _create(client, headers)
        assert data["name"] == "Weekly Review"
        assert data["execution_time"] == START_MS + 60_000
        assert data["original_duration_ms"] == 60_000
        assert data["entry_count"] == 5
        assert data["entry_selection"] == {"type": "all"}
        assert [r["channel"] for r in data["recipients"]] == ["email", "sms"]
        assert data["executed"] is False
        assert "encrypted_payload" not in data
        assert PASSPHRASE not in str(data)

    def test_create_with_relative_delay(self, client: TestClient, headers) -> None:
        data = _create(client, headers, durationMs=None, delay={"days": 1, "hours": 2})
        assert data["execution_time"] == START_MS + 26 * 3_600_000

    def test_create_accepts_entries_as_json_string(self, client: TestClient, headers) -> None:
        raw = '[{"id": "a", "title": "A", "content": "<p>a</p>", "createdAt": 1}]'
        data = _create(client, headers, entriesData=raw)
        assert data["entry_count"] == 1

    def test_create_with_date_range(self, client: TestClient, headers) -> None:
        entries = make_entries(5)
        selection = {"type": "date_range", "start": entries[0].created_at, "end": entries[1].created_at}
        data = _create(client, headers, entrySelection=selection)
        assert data["entry_count"] == 2

    def test_create_with_open_ended_date_range(self, client: TestClient, headers) -> None:
        entries = make_entries(5)
        data = _create(client, headers, entrySelection={"type": "date_range", "start": entries[3].created_at})
        assert data["entry_count"] == 2
        assert data["entry_selection"] == {"type": "date_range", "start": entries[3].created_at, "end": None}

    @pytest.mark.parametrize("overrides, fragment", [
        ({"recipients": []}, "recipients"),
        ({"recipients": [{"channel": "email", "address": "nope"}]}, "recipients"),
        ({"durationMs": None}, "delay"),
        ({"delay": {"minutes": 5}}, "delay"),
        ({"passphrase": ""}, "passphrase"),
        ({"entrySelection": {"type": "specific", "ids": ["missing"]}}, "No entries match"),
    ])
    def test_create_validation(self, client: TestClient, headers, overrides, fragment) -> None:
        resp = client.post("/api/schedules", json=_payload(**overrides), headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"
        assert fragment in resp.json()["detail"]

    def test_list_and_get(self, client: TestClient, headers) -> None:
        created = _create(client, headers)
        listed = client.get("/api/schedules", headers=headers).json()
        assert [s["id"] for s in listed] == [created["id"]]
        assert "logs" not in listed[0]
        assert listed[0]["last_status"] is None

        detail = client.get(f"/api/schedules/{created['id']}", headers=headers).json()
        assert detail["logs"] == []

    def test_other_owner_gets_404(self, client: TestClient, headers) -> None:
        created = _create(client, headers)
        other = {"X-API-Key": client.post("/api/auth/register").json()["api_key"]}
        assert client.get(f"/api/schedules/{created['id']}", headers=other).status_code == 404
        assert client.delete(f"/api/schedules/{created['id']}", headers=other).status_code == 404
        assert client.get("/api/schedules", headers=other).json() == []

    def test_update(self, client: TestClient, headers) -> None:
        created = _create(client, headers)
        resp = client.put(
            f"/api/schedules/{created['id']}",
            json={
                "name": "Renamed",
                "delay": {"hours": 1},
                "entrySelection": {"type": "specific", "ids": ["entry-2"]},
            },
            headers=headers,
        )
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["name"] == "Renamed"
        assert data["execution_time"] == START_MS + 3_600_000
        assert data["entry_count"] == 1

    def test_recipients_from_a_response_can_be_reused(self, client: TestClient, headers) -> None:
        first = _create(client, headers)
        second = _create(client, headers, recipients=first["recipients"])
        assert [r["address"] for r in second["recipients"]] == ["alice@agenda-mail.org", "+15551234567"]
        assert second["recipients"][0]["id"] != first["recipients"][0]["id"]

        resp = client.put(
            f"/api/schedules/{second['id']}", json={"recipients": first["recipients"][:1]}, headers=headers,
        )
        assert resp.status_code == 200, resp.text
        assert [r["channel"] for r in resp.json()["recipients"]] == ["email"]

    def test_update_rejects_reset_with_changes(self, client: TestClient, headers) -> None:
        created = _create(client, headers)
        resp = client.put(
            f"/api/schedules/{created['id']}", json={"reset": True, "name": "x"}, headers=headers,
        )
        assert resp.status_code == 400

    def test_delete(self, client: TestClient, headers) -> None:
        created = _create(client, headers)
        resp = client.delete(f"/api/schedules/{created['id']}", headers=headers)
        assert resp.json() == {"deleted": True, "deferred": False}
        assert client.get(f"/api/schedules/{created['id']}", headers=headers).status_code == 404


class TestExecution:
    """Tests for manual execution and reset."""

    def test_execute_now_delivers(self, client: TestClient, headers, mail) -> None:
        created = _create(client, headers, durationMs=86_400_000)
        resp = client.post(f"/api/schedules/{created['id']}/execute", headers=headers)
        assert resp.status_code == 202
        assert resp.json()["queued"] is True

        done = _wait_until_executed(client, headers, created["id"])
        [log] = done["logs"]
        assert log["status"] == "success"
        assert log["trigger"] == "manual"
        assert log["recipients_sent"] == 2
        assert mail.sent[0][0] == "alice@agenda-mail.org"

        listed = client.get("/api/schedules", headers=headers).json()
        assert listed[0]["last_status"] == "success"

    def test_execute_with_wrong_passphrase_records_failure(self, client: TestClient, headers) -> None:
        created = _create(client, headers)
        resp = client.post(
            f"/api/schedules/{created['id']}/execute", json={"passphrase": "wrong"}, headers=headers,
        )
        assert resp.status_code == 202
        done = _wait_until_executed(client, headers, created["id"])
        assert done["logs"][0]["status"] == "failed"
        assert "Invalid passphrase" in done["logs"][0]["error_message"]

    def test_executed_schedule_conflicts(self, client: TestClient, headers) -> None:
        created = _create(client, headers)
        client.post(f"/api/schedules/{created['id']}/execute", headers=headers)
        _wait_until_executed(client, headers, created["id"])

        resp = client.post(f"/api/schedules/{created['id']}/execute", headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"] == "conflict"
        resp = client.put(f"/api/schedules/{created['id']}", json={"name": "late"}, headers=headers)
        assert resp.status_code == 409

    def test_reset_after_execution(self, client: TestClient, headers) -> None:
        created = _create(client, headers)
        client.post(f"/api/schedules/{created['id']}/execute", headers=headers)
        _wait_until_executed(client, headers, created["id"])

        resp = client.post(f"/api/schedules/{created['id']}/reset", headers=headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["executed"] is False
        assert data["execution_time"] == START_MS + 60_000
        assert len(data["logs"]) == 1

        via_put = client.put(f"/api/schedules/{created['id']}", json={"reset": True}, headers=headers)
        assert via_put.status_code == 200

    def test_health_counts_executions(self, client: TestClient, headers) -> None:
        created = _create(client, headers)
        client.post(f"/api/schedules/{created['id']}/execute", headers=headers)
        _wait_until_executed(client, headers, created["id"])
        metrics = client.get("/health").json()["metrics"]
        assert metrics["totalExecutions"] == 1
        assert metrics["successfulExecutions"] == 1


class TestRateLimit:
    """Tests for the fixed-window limiter."""

    def test_limiter_window(self) -> None:
        now = [0.0]
        limiter = FixedWindowLimiter(2, 60, clock=lambda: now[0])
        assert limiter.hit("a") is None
        assert limiter.hit("a") is None
        assert limiter.hit("a") == 60
        assert limiter.hit("b") is None
        now[0] = 45.0
        assert limiter.hit("a") == 15
        now[0] = 60.0
        assert limiter.hit("a") is None

    def test_middleware_returns_429(self) -> None:
        app = FastAPI()
        app.add_middleware(RateLimitMiddleware, limiter=FixedWindowLimiter(2, 900))

        @app.get("/api/ping")
        async def ping() -> dict:
            return {"ok": True}

        @app.get("/health")
        async def health() -> dict:
            return {"ok": True}

        client = TestClient(app)
        assert client.get("/api/ping").status_code == 200
        assert client.get("/api/ping").status_code == 200
        limited = client.get("/api/ping")
        assert limited.status_code == 429
        assert limited.json()["error"] == "rate_limited"
        assert limited.headers["Retry-After"] == "900"
        for _ in range(5):
            assert client.get("/health").status_code == 200
