"""Shared test fixtures and configuration."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import AsyncGenerator, Callable, Iterable, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

CUSTODY_KEY = "A" * 43 + "="

os.environ.setdefault("AGENDA_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AGENDA_LOG_LEVEL", "WARNING")
os.environ.setdefault("AGENDA_API_KEY_SALT", "test-salt")
os.environ.setdefault("AGENDA_CUSTODY_KEY", CUSTODY_KEY)
os.environ.setdefault("AGENDA_KDF_ITERATIONS", "1000")

from agenda.clock import FrozenClock
from agenda.config import Settings
from agenda.database import build_engine, init_db
from agenda.errors import DeliveryError
from agenda.modules.delivery.base import DeliveryAdapter, DeliveryMetadata
from agenda.modules.schedules.models import Channel, Recipient, Schedule, ScheduleDraft
from agenda.modules.schedules.selection import AllEntries, Entry, dump_entries
from agenda.modules.schedules.store import ScheduleStore
from agenda.security.credentials import CredentialStore
from agenda.security.encryption import KeyCustody, PassphraseCodec

START_MS = 1_700_000_000_000
PASSPHRASE = "correct horse battery staple"


class FakeAdapter(DeliveryAdapter):
    """Records deliveries; fails or stalls for chosen addresses."""

    def __init__(
        self,
        channel: Channel,
        fail_for: Iterable[str] = (),
        delay: float = 0.0,
        configured: bool = True,
    ) -> None:
        self.channel = channel
        self.fail_for = set(fail_for)
        self.delay = delay
        self.configured = configured
        self.sent: list[tuple[str, bytes, DeliveryMetadata]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def deliver(self, recipient: Recipient, document: bytes, metadata: DeliveryMetadata) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if recipient.address in self.fail_for:
            raise DeliveryError("mailbox unavailable")
        self.sent.append((recipient.address, document, metadata))


def make_entries(count: int, start: int = START_MS - 10 * 86_400_000, step: int = 86_400_000) -> list[Entry]:
    """Entries one day apart, oldest first."""
    return [
        Entry(
            id=f"entry-{i}",
            title=f"Day {i}",
            content=f"<p>Thoughts for <strong>day {i}</strong>.</p>",
            created_at=start + i * step,
        )
        for i in range(count)
    ]


def email_recipient(address: str = "alice@agenda-mail.org") -> Recipient:
    return Recipient(channel=Channel.EMAIL, address=address)


def sms_recipient(address: str = "+15551234567") -> Recipient:
    return Recipient(channel=Channel.SMS, address=address)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START_MS)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Return test settings backed by a file database in tmp_path."""
    return Settings(
        agenda_env="test",
        agenda_log_level="WARNING",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'agenda.db'}",
        agenda_api_key_salt="test-salt",
        agenda_custody_key=CUSTODY_KEY,
        agenda_kdf_iterations=1000,
        agenda_poll_interval_seconds=0.05,
        agenda_max_concurrent_executions=4,
        agenda_execution_timeout_seconds=10,
        agenda_render_timeout_seconds=10,
        agenda_delivery_timeout_seconds=2,
        agenda_delivery_retries=1,
        agenda_shutdown_grace_seconds=2,
    )


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Provide a fresh file-backed SQLite database for each test."""
    eng = build_engine(settings.database_url)
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def codec() -> PassphraseCodec:
    return PassphraseCodec(iterations=1000)


@pytest.fixture
def custody() -> KeyCustody:
    return KeyCustody(CUSTODY_KEY, persist=False)


@pytest.fixture
def credentials(session_factory, clock: FrozenClock) -> CredentialStore:
    return CredentialStore(session_factory, salt="test-salt", clock=clock)


@pytest_asyncio.fixture
async def owner(credentials: CredentialStore) -> str:
    credential, _ = await credentials.issue()
    return credential.id


@pytest.fixture
def store(session_factory, clock: FrozenClock) -> ScheduleStore:
    return ScheduleStore(session_factory, clock=clock)


@pytest.fixture
def make_schedule(
    store: ScheduleStore,
    owner: str,
    codec: PassphraseCodec,
    custody: KeyCustody,
    clock: FrozenClock,
) -> Callable:
    """Factory persisting a schedule with an encrypted snapshot and a sealed key."""

    async def _make(
        entries: Optional[list[Entry]] = None,
        recipients: Optional[list[Recipient]] = None,
        selection=None,
        duration_ms: int = 60_000,
        name: str = "Weekly Review",
        passphrase: str = PASSPHRASE,
        sealed: bool = True,
        schedule_owner: Optional[str] = None,
    ) -> Schedule:
        entries = entries if entries is not None else make_entries(5)
        selection = selection or AllEntries()
        token = codec.encrypt(dump_entries(entries), passphrase)
        draft = ScheduleDraft(
            name=name,
            execution_time=clock.now_ms() + duration_ms,
            original_duration_ms=duration_ms,
            selection=selection,
            encrypted_payload=token,
            entry_count=len(selection.select(entries)),
            recipients=recipients or [email_recipient()],
            sealed_key=custody.seal(codec.key_for(token, passphrase)) if sealed else None,
        )
        return await store.create(schedule_owner or owner, draft)

    return _make
