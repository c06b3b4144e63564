"""API key issuance and verification."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from sqlalchemy import BigInteger, Column, String, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda.clock import Clock, SystemClock
from agenda.config import get_settings
from agenda.database import Base, get_session_factory
from agenda.errors import StoreUnavailable, Unauthorized
from agenda.logging_config import get_logger

logger = get_logger(__name__)

# last_active is only rewritten once it is this stale.
ACTIVITY_RESOLUTION_MS = 60_000


class CredentialRecord(Base):
    """An issued API key. Only the salted hash is stored."""

    __tablename__ = "credentials"

    id = Column(String(32), primary_key=True, default=lambda: uuid4().hex)
    key_hash = Column(String(64), nullable=False, unique=True)
    created_at = Column(BigInteger, nullable=False)
    last_active = Column(BigInteger, nullable=True)


@dataclass(frozen=True)
class Credential:
    id: str
    created_at: int
    last_active: Optional[int] = None


class CredentialStore:
    """Issues opaque API keys and resolves presented keys to their owner."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        salt: Optional[str] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._session_factory = session_factory or get_session_factory()
        self._salt = (salt if salt is not None else get_settings().agenda_api_key_salt).encode("utf-8")
        self._clock = clock or SystemClock()

    def hash_key(self, api_key: str) -> str:
        return hmac.new(self._salt, api_key.encode("utf-8"), hashlib.sha256).hexdigest()

    async def issue(self) -> tuple[Credential, str]:
        """Create a credential. The plaintext key is returned exactly once."""
        plain_key = secrets.token_hex(32)
        credential = Credential(id=uuid4().hex, created_at=self._clock.now_ms())
        record = CredentialRecord(
            id=credential.id,
            key_hash=self.hash_key(plain_key),
            created_at=credential.created_at,
        )
        try:
            async with self._session_factory() as session:
                session.add(record)
                await session.commit()
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable("Credential store unavailable") from exc
        logger.info("credential_issued", owner=credential.id)
        return credential, plain_key

    async def verify(self, presented_key: Optional[str]) -> Credential:
        """Return the credential for a presented key or raise Unauthorized."""
        if not presented_key:
            raise Unauthorized("API key is required. Include it in the X-API-Key header.")
        key_hash = self.hash_key(presented_key)
        now = self._clock.now_ms()
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(CredentialRecord).where(CredentialRecord.key_hash == key_hash)
                )
                record = result.scalar_one_or_none()
                if record is None:
                    raise Unauthorized("Invalid API key.")
                last_active = record.last_active
                if last_active is None or now - last_active >= ACTIVITY_RESOLUTION_MS:
                    await session.execute(
                        update(CredentialRecord)
                        .where(CredentialRecord.id == record.id)
                        .values(last_active=now)
                    )
                    await session.commit()
                    last_active = now
                credential = Credential(id=record.id, created_at=record.created_at, last_active=last_active)
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable("Credential store unavailable") from exc
        return credential
