"""Passphrase-keyed AES-256-GCM codec and server-side key custody.

Entry snapshots are encrypted with a key derived from the user's passphrase
(PBKDF2-HMAC-SHA256). The salt and nonce travel inside the token, so the same
passphrase re-derives the key later and the passphrase itself is never stored.

Unattended execution needs the key without the user present. When enabled,
the derived key (not the passphrase) is sealed with the server custody key
and stored next to the payload.
"""

from __future__ import annotations

import base64
import binascii
import os
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from agenda.config import get_settings
from agenda.errors import DecryptionError
from agenda.logging_config import get_logger

logger = get_logger(__name__)

TOKEN_VERSION = 1
SALT_BYTES = 16
NONCE_BYTES = 12
KEY_BYTES = 32
_HEADER = 1 + SALT_BYTES + NONCE_BYTES


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _b64decode(token: str) -> bytes:
    # Fix padding if missing
    padded = token + "=" * (-len(token) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class PassphraseCodec:
    """Symmetric encrypt/decrypt keyed by a user passphrase."""

    def __init__(self, iterations: Optional[int] = None) -> None:
        self.iterations = iterations or get_settings().agenda_kdf_iterations

    def derive_key(self, passphrase: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_BYTES,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(passphrase.encode("utf-8"))

    def encrypt(self, plaintext: str, passphrase: str) -> str:
        """Encrypt ``plaintext``; returns a urlsafe-base64 token."""
        if not passphrase:
            raise ValueError("passphrase must not be empty")
        salt = os.urandom(SALT_BYTES)
        return self.encrypt_with_key(plaintext, self.derive_key(passphrase, salt), salt)

    def encrypt_with_key(self, plaintext: str, key: bytes, salt: bytes) -> str:
        nonce = os.urandom(NONCE_BYTES)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        return _b64encode(bytes([TOKEN_VERSION]) + salt + nonce + ciphertext)

    def decrypt(self, token: str, passphrase: str) -> str:
        """Decrypt a token with the passphrase it was created with."""
        if not passphrase:
            raise DecryptionError("A passphrase is required to decrypt the entries")
        salt, _, _ = self._split(token)
        return self.decrypt_with_key(token, self.derive_key(passphrase, salt))

    def decrypt_with_key(self, token: str, key: bytes) -> str:
        _, nonce, ciphertext = self._split(token)
        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
        except (InvalidTag, ValueError) as exc:
            raise DecryptionError("Failed to decrypt entries. Invalid passphrase.") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted payload is not valid UTF-8") from exc

    def key_for(self, token: str, passphrase: str) -> bytes:
        """Re-derive the key for an existing token."""
        salt, _, _ = self._split(token)
        return self.derive_key(passphrase, salt)

    @staticmethod
    def _split(token: str) -> tuple[bytes, bytes, bytes]:
        try:
            raw = _b64decode(token)
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise DecryptionError("Encrypted payload is corrupted") from exc
        if len(raw) <= _HEADER or raw[0] != TOKEN_VERSION:
            raise DecryptionError("Encrypted payload is corrupted")
        return raw[1:1 + SALT_BYTES], raw[1 + SALT_BYTES:_HEADER], raw[_HEADER:]


def _persist_key_to_env(key_b64: str) -> bool:
    """Write the custody key to .env so it survives restarts.

    If .env exists, update/add the AGENDA_CUSTODY_KEY line.
    If .env doesn't exist, create it with just the key.
    """
    env_path = Path(".env")
    try:
        if env_path.exists():
            lines = env_path.read_text().splitlines()
            found = False
            for i, line in enumerate(lines):
                if line.strip().replace(" ", "").startswith("AGENDA_CUSTODY_KEY="):
                    lines[i] = f"AGENDA_CUSTODY_KEY={key_b64}"
                    found = True
                    break
            if not found:
                lines.append(f"AGENDA_CUSTODY_KEY={key_b64}")
            env_path.write_text("\n".join(lines) + "\n")
        else:
            env_path.write_text(f"AGENDA_CUSTODY_KEY={key_b64}\n")
        logger.info("custody_key_persisted", path=str(env_path.resolve()))
        return True
    except OSError as exc:
        logger.warning("custody_key_persist_failed", error=str(exc))
        return False


class KeyCustody:
    """Seals passphrase-derived keys under the server custody key."""

    def __init__(self, custody_key_b64: Optional[str] = None, persist: bool = True) -> None:
        self._cipher = AESGCM(self._load_key(custody_key_b64, persist))

    @staticmethod
    def _load_key(custody_key_b64: Optional[str], persist: bool) -> bytes:
        key_b64 = custody_key_b64 if custody_key_b64 is not None else get_settings().agenda_custody_key
        if key_b64:
            try:
                key = _b64decode(key_b64)
                if len(key) != KEY_BYTES:
                    raise ValueError(f"Key is {len(key)} bytes, need {KEY_BYTES}")
                return key
            except (binascii.Error, ValueError) as exc:
                # Sealed keys from a previous custody key cannot be recovered, so refuse to guess.
                raise ValueError(f"AGENDA_CUSTODY_KEY is invalid: {exc}") from exc

        key = AESGCM.generate_key(bit_length=256)
        if persist and _persist_key_to_env(_b64encode(key)):
            logger.info("custody_key_generated_and_saved")
        else:
            logger.warning("custody_key_ephemeral", msg="Sealed keys will not survive a restart")
        return key

    def seal(self, key: bytes) -> str:
        nonce = os.urandom(NONCE_BYTES)
        return _b64encode(nonce + self._cipher.encrypt(nonce, key, None))

    def unseal(self, sealed: str) -> bytes:
        try:
            raw = _b64decode(sealed)
            return self._cipher.decrypt(raw[:NONCE_BYTES], raw[NONCE_BYTES:], None)
        except (InvalidTag, binascii.Error, ValueError) as exc:
            raise DecryptionError("Stored key material could not be unsealed") from exc

    @staticmethod
    def generate_key() -> str:
        """Return a fresh base64 custody key suitable for AGENDA_CUSTODY_KEY."""
        return _b64encode(AESGCM.generate_key(bit_length=256))
