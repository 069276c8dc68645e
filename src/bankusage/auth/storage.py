"""
Credential store — durable home of the single StoredSession.

The session manager depends only on the ``CredentialStore`` protocol. Two
backends ship with bankusage:

- ``KeyringCredentialStore``: the OS credential vault (macOS Keychain,
  Windows Credential Locker, Secret Service on Linux) via ``keyring``
- ``EncryptedFileCredentialStore``: a Fernet-encrypted file for hosts
  without a usable vault (headless Linux, containers)
"""

from __future__ import annotations

import base64
import logging
import os
import socket
import tempfile
import threading
from pathlib import Path
from typing import Protocol

import keyring
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from keyring.errors import KeyringError, PasswordDeleteError

from bankusage.auth.tokens import StoredSession
from bankusage.config import StorageConfig
from bankusage.errors import CredentialStoreError

logger = logging.getLogger("bankusage.auth.storage")

__all__ = [
    "CredentialStore",
    "EncryptedFileCredentialStore",
    "KeyringCredentialStore",
    "create_credential_store",
]


class CredentialStore(Protocol):
    """Persistence for at most one StoredSession."""

    def save(self, session: StoredSession) -> None:
        """Write ``session``, replacing any previous record atomically."""
        ...

    def load(self) -> StoredSession | None:
        """Return the stored session, or None when there is no record.

        Raises:
            CredentialStoreError: On I/O or deserialization failure.
        """
        ...

    def clear(self) -> None:
        """Remove the record. Removing a missing record succeeds."""
        ...

    def exists(self) -> bool:
        """Cheap existence check; does not deserialize."""
        ...


def _decode(raw: str) -> StoredSession:
    try:
        return StoredSession.from_json(raw)
    except ValueError as e:
        raise CredentialStoreError(f"Stored session is invalid: {e}") from e


# ---------------------------------------------------------------------------
# OS keyring
# ---------------------------------------------------------------------------

class KeyringCredentialStore:
    """Session storage in the system keyring under a fixed service/account."""

    def __init__(self, service_name: str = "bankusage", account_key: str = "google_oauth_tokens") -> None:
        self.service_name = service_name
        self.account_key = account_key
        self._lock = threading.Lock()

    def save(self, session: StoredSession) -> None:
        with self._lock:
            try:
                keyring.set_password(self.service_name, self.account_key, session.to_json())
            except KeyringError as e:
                raise CredentialStoreError(f"Failed to store tokens in keyring: {e}") from e
        logger.debug("Tokens stored in system keyring")

    def load(self) -> StoredSession | None:
        try:
            raw = keyring.get_password(self.service_name, self.account_key)
        except KeyringError as e:
            raise CredentialStoreError(f"Failed to load tokens from keyring: {e}") from e
        if raw is None:
            return None
        return _decode(raw)

    def clear(self) -> None:
        with self._lock:
            try:
                keyring.delete_password(self.service_name, self.account_key)
            except PasswordDeleteError:
                return
            except KeyringError as e:
                raise CredentialStoreError(f"Failed to clear tokens from keyring: {e}") from e
        logger.debug("Tokens cleared from keyring")

    def exists(self) -> bool:
        try:
            return keyring.get_password(self.service_name, self.account_key) is not None
        except KeyringError:
            logger.warning("Keyring unavailable while checking for a stored session")
            return False


# ---------------------------------------------------------------------------
# Encrypted file fallback
# ---------------------------------------------------------------------------

def _derive_key(token_dir: Path) -> bytes:
    """Derive the file encryption key from a per-install salt and the hostname.

    Tokens are only readable on the machine that stored them.
    """
    salt_file = token_dir / ".key_salt"

    if salt_file.exists():
        salt = salt_file.read_bytes()
    else:
        salt = os.urandom(16)
        token_dir.mkdir(parents=True, exist_ok=True)
        salt_file.write_bytes(salt)
        salt_file.chmod(0o600)

    password = socket.gethostname().encode() + b"bankusage-v1"

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=480000,
    )
    return base64.urlsafe_b64encode(kdf.derive(password))


class EncryptedFileCredentialStore:
    """Session storage in a Fernet-encrypted file, replaced atomically."""

    def __init__(self, token_dir: Path, filename: str = "session.enc") -> None:
        self.token_dir = Path(token_dir)
        self.filename = filename
        self._lock = threading.Lock()
        self._fernet: Fernet | None = None

    @property
    def path(self) -> Path:
        return self.token_dir / self.filename

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(_derive_key(self.token_dir))
        return self._fernet

    def save(self, session: StoredSession) -> None:
        with self._lock:
            try:
                self.token_dir.mkdir(parents=True, exist_ok=True)
                encrypted = self._get_fernet().encrypt(session.to_json().encode())
                fd, tmp_name = tempfile.mkstemp(dir=self.token_dir, prefix=".session-")
                try:
                    with os.fdopen(fd, "wb") as f:
                        f.write(encrypted)
                    os.chmod(tmp_name, 0o600)
                    os.replace(tmp_name, self.path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
            except OSError as e:
                raise CredentialStoreError(f"Failed to write session file {self.path}: {e}") from e
        logger.debug("Saved session to %s", self.path)

    def load(self) -> StoredSession | None:
        try:
            content = self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CredentialStoreError(f"Failed to read session file {self.path}: {e}") from e

        try:
            raw = self._get_fernet().decrypt(content).decode()
        except InvalidToken as e:
            raise CredentialStoreError(f"Session file {self.path} could not be decrypted") from e
        return _decode(raw)

    def clear(self) -> None:
        with self._lock:
            try:
                self.path.unlink(missing_ok=True)
            except OSError as e:
                raise CredentialStoreError(f"Failed to delete session file {self.path}: {e}") from e
        logger.debug("Deleted session file %s", self.path)

    def exists(self) -> bool:
        return self.path.exists()


def create_credential_store(config: StorageConfig) -> CredentialStore:
    """Build the configured credential store backend."""
    if config.backend == "file":
        return EncryptedFileCredentialStore(config.token_dir)
    return KeyringCredentialStore(config.service_name, config.account_key)
