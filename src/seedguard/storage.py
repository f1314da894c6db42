"""
Encrypted record store.

Holds the mail accounts and the persisted master key, encrypted at
rest under the user's password. The password is stretched with
scrypt; records are sealed with Fernet (AES-128-CBC + HMAC-SHA256).

File layout (``<home>/storage.json``)::

    {
      "version": 1,
      "salt": "<base64 scrypt salt>",
      "token": "<Fernet token over the JSON records>"
    }

Writes are atomic (temp file + rename), so a crash or cancelled
task never leaves a half-written store behind.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import secrets
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from pydantic import BaseModel, Field

from .models import Account, MasterKey

logger = logging.getLogger("seedguard.storage")

STORAGE_FILE_NAME = "storage.json"
STORAGE_VERSION = 1


class BadCredentialError(PermissionError):
    """Raised when the record store is opened with the wrong password."""


class StorageError(RuntimeError):
    """Raised when the record store is missing, closed, or corrupt."""


class DataStorage(ABC):
    """Password-gated store for accounts and the master key."""

    @abstractmethod
    async def exists(self) -> bool:
        """True if the store has been created."""

    @abstractmethod
    async def open(self, password: str) -> None:
        """Unlock an existing store.

        Raises:
            BadCredentialError: If the password is wrong.
        """

    @abstractmethod
    async def create(self, password: str) -> None:
        """Create a new empty store protected by password."""

    @abstractmethod
    async def reset(self) -> None:
        """Wipe the store entirely."""

    @abstractmethod
    async def change_password(self, current_password: str, new_password: str) -> None:
        """Re-encrypt the store under a new password."""

    @abstractmethod
    async def get_accounts(self) -> list[Account]:
        """All accounts in the store."""

    @abstractmethod
    async def add_account(self, account: Account) -> None:
        """Add or replace an account (matched by address)."""

    @abstractmethod
    async def has_master_key(self) -> bool:
        """True if a master key has been persisted."""

    @abstractmethod
    async def get_master_key(self) -> MasterKey:
        """The persisted master key."""

    @abstractmethod
    async def set_master_key(self, master_key: MasterKey) -> None:
        """Persist the master key. Refuses to overwrite an existing one."""


class StorageRecords(BaseModel):
    """Plaintext contents of the record store."""

    accounts: list[Account] = Field(default_factory=list)
    master_key: Optional[str] = Field(default=None, description="Base64 master key")


def _derive_fernet_key(password: str, salt: bytes, n: int) -> bytes:
    """Stretch a password into a Fernet key with scrypt."""
    kdf = Scrypt(salt=salt, length=32, n=n, r=8, p=1)
    return base64.urlsafe_b64encode(kdf.derive(password.encode("utf-8")))


class EncryptedFileStorage(DataStorage):
    """Single-file encrypted record store.

    Args:
        home: Directory holding the store file.
        scrypt_n: scrypt CPU/memory cost (power of two).
    """

    def __init__(self, home: Path, scrypt_n: int = 2**15) -> None:
        self._home = home
        self._path = home / STORAGE_FILE_NAME
        self._scrypt_n = scrypt_n
        self._fernet: Optional[Fernet] = None
        self._salt: Optional[bytes] = None
        self._records: Optional[StorageRecords] = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._records is not None

    async def exists(self) -> bool:
        return self._path.exists()

    async def open(self, password: str) -> None:
        if password is None:
            raise ValueError("Password is required")
        async with self._lock:
            if not self._path.exists():
                raise StorageError(f"Record store not found: {self._path}")
            envelope = self._read_envelope()
            salt = base64.b64decode(envelope["salt"])
            key = await asyncio.to_thread(_derive_fernet_key, password, salt, self._scrypt_n)
            fernet = Fernet(key)
            try:
                plaintext = fernet.decrypt(envelope["token"].encode("ascii"))
            except InvalidToken:
                raise BadCredentialError("Wrong password for the record store") from None

            self._records = StorageRecords.model_validate_json(plaintext)
            self._fernet = fernet
            self._salt = salt
            logger.info("Record store opened: %s", self._path)

    async def create(self, password: str) -> None:
        if not password:
            raise ValueError("Password is required")
        async with self._lock:
            if self._path.exists():
                raise StorageError(f"Record store already exists: {self._path}")
            salt = secrets.token_bytes(16)
            key = await asyncio.to_thread(_derive_fernet_key, password, salt, self._scrypt_n)
            self._fernet = Fernet(key)
            self._salt = salt
            self._records = StorageRecords()
            self._flush()
            logger.info("Record store created: %s", self._path)

    async def reset(self) -> None:
        async with self._lock:
            self._fernet = None
            self._salt = None
            self._records = None
            if self._path.exists():
                self._path.unlink()
            logger.info("Record store wiped: %s", self._path)

    async def change_password(self, current_password: str, new_password: str) -> None:
        if not new_password:
            raise ValueError("New password is required")
        await self.open(current_password)
        async with self._lock:
            salt = secrets.token_bytes(16)
            key = await asyncio.to_thread(_derive_fernet_key, new_password, salt, self._scrypt_n)
            self._fernet = Fernet(key)
            self._salt = salt
            self._flush()
            logger.info("Record store password changed")

    async def get_accounts(self) -> list[Account]:
        return list(self._require_open().accounts)

    async def add_account(self, account: Account) -> None:
        if account is None:
            raise ValueError("Account is required")
        async with self._lock:
            records = self._require_open()
            records.accounts = [
                a for a in records.accounts if a.user_identity != account.user_identity
            ]
            records.accounts.append(account)
            self._flush()

    async def has_master_key(self) -> bool:
        return self._require_open().master_key is not None

    async def get_master_key(self) -> MasterKey:
        encoded = self._require_open().master_key
        if encoded is None:
            raise StorageError("No master key in the record store")
        return MasterKey(base64.b64decode(encoded))

    async def set_master_key(self, master_key: MasterKey) -> None:
        if master_key is None:
            raise ValueError("Master key is required")
        async with self._lock:
            records = self._require_open()
            if records.master_key is not None:
                raise StorageError("Master key already persisted")
            records.master_key = base64.b64encode(master_key.material).decode("ascii")
            self._flush()

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _require_open(self) -> StorageRecords:
        if self._records is None:
            raise StorageError("Record store is not open")
        return self._records

    def _read_envelope(self) -> dict:
        try:
            envelope = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt record store: {exc}") from exc
        if envelope.get("version") != STORAGE_VERSION:
            raise StorageError(f"Unsupported record store version: {envelope.get('version')}")
        return envelope

    def _flush(self) -> None:
        """Encrypt and atomically replace the store file."""
        assert self._fernet is not None and self._salt is not None
        records = self._require_open()
        token = self._fernet.encrypt(records.model_dump_json().encode("utf-8"))
        envelope = {
            "version": STORAGE_VERSION,
            "salt": base64.b64encode(self._salt).decode("ascii"),
            "token": token.decode("ascii"),
        }
        self._home.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._home, prefix=".storage-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(envelope, f, indent=2)
            os.replace(tmp, self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
