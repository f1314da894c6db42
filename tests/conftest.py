"""Shared test fixtures for seedguard."""

from __future__ import annotations

import hashlib
import threading
from pathlib import Path
from typing import Optional

import pgpy
import pytest
from pgpy.constants import (
    HashAlgorithm,
    KeyFlags,
    PubKeyAlgorithm,
    SymmetricKeyAlgorithm,
)

from seedguard.models import Account, KeyDerivationConfig, MasterKey, PgpKeyInfo, SpecialKeyType
from seedguard.pgp import PgpContext, identity_address
from seedguard.storage import BadCredentialError, DataStorage, StorageError

BACKUP_IDENTITY = "backup@test.seedguard"


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


class FakePgpContext(PgpContext):
    """Engine whose 'keys' are a pure hash of (master key, identity, tag)."""

    def __init__(self) -> None:
        self.keys: dict[str, dict] = {}
        self.derive_calls: dict[str, int] = {}
        self.loaded = 0
        self.derive_started = threading.Event()
        self.release: Optional[threading.Event] = None
        self.delay: float = 0.0
        self.fail_for: set[str] = set()

    def load_context(self) -> None:
        self.loaded += 1

    def reset(self) -> None:
        self.keys.clear()

    def has_secret_key(self, identity: str) -> bool:
        key = self.keys.get(identity_address(identity))
        return bool(key and key["secret"])

    def derive_keypair(self, master_key: MasterKey, identity: str, tag: Optional[str] = None) -> str:
        address = identity_address(identity)
        self.derive_calls[address] = self.derive_calls.get(address, 0) + 1
        if address in self.fail_for:
            raise RuntimeError(f"derivation failed for {address}")
        release = self.release
        self.derive_started.set()
        if release is not None:
            release.wait(5)
        if self.delay:
            threading.Event().wait(self.delay)
        material = hashlib.sha256(
            master_key.material + address.encode() + (tag or "").encode()
        ).hexdigest()
        self.keys[address] = {"identity": identity, "fingerprint": material[:40].upper(), "secret": True}
        return material[:40].upper()

    def list_public_keys(self) -> list[PgpKeyInfo]:
        return [
            PgpKeyInfo(
                user_identity=k["identity"],
                email=address,
                fingerprint=k["fingerprint"],
                key_id=k["fingerprint"][-16:],
                has_secret=k["secret"],
            )
            for address, k in self.keys.items()
        ]

    def add_public(self, identity: str, fingerprint: str) -> None:
        self.keys[identity_address(identity)] = {
            "identity": identity, "fingerprint": fingerprint, "secret": False,
        }

    def import_public_keys(self, data: bytes, armored: bool = True) -> list[str]:
        self.add_public(data.decode().splitlines()[-1], "IMPORTED")
        return ["IMPORTED"]

    def import_secret_keys(self, data: bytes, armored: bool = True) -> list[str]:
        identity = data.decode().splitlines()[-1]
        self.keys[identity_address(identity)] = {
            "identity": identity, "fingerprint": "SECRET", "secret": True,
        }
        return ["SECRET"]

    def export_public_key_ring(self, key_id: str) -> bytes:
        for k in self.keys.values():
            if k["fingerprint"].endswith(key_id):
                return k["fingerprint"].encode()
        raise KeyError(key_id)

    def export_public_key(self, identity: str) -> bytes:
        return self.keys[identity_address(identity)]["fingerprint"].encode()

    def sign_detached(self, identity: str, data: bytes) -> bytes:
        return hashlib.sha256(self.export_public_key(identity) + data).hexdigest().encode()

    def verify_signature(self, public_key: bytes, signature: bytes, data: bytes, expected_identity: str) -> bool:
        return hashlib.sha256(public_key + data).hexdigest().encode() == signature


class FakeStorage(DataStorage):
    """In-memory record store with a password check."""

    def __init__(self) -> None:
        self.created = False
        self.is_open = False
        self.password: Optional[str] = None
        self.accounts: list[Account] = []
        self.master_key: Optional[MasterKey] = None
        self.set_master_key_calls = 0

    async def exists(self) -> bool:
        return self.created

    async def open(self, password: str) -> None:
        if not self.created:
            raise StorageError("missing")
        if password != self.password:
            raise BadCredentialError("wrong password")
        self.is_open = True

    async def create(self, password: str) -> None:
        self.created = True
        self.is_open = True
        self.password = password

    async def reset(self) -> None:
        self.created = False
        self.is_open = False
        self.password = None
        self.accounts = []
        self.master_key = None

    async def change_password(self, current_password: str, new_password: str) -> None:
        await self.open(current_password)
        self.password = new_password

    async def get_accounts(self) -> list[Account]:
        return list(self.accounts)

    async def add_account(self, account: Account) -> None:
        self.accounts.append(account)

    async def has_master_key(self) -> bool:
        if not self.is_open:
            raise StorageError("closed")
        return self.master_key is not None

    async def get_master_key(self) -> MasterKey:
        assert self.master_key is not None
        return self.master_key

    async def set_master_key(self, master_key: MasterKey) -> None:
        self.set_master_key_calls += 1
        self.master_key = master_key


@pytest.fixture
def derivation_config() -> KeyDerivationConfig:
    return KeyDerivationConfig(
        seed_phrase_length=12,
        special_identities={SpecialKeyType.BACKUP: BACKUP_IDENTITY},
    )


@pytest.fixture
def fake_pgp() -> FakePgpContext:
    return FakePgpContext()


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def sg_home(tmp_path: Path) -> Path:
    """A SeedGuard home with a cheap scrypt cost."""
    home = tmp_path / ".seedguard"
    home.mkdir()
    (home / "config.yaml").write_text(
        "seed_phrase_length: 12\n"
        "scrypt_n: 16\n"
        "special_identities:\n"
        f"  backup: {BACKUP_IDENTITY}\n",
        encoding="utf-8",
    )
    return home


# ---------------------------------------------------------------------------
# Real PGP keys
# ---------------------------------------------------------------------------


def generate_key(email: str, name: str = "Test") -> pgpy.PGPKey:
    """Generate an unprotected RSA-2048 signing key."""
    key = pgpy.PGPKey.new(PubKeyAlgorithm.RSAEncryptOrSign, 2048)
    uid = pgpy.PGPUID.new(name, email=email)
    key.add_uid(
        uid,
        usage={KeyFlags.Sign, KeyFlags.Certify},
        hashes=[HashAlgorithm.SHA256],
        ciphers=[SymmetricKeyAlgorithm.AES256],
    )
    return key


def fingerprint_of(key: pgpy.PGPKey) -> str:
    return str(key.fingerprint).replace(" ", "")


def sign_bytes(key: pgpy.PGPKey, data: bytes) -> bytes:
    """Detached armored signature over data."""
    message = pgpy.PGPMessage.new(data, cleartext=False)
    return str(key.sign(message)).encode("utf-8")


def public_bytes(key: pgpy.PGPKey) -> bytes:
    return str(key.pubkey).encode("utf-8")


@pytest.fixture(scope="session")
def backup_key_1() -> pgpy.PGPKey:
    """K1: legitimate backup key."""
    return generate_key(BACKUP_IDENTITY, "Backup")


@pytest.fixture(scope="session")
def backup_key_2() -> pgpy.PGPKey:
    """K2: a different key claiming the backup identity."""
    return generate_key(BACKUP_IDENTITY, "Backup")


@pytest.fixture(scope="session")
def stranger_key() -> pgpy.PGPKey:
    """A key with an unrelated identity."""
    return generate_key("mallory@example.com", "Mallory")
