"""
Core data models for SeedGuard.

Accounts, key listings, derivation configuration, backup bundles
and the session state machine vocabulary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PUBLIC_KEY_EXTENSION = ".pub"
SIGNATURE_EXTENSION = ".sig"
BACKUP_EXTENSION = ".backup"
CID_EXTENSION = ".cid"

VALID_SEED_LENGTHS = (12, 15, 18, 21, 24)


class SessionState(str, Enum):
    """Lifecycle states of the key-lifecycle controller."""

    NEVER_STARTED = "never_started"
    AWAITING_SEED = "awaiting_seed"
    SEED_PENDING = "seed_pending"
    SESSION_STARTING = "session_starting"
    READY = "ready"
    RESET = "reset"


class SpecialKeyType(str, Enum):
    """Reserved, non-account key roles."""

    BACKUP = "backup"


@dataclass(frozen=True, repr=False)
class MasterKey:
    """Root secret every PGP keypair is derived from.

    The repr never includes the key material.
    """

    material: bytes = field(compare=True)

    def __post_init__(self) -> None:
        if not self.material:
            raise ValueError("Master key material must not be empty")

    def __repr__(self) -> str:
        return f"MasterKey(<{len(self.material)} bytes>)"


class Account(BaseModel):
    """A mail account that owns one derived PGP keypair."""

    email: str
    name: str = ""
    key_tag: Optional[str] = Field(
        default=None,
        description="Derivation tag; defaults to an address-based tag",
    )

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value:
            raise ValueError(f"Not an e-mail address: {value!r}")
        return value

    @property
    def user_identity(self) -> str:
        """Canonical identity string used to look up the account key."""
        return self.email.lower()

    @property
    def pgp_user_id(self) -> str:
        """User ID written into the derived key."""
        if self.name:
            return f"{self.name} <{self.user_identity}>"
        return self.user_identity

    @property
    def pgp_key_tag(self) -> str:
        return self.key_tag or f"account:{self.user_identity}"


class PgpKeyInfo(BaseModel):
    """Public description of a key held by the PGP engine."""

    user_identity: str
    email: str = ""
    fingerprint: str
    key_id: str
    has_secret: bool = False
    created_at: Optional[datetime] = None
    special_role: Optional[SpecialKeyType] = None


class KeyDerivationConfig(BaseModel):
    """Immutable derivation settings installed once per controller.

    Attributes:
        seed_phrase_length: Number of words in a seed phrase.
        special_identities: Reserved identity per special key role.
    """

    model_config = ConfigDict(frozen=True)

    seed_phrase_length: int = 12
    special_identities: dict[SpecialKeyType, str] = Field(
        default_factory=lambda: {SpecialKeyType.BACKUP: "backup@seedguard.local"}
    )

    @field_validator("seed_phrase_length")
    @classmethod
    def _check_length(cls, value: int) -> int:
        if value not in VALID_SEED_LENGTHS:
            raise ValueError(
                f"Seed phrase length must be one of {VALID_SEED_LENGTHS}, got {value}"
            )
        return value

    @model_validator(mode="after")
    def _check_identities(self) -> "KeyDerivationConfig":
        if SpecialKeyType.BACKUP not in self.special_identities:
            raise ValueError("A backup identity is required")
        for role, identity in self.special_identities.items():
            if "@" not in identity:
                raise ValueError(f"Special identity for {role.value} is not an address")
        return self

    @property
    def backup_identity(self) -> str:
        return self.special_identities[SpecialKeyType.BACKUP]

    def role_for(self, address: str) -> Optional[SpecialKeyType]:
        """Return the special role owning an address, if any."""
        address = address.strip().lower()
        for role, identity in self.special_identities.items():
            if identity.lower() == address:
                return role
        return None


class UploadedFile(BaseModel):
    """One file of a multi-file upload."""

    filename: str
    content: bytes

    @property
    def stem(self) -> str:
        return Path(self.filename).stem

    @property
    def suffix(self) -> str:
        return Path(self.filename).suffix


class BackupBundle(BaseModel):
    """Public key, detached signature and backup data sharing a fingerprint."""

    fingerprint: str
    public_key: bytes
    signature: bytes
    data: bytes

    @property
    def public_key_name(self) -> str:
        return self.fingerprint + PUBLIC_KEY_EXTENSION

    @property
    def signature_name(self) -> str:
        return self.fingerprint + SIGNATURE_EXTENSION

    @property
    def backup_name(self) -> str:
        return self.fingerprint + BACKUP_EXTENSION

    def as_upload(self) -> list[UploadedFile]:
        """Files in the order a client submits them."""
        return [
            UploadedFile(filename=self.public_key_name, content=self.public_key),
            UploadedFile(filename=self.signature_name, content=self.signature),
            UploadedFile(filename=self.backup_name, content=self.data),
        ]


class CidRecord(BaseModel):
    """JSON body carrying a content identifier."""

    cid: str
