"""
OpenPGP engine -- PGPy-backed keyring, derivation, and signatures.

Every key this engine derives is an Ed25519 sign/certify key whose
private scalar comes from HKDF over the master key and the identity,
with a fixed creation time. Same master key + identity + tag, same
key and same fingerprint, on every device.

Keyring layout:
    <home>/keyring/
    └── <FINGERPRINT>.asc     # ASCII-armored public key

Secret keys are held in memory only. Derived ones are re-derived
from the master key at session start; imported ones last for the
session.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parseaddr
from pathlib import Path
from typing import Optional

import pgpy
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pgpy.constants import (
    CompressionAlgorithm,
    ECPointFormat,
    EllipticCurveOID,
    HashAlgorithm,
    KeyFlags,
    PubKeyAlgorithm,
    SymmetricKeyAlgorithm,
)
from pgpy.packet.fields import MPI, ECPoint

from .models import MasterKey, PgpKeyInfo

logger = logging.getLogger("seedguard.pgp")

# Fixed so that derived keys (and their fingerprints) are reproducible.
DERIVATION_EPOCH = datetime(2020, 1, 1, tzinfo=timezone.utc)


class PgpContext(ABC):
    """Abstract OpenPGP engine the key-lifecycle controller drives."""

    @abstractmethod
    def load_context(self) -> None:
        """Load persisted keys."""

    @abstractmethod
    def reset(self) -> None:
        """Forget every key, in memory and on disk."""

    @abstractmethod
    def has_secret_key(self, identity: str) -> bool:
        """True if a secret key exists for the identity."""

    @abstractmethod
    def derive_keypair(self, master_key: MasterKey, identity: str, tag: Optional[str] = None) -> str:
        """Derive and store a keypair. Returns its fingerprint."""

    @abstractmethod
    def list_public_keys(self) -> list[PgpKeyInfo]:
        """Every key in the keyring, public view."""

    @abstractmethod
    def import_public_keys(self, data: bytes, armored: bool = True) -> list[str]:
        """Import one or more public keys. Returns fingerprints."""

    @abstractmethod
    def import_secret_keys(self, data: bytes, armored: bool = True) -> list[str]:
        """Import one or more secret keys. Returns fingerprints."""

    @abstractmethod
    def export_public_key_ring(self, key_id: str) -> bytes:
        """Armored public key for a key id or fingerprint."""

    @abstractmethod
    def export_public_key(self, identity: str) -> bytes:
        """Armored public key for an identity."""

    @abstractmethod
    def sign_detached(self, identity: str, data: bytes) -> bytes:
        """Armored detached signature over data by the identity's secret key."""

    @abstractmethod
    def verify_signature(
        self,
        public_key: bytes,
        signature: bytes,
        data: bytes,
        expected_identity: str,
    ) -> bool:
        """True if the signature is valid and made by expected_identity's key."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def identity_address(identity: str) -> str:
    """Normalize an identity ('Name <addr>' or 'addr') to its address."""
    if identity is None:
        raise ValueError("Identity is required")
    _, address = parseaddr(identity)
    return (address or identity).strip().lower()


def _derive_seed(master_material: bytes, info: bytes, length: int = 32) -> bytes:
    """HKDF-SHA256 over the master key."""
    hkdf = HKDF(algorithm=SHA256(), length=length, salt=None, info=info)
    return hkdf.derive(master_material)


def _fingerprint(key: pgpy.PGPKey) -> str:
    return str(key.fingerprint).replace(" ", "")


def _uid_addresses(key: pgpy.PGPKey) -> set[str]:
    return {uid.email.lower() for uid in key.userids if uid.email}


def _uid_string(key: pgpy.PGPKey) -> str:
    if not key.userids:
        return ""
    uid = key.userids[0]
    if uid.email:
        return f"{uid.name} <{uid.email}>" if uid.name else uid.email
    return uid.name


def _load_blob(data: bytes, armored: bool = True) -> list[pgpy.PGPKey]:
    """Parse every primary key out of a key blob."""
    if data is None:
        raise ValueError("Key data is required")
    blob = data.decode("utf-8") if armored else bytearray(data)
    key, others = pgpy.PGPKey.from_blob(blob)
    keys = [key]
    for other in others.values():
        if other.is_primary and _fingerprint(other) != _fingerprint(key):
            keys.append(other)
    return keys


def _set_ed25519_material(key: pgpy.PGPKey, signing: ed25519.Ed25519PrivateKey) -> None:
    """Overwrite a freshly generated EdDSA key with given key material.

    PGPy has no public API for importing existing key material, so
    the packet fields are set directly.
    """
    km = key._key.keymaterial
    raw_public = signing.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    raw_private = signing.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    km.p = ECPoint.from_values(km.oid.key_size, ECPointFormat.Native, raw_public)
    km.s = MPI(int.from_bytes(raw_private, "big"))
    km._compute_chksum()


def derive_pgp_key(master_key: MasterKey, identity: str, tag: Optional[str] = None) -> pgpy.PGPKey:
    """Deterministically derive a PGP key for an identity.

    Args:
        master_key: Root secret.
        identity: 'Name <address>' or a bare address.
        tag: Optional derivation tag separating keys of one address.

    Returns:
        An unprotected Ed25519 sign/certify PGPKey with one user ID.
    """
    if master_key is None:
        raise ValueError("Master key is required")
    name, _ = parseaddr(identity)
    address = identity_address(identity)

    info = f"seedguard:pgp:{address}:{tag or ''}".encode("utf-8")
    signing = ed25519.Ed25519PrivateKey.from_private_bytes(_derive_seed(master_key.material, info))

    key = pgpy.PGPKey.new(PubKeyAlgorithm.EdDSA, EllipticCurveOID.Ed25519, created=DERIVATION_EPOCH)
    _set_ed25519_material(key, signing)

    uid = pgpy.PGPUID.new(name or address.split("@")[0], email=address)
    key.add_uid(
        uid,
        usage={KeyFlags.Sign, KeyFlags.Certify},
        hashes=[HashAlgorithm.SHA256, HashAlgorithm.SHA512],
        ciphers=[SymmetricKeyAlgorithm.AES256],
        compression=[CompressionAlgorithm.Uncompressed],
        created=DERIVATION_EPOCH,
    )
    return key


def public_key_fingerprint(public_key: bytes) -> Optional[str]:
    """Fingerprint of a serialized public key, or None if unparseable."""
    try:
        armored = public_key.lstrip().startswith(b"-----BEGIN")
        return _fingerprint(_load_blob(public_key, armored=armored)[0])
    except Exception as exc:
        logger.debug("Unreadable public key: %s", exc)
        return None


def is_valid_signature(
    public_key: bytes,
    signature: bytes,
    data: bytes,
    expected_identity: str,
) -> bool:
    """Verify a detached signature and the signer's identity.

    The key must carry a user ID for expected_identity and must be
    the key that made the signature. Any parse or verification
    failure is a plain False.

    Args:
        public_key: Armored (or binary) public key.
        signature: Armored detached signature.
        data: Signed bytes.
        expected_identity: Identity the signer must hold.

    Returns:
        bool: True if every check passes.
    """
    if public_key is None or signature is None or data is None:
        raise ValueError("Public key, signature and data are required")

    try:
        armored = public_key.lstrip().startswith(b"-----BEGIN")
        pub = _load_blob(public_key, armored=armored)[0]
        if not pub.is_public:
            pub = pub.pubkey

        if identity_address(expected_identity) not in _uid_addresses(pub):
            logger.debug("Signer %s lacks identity %s", _fingerprint(pub), expected_identity)
            return False

        sig = pgpy.PGPSignature.from_blob(signature.decode("utf-8"))
        if sig.signer != pub.fingerprint.keyid:
            return False

        message = pgpy.PGPMessage.new(data, cleartext=False)
        message |= sig
        return bool(pub.verify(message))
    except Exception as exc:
        logger.debug("Signature verification failed: %s", exc)
        return False


# ---------------------------------------------------------------------------
# PgpyContext
# ---------------------------------------------------------------------------

class PgpyContext(PgpContext):
    """PGPy keyring backed by a directory of armored public keys.

    Args:
        home: SeedGuard home directory.
    """

    def __init__(self, home: Path) -> None:
        self._keyring_dir = home / "keyring"
        self._keys: dict[str, pgpy.PGPKey] = {}
        self._lock = threading.RLock()

    def load_context(self) -> None:
        with self._lock:
            if not self._keyring_dir.exists():
                return
            for path in sorted(self._keyring_dir.glob("*.asc")):
                try:
                    key, _ = pgpy.PGPKey.from_file(str(path))
                except (ValueError, OSError) as exc:
                    logger.warning("Skipping unreadable key %s: %s", path.name, exc)
                    continue
                self._keys.setdefault(_fingerprint(key), key)
            logger.info("Loaded %d keys from %s", len(self._keys), self._keyring_dir)

    def reset(self) -> None:
        with self._lock:
            self._keys.clear()
            if self._keyring_dir.exists():
                for path in self._keyring_dir.glob("*.asc"):
                    path.unlink()
            logger.info("Keyring cleared: %s", self._keyring_dir)

    def has_secret_key(self, identity: str) -> bool:
        address = identity_address(identity)
        with self._lock:
            return any(
                not key.is_public and address in _uid_addresses(key)
                for key in self._keys.values()
            )

    def derive_keypair(self, master_key: MasterKey, identity: str, tag: Optional[str] = None) -> str:
        key = derive_pgp_key(master_key, identity, tag)
        fingerprint = _fingerprint(key)
        with self._lock:
            self._store(key)
        logger.info("Derived key %s for %s", fingerprint, identity_address(identity))
        return fingerprint

    def list_public_keys(self) -> list[PgpKeyInfo]:
        with self._lock:
            keys = list(self._keys.values())
        infos = []
        for key in keys:
            addresses = sorted(_uid_addresses(key))
            infos.append(PgpKeyInfo(
                user_identity=_uid_string(key),
                email=addresses[0] if addresses else "",
                fingerprint=_fingerprint(key),
                key_id=str(key.fingerprint.keyid),
                has_secret=not key.is_public,
                created_at=key.created,
            ))
        return infos

    def import_public_keys(self, data: bytes, armored: bool = True) -> list[str]:
        keys = _load_blob(data, armored)
        imported = []
        with self._lock:
            for key in keys:
                self._store(key if key.is_public else key.pubkey)
                imported.append(_fingerprint(key))
        logger.info("Imported %d public keys", len(imported))
        return imported

    def import_secret_keys(self, data: bytes, armored: bool = True) -> list[str]:
        keys = _load_blob(data, armored)
        if any(key.is_public for key in keys):
            raise ValueError("Key bundle contains public keys only")
        imported = []
        with self._lock:
            for key in keys:
                self._store(key)
                imported.append(_fingerprint(key))
        logger.info("Imported %d secret keys", len(imported))
        return imported

    def export_public_key_ring(self, key_id: str) -> bytes:
        wanted = (key_id or "").replace(" ", "").upper()
        if not wanted:
            raise ValueError("Key id is required")
        with self._lock:
            for fingerprint, key in self._keys.items():
                if fingerprint == wanted or fingerprint.endswith(wanted):
                    return self._public_armor(key)
        raise KeyError(f"No key with id {key_id}")

    def export_public_key(self, identity: str) -> bytes:
        return self._public_armor(self._find(identity, secret=False))

    def sign_detached(self, identity: str, data: bytes) -> bytes:
        key = self._find(identity, secret=True)
        message = pgpy.PGPMessage.new(data, cleartext=False)
        sig = key.sign(message)
        return str(sig).encode("utf-8")

    def verify_signature(
        self,
        public_key: bytes,
        signature: bytes,
        data: bytes,
        expected_identity: str,
    ) -> bool:
        return is_valid_signature(public_key, signature, data, expected_identity)

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _find(self, identity: str, secret: bool) -> pgpy.PGPKey:
        address = identity_address(identity)
        with self._lock:
            for key in self._keys.values():
                if address not in _uid_addresses(key):
                    continue
                if secret and key.is_public:
                    continue
                return key
        kind = "secret" if secret else "public"
        raise KeyError(f"No {kind} key for {address}")

    def _store(self, key: pgpy.PGPKey) -> None:
        """Keep a key in memory and persist its public half.

        A secret key replaces a public one with the same fingerprint,
        never the other way round.
        """
        fingerprint = _fingerprint(key)
        existing = self._keys.get(fingerprint)
        if existing is None or (existing.is_public and not key.is_public):
            self._keys[fingerprint] = key
        self._keyring_dir.mkdir(parents=True, exist_ok=True)
        (self._keyring_dir / f"{fingerprint}.asc").write_bytes(self._public_armor(key))

    @staticmethod
    def _public_armor(key: pgpy.PGPKey) -> bytes:
        pub = key if key.is_public else key.pubkey
        return str(pub).encode("utf-8")
