"""
Backup protector -- signed backup bundles.

A backup leaves the device as three files sharing the backup key's
fingerprint::

    <FINGERPRINT>.pub       # armored public key of the backup identity
    <FINGERPRINT>.sig       # armored detached signature over the data
    <FINGERPRINT>.backup    # the backup data itself

The backup identity is a special, seed-derived key, so the same
fingerprint comes back after a restore on a new device and the backup
service keeps accepting updates from it.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .models import (
    BACKUP_EXTENSION,
    PUBLIC_KEY_EXTENSION,
    SIGNATURE_EXTENSION,
    BackupBundle,
)
from .pgp import PgpContext, identity_address

logger = logging.getLogger("seedguard.backup")


class BackupProtector:
    """Signs and verifies backup bundles with the backup identity's key.

    Args:
        pgp: OpenPGP engine holding the backup key.
    """

    def __init__(self, pgp: PgpContext) -> None:
        self._pgp = pgp
        self._identity: Optional[str] = None

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    def set_pgp_key_identity(self, identity: str) -> None:
        """Bind the identity whose key signs backups."""
        if not identity:
            raise ValueError("Backup identity is required")
        self._identity = identity_address(identity)

    def create_bundle(self, data: bytes) -> BackupBundle:
        """Sign data and package it as a backup bundle.

        Args:
            data: Backup payload.

        Returns:
            BackupBundle: Public key, signature and data.

        Raises:
            RuntimeError: If no backup identity is bound.
            KeyError: If the backup key has not been derived yet.
        """
        if data is None:
            raise ValueError("Backup data is required")
        identity = self._require_identity()

        fingerprint = self._fingerprint_for(identity)
        bundle = BackupBundle(
            fingerprint=fingerprint,
            public_key=self._pgp.export_public_key(identity),
            signature=self._pgp.sign_detached(identity, data),
            data=data,
        )
        logger.info("Backup bundle created for %s (%d bytes)", fingerprint, len(data))
        return bundle

    def verify_bundle(self, bundle: BackupBundle) -> bool:
        """Check a bundle's signature against its own public key."""
        return self._pgp.verify_signature(
            bundle.public_key, bundle.signature, bundle.data, self._require_identity(),
        )

    def write_bundle(self, bundle: BackupBundle, directory: Path) -> list[Path]:
        """Write the three bundle files into a directory."""
        directory = directory.expanduser()
        directory.mkdir(parents=True, exist_ok=True)
        written = []
        for upload in bundle.as_upload():
            path = directory / upload.filename
            path.write_bytes(upload.content)
            written.append(path)
        return written

    @staticmethod
    def read_bundle(directory: Path, fingerprint: str) -> BackupBundle:
        """Load a bundle previously written by write_bundle.

        Raises:
            FileNotFoundError: If any of the three files is missing.
        """
        directory = directory.expanduser()
        return BackupBundle(
            fingerprint=fingerprint,
            public_key=(directory / f"{fingerprint}{PUBLIC_KEY_EXTENSION}").read_bytes(),
            signature=(directory / f"{fingerprint}{SIGNATURE_EXTENSION}").read_bytes(),
            data=(directory / f"{fingerprint}{BACKUP_EXTENSION}").read_bytes(),
        )

    def _require_identity(self) -> str:
        if self._identity is None:
            raise RuntimeError("Backup identity is not set")
        return self._identity

    def _fingerprint_for(self, identity: str) -> str:
        for key in self._pgp.list_public_keys():
            if key.has_secret and key.email == identity:
                return key.fingerprint
        raise KeyError(f"No backup key for {identity}")
