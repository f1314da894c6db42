"""
Backup upload authorization.

Runs on the backup service before a bundle is stored. The first
public key ever stored for a fingerprint is trusted on first use and
becomes that fingerprint's trust anchor. Every later upload must be
signed by the holder of that registered key:

    registered key present  ->  signature must verify against the
                                registered key AND the submitted key
    no registered key       ->  signature must verify against the
                                submitted key (trust on first use)

Either way the signer must carry the reserved backup identity.
A failed check is an answer ("not allowed"), not an error.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, NamedTuple, Optional, Sequence

from .blobs import BlobStore, check_blob_name
from .models import (
    BACKUP_EXTENSION,
    CID_EXTENSION,
    PUBLIC_KEY_EXTENSION,
    SIGNATURE_EXTENSION,
    CidRecord,
    UploadedFile,
)
from .pgp import is_valid_signature, public_key_fingerprint

logger = logging.getLogger("seedguard.upload")

BUNDLE_FILE_COUNT = 3

Verifier = Callable[[bytes, bytes, bytes, str], bool]


class BundleNames(NamedTuple):
    """Blob names of one backup bundle."""

    public_key: str
    signature: str
    backup: str


def bundle_names(fingerprint: str) -> BundleNames:
    """Expected file names for a fingerprint."""
    return BundleNames(
        public_key=fingerprint + PUBLIC_KEY_EXTENSION,
        signature=fingerprint + SIGNATURE_EXTENSION,
        backup=fingerprint + BACKUP_EXTENSION,
    )


def is_backup_file(name: str) -> bool:
    """True if name carries the backup-data extension."""
    if name is None:
        raise ValueError("Name is required")
    return Path(name).suffix.lower() == BACKUP_EXTENSION


def resolve_fingerprint(files: Sequence[UploadedFile]) -> Optional[str]:
    """Fingerprint of a submission, taken from its single backup file.

    Submission order does not matter. Returns None when there is not
    exactly one backup file or its name is unusable.
    """
    backups = [f for f in files if is_backup_file(f.filename)]
    if len(backups) != 1:
        return None
    fingerprint = Path(Path(backups[0].filename).name).stem
    try:
        check_blob_name(fingerprint)
    except ValueError:
        return None
    return fingerprint


class _Authorized(NamedTuple):
    """Outcome of a successful authorization."""

    names: BundleNames
    files: dict[str, UploadedFile]
    first_use: bool


async def _authorize(
    files: Sequence[UploadedFile],
    blob_store: BlobStore,
    backup_identity: str,
    verify: Verifier,
    bind_fingerprint: bool,
) -> Optional[_Authorized]:
    if files is None:
        raise ValueError("Files are required")
    if blob_store is None:
        raise ValueError("Blob store is required")
    if not backup_identity:
        raise ValueError("Backup identity is required")

    if len(files) != BUNDLE_FILE_COUNT:
        logger.warning("Upload rejected: %d files, expected %d", len(files), BUNDLE_FILE_COUNT)
        return None

    fingerprint = resolve_fingerprint(files)
    if fingerprint is None:
        logger.warning("Upload rejected: no single backup file to take a fingerprint from")
        return None

    names = bundle_names(fingerprint)
    by_name = {Path(f.filename).name: f for f in files}
    if not all(name in by_name for name in names):
        logger.warning("Upload rejected: files do not form a bundle for %s", fingerprint)
        return None

    new_key = by_name[names.public_key].content
    signature = by_name[names.signature].content
    data = by_name[names.backup].content

    if bind_fingerprint:
        submitted = await asyncio.to_thread(public_key_fingerprint, new_key)
        if submitted is None or submitted.upper() != fingerprint.upper():
            logger.warning("Upload rejected: key does not match fingerprint %s", fingerprint)
            return None

    first_use = not await blob_store.exists(names.public_key)
    if first_use:
        allowed = await asyncio.to_thread(verify, new_key, signature, data, backup_identity)
    else:
        registered_key = await blob_store.download(names.public_key)
        allowed = (
            await asyncio.to_thread(verify, registered_key, signature, data, backup_identity)
            and await asyncio.to_thread(verify, new_key, signature, data, backup_identity)
        )

    if not allowed:
        logger.warning("Upload rejected for %s: signature check failed", fingerprint)
        return None
    logger.info("Upload authorized for %s", fingerprint)
    return _Authorized(names, by_name, first_use)


async def is_upload_allowed(
    files: Sequence[UploadedFile],
    blob_store: BlobStore,
    backup_identity: str,
    verify: Verifier = is_valid_signature,
    bind_fingerprint: bool = False,
) -> bool:
    """Decide whether a three-file backup bundle may be stored.

    Args:
        files: Submitted public key, signature and backup files.
        blob_store: Store holding registered public keys.
        backup_identity: Identity every backup signer must carry.
        verify: Signature check (public key, signature, data, identity).
        bind_fingerprint: Also require the submitted key's fingerprint
            to equal the bundle fingerprint.

    Returns:
        bool: True if the upload is authorized.

    Raises:
        ValueError: If a required argument is missing.
    """
    decision = await _authorize(files, blob_store, backup_identity, verify, bind_fingerprint)
    return decision is not None


async def accept_upload(
    files: Sequence[UploadedFile],
    blob_store: BlobStore,
    backup_identity: str,
    verify: Verifier = is_valid_signature,
    bind_fingerprint: bool = False,
) -> bool:
    """Authorize a bundle and, if allowed, store it.

    A bundle authorized on first use must also be the one that
    registers the public key. If another key got registered in the
    meantime the bundle was never checked against it, so it is
    rejected and nothing is written.

    Returns:
        bool: True if the bundle was stored.
    """
    decision = await _authorize(files, blob_store, backup_identity, verify, bind_fingerprint)
    if decision is None:
        return False

    names, by_name, first_use = decision
    if first_use:
        try:
            await blob_store.upload(names.public_key, by_name[names.public_key].content, overwrite=False)
        except FileExistsError:
            logger.warning("Upload rejected for %s: key registered concurrently", names.backup)
            return False
    await blob_store.upload(names.signature, by_name[names.signature].content)
    await blob_store.upload(names.backup, by_name[names.backup].content)
    logger.info("Bundle stored as %s", names.backup)
    return True


def _cid_name(name: str) -> str:
    if name is None:
        raise ValueError("Name is required")
    return Path(name).stem + CID_EXTENSION


async def get_file_cid(name: str, blob_store: BlobStore) -> Optional[str]:
    """Content identifier recorded for the bundle a file belongs to."""
    if blob_store is None:
        raise ValueError("Blob store is required")
    cid_name = _cid_name(name)
    if not await blob_store.exists(cid_name):
        return None
    return (await blob_store.download(cid_name)).decode("utf-8")


async def save_file_cid(blob_store: BlobStore, name: str, json_body: str) -> str:
    """Record a content identifier from a ``{"cid": ...}`` JSON body."""
    if blob_store is None:
        raise ValueError("Blob store is required")
    cid_name = _cid_name(name)
    record = CidRecord.model_validate_json(json_body)
    await blob_store.upload(cid_name, record.cid.encode("utf-8"))
    return record.cid
