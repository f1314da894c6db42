"""
Blob object store -- where backup bundles land.

Flat namespace of named blobs. The backup service keeps each
bundle's public key, signature, backup data and content identifier
here, all keyed by fingerprint.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger("seedguard.blobs")


class BlobStore(ABC):
    """Abstract named-blob storage backend."""

    @abstractmethod
    async def exists(self, name: str) -> bool:
        """True if a blob with this name is stored."""

    @abstractmethod
    async def download(self, name: str) -> bytes:
        """Return the blob's bytes.

        Raises:
            FileNotFoundError: If the blob does not exist.
        """

    @abstractmethod
    async def upload(self, name: str, data: bytes, overwrite: bool = True) -> None:
        """Store bytes under name.

        Raises:
            FileExistsError: If overwrite is False and the blob exists.
        """


def check_blob_name(name: str) -> str:
    """Reject names that could escape a flat namespace."""
    if not name or name in (".", ".."):
        raise ValueError("Blob name is required")
    if "/" in name or "\\" in name or "\x00" in name:
        raise ValueError(f"Invalid blob name: {name!r}")
    return name


class LocalBlobStore(BlobStore):
    """Plain directory blob store. For single hosts, NAS mounts, tests.

    Args:
        root: Directory that holds the blobs.
    """

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser()

    async def exists(self, name: str) -> bool:
        return (self.root / check_blob_name(name)).is_file()

    async def download(self, name: str) -> bytes:
        path = self.root / check_blob_name(name)
        return await asyncio.to_thread(path.read_bytes)

    async def upload(self, name: str, data: bytes, overwrite: bool = True) -> None:
        path = self.root / check_blob_name(name)
        await asyncio.to_thread(self._write, path, data, overwrite)
        logger.debug("Stored blob %s (%d bytes)", name, len(data))

    def _write(self, path: Path, data: bytes, overwrite: bool) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".blob-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            if overwrite:
                os.replace(tmp, path)
            else:
                # link() refuses an existing target, so first write wins.
                os.link(tmp, path)
        finally:
            Path(tmp).unlink(missing_ok=True)
