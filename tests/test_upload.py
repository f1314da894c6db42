"""Tests for backup upload authorization.

Uses real PGP keys:
- K1 and K2 both carry the backup identity, K2 is an impostor
- a stranger key carries an unrelated identity
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pgpy
import pytest

from seedguard.blobs import LocalBlobStore
from seedguard.models import UploadedFile
from seedguard.upload import (
    accept_upload,
    bundle_names,
    get_file_cid,
    is_backup_file,
    is_upload_allowed,
    resolve_fingerprint,
    save_file_cid,
)

from conftest import BACKUP_IDENTITY, fingerprint_of, public_bytes, sign_bytes

DATA = b'{"settings": "v1"}'


def bundle(fingerprint: str, key: pgpy.PGPKey, data: bytes = DATA) -> list[UploadedFile]:
    """Three upload files named after fingerprint, signed by key."""
    names = bundle_names(fingerprint)
    return [
        UploadedFile(filename=names.public_key, content=public_bytes(key)),
        UploadedFile(filename=names.signature, content=sign_bytes(key, data)),
        UploadedFile(filename=names.backup, content=data),
    ]


def tagged_bundle(tag: bytes) -> list[UploadedFile]:
    """Bundle under the name FP whose key, signature and data share a tag."""
    return [
        UploadedFile(filename="FP.pub", content=b"key-" + tag),
        UploadedFile(filename="FP.sig", content=b"sig-" + tag),
        UploadedFile(filename="FP.backup", content=b"data-" + tag),
    ]


def tag_verifier(key: bytes, sig: bytes, data: bytes, identity: str) -> bool:
    """Accept a signature only against the key with the same tag."""
    return key[4:] == sig[4:]


@pytest.fixture
def store(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


class TestHelpers:
    """Naming helpers."""

    def test_is_backup_file(self) -> None:
        assert is_backup_file("ABCD.backup")
        assert is_backup_file("dir/ABCD.BACKUP")
        assert not is_backup_file("ABCD.sig")
        with pytest.raises(ValueError):
            is_backup_file(None)

    def test_resolve_fingerprint_any_order(self) -> None:
        files = [
            UploadedFile(filename="FP.backup", content=b""),
            UploadedFile(filename="FP.pub", content=b""),
            UploadedFile(filename="FP.sig", content=b""),
        ]
        assert resolve_fingerprint(files) == "FP"

    def test_resolve_fingerprint_needs_one_backup(self) -> None:
        files = [
            UploadedFile(filename="A.backup", content=b""),
            UploadedFile(filename="B.backup", content=b""),
        ]
        assert resolve_fingerprint(files) is None
        assert resolve_fingerprint([UploadedFile(filename="A.pub", content=b"")]) is None


class TestScenarios:
    """Trust on first use, then only the registered key holder."""

    @pytest.mark.asyncio
    async def test_first_upload_allowed(self, store: LocalBlobStore, backup_key_1: pgpy.PGPKey) -> None:
        """No registered key: a self-consistent bundle is accepted."""
        fp = fingerprint_of(backup_key_1)
        assert await is_upload_allowed(bundle(fp, backup_key_1), store, BACKUP_IDENTITY)

    @pytest.mark.asyncio
    async def test_impostor_rejected(
        self, store: LocalBlobStore, backup_key_1: pgpy.PGPKey, backup_key_2: pgpy.PGPKey,
    ) -> None:
        """Registered K1: a bundle signed by K2 under K1's name is refused."""
        fp = fingerprint_of(backup_key_1)
        await store.upload(bundle_names(fp).public_key, public_bytes(backup_key_1))
        assert not await is_upload_allowed(bundle(fp, backup_key_2), store, BACKUP_IDENTITY)

    @pytest.mark.asyncio
    async def test_registered_holder_allowed(self, store: LocalBlobStore, backup_key_1: pgpy.PGPKey) -> None:
        fp = fingerprint_of(backup_key_1)
        await store.upload(bundle_names(fp).public_key, public_bytes(backup_key_1))
        assert await is_upload_allowed(bundle(fp, backup_key_1, b"v2"), store, BACKUP_IDENTITY)

    @pytest.mark.asyncio
    async def test_wrong_identity(self, store: LocalBlobStore, stranger_key: pgpy.PGPKey) -> None:
        """A valid signature from a non-backup identity is refused."""
        fp = fingerprint_of(stranger_key)
        assert not await is_upload_allowed(bundle(fp, stranger_key), store, BACKUP_IDENTITY)

    @pytest.mark.asyncio
    async def test_tampered_data(self, store: LocalBlobStore, backup_key_1: pgpy.PGPKey) -> None:
        fp = fingerprint_of(backup_key_1)
        files = bundle(fp, backup_key_1)
        files[2] = UploadedFile(filename=files[2].filename, content=b"tampered")
        assert not await is_upload_allowed(files, store, BACKUP_IDENTITY)


class TestShape:
    """Submission shape checks."""

    @pytest.mark.asyncio
    async def test_wrong_count(self, store: LocalBlobStore, backup_key_1: pgpy.PGPKey) -> None:
        files = bundle(fingerprint_of(backup_key_1), backup_key_1)
        assert not await is_upload_allowed(files[:2], store, BACKUP_IDENTITY)
        assert not await is_upload_allowed(files + files[:1], store, BACKUP_IDENTITY)

    @pytest.mark.asyncio
    async def test_order_independent(self, store: LocalBlobStore, backup_key_1: pgpy.PGPKey) -> None:
        files = bundle(fingerprint_of(backup_key_1), backup_key_1)
        assert await is_upload_allowed(list(reversed(files)), store, BACKUP_IDENTITY)

    @pytest.mark.asyncio
    async def test_mismatched_names(self, store: LocalBlobStore, backup_key_1: pgpy.PGPKey) -> None:
        files = bundle(fingerprint_of(backup_key_1), backup_key_1)
        files[0] = UploadedFile(filename="OTHER.pub", content=files[0].content)
        assert not await is_upload_allowed(files, store, BACKUP_IDENTITY)

    @pytest.mark.asyncio
    async def test_missing_arguments(self, store: LocalBlobStore) -> None:
        with pytest.raises(ValueError):
            await is_upload_allowed(None, store, BACKUP_IDENTITY)
        with pytest.raises(ValueError):
            await is_upload_allowed([], None, BACKUP_IDENTITY)
        with pytest.raises(ValueError):
            await is_upload_allowed([], store, "")

    @pytest.mark.asyncio
    async def test_bind_fingerprint(
        self, store: LocalBlobStore, backup_key_1: pgpy.PGPKey, backup_key_2: pgpy.PGPKey,
    ) -> None:
        """With binding on, the key must own the name it is filed under."""
        wrong_name = bundle(fingerprint_of(backup_key_2), backup_key_1)
        assert await is_upload_allowed(wrong_name, store, BACKUP_IDENTITY)
        assert not await is_upload_allowed(wrong_name, store, BACKUP_IDENTITY, bind_fingerprint=True)

        right_name = bundle(fingerprint_of(backup_key_1), backup_key_1)
        assert await is_upload_allowed(right_name, store, BACKUP_IDENTITY, bind_fingerprint=True)

    @pytest.mark.asyncio
    async def test_custom_verifier(self, store: LocalBlobStore) -> None:
        """The verifier sees (key, signature, data, identity)."""
        seen = []

        def verify(key: bytes, sig: bytes, data: bytes, identity: str) -> bool:
            seen.append((key, sig, data, identity))
            return True

        files = [
            UploadedFile(filename="FP.pub", content=b"k"),
            UploadedFile(filename="FP.sig", content=b"s"),
            UploadedFile(filename="FP.backup", content=b"d"),
        ]
        assert await is_upload_allowed(files, store, BACKUP_IDENTITY, verify=verify)
        assert seen == [(b"k", b"s", b"d", BACKUP_IDENTITY)]


class TestAcceptUpload:
    """Storing authorized bundles."""

    @pytest.mark.asyncio
    async def test_stores_bundle(self, store: LocalBlobStore, backup_key_1: pgpy.PGPKey) -> None:
        fp = fingerprint_of(backup_key_1)
        assert await accept_upload(bundle(fp, backup_key_1), store, BACKUP_IDENTITY)
        names = bundle_names(fp)
        assert await store.download(names.backup) == DATA
        assert await store.exists(names.signature)
        assert await store.download(names.public_key) == public_bytes(backup_key_1)

    @pytest.mark.asyncio
    async def test_registered_key_never_replaced(
        self, store: LocalBlobStore, backup_key_1: pgpy.PGPKey, backup_key_2: pgpy.PGPKey,
    ) -> None:
        fp = fingerprint_of(backup_key_1)
        assert await accept_upload(bundle(fp, backup_key_1), store, BACKUP_IDENTITY)
        assert not await accept_upload(bundle(fp, backup_key_2, b"evil"), store, BACKUP_IDENTITY)

        names = bundle_names(fp)
        assert await store.download(names.public_key) == public_bytes(backup_key_1)
        assert await store.download(names.backup) == DATA

    @pytest.mark.asyncio
    async def test_update_by_holder(self, store: LocalBlobStore, backup_key_1: pgpy.PGPKey) -> None:
        fp = fingerprint_of(backup_key_1)
        await accept_upload(bundle(fp, backup_key_1), store, BACKUP_IDENTITY)
        assert await accept_upload(bundle(fp, backup_key_1, b"v2"), store, BACKUP_IDENTITY)
        assert await store.download(bundle_names(fp).backup) == b"v2"

    @pytest.mark.asyncio
    async def test_concurrent_first_registration(self, store: LocalBlobStore) -> None:
        """Two first uploads race: exactly one registers and stores."""
        results = await asyncio.gather(
            accept_upload(tagged_bundle(b"a"), store, BACKUP_IDENTITY, verify=tag_verifier),
            accept_upload(tagged_bundle(b"b"), store, BACKUP_IDENTITY, verify=tag_verifier),
        )
        assert results.count(True) == 1

        winner = b"a" if results[0] else b"b"
        assert await store.download("FP.pub") == b"key-" + winner
        assert await store.download("FP.backup") == b"data-" + winner

    @pytest.mark.asyncio
    async def test_key_registered_during_check(self, store: LocalBlobStore) -> None:
        """A bundle approved on first use is dropped if another key registers first."""
        def verify_while_other_registers(key: bytes, sig: bytes, data: bytes, identity: str) -> bool:
            store.root.mkdir(parents=True, exist_ok=True)
            (store.root / "FP.pub").write_bytes(b"key-b")
            return tag_verifier(key, sig, data, identity)

        stored = await accept_upload(
            tagged_bundle(b"a"), store, BACKUP_IDENTITY, verify=verify_while_other_registers,
        )
        assert stored is False
        assert await store.download("FP.pub") == b"key-b"
        assert not await store.exists("FP.backup")
        assert not await store.exists("FP.sig")


class TestContentIds:
    """CID records beside a bundle."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, store: LocalBlobStore) -> None:
        cid = await save_file_cid(store, "FP.backup", '{"cid": "bafy123"}')
        assert cid == "bafy123"
        assert await get_file_cid("FP.backup", store) == "bafy123"
        assert await get_file_cid("FP.sig", store) == "bafy123"
        assert await store.exists("FP.cid")

    @pytest.mark.asyncio
    async def test_missing(self, store: LocalBlobStore) -> None:
        assert await get_file_cid("NONE.backup", store) is None

    @pytest.mark.asyncio
    async def test_bad_body(self, store: LocalBlobStore) -> None:
        with pytest.raises(ValueError):
            await save_file_cid(store, "FP.backup", '{"nope": 1}')

    @pytest.mark.asyncio
    async def test_name_required(self, store: LocalBlobStore) -> None:
        with pytest.raises(ValueError):
            await get_file_cid(None, store)
        with pytest.raises(ValueError):
            await save_file_cid(store, None, '{"cid": "bafy123"}')
