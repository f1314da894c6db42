"""
Key-lifecycle controller.

Owns the seed -> master key -> derived keys state machine:

    NEVER_STARTED ──create/restore seed──> SEED_PENDING
          │                                     │
          └──────────── start(password) ────────┤
                              │                 │
                     SESSION_STARTING           │
                       │           │            │
        master key persisted   none persisted   │
                       │           │            │
                     READY <── finalize ◄───────┘
                                   │
                          nothing held: AWAITING_SEED

    reset() from anywhere ──> RESET (start again -> AWAITING_SEED)

The master key is the only secret cached in memory. A fresh one
becomes durable only at the end of finalize_seed_initialization,
after every account and special key has been derived from it.

Usage:
    manager = create_security_manager(home, load_config(home))
    words = await manager.create_seed_phrase()
    await manager.start("hunter2")
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional, Sequence

from .audit import Auditor
from .backup import BackupProtector
from .blobs import LocalBlobStore
from .config import SeedGuardConfig
from .derivation import KeyDeriver
from .models import Account, KeyDerivationConfig, MasterKey, PgpKeyInfo, SessionState
from .pgp import PgpContext, PgpyContext
from .seed import MasterKeyFactory, MnemonicKeyFactory, SeedQuiz, SeedValidator
from .storage import DataStorage, EncryptedFileStorage

logger = logging.getLogger("seedguard.security")

KeyFactoryBuilder = Callable[[KeyDerivationConfig], MasterKeyFactory]


class NotInitializedError(RuntimeError):
    """Raised when configuration or the master key is required but absent."""


class ConfigurationError(ValueError):
    """Raised when a conflicting derivation config is installed."""


class SessionStateError(RuntimeError):
    """Raised when an operation is not allowed in the current state."""


class KeyBundleError(ValueError):
    """Raised when a key bundle is neither a public nor a private key block."""


def _armor_header(data: bytes) -> Optional[str]:
    """First armor header line of a key block, if any."""
    text = data.decode("utf-8", errors="replace")
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("-----BEGIN"):
            return line
    return None


class SecurityManager:
    """Seed, master key and PGP key lifecycle for one client.

    Args:
        storage: Encrypted record store (accounts + master key).
        pgp: OpenPGP engine.
        backup_protector: Backup signer bound to the backup identity.
        config: Derivation config; may instead be installed later with
            set_key_derivation_config.
        key_factory: Builds the master key factory for a config.
        language: Mnemonic wordlist language for seed validation.
        home: Home directory for the audit trail (None disables it).
    """

    def __init__(
        self,
        storage: DataStorage,
        pgp: PgpContext,
        backup_protector: Optional[BackupProtector] = None,
        config: Optional[KeyDerivationConfig] = None,
        key_factory: Optional[KeyFactoryBuilder] = None,
        language: str = "english",
        home: Optional[Path] = None,
    ) -> None:
        self._storage = storage
        self._pgp = pgp
        self._backup_protector = backup_protector or BackupProtector(pgp)
        self._build_factory = key_factory or (
            lambda c: MnemonicKeyFactory(c.seed_phrase_length, language)
        )
        self._language = language
        self._audit = Auditor(home, "security")

        self._state = SessionState.NEVER_STARTED
        self._master_key: Optional[MasterKey] = None
        self._seed_quiz: Optional[SeedQuiz] = None
        self._seed_validator: Optional[SeedValidator] = None

        self._config: Optional[KeyDerivationConfig] = None
        self._key_factory: Optional[MasterKeyFactory] = None
        self._deriver: Optional[KeyDeriver] = None
        if config is not None:
            self.set_key_derivation_config(config)

    # -------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------

    def set_key_derivation_config(self, config: KeyDerivationConfig) -> None:
        """Install the derivation config and bind the backup identity.

        Installing the same config again is a no-op.

        Raises:
            ValueError: If config is None.
            ConfigurationError: If a different config is already installed.
        """
        if config is None:
            raise ValueError("Key derivation config is required")
        if self._config is not None:
            if config == self._config:
                return
            raise ConfigurationError("Key derivation config is already set")

        self._config = config
        self._key_factory = self._build_factory(config)
        self._deriver = KeyDeriver(self._pgp, config, audit=self._audit)
        self._backup_protector.set_pgp_key_identity(config.backup_identity)
        logger.debug("Derivation config installed (%d special identities)", len(config.special_identities))

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == SessionState.READY

    def get_required_seed_phrase_length(self) -> int:
        return self._require_config().seed_phrase_length

    # -------------------------------------------------------------------
    # Seed phrase
    # -------------------------------------------------------------------

    async def is_seed_initialized(self) -> bool:
        """True if a master key is persisted in the record store."""
        return await self._storage.has_master_key()

    async def create_seed_phrase(self) -> list[str]:
        """Generate a new seed phrase and hold its master key.

        Returns:
            list[str]: The new phrase. Show it once; it is not stored.
        """
        factory = self._require_factory()
        self._refuse_when_ready()

        words = await asyncio.to_thread(factory.generate_seed_phrase)
        master_key = await asyncio.to_thread(factory.get_master_key)

        self._hold(master_key)
        self._seed_quiz = SeedQuiz(words)
        self._audit("SEED_CREATE", "New seed phrase generated")
        return words

    async def restore_seed_phrase(self, seed_phrase: Sequence[str]) -> None:
        """Rebuild the master key from a phrase and hold it.

        The phrase is not checked here. A wrong phrase gives a master
        key that simply does not reproduce the user's old keys.
        """
        if seed_phrase is None:
            raise ValueError("Seed phrase is required")
        factory = self._require_factory()
        self._refuse_when_ready()

        await asyncio.to_thread(factory.restore_seed_phrase, list(seed_phrase))
        master_key = await asyncio.to_thread(factory.get_master_key)

        self._hold(master_key)
        self._audit("SEED_RESTORE", "Master key restored from seed phrase")

    def get_seed_quiz(self) -> Optional[SeedQuiz]:
        return self._seed_quiz

    def get_seed_validator(self) -> SeedValidator:
        if self._seed_validator is None:
            self._seed_validator = SeedValidator(self._language)
        return self._seed_validator

    # -------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------

    async def start(self, password: str) -> SessionState:
        """Open the session.

        Opens (or creates) the record store, loads the PGP keyring, then
        loads the persisted master key or finalizes a held one. With no
        master key anywhere the controller waits in AWAITING_SEED.

        Returns:
            SessionState: READY or AWAITING_SEED.

        Raises:
            BadCredentialError: Wrong password, passed through untouched.
        """
        if password is None:
            raise ValueError("Password is required")

        previous = self._state
        self._state = SessionState.SESSION_STARTING
        try:
            if await self._storage.exists():
                await self._storage.open(password)
            else:
                await self._storage.create(password)

            await asyncio.to_thread(self._pgp.load_context)

            if await self._storage.has_master_key():
                await self._load_master_key()
            elif not await self.finalize_seed_initialization():
                self._state = SessionState.AWAITING_SEED
        except BaseException:
            self._state = previous
            raise

        self._audit("SESSION_START", f"Session started in state {self._state.value}")
        logger.info("Session started: %s", self._state.value)
        return self._state

    async def finalize_seed_initialization(self) -> bool:
        """Make a held master key durable.

        Derives the default key of every account and all special keys,
        then persists the master key. Does nothing when no master key
        is held, so it is safe to call speculatively.

        Returns:
            bool: True if a master key was finalized.
        """
        master_key = self._master_key
        if master_key is None:
            return False
        deriver = self._require_deriver()

        accounts = await self._storage.get_accounts()
        await deriver.ensure_all_account_keypairs(master_key, accounts)
        await deriver.ensure_special_keypairs(master_key)

        # Commit point: nothing before this line is visible after a restart.
        if not await self._storage.has_master_key():
            await self._storage.set_master_key(master_key)
            self._audit("MASTER_KEY_PERSIST", "Master key persisted")

        self._state = SessionState.READY
        return True

    async def reset(self) -> None:
        """Forget the master key and quiz, wipe the record store and keyring.

        Keys derived from the old master key go with it, so the next
        seed rebuilds every key from scratch.
        """
        self._master_key = None
        self._seed_quiz = None
        await self._storage.reset()
        await asyncio.to_thread(self._pgp.reset)
        self._state = SessionState.RESET
        self._audit("RESET", "Record store wiped, master key cleared")
        logger.info("Security manager reset")

    async def change_password(self, current_password: str, new_password: str) -> None:
        await self._storage.change_password(current_password, new_password)
        self._audit("PASSWORD_CHANGE", "Record store password changed")

    async def is_never_started(self) -> bool:
        return not await self._storage.exists()

    # -------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------

    async def add_account(self, account: Account) -> bool:
        """Store a new account and derive its key.

        Returns:
            bool: True if a key was derived.
        """
        deriver = self._require_deriver()
        await self._storage.add_account(account)
        return await deriver.ensure_account_keypair(self._master_key, account)

    async def ensure_account_keypair(self, account: Account) -> bool:
        """Derive the account's default key if missing.

        A no-op (False) while no master key is held.
        """
        return await self._require_deriver().ensure_account_keypair(self._master_key, account)

    async def ensure_special_keypairs(self) -> list[str]:
        deriver = self._require_deriver()
        return await deriver.ensure_special_keypairs(self._require_master_key())

    def list_user_public_keys(self) -> list[PgpKeyInfo]:
        return self._require_deriver().list_user_public_keys()

    def import_public_key(self, key_data: bytes) -> list[str]:
        if key_data is None:
            raise ValueError("Key data is required")
        return self._pgp.import_public_keys(key_data, armored=True)

    def import_key_bundle(self, key_bundle: bytes) -> list[str]:
        """Import an armored key block, public or private by its header.

        Raises:
            KeyBundleError: If the header names neither kind of key.
        """
        if key_bundle is None:
            raise ValueError("Key bundle is required")
        header = (_armor_header(key_bundle) or "").lower()
        if "private" in header:
            return self._pgp.import_secret_keys(key_bundle, armored=True)
        if "public" in header:
            return self._pgp.import_public_keys(key_bundle, armored=True)
        raise KeyBundleError("Data does not contain any key bundle")

    def export_public_key_ring(self, key_id: str) -> bytes:
        return self._pgp.export_public_key_ring(key_id)

    def get_backup_protector(self) -> BackupProtector:
        return self._backup_protector

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _hold(self, master_key: MasterKey) -> None:
        self._master_key = master_key
        self._state = SessionState.SEED_PENDING

    async def _load_master_key(self) -> None:
        self._master_key = await self._storage.get_master_key()
        if self._deriver is not None:
            # Engines that keep secret keys in memory need them back.
            accounts = await self._storage.get_accounts()
            await self._deriver.ensure_all_account_keypairs(self._master_key, accounts)
            await self._deriver.ensure_special_keypairs(self._master_key)
        else:
            logger.warning("No derivation config; keys not checked on load")
        self._state = SessionState.READY

    def _refuse_when_ready(self) -> None:
        if self._state in (SessionState.READY, SessionState.SESSION_STARTING):
            raise SessionStateError(
                f"Seed phrase cannot change in state {self._state.value}; reset first"
            )

    def _require_config(self) -> KeyDerivationConfig:
        if self._config is None:
            raise NotInitializedError("Key derivation config is not set")
        return self._config

    def _require_factory(self) -> MasterKeyFactory:
        self._require_config()
        assert self._key_factory is not None
        return self._key_factory

    def _require_deriver(self) -> KeyDeriver:
        self._require_config()
        assert self._deriver is not None
        return self._deriver

    def _require_master_key(self) -> MasterKey:
        if self._master_key is None:
            raise NotInitializedError("Master key is not established")
        return self._master_key


def create_security_manager(home: Path, config: SeedGuardConfig) -> SecurityManager:
    """Wire a SecurityManager over the on-disk stores of a home directory."""
    home = home.expanduser()
    pgp = PgpyContext(home)
    return SecurityManager(
        storage=EncryptedFileStorage(home, scrypt_n=config.scrypt_n),
        pgp=pgp,
        backup_protector=BackupProtector(pgp),
        config=config.derivation_config(),
        language=config.language,
        home=home,
    )


def backup_store_for(home: Path, config: SeedGuardConfig) -> LocalBlobStore:
    """Blob store configured for a home directory."""
    return LocalBlobStore(config.backup_store or home.expanduser() / "backups")
