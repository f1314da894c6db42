"""
Key derivation orchestrator.

Makes sure every mail account and every special-purpose identity has
its PGP keypair, derived from the master key exactly once. Existing
keys are never regenerated or overwritten, so running this on every
start is safe.

The existence check and the derivation for one identity run under
that identity's lock: two concurrent requests for the same identity
produce one key, requests for different identities run in parallel.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable, Optional

from .models import Account, KeyDerivationConfig, MasterKey, PgpKeyInfo
from .pgp import PgpContext, identity_address

logger = logging.getLogger("seedguard.derivation")


class KeyDeriver:
    """Idempotent PGP keypair derivation for accounts and special roles.

    Args:
        pgp: OpenPGP engine that stores the keys.
        config: Derivation config holding the special identity map.
        audit: Optional audit callable (event_type, detail, metadata).
    """

    def __init__(
        self,
        pgp: PgpContext,
        config: KeyDerivationConfig,
        audit: Optional[Callable[..., None]] = None,
    ) -> None:
        self._pgp = pgp
        self._config = config
        self._audit = audit or (lambda *args, **kwargs: None)
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def config(self) -> KeyDerivationConfig:
        return self._config

    async def ensure_account_keypair(
        self,
        master_key: Optional[MasterKey],
        account: Account,
    ) -> bool:
        """Derive the default keypair for an account if it has none.

        Args:
            master_key: Current master key, or None if not established.
            account: The mail account.

        Returns:
            bool: True if a key was derived, False if it already existed
            or no master key is held.

        Raises:
            ValueError: If account is missing or uses a reserved identity.
        """
        if account is None:
            raise ValueError("Account is required")
        if self._config.role_for(account.user_identity) is not None:
            raise ValueError(f"{account.user_identity} is a reserved identity")
        if master_key is None:
            return False
        return await self._ensure(master_key, account.pgp_user_id, account.pgp_key_tag)

    async def ensure_all_account_keypairs(
        self,
        master_key: Optional[MasterKey],
        accounts: Iterable[Account],
    ) -> list[str]:
        """Run ensure_account_keypair for each account, one at a time.

        The first failure stops the run and propagates; accounts after
        it are left for the next start.

        Returns:
            list[str]: Identities that got a new key.
        """
        derived = []
        for account in accounts:
            if await self.ensure_account_keypair(master_key, account):
                derived.append(account.user_identity)
        return derived

    async def ensure_special_keypairs(self, master_key: MasterKey) -> list[str]:
        """Derive a keypair for each special identity that lacks one.

        Returns:
            list[str]: Special identities that got a new key.
        """
        if master_key is None:
            raise ValueError("Master key is required")
        derived = []
        for role, identity in self._config.special_identities.items():
            if await self._ensure(master_key, identity, None):
                logger.info("Derived %s key", role.value)
                derived.append(identity)
        return derived

    def mark_special(self, keys: Iterable[PgpKeyInfo]) -> list[PgpKeyInfo]:
        """Annotate keys with the special role their address belongs to."""
        marked = []
        for key in keys:
            role = self._config.role_for(key.email) if key.email else None
            marked.append(key.model_copy(update={"special_role": role}))
        return marked

    def list_user_public_keys(self) -> list[PgpKeyInfo]:
        """All public keys except those of special identities."""
        keys = self.mark_special(self._pgp.list_public_keys())
        return [k for k in keys if k.special_role is None]

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _lock_for(self, address: str) -> asyncio.Lock:
        return self._locks.setdefault(address, asyncio.Lock())

    async def _ensure(self, master_key: MasterKey, identity: str, tag: Optional[str]) -> bool:
        address = identity_address(identity)
        async with self._lock_for(address):
            if self._pgp.has_secret_key(address):
                logger.debug("Key for %s already exists, skipping", address)
                return False
            fingerprint = await asyncio.to_thread(
                self._pgp.derive_keypair, master_key, identity, tag
            )
        self._audit(
            "KEY_DERIVE",
            f"Derived key for {address}",
            metadata={"identity": address, "fingerprint": fingerprint},
        )
        return True
