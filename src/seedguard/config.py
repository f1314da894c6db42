"""
SeedGuard configuration.

Settings live in ``<home>/config.yaml``. Everything has a sane
default, so a missing file is not an error.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import SEEDGUARD_HOME
from .models import KeyDerivationConfig, SpecialKeyType

logger = logging.getLogger("seedguard.config")

CONFIG_FILE_NAME = "config.yaml"


class SeedGuardConfig(BaseModel):
    """Persistent configuration for a SeedGuard home."""

    seed_phrase_length: int = 12
    language: str = "english"
    special_identities: dict[SpecialKeyType, str] = Field(
        default_factory=lambda: {SpecialKeyType.BACKUP: "backup@seedguard.local"}
    )
    backup_store: Optional[Path] = Field(
        default=None,
        description="Blob directory for backup bundles; defaults to <home>/backups",
    )
    scrypt_n: int = Field(default=2**15, description="scrypt cost for the record store")

    def derivation_config(self) -> KeyDerivationConfig:
        """Build the immutable derivation config from these settings."""
        return KeyDerivationConfig(
            seed_phrase_length=self.seed_phrase_length,
            special_identities=dict(self.special_identities),
        )


def resolve_home(home: Optional[Path] = None) -> Path:
    """Expand the SeedGuard home, falling back to SEEDGUARD_HOME."""
    return (home or Path(SEEDGUARD_HOME)).expanduser()


def load_config(home: Path) -> SeedGuardConfig:
    """Load config.yaml from a home directory.

    Args:
        home: SeedGuard home directory.

    Returns:
        SeedGuardConfig loaded from config.yaml, or defaults.
    """
    config_file = home / CONFIG_FILE_NAME
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            config = SeedGuardConfig(**data)
            config.derivation_config()
            return config
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load config: %s — using defaults", exc)
    return SeedGuardConfig()


def save_config(home: Path, config: SeedGuardConfig) -> Path:
    """Write config.yaml into a home directory."""
    home.mkdir(parents=True, exist_ok=True)
    config_file = home / CONFIG_FILE_NAME
    config_file.write_text(
        yaml.safe_dump(config.model_dump(mode="json", exclude_none=True), default_flow_style=False),
        encoding="utf-8",
    )
    return config_file
