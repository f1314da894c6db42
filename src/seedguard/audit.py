"""
Key-lifecycle audit trail.

One JSON object per line in ``<home>/security/audit.log``. The
security controller and the key deriver record seed creation and
restore, session starts, derivations, the master key commit and
resets here. Entries carry fingerprints and identities, never key
material or passwords.
"""

from __future__ import annotations

import logging
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from pydantic import BaseModel, Field, ValidationError

AUDIT_DIR_NAME = "security"
AUDIT_LOG_NAME = "audit.log"

logger = logging.getLogger("seedguard.audit")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditEntry(BaseModel):
    """One recorded lifecycle event."""

    timestamp: str = Field(default_factory=_utc_now)
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    component: Optional[str] = None
    metadata: Optional[dict] = None


def audit_log_path(home: Path) -> Path:
    """Location of the audit log inside a SeedGuard home."""
    return home / AUDIT_DIR_NAME / AUDIT_LOG_NAME


def audit_event(
    home: Path,
    event_type: str,
    detail: str,
    component: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> AuditEntry:
    """Record one lifecycle event.

    Args:
        home: SeedGuard home directory.
        event_type: SEED_CREATE, SEED_RESTORE, SESSION_START,
            KEY_DERIVE, MASTER_KEY_PERSIST, PASSWORD_CHANGE or RESET.
        detail: Short description for humans.
        component: Which part of seedguard emitted it.
        metadata: Fingerprints, identities and similar public facts.

    Returns:
        AuditEntry: What was appended.
    """
    entry = AuditEntry(
        event_type=event_type, detail=detail, component=component, metadata=metadata,
    )
    path = audit_log_path(home)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as log:
        log.write(entry.model_dump_json() + "\n")
    return entry


def _iter_entries(path: Path) -> Iterator[AuditEntry]:
    with path.open(encoding="utf-8") as log:
        for number, raw in enumerate(log, start=1):
            raw = raw.strip()
            if not raw:
                continue
            try:
                yield AuditEntry.model_validate_json(raw)
            except ValidationError:
                logger.warning("Skipping unreadable audit line %d in %s", number, path)


def read_audit_log(home: Path, limit: int = 0) -> list[AuditEntry]:
    """Recorded events in the order they were written.

    Lines that do not parse are skipped with a warning.

    Args:
        home: SeedGuard home directory.
        limit: Keep only the newest ``limit`` entries; 0 keeps all.
    """
    path = audit_log_path(home)
    if not path.exists():
        return []
    entries = list(_iter_entries(path))
    return entries[-limit:] if limit > 0 else entries


class Auditor:
    """Callable that records events for one component of one home.

    With no home nothing is written. An unwritable log is reported at
    debug level and the recorded operation carries on.
    """

    def __init__(self, home: Optional[Path], component: str) -> None:
        self._home = home
        self._component = component

    def __call__(
        self,
        event_type: str,
        detail: str,
        metadata: Optional[dict] = None,
    ) -> None:
        if self._home is None:
            logger.debug("%s: %s", event_type, detail)
            return
        try:
            audit_event(
                self._home, event_type, detail,
                component=self._component, metadata=metadata,
            )
        except OSError as exc:
            logger.debug("Audit log unavailable (%s): %s %s", exc, event_type, detail)
