# Core Module - Audit Log
#
# Append-only JSON Lines record of every security-relevant vault event.
# One self-delimited JSON object per line; readers skip lines that fail to
# parse (e.g. a partially written tail), so the log can be queried while
# the same process keeps appending.
#
# When the file grows past ``max_bytes`` it is renamed to
# ``<path>.<timestamp>`` and a fresh file starts. Rotation only renames;
# entries are never rewritten or dropped.

import json
import logging
import os
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .clock import Clock, parse_timestamp, resolve_clock, to_iso
from .config import DEFAULT_AUDIT_MAX_BYTES
from .errors import StorageError, ValidationError
from ..vault.encryption import EncryptionService

logger = logging.getLogger(__name__)

DEFAULT_ACTOR = "system"
EVENT_ID_BYTES = 8


class AuditAction(str, Enum):
    """Action tags written to the audit log."""

    KEY_CREATED = "KEY_CREATED"
    KEY_ACCESSED = "KEY_ACCESSED"
    KEY_UPDATED = "KEY_UPDATED"
    KEY_DELETED = "KEY_DELETED"
    KEY_ROTATED = "KEY_ROTATED"
    KEY_USED = "KEY_USED"
    VAULT_LOCKED = "VAULT_LOCKED"
    VAULT_UNLOCKED = "VAULT_UNLOCKED"
    AUTH_FAILURE = "AUTH_FAILURE"


TARGET_KEY = "api_key"
TARGET_VAULT = "vault"

DateLike = Union[str, datetime]


class AuditLog:
    """
    Append-only, file-backed audit trail.

    Features:
    - One JSON object per line, stamped with timestamp + random event id
    - Size-triggered rotation by rename (default 10 MiB)
    - Forensic queries by action, target id, date range and outcome
    - Thread-safe appends within one process
    """

    MAX_LOG_SIZE = DEFAULT_AUDIT_MAX_BYTES

    def __init__(
        self,
        log_path: Union[str, Path],
        max_bytes: int = MAX_LOG_SIZE,
        clock: Optional[Clock] = None,
    ):
        self.log_path = Path(log_path)
        self.max_bytes = max_bytes
        self._clock = resolve_clock(clock)
        self._lock = threading.RLock()

    # ── Writing ─────────────────────────────────────────────────────

    def append(
        self,
        action: Union[AuditAction, str],
        target: Optional[str] = None,
        target_id: Optional[str] = None,
        actor: Optional[str] = None,
        success: Optional[bool] = True,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Append one event and return the stored entry.

        ``success`` is true unless explicitly ``False``.

        Raises:
            StorageError: If the log file cannot be written.
        """
        entry = {
            "timestamp": to_iso(self._clock()),
            "event_id": EncryptionService.generate_secret(EVENT_ID_BYTES),
            "action": action.value if isinstance(action, AuditAction) else str(action),
            "target": target,
            "target_id": target_id,
            "actor": actor or DEFAULT_ACTOR,
            "success": success is not False,
            "details": details or {},
        }
        line = json.dumps(entry, default=str) + "\n"

        with self._lock:
            try:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.log_path, "a", encoding="utf-8") as f:
                    f.write(line)
                os.chmod(self.log_path, 0o600)
                self._rotate_if_needed()
            except OSError as e:
                raise StorageError(f"Failed to write audit log {self.log_path}: {e}") from e

        return entry

    def _rotate_if_needed(self) -> Optional[Path]:
        """Rename the log aside once it exceeds ``max_bytes``."""
        if not self.log_path.exists():
            return None
        if self.log_path.stat().st_size <= self.max_bytes:
            return None

        stamp = to_iso(self._clock()).replace("+00:00", "Z")
        stamp = stamp.replace(":", "-").replace(".", "-")
        archive = self.log_path.with_name(f"{self.log_path.name}.{stamp}")
        suffix = 1
        while archive.exists():
            archive = self.log_path.with_name(f"{self.log_path.name}.{stamp}-{suffix}")
            suffix += 1

        os.rename(self.log_path, archive)
        logger.info("Audit log rotated to %s", archive.name)
        return archive

    # ── Convenience wrappers ────────────────────────────────────────

    def log_key_created(self, record: Dict[str, Any], actor: Optional[str] = None) -> Dict[str, Any]:
        return self.append(
            AuditAction.KEY_CREATED, TARGET_KEY, record.get("id"), actor=actor,
            details={
                "name": record.get("name"),
                "service": record.get("service"),
                "rotation_period_days": record.get("rotation_period_days"),
            },
        )

    def log_key_accessed(self, record: Dict[str, Any], actor: Optional[str] = None) -> Dict[str, Any]:
        return self.append(
            AuditAction.KEY_ACCESSED, TARGET_KEY, record.get("id"), actor=actor,
            details={"name": record.get("name"), "service": record.get("service")},
        )

    def log_key_updated(
        self, record_id: str, name: Optional[str], changes: List[str],
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.append(
            AuditAction.KEY_UPDATED, TARGET_KEY, record_id, actor=actor,
            details={"name": name, "changes": changes},
        )

    def log_key_deleted(self, record: Dict[str, Any], actor: Optional[str] = None) -> Dict[str, Any]:
        return self.append(
            AuditAction.KEY_DELETED, TARGET_KEY, record.get("id"), actor=actor,
            details={"name": record.get("name"), "service": record.get("service")},
        )

    def log_key_rotated(
        self, record_id: str, name: Optional[str], reason: str = "scheduled",
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.append(
            AuditAction.KEY_ROTATED, TARGET_KEY, record_id, actor=actor,
            details={"name": name, "reason": reason},
        )

    def log_key_used(
        self, record_id: str, name: Optional[str], action: str,
        metadata: Optional[Dict[str, Any]] = None, actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.append(
            AuditAction.KEY_USED, TARGET_KEY, record_id, actor=actor,
            details={"name": name, "action": action, "metadata": metadata or {}},
        )

    def log_vault_unlocked(self, details: Optional[Dict[str, Any]] = None, actor: Optional[str] = None) -> Dict[str, Any]:
        return self.append(AuditAction.VAULT_UNLOCKED, TARGET_VAULT, actor=actor, details=details)

    def log_vault_locked(self, details: Optional[Dict[str, Any]] = None, actor: Optional[str] = None) -> Dict[str, Any]:
        return self.append(AuditAction.VAULT_LOCKED, TARGET_VAULT, actor=actor, details=details)

    def log_auth_failure(self, details: Optional[Dict[str, Any]] = None, actor: Optional[str] = None) -> Dict[str, Any]:
        return self.append(
            AuditAction.AUTH_FAILURE, TARGET_VAULT, actor=actor, success=False, details=details,
        )

    # ── Reading ─────────────────────────────────────────────────────

    def _read_lines(self) -> List[str]:
        if not self.log_path.exists():
            return []
        try:
            with open(self.log_path, "r", encoding="utf-8", errors="replace") as f:
                return [line for line in f.read().split("\n") if line.strip()]
        except OSError as e:
            raise StorageError(f"Failed to read audit log {self.log_path}: {e}") from e

    @staticmethod
    def _parse_line(line: str) -> Optional[Dict[str, Any]]:
        try:
            entry = json.loads(line)
            parse_timestamp(entry["timestamp"])
        except (ValueError, KeyError, TypeError):
            return None
        return entry if isinstance(entry, dict) else None

    def query(
        self,
        action: Optional[Union[AuditAction, str]] = None,
        target_id: Optional[str] = None,
        start_date: Optional[DateLike] = None,
        end_date: Optional[DateLike] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Filtered read of the current log file, newest first.

        Date bounds are inclusive. Unparseable lines are skipped.

        Raises:
            ValidationError: If ``limit`` is negative.
        """
        if limit is not None and limit < 0:
            raise ValidationError(f"limit must be >= 0, got {limit}")
        if isinstance(action, AuditAction):
            action = action.value
        start = parse_timestamp(start_date) if start_date is not None else None
        end = parse_timestamp(end_date) if end_date is not None else None

        matches = []
        # Newest lines first so same-timestamp entries keep append order reversed
        for line in reversed(self._read_lines()):
            entry = self._parse_line(line)
            if entry is None:
                continue

            if action is not None and entry.get("action") != action:
                continue
            if target_id is not None and entry.get("target_id") != target_id:
                continue
            ts = parse_timestamp(entry["timestamp"])
            if start is not None and ts < start:
                continue
            if end is not None and ts > end:
                continue
            if success is not None and entry.get("success") is not success:
                continue

            matches.append((ts, entry))

        matches.sort(key=lambda pair: pair[0], reverse=True)
        results = [entry for _, entry in matches]

        if limit is not None:
            return results[:limit]
        return results

    def stats(self) -> Dict[str, Any]:
        """Event count, file size and a per-action breakdown."""
        if not self.log_path.exists():
            return {"total_events": 0, "file_size": 0, "action_counts": {}}

        lines = self._read_lines()
        action_counts: Dict[str, int] = {}
        for line in lines:
            entry = self._parse_line(line)
            if entry is None:
                continue
            action = entry.get("action", "unknown")
            action_counts[action] = action_counts.get(action, 0) + 1

        return {
            "total_events": len(lines),
            "file_size": self.log_path.stat().st_size,
            "action_counts": action_counts,
        }
