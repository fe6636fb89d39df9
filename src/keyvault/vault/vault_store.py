# Vault - Encrypted credential store
#
# JSON vault file with AES-256-CTR encrypted secret values
# Locked / Unlocked session state around a PBKDF2-derived key
# CRUD, rotation and usage recording for API key records
# Passphrase verification via an encrypted canary

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Union

from .encryption import EncryptionService
from .models import (
    SCHEMA_VERSION,
    CredentialRecord,
    UsageEvent,
    VaultFile,
    VaultMetadata,
)
from ..core.clock import Clock, add_days, parse_timestamp, resolve_clock, to_iso
from ..core.config import DEFAULT_KDF_ITERATIONS, DEFAULT_ROTATION_DAYS, MIN_KDF_ITERATIONS
from ..core.errors import (
    AlreadyInitializedError,
    InvalidPassphraseError,
    NotInitializedError,
    RecordNotFoundError,
    StorageError,
    ValidationError,
    VaultLockedError,
)

if TYPE_CHECKING:
    from ..core.audit_log import AuditLog

logger = logging.getLogger(__name__)

RECORD_ID_BYTES = 16
GENERATED_KEY_BYTES = 32  # 256 bits of entropy

_UPDATABLE_FIELDS = {
    "name", "service", "key", "rotation_period_days", "enabled", "tags", "metadata",
}


# ── Input validation ────────────────────────────────────────────────


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be a non-empty string")
    return value


def _require_period(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(
            f"rotation_period_days must be a positive integer, got {value!r}"
        )
    return value


def _normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        raise ValidationError("tags must be a collection of strings, not a string")
    result: List[str] = []
    for tag in tags:
        if not isinstance(tag, str) or not tag:
            raise ValidationError(f"Invalid tag: {tag!r}")
        if tag not in result:
            result.append(tag)
    return result


def _require_mapping(value: Any, field_name: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"{field_name} must be a mapping")
    return dict(value)


class VaultStore:
    """
    Encrypted-at-rest collection of API key records.

    State machine: Uninitialized -> Locked -> Unlocked, with Locked <-> Unlocked
    cycles via unlock()/lock(). Every record operation requires Unlocked.

    Security:
    - Each secret encrypted with AES-256-CTR under a PBKDF2-derived key
    - Master passphrase never stored (only the salt and an encrypted canary)
    - Derived key held in memory only while unlocked
    - Every mutation rewrites the whole file atomically (temp file + rename)

    One instance assumes it is the only writer of its vault file.
    """

    CANARY_PLAINTEXT = "KEYVAULT_VAULT_OK"

    def __init__(
        self,
        vault_path: Union[str, Path],
        audit: Optional["AuditLog"] = None,
        default_rotation_days: int = DEFAULT_ROTATION_DAYS,
        kdf_iterations: int = DEFAULT_KDF_ITERATIONS,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            vault_path: Path to the JSON vault file
            audit: Optional audit log receiving access/mutation events
            default_rotation_days: Rotation period for records created without one
            kdf_iterations: PBKDF2 rounds used when creating a new vault
            clock: Callable returning the current UTC datetime
        """
        if kdf_iterations < MIN_KDF_ITERATIONS:
            raise ValueError(f"kdf_iterations must be >= {MIN_KDF_ITERATIONS}")

        self.vault_path = Path(vault_path)
        self.audit = audit
        self.default_rotation_days = _require_period(default_rotation_days)
        self.kdf_iterations = kdf_iterations
        self._clock = resolve_clock(clock)
        self._lock = threading.RLock()

        self._data: Optional[VaultFile] = None
        self._key: Optional[bytes] = None

    # ── State ───────────────────────────────────────────────────────

    def exists(self) -> bool:
        """True when a non-empty vault file is present."""
        return self.vault_path.exists() and self.vault_path.stat().st_size > 0

    @property
    def is_unlocked(self) -> bool:
        return self._key is not None

    def _now(self) -> str:
        return to_iso(self._clock())

    def _ensure_unlocked(self) -> VaultFile:
        if self._key is None or self._data is None:
            raise VaultLockedError("Vault is locked. Unlock it first.")
        return self._data

    def _find(self, record_id: str) -> CredentialRecord:
        record = self._ensure_unlocked().find(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    def _touch(self) -> None:
        self._data.metadata.updated_at = self._now()

    # ── Persistence ─────────────────────────────────────────────────

    def _load(self) -> VaultFile:
        try:
            with open(self.vault_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            return VaultFile.from_dict(raw, default_iterations=MIN_KDF_ITERATIONS)
        except OSError as e:
            raise StorageError(f"Failed to read vault {self.vault_path}: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Vault file {self.vault_path} is corrupt: {e}") from e

    def _save(self) -> None:
        """Write the full vault to a temp file, then atomically replace."""
        payload = json.dumps(self._data.to_dict(), indent=2)
        directory = self.vault_path.parent
        tmp_path = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.vault_path.name}.", suffix=".tmp", dir=str(directory)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.vault_path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StorageError(f"Failed to write vault {self.vault_path}: {e}") from e

    # ── Lifecycle ───────────────────────────────────────────────────

    def init(self, passphrase: str) -> Dict[str, Any]:
        """
        Create a new, empty vault and leave it unlocked.

        Raises:
            AlreadyInitializedError: If a vault file already exists.
            ValidationError: If the passphrase is empty.
        """
        with self._lock:
            if self.exists():
                raise AlreadyInitializedError(
                    f"Vault already exists at {self.vault_path}. Use unlock() instead."
                )
            if not isinstance(passphrase, str) or not passphrase:
                raise ValidationError("Passphrase must be a non-empty string")

            # Remove stale 0-byte file if present
            if self.vault_path.exists():
                self.vault_path.unlink()

            key, salt = EncryptionService.derive_key(
                passphrase, iterations=self.kdf_iterations
            )
            now = self._now()
            self._data = VaultFile(
                schema_version=SCHEMA_VERSION,
                metadata=VaultMetadata(
                    created_at=now,
                    updated_at=now,
                    salt=EncryptionService.encode_for_storage(salt),
                    kdf_iterations=self.kdf_iterations,
                    verifier=EncryptionService.encrypt(self.CANARY_PLAINTEXT, key),
                ),
            )
            try:
                self._save()
            except StorageError:
                self._data = None
                raise
            self._key = key

            logger.info("Vault initialized at %s", self.vault_path)
            return {"success": True, "message": "Vault initialized successfully"}

    def unlock(self, passphrase: str) -> Dict[str, Any]:
        """
        Load the vault and derive the working key.

        Raises:
            NotInitializedError: If no vault file exists.
            InvalidPassphraseError: If the canary does not decrypt.
        """
        with self._lock:
            if not self.exists():
                raise NotInitializedError(
                    f"Vault does not exist at {self.vault_path}. Initialize it first."
                )
            if not isinstance(passphrase, str):
                raise ValidationError("Passphrase must be a string")

            data = self._load()
            salt = EncryptionService.decode_from_storage(data.metadata.salt)
            key, _ = EncryptionService.derive_key(
                passphrase, salt, iterations=data.metadata.kdf_iterations
            )

            verifier = data.metadata.verifier
            if verifier is not None:
                canary = EncryptionService.decrypt(verifier, key)
                if not EncryptionService.matches_hash(
                    canary, EncryptionService.hash(self.CANARY_PLAINTEXT)
                ):
                    self._data = None
                    self._key = None
                    logger.warning("Vault unlock rejected: wrong passphrase")
                    if self.audit is not None:
                        self.audit.log_auth_failure({"reason": "invalid passphrase"})
                    raise InvalidPassphraseError("Invalid master passphrase")

            self._data = data
            self._key = key

            if self.audit is not None:
                self.audit.log_vault_unlocked({"record_count": len(data.records)})
            logger.info("Vault unlocked (%d records)", len(data.records))
            return {"success": True, "message": "Vault unlocked successfully"}

    def lock(self) -> Dict[str, Any]:
        """Discard key material. Locking a locked vault is a no-op."""
        with self._lock:
            was_unlocked = self._key is not None
            self._key = None
            self._data = None
            if was_unlocked:
                if self.audit is not None:
                    self.audit.log_vault_locked()
                logger.info("Vault locked")
            return {"success": True, "message": "Vault locked"}

    # ── Records ─────────────────────────────────────────────────────

    def add_record(
        self,
        name: str,
        key: str,
        service: str = "unknown",
        rotation_period_days: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Encrypt and store a new API key.

        Returns:
            The created record's metadata plus ``key``: the plaintext secret.
            This is the only time the raw value is handed back unasked.
        """
        with self._lock:
            data = self._ensure_unlocked()
            _require_text(name, "name")
            _require_text(key, "key")
            _require_text(service, "service")
            period = _require_period(
                self.default_rotation_days if rotation_period_days is None
                else rotation_period_days
            )
            tag_list = _normalize_tags(tags)
            meta = _require_mapping(metadata, "metadata")

            record_id = EncryptionService.generate_secret(RECORD_ID_BYTES)
            while data.find(record_id) is not None:
                record_id = EncryptionService.generate_secret(RECORD_ID_BYTES)

            now_dt = self._clock()
            now = to_iso(now_dt)
            record = CredentialRecord(
                id=record_id,
                name=name,
                service=service,
                ciphertext=EncryptionService.encrypt(key, self._key),
                key_hash=EncryptionService.hash(key),
                rotation_period_days=period,
                last_rotated_at=now,
                next_rotation_at=to_iso(add_days(now_dt, period)),
                created_at=now,
                updated_at=now,
                tags=tag_list,
                metadata=meta,
            )

            data.records.append(record)
            self._touch()
            try:
                self._save()
            except StorageError:
                data.records.pop()
                raise

            result = record.meta_view()
            result["key"] = key
            if self.audit is not None:
                self.audit.log_key_created(result)
            logger.info("Key added: id=%s service=%s", record.id, record.service)
            return result

    def get_record(self, record_id: str) -> Dict[str, Any]:
        """Return a record with its secret decrypted under ``key``."""
        with self._lock:
            record = self._find(record_id)
            result = record.meta_view()
            result["key"] = EncryptionService.decrypt(record.ciphertext, self._key)
            if self.audit is not None:
                self.audit.log_key_accessed(result)
            return result

    def get_record_meta(self, record_id: str) -> Dict[str, Any]:
        """Return a record's metadata without the secret."""
        with self._lock:
            return self._find(record_id).meta_view()

    def list_records(
        self, service: Optional[str] = None, tag: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Metadata views of all records, in insertion order."""
        with self._lock:
            data = self._ensure_unlocked()
            return [
                r.meta_view() for r in data.records
                if (service is None or r.service == service)
                and (tag is None or tag in r.tags)
            ]

    def verify_record_key(self, record_id: str, candidate: str) -> bool:
        """Check a caller-supplied key against the stored digest."""
        with self._lock:
            record = self._find(record_id)
            return EncryptionService.matches_hash(candidate, record.key_hash)

    def update_record(self, record_id: str, **updates: Any) -> Dict[str, Any]:
        """
        Merge the supplied fields into a record.

        Accepted fields: name, service, key, rotation_period_days, enabled,
        tags, metadata (merged into existing metadata).

        Returns:
            Updated metadata view.
        """
        with self._lock:
            record = self._find(record_id)

            unknown = set(updates) - _UPDATABLE_FIELDS
            if unknown:
                raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

            # Validate everything before touching the record
            changes: Dict[str, Any] = {}
            if updates.get("name") is not None:
                changes["name"] = _require_text(updates["name"], "name")
            if updates.get("service") is not None:
                changes["service"] = _require_text(updates["service"], "service")
            if updates.get("rotation_period_days") is not None:
                changes["rotation_period_days"] = _require_period(updates["rotation_period_days"])
            if updates.get("enabled") is not None:
                if not isinstance(updates["enabled"], bool):
                    raise ValidationError("enabled must be a boolean")
                changes["enabled"] = updates["enabled"]
            if updates.get("tags") is not None:
                changes["tags"] = _normalize_tags(updates["tags"])
            if updates.get("metadata") is not None:
                changes["metadata"] = _require_mapping(updates["metadata"], "metadata")
            if updates.get("key") is not None:
                changes["key"] = _require_text(updates["key"], "key")

            if not changes:
                return record.meta_view()

            previous = CredentialRecord.from_dict(record.to_dict())
            now_dt = self._clock()

            if "name" in changes:
                record.name = changes["name"]
            if "service" in changes:
                record.service = changes["service"]
            if "rotation_period_days" in changes:
                record.rotation_period_days = changes["rotation_period_days"]
                record.next_rotation_at = to_iso(add_days(
                    parse_timestamp(record.last_rotated_at), record.rotation_period_days
                ))
            if "enabled" in changes:
                record.enabled = changes["enabled"]
            if "tags" in changes:
                record.tags = changes["tags"]
            if "metadata" in changes:
                record.metadata = {**record.metadata, **changes["metadata"]}
            if "key" in changes:
                record.ciphertext = EncryptionService.encrypt(changes["key"], self._key)
                record.key_hash = EncryptionService.hash(changes["key"])

            record.updated_at = to_iso(now_dt)
            self._touch()
            try:
                self._save()
            except StorageError:
                self._restore(previous)
                raise

            if self.audit is not None:
                self.audit.log_key_updated(record.id, record.name, sorted(changes))
            return record.meta_view()

    def delete_record(self, record_id: str) -> Dict[str, Any]:
        """Remove a record by id."""
        with self._lock:
            data = self._ensure_unlocked()
            record = self._find(record_id)
            index = data.records.index(record)
            data.records.pop(index)
            self._touch()
            try:
                self._save()
            except StorageError:
                data.records.insert(index, record)
                raise

            if self.audit is not None:
                self.audit.log_key_deleted(record.meta_view())
            logger.info("Key deleted: id=%s", record_id)
            return {"success": True, "message": "Key deleted successfully"}

    def rotate_record(self, record_id: str, new_key: Optional[str] = None) -> Dict[str, Any]:
        """
        Replace a record's secret and restart its rotation schedule.

        Args:
            record_id: Record to rotate
            new_key: Replacement secret; 256 random bits when omitted

        Returns:
            id, name, the new plaintext ``key``, previous key hash and the
            new schedule.
        """
        with self._lock:
            record = self._find(record_id)
            if new_key is not None:
                _require_text(new_key, "new_key")
            secret = new_key if new_key is not None else EncryptionService.generate_secret(
                GENERATED_KEY_BYTES
            )

            previous = CredentialRecord.from_dict(record.to_dict())
            now_dt = self._clock()
            now = to_iso(now_dt)

            record.ciphertext = EncryptionService.encrypt(secret, self._key)
            record.key_hash = EncryptionService.hash(secret)
            record.last_rotated_at = now
            record.next_rotation_at = to_iso(add_days(now_dt, record.rotation_period_days))
            record.updated_at = now
            self._touch()
            try:
                self._save()
            except StorageError:
                self._restore(previous)
                raise

            logger.info("Key rotated: id=%s", record_id)
            return {
                "id": record.id,
                "name": record.name,
                "key": secret,
                "previous_key_hash": previous.key_hash,
                "last_rotated_at": record.last_rotated_at,
                "next_rotation_at": record.next_rotation_at,
            }

    def record_usage(
        self,
        record_id: str,
        action: str = "access",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Count one use of a key and append it to the bounded history."""
        with self._lock:
            record = self._find(record_id)
            _require_text(action, "action")
            meta = _require_mapping(metadata, "metadata")

            previous = CredentialRecord.from_dict(record.to_dict())
            now = self._now()
            record.usage_count += 1
            record.last_used_at = now
            record.append_usage(UsageEvent(timestamp=now, action=action, metadata=meta))
            self._touch()
            try:
                self._save()
            except StorageError:
                self._restore(previous)
                raise

            return {"success": True, "usage_count": record.usage_count}

    def get_records_due_for_rotation(self) -> List[Dict[str, Any]]:
        """Enabled records whose next rotation is now or in the past."""
        with self._lock:
            data = self._ensure_unlocked()
            now = self._clock()
            return [
                r.meta_view() for r in data.records
                if r.enabled and parse_timestamp(r.next_rotation_at) <= now
            ]

    def get_usage_stats(self, record_id: str) -> Dict[str, Any]:
        with self._lock:
            record = self._find(record_id)
            return {
                "id": record.id,
                "name": record.name,
                "usage_count": record.usage_count,
                "last_used_at": record.last_used_at,
                "usage_history": [e.to_dict() for e in record.usage_history],
            }

    def _restore(self, snapshot: CredentialRecord) -> None:
        """Put a record back to its pre-mutation state after a failed save."""
        records = self._data.records
        for i, record in enumerate(records):
            if record.id == snapshot.id:
                records[i] = snapshot
                return
