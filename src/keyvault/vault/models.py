"""Vault data model: credential records and the persisted vault file.

The vault file is a single JSON document:

    {
      "schema_version": 1,
      "metadata": {"created_at", "updated_at", "salt", "kdf_iterations", "verifier"},
      "records": [CredentialRecord, ...]
    }

Plaintext secrets never appear here; a record only holds the ciphertext
and a SHA-256 digest of the plaintext.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

SCHEMA_VERSION = 1
USAGE_HISTORY_CAPACITY = 100


# ── Usage history ───────────────────────────────────────────────────


@dataclass
class UsageEvent:
    """One recorded use of a credential."""

    timestamp: str
    action: str = "access"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "action": self.action,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UsageEvent":
        return cls(
            timestamp=data["timestamp"],
            action=data.get("action", "access"),
            metadata=dict(data.get("metadata") or {}),
        )


def _new_history() -> Deque[UsageEvent]:
    return deque(maxlen=USAGE_HISTORY_CAPACITY)


# ── Credential record ───────────────────────────────────────────────


@dataclass
class CredentialRecord:
    """A single managed API key and its lifecycle metadata."""

    id: str
    name: str
    service: str
    ciphertext: str
    key_hash: str
    rotation_period_days: int
    last_rotated_at: str
    next_rotation_at: str
    created_at: str
    updated_at: str
    enabled: bool = True
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    usage_count: int = 0
    last_used_at: Optional[str] = None
    # Ring buffer: appending past capacity evicts the oldest entry
    usage_history: Deque[UsageEvent] = field(default_factory=_new_history)

    def append_usage(self, event: UsageEvent) -> None:
        self.usage_history.append(event)

    def meta_view(self) -> dict:
        """Everything except the ciphertext. Safe for listing."""
        return {
            "id": self.id,
            "name": self.name,
            "service": self.service,
            "key_hash": self.key_hash,
            "rotation_period_days": self.rotation_period_days,
            "last_rotated_at": self.last_rotated_at,
            "next_rotation_at": self.next_rotation_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "enabled": self.enabled,
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "usage_count": self.usage_count,
            "last_used_at": self.last_used_at,
            "usage_history": [e.to_dict() for e in self.usage_history],
        }

    def to_dict(self) -> dict:
        """Persisted form (includes the ciphertext)."""
        data = self.meta_view()
        data["ciphertext"] = self.ciphertext
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CredentialRecord":
        history = _new_history()
        history.extend(UsageEvent.from_dict(e) for e in data.get("usage_history") or [])
        return cls(
            id=data["id"],
            name=data["name"],
            service=data.get("service", "unknown"),
            ciphertext=data["ciphertext"],
            key_hash=data["key_hash"],
            rotation_period_days=int(data["rotation_period_days"]),
            last_rotated_at=data["last_rotated_at"],
            next_rotation_at=data["next_rotation_at"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            enabled=bool(data.get("enabled", True)),
            tags=list(data.get("tags") or []),
            metadata=dict(data.get("metadata") or {}),
            usage_count=int(data.get("usage_count") or 0),
            last_used_at=data.get("last_used_at"),
            usage_history=history,
        )


# ── Vault file ──────────────────────────────────────────────────────


@dataclass
class VaultMetadata:
    created_at: str
    updated_at: str
    salt: str  # base64, fixed at init
    kdf_iterations: int
    verifier: Optional[str] = None  # encrypted canary; None = optimistic unlock

    def to_dict(self) -> dict:
        return {
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "salt": self.salt,
            "kdf_iterations": self.kdf_iterations,
            "verifier": self.verifier,
        }

    @classmethod
    def from_dict(cls, data: dict, default_iterations: int) -> "VaultMetadata":
        return cls(
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            salt=data["salt"],
            kdf_iterations=int(data.get("kdf_iterations") or default_iterations),
            verifier=data.get("verifier"),
        )


@dataclass
class VaultFile:
    """The persisted root object."""

    metadata: VaultMetadata
    records: List[CredentialRecord] = field(default_factory=list)
    schema_version: int = SCHEMA_VERSION

    def find(self, record_id: str) -> Optional[CredentialRecord]:
        for record in self.records:
            if record.id == record_id:
                return record
        return None

    def to_dict(self) -> dict:
        return {
            "schema_version": self.schema_version,
            "metadata": self.metadata.to_dict(),
            "records": [r.to_dict() for r in self.records],
        }

    @classmethod
    def from_dict(cls, data: dict, default_iterations: int) -> "VaultFile":
        return cls(
            schema_version=int(data.get("schema_version", SCHEMA_VERSION)),
            metadata=VaultMetadata.from_dict(data["metadata"], default_iterations),
            records=[CredentialRecord.from_dict(r) for r in data.get("records") or []],
        )
