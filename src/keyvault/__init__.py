# Key Vault - Main Package
#
# Local, passphrase-protected store for third-party API keys:
# encrypted at rest, rotated on schedule, usage-monitored and audited.

__version__ = "0.1.0"
__author__ = "Key Vault Team"
__description__ = "Local encrypted API key vault with rotation, usage monitoring and audit trail"

from .core import (
    AlreadyInitializedError,
    InvalidPassphraseError,
    NotInitializedError,
    RecordNotFoundError,
    StorageError,
    ValidationError,
    VaultError,
    VaultLockedError,
    VaultSettings,
    load_settings,
)
from .core.audit_log import AuditAction, AuditLog
from .vault import EncryptionService, VaultStore
from .rotation import RotationEngine, RotationEvent
from .monitoring import UsageMonitor

__all__ = [
    "__version__",
    "VaultStore",
    "EncryptionService",
    "AuditLog",
    "AuditAction",
    "RotationEngine",
    "RotationEvent",
    "UsageMonitor",
    "VaultSettings",
    "load_settings",
    "VaultError",
    "NotInitializedError",
    "AlreadyInitializedError",
    "VaultLockedError",
    "RecordNotFoundError",
    "ValidationError",
    "StorageError",
    "InvalidPassphraseError",
]
