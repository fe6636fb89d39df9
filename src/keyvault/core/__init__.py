# Core Module - Shared Utilities
#
# Shared functionality across the key vault modules:
# - Error taxonomy
# - Configuration
# - Timestamp helpers
#
# The audit log lives in ``keyvault.core.audit_log``; it is imported
# directly rather than re-exported here because it depends on the vault's
# encryption service.

from .errors import (
    AlreadyInitializedError,
    InvalidPassphraseError,
    NotInitializedError,
    RecordNotFoundError,
    StorageError,
    ValidationError,
    VaultError,
    VaultLockedError,
)
from .config import VaultSettings, load_settings

__all__ = [
    # Errors
    "VaultError",
    "NotInitializedError",
    "AlreadyInitializedError",
    "VaultLockedError",
    "RecordNotFoundError",
    "ValidationError",
    "StorageError",
    "InvalidPassphraseError",
    # Configuration
    "VaultSettings",
    "load_settings",
]
