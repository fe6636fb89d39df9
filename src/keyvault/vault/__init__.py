# Vault Module - Encrypted API key storage
#
# JSON vault file with AES-256-CTR encrypted secrets
# Master passphrase with PBKDF2 key derivation

from .encryption import EncryptionService, passphrase_weaknesses
from .models import CredentialRecord, UsageEvent, VaultFile, USAGE_HISTORY_CAPACITY
from .vault_store import VaultStore

__all__ = [
    "VaultStore",
    "EncryptionService",
    "passphrase_weaknesses",
    "CredentialRecord",
    "UsageEvent",
    "VaultFile",
    "USAGE_HISTORY_CAPACITY",
]
