# Core Module - Error Taxonomy
#
# Every core operation either returns a value or raises one of these.
# The CLI maps ``kind`` / ``exit_code`` to user-facing output; the core
# itself never terminates the process.


class VaultError(Exception):
    """Base class for all key vault errors."""

    kind = "VaultError"
    exit_code = 1

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class NotInitializedError(VaultError):
    """No vault file exists at the configured path."""

    kind = "NotInitialized"
    exit_code = 3


class AlreadyInitializedError(VaultError):
    """A vault file already exists at the configured path."""

    kind = "AlreadyInitialized"
    exit_code = 4


class VaultLockedError(VaultError):
    """A record operation was attempted while the vault is locked."""

    kind = "LockedVault"
    exit_code = 5


class RecordNotFoundError(VaultError):
    """The referenced record id is not present in the vault."""

    kind = "NotFound"
    exit_code = 6

    def __init__(self, record_id: str):
        super().__init__(f"Key not found: {record_id}")
        self.record_id = record_id


class ValidationError(VaultError):
    """Malformed caller input. Raised before any mutation happens."""

    kind = "ValidationError"
    exit_code = 2


class StorageError(VaultError):
    """Reading or writing the vault or audit files failed."""

    kind = "IOFailure"
    exit_code = 7


class InvalidPassphraseError(VaultError):
    """The passphrase did not decrypt the vault's verification canary."""

    kind = "InvalidPassphrase"
    exit_code = 8
