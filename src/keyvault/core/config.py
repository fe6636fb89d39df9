"""
Key vault configuration.

Settings come from environment variables (optionally seeded from a ``.env``
file via python-dotenv) with sensible defaults:

    KEYVAULT_HOME                     directory holding vault + audit log
    KEYVAULT_VAULT_PATH               vault file (default $KEYVAULT_HOME/vault.json)
    KEYVAULT_AUDIT_LOG                audit log (default $KEYVAULT_HOME/audit.log)
    KEYVAULT_DEFAULT_ROTATION_DAYS    rotation period for new keys
    KEYVAULT_KDF_ITERATIONS           PBKDF2 iterations for new vaults
    KEYVAULT_AUDIT_MAX_BYTES          audit log size that triggers rotation
    KEYVAULT_ROTATION_INTERVAL_HOURS  scheduled rotation check interval
    KEYVAULT_LOG_LEVEL                diagnostic log level

Usage:
    from keyvault.core.config import load_settings
    settings = load_settings()
    store = VaultStore(settings.vault_path)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

from dotenv import load_dotenv

from .errors import ValidationError

DEFAULT_HOME = Path(".keyvault")
DEFAULT_ROTATION_DAYS = 90
DEFAULT_KDF_ITERATIONS = 600_000
MIN_KDF_ITERATIONS = 100_000
DEFAULT_AUDIT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_ROTATION_INTERVAL_HOURS = 24


@dataclass(frozen=True)
class VaultSettings:
    """Resolved runtime settings for one vault."""

    home: Path = DEFAULT_HOME
    vault_path: Path = DEFAULT_HOME / "vault.json"
    audit_log_path: Path = DEFAULT_HOME / "audit.log"
    default_rotation_days: int = DEFAULT_ROTATION_DAYS
    kdf_iterations: int = DEFAULT_KDF_ITERATIONS
    audit_max_bytes: int = DEFAULT_AUDIT_MAX_BYTES
    rotation_interval_hours: float = DEFAULT_ROTATION_INTERVAL_HOURS
    log_level: str = "WARNING"


def _int_setting(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_setting(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")
    return value


def load_settings(
    env_file: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> VaultSettings:
    """Build settings from the environment.

    Args:
        env_file: Optional ``.env`` file to load first. Existing environment
                  variables always win over values from the file.
        environ: Mapping to read instead of ``os.environ`` (tests).

    Raises:
        ValidationError: If a numeric setting is malformed or out of range.
    """
    if environ is None:
        load_dotenv(dotenv_path=env_file, override=False)
        environ = os.environ

    home = Path(environ.get("KEYVAULT_HOME") or DEFAULT_HOME)
    vault_path = Path(environ.get("KEYVAULT_VAULT_PATH") or home / "vault.json")
    audit_log_path = Path(environ.get("KEYVAULT_AUDIT_LOG") or home / "audit.log")

    return VaultSettings(
        home=home,
        vault_path=vault_path,
        audit_log_path=audit_log_path,
        default_rotation_days=_int_setting(
            environ, "KEYVAULT_DEFAULT_ROTATION_DAYS", DEFAULT_ROTATION_DAYS
        ),
        kdf_iterations=_int_setting(
            environ, "KEYVAULT_KDF_ITERATIONS", DEFAULT_KDF_ITERATIONS,
            minimum=MIN_KDF_ITERATIONS,
        ),
        audit_max_bytes=_int_setting(
            environ, "KEYVAULT_AUDIT_MAX_BYTES", DEFAULT_AUDIT_MAX_BYTES
        ),
        rotation_interval_hours=_float_setting(
            environ, "KEYVAULT_ROTATION_INTERVAL_HOURS", DEFAULT_ROTATION_INTERVAL_HOURS
        ),
        log_level=(environ.get("KEYVAULT_LOG_LEVEL") or "WARNING").upper(),
    )
