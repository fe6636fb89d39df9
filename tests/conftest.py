"""
Shared pytest fixtures for the key vault test suite.

  - clock  -> controllable UTC clock so rotation schedules can be time-travelled
  - audit  -> AuditLog in a temp directory
  - vault  -> initialized, unlocked VaultStore in a temp directory

Vaults use the PBKDF2 iteration floor to keep the suite fast.
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest
import structlog

from keyvault.core.audit_log import AuditLog
from keyvault.core.config import MIN_KDF_ITERATIONS
from keyvault.vault.vault_store import VaultStore

PASSPHRASE = "Correct-Horse-Battery-9"
TEST_ITERATIONS = MIN_KDF_ITERATIONS
START = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit(tmp_path, clock):
    return AuditLog(tmp_path / "audit.log", clock=clock)


@pytest.fixture
def vault_path(tmp_path):
    return tmp_path / "vault.json"


@pytest.fixture
def vault(vault_path, audit, clock):
    """Initialized and unlocked vault."""
    store = VaultStore(vault_path, audit=audit, kdf_iterations=TEST_ITERATIONS, clock=clock)
    store.init(PASSPHRASE)
    return store


@pytest.fixture(autouse=True)
def _restore_logging():
    """Undo configure_logging() side effects on the root logger."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def passphrase():
    return PASSPHRASE


@pytest.fixture
def make_vault(vault_path, audit, clock):
    """Factory for extra VaultStore instances over the same files."""
    def _make(**kwargs):
        kwargs.setdefault("audit", audit)
        kwargs.setdefault("kdf_iterations", TEST_ITERATIONS)
        kwargs.setdefault("clock", clock)
        return VaultStore(vault_path, **kwargs)
    return _make
