"""Tests for VaultStore.

Covers:
  - Lifecycle: init / unlock / lock state machine and error kinds
  - Passphrase verification canary and the optimistic legacy path
  - Record CRUD, validation-before-mutation and the metadata views
  - Rotation schedule arithmetic and due-for-rotation selection
  - Usage ring buffer capacity
  - Atomic persistence and rollback on failed writes
"""

import json
import os
import stat
from datetime import timedelta
from unittest.mock import patch

import pytest

from keyvault.core.audit_log import AuditAction
from keyvault.core.clock import parse_timestamp
from keyvault.core.errors import (
    AlreadyInitializedError,
    InvalidPassphraseError,
    NotInitializedError,
    RecordNotFoundError,
    StorageError,
    ValidationError,
    VaultLockedError,
)
from keyvault.vault.models import USAGE_HISTORY_CAPACITY


def _read_vault(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


# ── Lifecycle ────────────────────────────────────────────────────────

class TestLifecycle:
    def test_init_creates_private_file(self, vault, vault_path):
        assert vault_path.exists()
        assert stat.S_IMODE(os.stat(vault_path).st_mode) == 0o600
        assert vault.is_unlocked
        assert vault.list_records() == []

    def test_init_twice_fails(self, vault, passphrase):
        with pytest.raises(AlreadyInitializedError) as exc:
            vault.init(passphrase)
        assert exc.value.kind == "AlreadyInitialized"
        assert exc.value.exit_code == 4

    def test_init_rejects_empty_passphrase(self, make_vault, vault_path):
        store = make_vault()
        with pytest.raises(ValidationError):
            store.init("")
        assert not vault_path.exists()

    def test_init_replaces_empty_file(self, make_vault, vault_path, passphrase):
        vault_path.touch()
        store = make_vault()
        assert not store.exists()
        store.init(passphrase)
        assert store.exists()

    def test_unlock_missing_vault(self, make_vault, passphrase):
        store = make_vault()
        with pytest.raises(NotInitializedError) as exc:
            store.unlock(passphrase)
        assert exc.value.exit_code == 3

    def test_metadata_persisted(self, vault, vault_path):
        raw = _read_vault(vault_path)
        assert raw["schema_version"] == 1
        assert raw["metadata"]["kdf_iterations"] == 100_000
        assert raw["metadata"]["verifier"]
        assert raw["records"] == []

    def test_lock_discards_access(self, vault):
        vault.lock()
        assert not vault.is_unlocked
        with pytest.raises(VaultLockedError):
            vault.list_records()
        with pytest.raises(VaultLockedError):
            vault.add_record("k", "v")
        with pytest.raises(VaultLockedError):
            vault.get_record("anything")

    @pytest.mark.parametrize("state", ["never_unlocked", "relocked"])
    @pytest.mark.parametrize("call", [
        lambda s, rid: s.get_record(rid),
        lambda s, rid: s.get_record_meta(rid),
        lambda s, rid: s.list_records(),
        lambda s, rid: s.add_record("k", "v"),
        lambda s, rid: s.update_record(rid, name="x"),
        lambda s, rid: s.delete_record(rid),
        lambda s, rid: s.rotate_record(rid),
        lambda s, rid: s.record_usage(rid),
        lambda s, rid: s.get_records_due_for_rotation(),
        lambda s, rid: s.get_usage_stats(rid),
        lambda s, rid: s.verify_record_key(rid, "v"),
    ], ids=[
        "get_record", "get_record_meta", "list_records", "add_record",
        "update_record", "delete_record", "rotate_record", "record_usage",
        "get_records_due_for_rotation", "get_usage_stats", "verify_record_key",
    ])
    def test_record_calls_require_unlock(self, vault, make_vault, vault_path, state, call):
        created = vault.add_record("existing", "secret")
        if state == "never_unlocked":
            store = make_vault()
        else:
            store = vault
            store.lock()
        before = vault_path.read_bytes()

        with pytest.raises(VaultLockedError) as exc:
            call(store, created["id"])
        assert exc.value.kind == "LockedVault"
        assert exc.value.exit_code == 5
        assert vault_path.read_bytes() == before

    def test_lock_is_idempotent(self, vault, audit):
        vault.lock()
        vault.lock()
        assert len(audit.query(action=AuditAction.VAULT_LOCKED)) == 1

    def test_reopen_with_new_instance(self, vault, make_vault, passphrase):
        created = vault.add_record("openai", "sk-abc", service="openai")
        vault.lock()

        # Stored iteration count wins over the constructor default
        other = make_vault(kdf_iterations=600_000)
        other.unlock(passphrase)
        assert other.get_record(created["id"])["key"] == "sk-abc"

    def test_unlock_logs_record_count(self, vault, passphrase, audit):
        vault.add_record("a", "1")
        vault.lock()
        vault.unlock(passphrase)
        entry = audit.query(action=AuditAction.VAULT_UNLOCKED, limit=1)[0]
        assert entry["details"]["record_count"] == 1
        assert entry["target"] == "vault"


class TestPassphraseVerification:
    def test_wrong_passphrase_rejected(self, vault, audit):
        vault.lock()
        with pytest.raises(InvalidPassphraseError) as exc:
            vault.unlock("not the passphrase")
        assert exc.value.exit_code == 8
        assert not vault.is_unlocked

        failures = audit.query(action=AuditAction.AUTH_FAILURE)
        assert len(failures) == 1
        assert failures[0]["success"] is False

    def test_legacy_vault_without_verifier_unlocks_optimistically(
        self, vault, vault_path, make_vault
    ):
        created = vault.add_record("legacy", "sk-legacy")
        vault.lock()

        raw = _read_vault(vault_path)
        raw["metadata"]["verifier"] = None
        vault_path.write_text(json.dumps(raw), encoding="utf-8")

        store = make_vault()
        store.unlock("wrong passphrase")
        assert store.is_unlocked
        # Unauthenticated cipher: wrong key decrypts to garbage
        assert store.get_record(created["id"])["key"] != "sk-legacy"

    def test_corrupt_vault_is_storage_error(self, vault, vault_path, passphrase):
        vault.lock()
        vault_path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageError) as exc:
            vault.unlock(passphrase)
        assert exc.value.kind == "IOFailure"


# ── Records ──────────────────────────────────────────────────────────

class TestAddAndGet:
    def test_plaintext_never_on_disk(self, vault, vault_path):
        created = vault.add_record("stripe", "sk_live_SUPERSECRET", service="stripe")
        assert created["key"] == "sk_live_SUPERSECRET"
        assert "ciphertext" not in created

        on_disk = vault_path.read_text(encoding="utf-8")
        assert "sk_live_SUPERSECRET" not in on_disk
        raw = _read_vault(vault_path)["records"][0]
        assert raw["ciphertext"]
        assert raw["key_hash"] == created["key_hash"]

    def test_roundtrip_across_lock(self, vault, passphrase):
        created = vault.add_record("openai", "sk-abc", service="openai")
        vault.lock()
        vault.unlock(passphrase)
        record = vault.get_record(created["id"])
        assert record["key"] == "sk-abc"
        assert record["name"] == "openai"

    def test_defaults(self, vault, clock):
        created = vault.add_record("k", "v")
        assert created["service"] == "unknown"
        assert created["rotation_period_days"] == 90
        assert created["enabled"] is True
        assert created["usage_count"] == 0
        assert created["last_used_at"] is None
        assert created["tags"] == []
        last = parse_timestamp(created["last_rotated_at"])
        assert last == clock.now
        assert parse_timestamp(created["next_rotation_at"]) == last + timedelta(days=90)

    def test_store_default_rotation_days(self, vault_path, make_vault, passphrase):
        store = make_vault(default_rotation_days=30)
        store.init(passphrase)
        assert store.add_record("k", "v")["rotation_period_days"] == 30

    def test_ids_unique(self, vault):
        ids = {vault.add_record(f"k{i}", "v")["id"] for i in range(5)}
        assert len(ids) == 5

    def test_tags_deduplicated(self, vault):
        created = vault.add_record("k", "v", tags=["prod", "prod", "billing"])
        assert created["tags"] == ["prod", "billing"]

    @pytest.mark.parametrize("kwargs", [
        {"name": "", "key": "v"},
        {"name": "k", "key": ""},
        {"name": "k", "key": "v", "rotation_period_days": 0},
        {"name": "k", "key": "v", "rotation_period_days": True},
        {"name": "k", "key": "v", "tags": "prod"},
        {"name": "k", "key": "v", "metadata": ["not", "a", "dict"]},
    ])
    def test_validation_before_mutation(self, vault, vault_path, kwargs):
        before = vault_path.read_bytes()
        with pytest.raises(ValidationError) as exc:
            vault.add_record(**kwargs)
        assert exc.value.exit_code == 2
        assert vault.list_records() == []
        assert vault_path.read_bytes() == before

    def test_get_unknown_record(self, vault):
        with pytest.raises(RecordNotFoundError) as exc:
            vault.get_record("missing")
        assert exc.value.kind == "NotFound"
        assert exc.value.message == "Key not found: missing"

    def test_get_is_audited(self, vault, audit):
        created = vault.add_record("k", "v")
        vault.get_record(created["id"])
        accessed = audit.query(action=AuditAction.KEY_ACCESSED)
        assert [e["target_id"] for e in accessed] == [created["id"]]

    def test_get_record_meta_has_no_secret(self, vault):
        created = vault.add_record("k", "v")
        meta = vault.get_record_meta(created["id"])
        assert "key" not in meta
        assert "ciphertext" not in meta

    def test_verify_record_key(self, vault):
        created = vault.add_record("k", "the-secret")
        assert vault.verify_record_key(created["id"], "the-secret")
        assert not vault.verify_record_key(created["id"], "guess")


class TestList:
    def test_insertion_order_and_no_secrets(self, vault):
        vault.add_record("first", "1")
        vault.add_record("second", "2")
        records = vault.list_records()
        assert [r["name"] for r in records] == ["first", "second"]
        for r in records:
            assert "key" not in r
            assert "ciphertext" not in r

    def test_filters(self, vault):
        vault.add_record("a", "1", service="openai", tags=["prod"])
        vault.add_record("b", "2", service="openai", tags=["dev"])
        vault.add_record("c", "3", service="stripe", tags=["prod"])
        assert [r["name"] for r in vault.list_records(service="openai")] == ["a", "b"]
        assert [r["name"] for r in vault.list_records(tag="prod")] == ["a", "c"]
        assert [r["name"] for r in vault.list_records(service="stripe", tag="dev")] == []


class TestUpdate:
    def test_simple_fields(self, vault, clock):
        created = vault.add_record("k", "v", metadata={"owner": "ops"})
        clock.advance(hours=1)
        updated = vault.update_record(
            created["id"], name="renamed", service="github",
            tags=["ci"], metadata={"team": "platform"},
        )
        assert updated["name"] == "renamed"
        assert updated["service"] == "github"
        assert updated["tags"] == ["ci"]
        assert updated["metadata"] == {"owner": "ops", "team": "platform"}
        assert parse_timestamp(updated["updated_at"]) == clock.now

    def test_period_change_keeps_anchor(self, vault, clock):
        created = vault.add_record("k", "v", rotation_period_days=90)
        anchor = parse_timestamp(created["last_rotated_at"])
        clock.advance(days=10)

        updated = vault.update_record(created["id"], rotation_period_days=30)
        assert parse_timestamp(updated["last_rotated_at"]) == anchor
        assert parse_timestamp(updated["next_rotation_at"]) == anchor + timedelta(days=30)

    def test_key_change(self, vault):
        created = vault.add_record("k", "old")
        updated = vault.update_record(created["id"], key="new")
        assert updated["key_hash"] != created["key_hash"]
        assert vault.get_record(created["id"])["key"] == "new"

    def test_disable(self, vault):
        created = vault.add_record("k", "v")
        assert vault.update_record(created["id"], enabled=False)["enabled"] is False

    def test_unknown_field_rejected(self, vault):
        created = vault.add_record("k", "v")
        with pytest.raises(ValidationError):
            vault.update_record(created["id"], usage_count=99)

    def test_invalid_value_leaves_record_untouched(self, vault):
        created = vault.add_record("k", "v")
        with pytest.raises(ValidationError):
            vault.update_record(created["id"], name="new", rotation_period_days=-1)
        assert vault.get_record_meta(created["id"])["name"] == "k"

    def test_update_is_audited(self, vault, audit):
        created = vault.add_record("k", "v")
        vault.update_record(created["id"], name="n", enabled=False)
        entry = audit.query(action=AuditAction.KEY_UPDATED)[0]
        assert entry["details"]["changes"] == ["enabled", "name"]

    def test_unknown_record(self, vault):
        with pytest.raises(RecordNotFoundError):
            vault.update_record("missing", name="x")


class TestDelete:
    def test_delete(self, vault, passphrase):
        keep = vault.add_record("keep", "1")
        gone = vault.add_record("gone", "2")
        result = vault.delete_record(gone["id"])
        assert result["success"] is True

        vault.lock()
        vault.unlock(passphrase)
        assert [r["id"] for r in vault.list_records()] == [keep["id"]]
        with pytest.raises(RecordNotFoundError):
            vault.get_record(gone["id"])

    def test_delete_unknown(self, vault):
        with pytest.raises(RecordNotFoundError):
            vault.delete_record("missing")


# ── Rotation primitives ──────────────────────────────────────────────

class TestRotateRecord:
    def test_generated_secret(self, vault, clock):
        created = vault.add_record("k", "old", rotation_period_days=30)
        clock.advance(days=40)
        result = vault.rotate_record(created["id"])

        assert result["key"] != "old"
        assert len(result["key"]) == 43
        assert result["previous_key_hash"] == created["key_hash"]
        assert parse_timestamp(result["last_rotated_at"]) == clock.now
        assert parse_timestamp(result["next_rotation_at"]) == clock.now + timedelta(days=30)
        assert vault.get_record(created["id"])["key"] == result["key"]

    def test_supplied_secret(self, vault):
        created = vault.add_record("k", "old")
        result = vault.rotate_record(created["id"], "brand-new")
        assert vault.get_record(created["id"])["key"] == "brand-new"
        assert vault.verify_record_key(created["id"], "brand-new")
        assert result["id"] == created["id"]

    def test_due_for_rotation(self, vault, clock):
        short = vault.add_record("short", "1", rotation_period_days=30)
        vault.add_record("long", "2", rotation_period_days=90)
        assert vault.get_records_due_for_rotation() == []

        clock.advance(days=30)
        due = vault.get_records_due_for_rotation()
        assert [r["id"] for r in due] == [short["id"]]

    def test_disabled_never_due(self, vault, clock):
        created = vault.add_record("k", "v", rotation_period_days=1)
        vault.update_record(created["id"], enabled=False)
        clock.advance(days=365)
        assert vault.get_records_due_for_rotation() == []


# ── Usage ────────────────────────────────────────────────────────────

class TestUsage:
    def test_record_usage(self, vault, clock):
        created = vault.add_record("k", "v")
        result = vault.record_usage(created["id"], action="api_call", metadata={"ip": "10.0.0.1"})
        assert result == {"success": True, "usage_count": 1}

        stats = vault.get_usage_stats(created["id"])
        assert stats["usage_count"] == 1
        assert parse_timestamp(stats["last_used_at"]) == clock.now
        assert stats["usage_history"][0]["action"] == "api_call"
        assert stats["usage_history"][0]["metadata"] == {"ip": "10.0.0.1"}

    def test_default_action(self, vault):
        created = vault.add_record("k", "v")
        vault.record_usage(created["id"])
        assert vault.get_usage_stats(created["id"])["usage_history"][0]["action"] == "access"

    def test_history_ring_buffer(self, vault, clock, passphrase):
        created = vault.add_record("k", "v")
        first_kept = None
        for i in range(150):
            clock.advance(seconds=1)
            if i == 150 - USAGE_HISTORY_CAPACITY:
                first_kept = clock.now
            vault.record_usage(created["id"], metadata={"n": i})

        vault.lock()
        vault.unlock(passphrase)
        stats = vault.get_usage_stats(created["id"])
        assert stats["usage_count"] == 150
        assert len(stats["usage_history"]) == USAGE_HISTORY_CAPACITY
        assert parse_timestamp(stats["usage_history"][0]["timestamp"]) == first_kept
        assert stats["usage_history"][0]["metadata"] == {"n": 50}
        assert stats["usage_history"][-1]["metadata"] == {"n": 149}


# ── Persistence ──────────────────────────────────────────────────────

class TestAtomicSave:
    def test_failed_write_rolls_back(self, vault, vault_path, tmp_path):
        created = vault.add_record("k", "v")
        before = vault_path.read_bytes()

        with patch("os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StorageError):
                vault.add_record("second", "v2")
            with pytest.raises(StorageError):
                vault.update_record(created["id"], name="changed")
            with pytest.raises(StorageError):
                vault.delete_record(created["id"])

        assert vault_path.read_bytes() == before
        assert [r["name"] for r in vault.list_records()] == ["k"]
        assert not [p for p in tmp_path.iterdir() if p.name.endswith(".tmp")]

    def test_failed_rotation_keeps_old_secret(self, vault):
        created = vault.add_record("k", "old")
        with patch("os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StorageError):
                vault.rotate_record(created["id"], "new")
        assert vault.get_record(created["id"])["key"] == "old"
