# Tests for the JSON Lines audit log
# Covers: entry shape, newest-first queries and filters, corrupt-line
#          tolerance, size-triggered rotation and statistics.

import json
from datetime import timedelta

import pytest

from keyvault.core.audit_log import AuditAction, AuditLog
from keyvault.core.clock import parse_timestamp
from keyvault.core.errors import ValidationError


def _lines(path):
    return [line for line in path.read_text(encoding="utf-8").split("\n") if line.strip()]


class TestAppend:
    def test_entry_shape(self, audit, clock):
        entry = audit.append(
            AuditAction.KEY_CREATED, "api_key", "abc", details={"name": "stripe"}
        )
        assert entry["action"] == "KEY_CREATED"
        assert entry["target"] == "api_key"
        assert entry["target_id"] == "abc"
        assert entry["actor"] == "system"
        assert entry["success"] is True
        assert entry["details"] == {"name": "stripe"}
        assert parse_timestamp(entry["timestamp"]) == clock.now
        assert entry["event_id"]

        stored = json.loads(_lines(audit.log_path)[0])
        assert stored == entry

    def test_success_true_unless_false(self, audit):
        assert audit.append("X", success=None)["success"] is True
        assert audit.append("X", success=False)["success"] is False

    def test_unique_event_ids(self, audit):
        ids = {audit.append("X")["event_id"] for _ in range(20)}
        assert len(ids) == 20

    def test_custom_actor(self, audit):
        assert audit.log_vault_unlocked(actor="alice")["actor"] == "alice"

    def test_creates_parent_directory(self, tmp_path):
        log = AuditLog(tmp_path / "nested" / "dir" / "audit.log")
        log.append("X")
        assert log.log_path.exists()

    def test_wrappers(self, audit):
        record = {"id": "r1", "name": "openai", "service": "openai", "rotation_period_days": 30}
        audit.log_key_created(record)
        audit.log_key_rotated("r1", "openai", reason="compromised")
        audit.log_key_used("r1", "openai", "api_call", {"endpoint": "/v1"})
        audit.log_auth_failure({"reason": "invalid passphrase"})

        created, rotated, used, failure = [json.loads(l) for l in _lines(audit.log_path)]
        assert created["details"]["rotation_period_days"] == 30
        assert rotated["details"] == {"name": "openai", "reason": "compromised"}
        assert used["details"]["metadata"] == {"endpoint": "/v1"}
        assert failure["target"] == "vault"
        assert failure["success"] is False


class TestQuery:
    def test_newest_first_with_filters(self, audit, clock):
        audit.append(AuditAction.KEY_CREATED, "api_key", "a")
        clock.advance(seconds=1)
        audit.append(AuditAction.KEY_ACCESSED, "api_key", "a")
        clock.advance(seconds=1)
        audit.append(AuditAction.KEY_DELETED, "api_key", "a")

        results = audit.query()
        assert [e["action"] for e in results] == ["KEY_DELETED", "KEY_ACCESSED", "KEY_CREATED"]

        accessed = audit.query(action=AuditAction.KEY_ACCESSED)
        assert len(accessed) == 1
        assert accessed[0]["target_id"] == "a"

        assert [e["action"] for e in audit.query(limit=1)] == ["KEY_DELETED"]

    def test_newest_rotation_among_mixed_events(self, audit, clock):
        actions = [AuditAction.KEY_CREATED, AuditAction.KEY_ROTATED, AuditAction.KEY_USED]
        for i in range(12):
            clock.advance(minutes=1)
            audit.append(actions[i % 3], "api_key", f"key-{i}")

        results = audit.query(action="KEY_ROTATED", limit=1)
        assert len(results) == 1
        # KEY_ROTATED was appended at i = 1, 4, 7, 10
        assert results[0]["target_id"] == "key-10"
        assert len(audit.query(action="KEY_ROTATED")) == 4
        assert len(audit.query()) == 12

    def test_zero_limit_returns_nothing(self, audit):
        audit.append("X")
        audit.append("X")
        assert audit.query(limit=0) == []

    def test_negative_limit_rejected(self, audit):
        audit.append("X")
        with pytest.raises(ValidationError):
            audit.query(limit=-1)

    def test_same_timestamp_keeps_reverse_append_order(self, audit):
        for i in range(3):
            audit.append("X", target_id=str(i))
        assert [e["target_id"] for e in audit.query()] == ["2", "1", "0"]

    def test_target_and_success_filters(self, audit):
        audit.append("X", target_id="a")
        audit.append("X", target_id="b", success=False)
        assert [e["target_id"] for e in audit.query(target_id="a")] == ["a"]
        assert [e["target_id"] for e in audit.query(success=False)] == ["b"]
        assert [e["target_id"] for e in audit.query(success=True)] == ["a"]

    def test_date_range_inclusive(self, audit, clock):
        start = clock.now
        audit.append("X", target_id="day0")
        clock.advance(days=1)
        audit.append("X", target_id="day1")
        clock.advance(days=1)
        audit.append("X", target_id="day2")

        results = audit.query(
            start_date=start + timedelta(days=1),
            end_date=(start + timedelta(days=2)).isoformat(),
        )
        assert [e["target_id"] for e in results] == ["day2", "day1"]

        results = audit.query(end_date=start.isoformat().replace("+00:00", "Z"))
        assert [e["target_id"] for e in results] == ["day0"]

    def test_corrupt_lines_skipped(self, audit):
        audit.append("X", target_id="good1")
        with open(audit.log_path, "a", encoding="utf-8") as f:
            f.write("{this is not json\n")
            f.write('{"no_timestamp": true}\n')
        audit.append("X", target_id="good2")

        assert [e["target_id"] for e in audit.query()] == ["good2", "good1"]

    def test_missing_file(self, tmp_path):
        log = AuditLog(tmp_path / "absent.log")
        assert log.query() == []


class TestRotation:
    def test_rotates_past_max_bytes(self, tmp_path, clock):
        log = AuditLog(tmp_path / "audit.log", max_bytes=400, clock=clock)
        for i in range(10):
            clock.advance(seconds=1)
            log.append("X", target_id=str(i), details={"pad": "x" * 50})

        archives = sorted(p for p in tmp_path.iterdir() if p.name.startswith("audit.log."))
        assert archives
        assert ":" not in "".join(p.name for p in archives)

        # Rotation never drops entries
        total = len(_lines(log.log_path)) if log.log_path.exists() else 0
        total += sum(len(_lines(p)) for p in archives)
        assert total == 10

    def test_archive_name_collision(self, tmp_path, clock):
        log = AuditLog(tmp_path / "audit.log", max_bytes=10, clock=clock)
        log.append("X")
        log.append("X")
        archives = [p.name for p in tmp_path.iterdir() if p.name.startswith("audit.log.")]
        assert len(archives) == 2
        assert any(name.endswith("-1") for name in archives)

    def test_archive_name_format(self, tmp_path, clock):
        log = AuditLog(tmp_path / "audit.log", max_bytes=10, clock=clock)
        log.append("X")
        archive = next(p for p in tmp_path.iterdir() if p.name.startswith("audit.log."))
        assert archive.name == "audit.log.2026-01-15T12-00-00Z"


class TestStats:
    def test_counts(self, audit):
        audit.append(AuditAction.KEY_CREATED)
        audit.append(AuditAction.KEY_CREATED)
        audit.append(AuditAction.KEY_USED)
        with open(audit.log_path, "a", encoding="utf-8") as f:
            f.write("garbage\n")

        stats = audit.stats()
        assert stats["total_events"] == 4
        assert stats["file_size"] == audit.log_path.stat().st_size
        assert stats["action_counts"] == {"KEY_CREATED": 2, "KEY_USED": 1}

    def test_missing_file(self, tmp_path):
        assert AuditLog(tmp_path / "absent.log").stats() == {
            "total_events": 0, "file_size": 0, "action_counts": {},
        }

    def test_action_enum_is_string(self):
        assert AuditAction.KEY_ROTATED == "KEY_ROTATED"
        assert len(list(AuditAction)) == 9
