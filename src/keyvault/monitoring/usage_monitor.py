# Monitoring Module - Usage Monitor
#
# Usage analytics and health signals derived from the vault:
#   1. record_usage(): the only write path (vault usage + KEY_USED audit)
#   2. Summaries and per-period breakdowns of usage history
#   3. Heuristic anomaly flags (high frequency, unusual hours)
#   4. 0-100 health score per key and averaged over the vault
#
# Holds no state of its own; everything is recomputed from VaultStore.

import logging
from collections import Counter
from datetime import timedelta
from statistics import mean
from typing import Any, Dict, List, Optional

from ..core.audit_log import AuditLog
from ..core.clock import Clock, days_between, parse_timestamp, resolve_clock
from ..core.errors import VaultError
from ..vault.vault_store import VaultStore

logger = logging.getLogger(__name__)

RECENT_USE_DAYS = 7

# Anomaly heuristics
MIN_ANOMALY_EVENTS = 10
RECENT_WINDOW = 10
HIGH_FREQUENCY_RATIO = 0.1
UNUSUAL_HOURS_RATIO = 0.3
UNUSUAL_HOURS = range(0, 6)  # local 00:00-05:59

# Health score penalties
PENALTY_DISABLED = 50
PENALTY_ROTATION_OVERDUE = 30
PENALTY_ROTATION_DUE_SOON = 10
PENALTY_NEVER_USED = 20
PENALTY_UNUSED_90_DAYS = 25
PENALTY_UNUSED_30_DAYS = 10
PENALTY_ZERO_USAGE = 15
ROTATION_DUE_SOON_DAYS = 7

HEALTHY_THRESHOLD = 80
WARNING_THRESHOLD = 50


def health_status(score: float) -> str:
    """Map a score to its band: healthy (>=80), warning (>=50), critical."""
    if score >= HEALTHY_THRESHOLD:
        return "healthy"
    if score >= WARNING_THRESHOLD:
        return "warning"
    return "critical"


class UsageMonitor:
    """Usage tracking and health analytics over one VaultStore."""

    def __init__(self, vault: VaultStore, audit: AuditLog, clock: Optional[Clock] = None):
        self._vault = vault
        self._audit = audit
        self._clock = resolve_clock(clock)

    # ── Write path ──────────────────────────────────────────────────

    def record_usage(
        self,
        record_id: str,
        action: str = "access",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Record one use in the vault, then audit it.

        The use is already persisted when the audit append runs, so an
        audit failure is logged and reported under ``audit_error``.
        """
        result = self._vault.record_usage(record_id, action=action, metadata=metadata)
        record = self._vault.get_record_meta(record_id)
        try:
            self._audit.log_key_used(record_id, record["name"], action, metadata)
        except VaultError as e:
            logger.error("Audit of usage for key %s failed: %s", record_id, e)
            result["audit_error"] = e.to_dict()
        return result

    # ── Summaries ───────────────────────────────────────────────────

    def key_usage(self, record_id: str) -> Dict[str, Any]:
        return self._vault.get_usage_stats(record_id)

    def usage_summary(self) -> Dict[str, Any]:
        """Vault-wide usage counts, per-service totals, recent and unused keys."""
        records = self._vault.list_records()
        cutoff = self._clock() - timedelta(days=RECENT_USE_DAYS)

        summary: Dict[str, Any] = {
            "total_keys": len(records),
            "total_usage": 0,
            "active_keys": 0,
            "unused_keys": 0,
            "by_service": {},
            "recently_used": [],
            "unused_list": [],
        }

        for record in records:
            count = record["usage_count"] or 0
            summary["total_usage"] += count
            if record["enabled"]:
                summary["active_keys"] += 1

            service = summary["by_service"].setdefault(
                record["service"], {"total_keys": 0, "total_usage": 0}
            )
            service["total_keys"] += 1
            service["total_usage"] += count

            if not record["last_used_at"]:
                summary["unused_keys"] += 1
                summary["unused_list"].append({
                    "id": record["id"],
                    "name": record["name"],
                    "service": record["service"],
                    "created_at": record["created_at"],
                })
            elif parse_timestamp(record["last_used_at"]) >= cutoff:
                summary["recently_used"].append({
                    "id": record["id"],
                    "name": record["name"],
                    "service": record["service"],
                    "usage_count": count,
                    "last_used_at": record["last_used_at"],
                })

        return summary

    def usage_by_period(self, record_id: str, days: int = 30) -> Dict[str, Any]:
        """Bucket a key's recent history by UTC calendar day and by action."""
        if days < 1:
            raise ValueError("days must be positive")
        stats = self._vault.get_usage_stats(record_id)
        cutoff = self._clock() - timedelta(days=days)

        history = [
            e for e in stats["usage_history"]
            if parse_timestamp(e["timestamp"]) >= cutoff
        ]

        by_day: Dict[str, Dict[str, Any]] = {}
        for event in history:
            date = parse_timestamp(event["timestamp"]).date().isoformat()
            bucket = by_day.setdefault(date, {"count": 0, "actions": {}})
            bucket["count"] += 1
            bucket["actions"][event["action"]] = bucket["actions"].get(event["action"], 0) + 1

        by_action = Counter(e["action"] for e in history)

        return {
            "period_days": days,
            "total_usage": len(history),
            "by_day": by_day,
            "by_action": dict(by_action),
            "unique_actions": list(by_action),
        }

    # ── Anomaly detection ───────────────────────────────────────────

    def detect_anomalies(self, record_id: str) -> Dict[str, Any]:
        """Flag bursts of use and heavy night-time use for one key.

        Needs at least MIN_ANOMALY_EVENTS history entries.
        """
        stats = self._vault.get_usage_stats(record_id)
        history = stats["usage_history"]

        if len(history) < MIN_ANOMALY_EVENTS:
            return {
                "has_anomalies": False,
                "reason": "Insufficient data for analysis",
            }

        times = [parse_timestamp(e["timestamp"]) for e in history]
        average_gap = (times[-1] - times[0]).total_seconds() / (len(times) - 1)

        recent = times[-RECENT_WINDOW:]
        recent_gaps = [
            (recent[i] - recent[i - 1]).total_seconds() for i in range(1, len(recent))
        ]
        recent_average_gap = mean(recent_gaps)

        anomalies: List[Dict[str, str]] = []
        if recent_average_gap < average_gap * HIGH_FREQUENCY_RATIO:
            anomalies.append({
                "type": "high_frequency",
                "message": "Unusually high usage frequency detected",
            })

        night_uses = sum(1 for t in recent if t.astimezone().hour in UNUSUAL_HOURS)
        if night_uses > len(recent) * UNUSUAL_HOURS_RATIO:
            anomalies.append({
                "type": "unusual_hours",
                "message": "Significant usage during unusual hours (midnight-6am)",
            })

        if anomalies:
            logger.info(
                "Usage anomalies for key %s: %s",
                record_id, [a["type"] for a in anomalies],
            )

        return {
            "has_anomalies": bool(anomalies),
            "anomalies": anomalies,
            "analysis": {
                "average_gap_seconds": average_gap,
                "recent_average_gap_seconds": recent_average_gap,
                "total_events": len(history),
                "last_used_at": stats["last_used_at"],
            },
        }

    # ── Health scoring ──────────────────────────────────────────────

    def health_score(self, record_id: str) -> Dict[str, Any]:
        """Score one key from 100 down, listing every deduction."""
        record = self._vault.get_record_meta(record_id)
        now = self._clock()

        score = 100
        issues: List[str] = []

        if not record["enabled"]:
            score -= PENALTY_DISABLED
            issues.append("Key is disabled")

        days_until_rotation = days_between(parse_timestamp(record["next_rotation_at"]), now)
        if days_until_rotation < 0:
            score -= PENALTY_ROTATION_OVERDUE
            issues.append(f"Rotation overdue by {abs(days_until_rotation)} days")
        elif days_until_rotation < ROTATION_DUE_SOON_DAYS:
            score -= PENALTY_ROTATION_DUE_SOON
            issues.append(f"Rotation due in {days_until_rotation} days")

        if not record["last_used_at"]:
            score -= PENALTY_NEVER_USED
            issues.append("Key has never been used")
        else:
            days_since_use = days_between(now, parse_timestamp(record["last_used_at"]))
            if days_since_use > 90:
                score -= PENALTY_UNUSED_90_DAYS
                issues.append(f"Key unused for {days_since_use} days")
            elif days_since_use > 30:
                score -= PENALTY_UNUSED_30_DAYS
                issues.append(f"Key unused for {days_since_use} days")

        if record["usage_count"] == 0:
            score -= PENALTY_ZERO_USAGE
            issues.append("Key has zero usage count")

        score = max(0, score)
        return {
            "score": score,
            "status": health_status(score),
            "issues": issues,
            "details": {
                "rotation": {
                    "next_rotation_at": record["next_rotation_at"],
                    "days_until_rotation": days_until_rotation,
                    "last_rotated_at": record["last_rotated_at"],
                },
                "usage": {
                    "usage_count": record["usage_count"],
                    "last_used_at": record["last_used_at"],
                },
            },
        }

    def vault_health(self) -> Dict[str, Any]:
        """Average health over all keys (100 for an empty vault)."""
        records = self._vault.list_records()
        scores = []
        for record in records:
            health = self.health_score(record["id"])
            scores.append({"id": record["id"], "name": record["name"], **health})

        average = mean(h["score"] for h in scores) if scores else 100
        by_status = Counter(h["status"] for h in scores)

        return {
            "overall_score": round(average),
            "status": health_status(average),
            "key_count": len(records),
            "keys_by_status": {
                "healthy": by_status.get("healthy", 0),
                "warning": by_status.get("warning", 0),
                "critical": by_status.get("critical", 0),
            },
            "keys": scores,
        }
