# Rotation Module - RotationEngine
#
# Decides which keys are due and rotates them:
#   - rotate(): single rotation + audit event + handler notification
#   - check_and_rotate(): best-effort batch over all due keys
#   - status() / report(): read-only schedule views
#   - start() / stop(): optional APScheduler interval job that calls
#     check_and_rotate(auto_rotate=True); any external scheduler can call
#     check_and_rotate() directly instead.
#
# Handler failures never fail a rotation: the new secret is already
# committed when handlers run.

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..core.audit_log import AuditLog
from ..core.clock import Clock, days_between, parse_timestamp, resolve_clock, to_iso
from ..core.config import DEFAULT_ROTATION_INTERVAL_HOURS
from ..core.errors import VaultError
from ..vault.vault_store import VaultStore

logger = logging.getLogger(__name__)

DUE_SOON_DAYS = 7
OVERDUE_GRACE_DAYS = 7


@dataclass
class RotationEvent:
    """Payload handed to every registered rotation handler."""

    record_id: str
    name: str
    new_key: str
    previous_key_hash: str
    reason: str
    rotated_at: str
    next_rotation_at: str
    type: str = "rotation"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


RotationHandler = Callable[[RotationEvent], Any]


def _handler_name(handler: RotationHandler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class RotationEngine:
    """Rotation policy, batch rotation and notifications for one vault.

    Usage::

        engine = RotationEngine(store, audit)
        engine.register_handler(push_to_secrets_manager)
        engine.rotate(record_id, reason="compromised")
        engine.check_and_rotate(auto_rotate=True)
        engine.start(interval_hours=24)   # optional background checks
    """

    def __init__(
        self,
        vault: VaultStore,
        audit: AuditLog,
        handlers: Optional[List[RotationHandler]] = None,
        clock: Optional[Clock] = None,
    ):
        self._vault = vault
        self._audit = audit
        self._handlers: List[RotationHandler] = list(handlers or [])
        self._clock = resolve_clock(clock)
        self._lock = threading.RLock()
        self._scheduler: Optional[BackgroundScheduler] = None
        self._last_check: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------

    def register_handler(self, handler: RotationHandler) -> None:
        """Register a callable invoked with a RotationEvent after rotations."""
        with self._lock:
            self._handlers.append(handler)

    @property
    def handler_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    def _notify(self, event: RotationEvent) -> Dict[str, Any]:
        with self._lock:
            handlers = list(self._handlers)

        delivered = 0
        failed = []
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    "Rotation handler %s failed for key %s: %s",
                    _handler_name(handler), event.record_id, e,
                )
                failed.append({"handler": _handler_name(handler), "error": str(e)})

        return {"delivered": delivered, "failed": failed}

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(
        self,
        record_id: str,
        new_key: Optional[str] = None,
        reason: str = "manual",
        notify: bool = True,
    ) -> Dict[str, Any]:
        """Rotate one key, audit it, then notify handlers.

        A failed audit append is logged and reported under ``audit_error``
        rather than raised.

        Raises:
            VaultError: Anything VaultStore.rotate_record raises.
        """
        current = self._vault.get_record_meta(record_id)
        result = self._vault.rotate_record(record_id, new_key)

        # The new secret is committed; an audit failure must not hide it
        try:
            self._audit.log_key_rotated(result["id"], result["name"], reason)
        except VaultError as e:
            logger.error("Audit of rotation for key %s failed: %s", result["id"], e)
            result["audit_error"] = e.to_dict()

        notifications = {"delivered": 0, "failed": []}
        if notify:
            event = RotationEvent(
                record_id=result["id"],
                name=result["name"],
                new_key=result["key"],
                previous_key_hash=current["key_hash"],
                reason=reason,
                rotated_at=result["last_rotated_at"],
                next_rotation_at=result["next_rotation_at"],
            )
            notifications = self._notify(event)

        result["reason"] = reason
        result["notifications"] = notifications
        return result

    def check_and_rotate(self, auto_rotate: bool = False, dry_run: bool = False) -> Dict[str, Any]:
        """Process every due key; one failure never stops the batch.

        Returns:
            {checked, rotated, failed, skipped}
        """
        due = self._vault.get_records_due_for_rotation()
        results: Dict[str, Any] = {
            "checked": len(due),
            "rotated": [],
            "failed": [],
            "skipped": [],
        }

        for record in due:
            try:
                if dry_run:
                    results["skipped"].append({
                        "id": record["id"],
                        "name": record["name"],
                        "next_rotation_at": record["next_rotation_at"],
                        "reason": "dry run",
                    })
                    continue

                if auto_rotate:
                    results["rotated"].append(self.rotate(record["id"], reason="scheduled"))
                else:
                    results["skipped"].append({
                        "id": record["id"],
                        "name": record["name"],
                        "next_rotation_at": record["next_rotation_at"],
                        "reason": "auto-rotate disabled",
                    })
            except Exception as e:
                logger.error("Rotation of key %s failed: %s", record["id"], e)
                results["failed"].append({
                    "id": record["id"],
                    "name": record["name"],
                    "error": str(e),
                    "kind": e.kind if isinstance(e, VaultError) else type(e).__name__,
                })

        self._last_check = {
            "checked_at": to_iso(self._clock()),
            "checked": results["checked"],
            "rotated": len(results["rotated"]),
            "failed": len(results["failed"]),
            "skipped": len(results["skipped"]),
        }
        return results

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _days_until(self, record: Dict[str, Any]) -> int:
        return days_between(parse_timestamp(record["next_rotation_at"]), self._clock())

    def status(self) -> List[Dict[str, Any]]:
        """Per-key rotation schedule."""
        statuses = []
        for record in self._vault.list_records():
            days = self._days_until(record)
            statuses.append({
                "id": record["id"],
                "name": record["name"],
                "service": record["service"],
                "enabled": record["enabled"],
                "last_rotated_at": record["last_rotated_at"],
                "next_rotation_at": record["next_rotation_at"],
                "days_until_rotation": days,
                "needs_rotation": days <= 0,
                "rotation_overdue": days < -OVERDUE_GRACE_DAYS,
            })
        return statuses

    def report(self) -> Dict[str, Any]:
        """Bucket keys into overdue / due soon / current / disabled."""
        records = self._vault.list_records()
        report: Dict[str, Any] = {
            "generated_at": to_iso(self._clock()),
            "total_keys": len(records),
            "keys_needing_rotation": 0,
            "keys_healthy": 0,
            "keys_disabled": 0,
            "by_service": {},
            "by_rotation_status": {
                "current": [],
                "due_soon": [],
                "overdue": [],
                "disabled": [],
            },
        }
        buckets = report["by_rotation_status"]

        for record in records:
            summary = {
                "id": record["id"],
                "name": record["name"],
                "service": record["service"],
            }
            if not record["enabled"]:
                report["keys_disabled"] += 1
                buckets["disabled"].append(summary)
                continue

            days = self._days_until(record)
            service = report["by_service"].setdefault(
                record["service"], {"total": 0, "needs_rotation": 0}
            )
            service["total"] += 1

            if days <= 0:
                report["keys_needing_rotation"] += 1
                service["needs_rotation"] += 1
                buckets["overdue"].append({**summary, "days_overdue": abs(days)})
            elif days <= DUE_SOON_DAYS:
                report["keys_healthy"] += 1
                buckets["due_soon"].append({**summary, "days_until": days})
            else:
                report["keys_healthy"] += 1
                buckets["current"].append({**summary, "days_until": days})

        return report

    @property
    def last_check(self) -> Optional[Dict[str, Any]]:
        """Summary of the most recent check_and_rotate run."""
        return self._last_check

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _scheduled_check(self) -> None:
        try:
            results = self.check_and_rotate(auto_rotate=True)
            logger.info(
                "Scheduled rotation check: %d rotated, %d failed",
                len(results["rotated"]), len(results["failed"]),
            )
        except Exception as e:
            logger.error("Scheduled rotation check failed: %s", e)

    def start(self, interval_hours: float = DEFAULT_ROTATION_INTERVAL_HOURS) -> Dict[str, Any]:
        """Start periodic auto-rotation checks in a background thread."""
        if interval_hours <= 0:
            raise ValueError("interval_hours must be positive")
        if self._scheduler is not None:
            return {"interval_hours": interval_hours, "already_running": True}

        self._scheduler = BackgroundScheduler(daemon=True)
        self._scheduler.add_job(
            self._scheduled_check,
            trigger=IntervalTrigger(hours=interval_hours),
            id="keyvault_rotation_check",
            name="Periodic key rotation check",
            replace_existing=True,
        )
        self._scheduler.start()
        job = self._scheduler.get_job("keyvault_rotation_check")
        next_run = job.next_run_time if job is not None else None
        logger.info("Auto-rotation scheduled every %s hours", interval_hours)
        return {
            "interval_hours": interval_hours,
            "next_check": to_iso(next_run) if next_run is not None else None,
        }

    def stop(self) -> None:
        """Stop the background scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Auto-rotation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
