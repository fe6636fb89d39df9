# Main Entry Point - Command line shell
#
# Thin argparse front-end over the core components. Every subcommand
# prints one JSON document on stdout; failures print
# ``error: <kind>: <message>`` on stderr and exit with the error's code.
#
# The master passphrase comes from KEYVAULT_PASSPHRASE when set,
# otherwise it is prompted for (twice on init).

import argparse
import getpass
import json
import os
import sys
from typing import Any, Dict, List, Optional

from . import __version__
from .core import ValidationError, VaultError, VaultSettings, load_settings
from .core.audit_log import AuditLog
from .core.log_setup import configure_logging
from .monitoring import UsageMonitor
from .rotation import RotationEngine
from .vault import EncryptionService, VaultStore, passphrase_weaknesses

PASSPHRASE_ENV = "KEYVAULT_PASSPHRASE"

# Subcommands that work without unlocking the vault
_NO_UNLOCK = {"init", "generate", "audit", "audit-stats"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keyvault",
        description="Key Vault - local encrypted store for API keys",
    )
    parser.add_argument(
        "--version", action="version", version=f"keyvault {__version__}"
    )
    parser.add_argument(
        "--env-file", default=None, help="Load settings from this .env file first"
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Diagnostic logging at DEBUG level"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create a new vault")

    p = sub.add_parser("add", help="Store a new API key")
    p.add_argument("name")
    p.add_argument("--key", help="Secret value (prompted for when omitted)")
    p.add_argument("--service", default="unknown")
    p.add_argument("--rotation-days", type=int, default=None)
    p.add_argument("--tag", action="append", dest="tags", default=None)
    p.add_argument("--metadata", default=None, help="JSON object")

    p = sub.add_parser("get", help="Show a key including its secret")
    p.add_argument("record_id")

    p = sub.add_parser("list", help="List keys (metadata only)")
    p.add_argument("--service", default=None)
    p.add_argument("--tag", default=None)

    p = sub.add_parser("update", help="Change fields of a key")
    p.add_argument("record_id")
    p.add_argument("--name")
    p.add_argument("--service")
    p.add_argument("--key")
    p.add_argument("--rotation-days", type=int, default=None)
    p.add_argument("--tag", action="append", dest="tags", default=None)
    p.add_argument("--metadata", default=None, help="JSON object, merged")
    enabled = p.add_mutually_exclusive_group()
    enabled.add_argument("--enable", dest="enabled", action="store_const", const=True)
    enabled.add_argument("--disable", dest="enabled", action="store_const", const=False)

    p = sub.add_parser("delete", help="Remove a key")
    p.add_argument("record_id")

    p = sub.add_parser("rotate", help="Rotate one key now")
    p.add_argument("record_id")
    p.add_argument("--key", help="Replacement secret (random when omitted)")
    p.add_argument("--reason", default="manual")

    p = sub.add_parser("rotate-check", help="Process keys due for rotation")
    p.add_argument("--auto", action="store_true", help="Rotate due keys")
    p.add_argument("--dry-run", action="store_true")

    sub.add_parser("rotate-status", help="Per-key rotation schedule")
    sub.add_parser("rotate-report", help="Rotation report grouped by status")

    p = sub.add_parser("use", help="Record one use of a key")
    p.add_argument("record_id")
    p.add_argument("--action", default="access")
    p.add_argument("--metadata", default=None, help="JSON object")

    p = sub.add_parser("usage", help="Usage summary, or one key's usage")
    p.add_argument("record_id", nargs="?")
    p.add_argument("--days", type=int, default=None, help="Per-day breakdown window")

    p = sub.add_parser("anomalies", help="Usage anomaly check for one key")
    p.add_argument("record_id")

    p = sub.add_parser("health", help="Health score for one key or the vault")
    p.add_argument("record_id", nargs="?")

    p = sub.add_parser("audit", help="Query the audit log")
    p.add_argument("--action", default=None)
    p.add_argument("--key-id", dest="target_id", default=None)
    p.add_argument("--since", dest="start_date", default=None)
    p.add_argument("--until", dest="end_date", default=None)
    p.add_argument("--failures-only", action="store_true")
    p.add_argument("--limit", type=int, default=None)

    sub.add_parser("audit-stats", help="Audit log statistics")

    p = sub.add_parser("generate", help="Print a random URL-safe secret")
    p.add_argument("--bytes", dest="byte_length", type=int, default=32)

    return parser


# ── Input helpers ───────────────────────────────────────────────────


def _read_passphrase(confirm: bool = False) -> str:
    env_value = os.environ.get(PASSPHRASE_ENV)
    if env_value:
        return env_value

    passphrase = getpass.getpass("Master passphrase: ")
    if confirm:
        for warning in passphrase_weaknesses(passphrase):
            print(f"warning: {warning}", file=sys.stderr)
        if getpass.getpass("Confirm passphrase: ") != passphrase:
            raise ValidationError("Passphrases do not match")
    return passphrase


def _parse_json_object(raw: Optional[str], option: str) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except ValueError as e:
        raise ValidationError(f"{option} is not valid JSON: {e}") from None
    if not isinstance(value, dict):
        raise ValidationError(f"{option} must be a JSON object")
    return value


def _emit(result: Any) -> None:
    print(json.dumps(result, indent=2, default=str))


# ── Dispatch ────────────────────────────────────────────────────────


def _run(args: argparse.Namespace, settings: VaultSettings) -> Any:
    if args.command == "generate":
        if args.byte_length < 1:
            raise ValidationError("--bytes must be positive")
        return {"key": EncryptionService.generate_secret(args.byte_length)}

    audit = AuditLog(settings.audit_log_path, max_bytes=settings.audit_max_bytes)
    if args.command == "audit":
        return audit.query(
            action=args.action,
            target_id=args.target_id,
            start_date=args.start_date,
            end_date=args.end_date,
            success=False if args.failures_only else None,
            limit=args.limit,
        )
    if args.command == "audit-stats":
        return audit.stats()

    vault = VaultStore(
        settings.vault_path,
        audit=audit,
        default_rotation_days=settings.default_rotation_days,
        kdf_iterations=settings.kdf_iterations,
    )
    if args.command == "init":
        return vault.init(_read_passphrase(confirm=True))

    vault.unlock(_read_passphrase())
    try:
        return _run_unlocked(args, vault, audit)
    finally:
        vault.lock()


def _run_unlocked(args: argparse.Namespace, vault: VaultStore, audit: AuditLog) -> Any:
    engine = RotationEngine(vault, audit)
    monitor = UsageMonitor(vault, audit)
    command = args.command

    if command == "add":
        key = args.key if args.key is not None else getpass.getpass("API key: ")
        return vault.add_record(
            args.name,
            key,
            service=args.service,
            rotation_period_days=args.rotation_days,
            tags=args.tags,
            metadata=_parse_json_object(args.metadata, "--metadata"),
        )
    if command == "get":
        return vault.get_record(args.record_id)
    if command == "list":
        return vault.list_records(service=args.service, tag=args.tag)
    if command == "update":
        return vault.update_record(
            args.record_id,
            name=args.name,
            service=args.service,
            key=args.key,
            rotation_period_days=args.rotation_days,
            enabled=args.enabled,
            tags=args.tags,
            metadata=_parse_json_object(args.metadata, "--metadata"),
        )
    if command == "delete":
        return vault.delete_record(args.record_id)

    if command == "rotate":
        return engine.rotate(args.record_id, new_key=args.key, reason=args.reason)
    if command == "rotate-check":
        return engine.check_and_rotate(auto_rotate=args.auto, dry_run=args.dry_run)
    if command == "rotate-status":
        return engine.status()
    if command == "rotate-report":
        return engine.report()

    if command == "use":
        return monitor.record_usage(
            args.record_id,
            action=args.action,
            metadata=_parse_json_object(args.metadata, "--metadata"),
        )
    if command == "usage":
        if args.record_id is None:
            return monitor.usage_summary()
        if args.days is not None:
            if args.days < 1:
                raise ValidationError("--days must be positive")
            return monitor.usage_by_period(args.record_id, days=args.days)
        return monitor.key_usage(args.record_id)
    if command == "anomalies":
        return monitor.detect_anomalies(args.record_id)
    if command == "health":
        if args.record_id is None:
            return monitor.vault_health()
        return monitor.health_score(args.record_id)

    raise ValidationError(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for ``keyvault`` and ``python -m keyvault``."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(env_file=args.env_file)
        configure_logging("DEBUG" if args.verbose else settings.log_level)
        _emit(_run(args, settings))
    except VaultError as e:
        print(f"error: {e.kind}: {e.message}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
