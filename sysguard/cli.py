"""
sysguard CLI
~~~~~~~~~~~~

Command-line interface for sysguard.

Exit codes: 0 when every transaction committed, 1 when any was aborted or
rolled back, 2 for usage and configuration errors.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import shutil
import sys
from collections.abc import Sequence
from typing import Any

from sysguard.backends.base import BackendKind
from sysguard.backends.service import DEFAULT_SSH_PORT, firewall_hints
from sysguard.config.loader import resolve_config
from sysguard.config.schema import LoggingConfig
from sysguard.core.models import Advisory, TransactionResult
from sysguard.core.outcome import Outcome
from sysguard.exceptions import (
    CandidateError,
    ConfigError,
    OperationError,
    SnapshotNotFoundError,
)
from sysguard.operations.batch import BatchSummary
from sysguard.operations.catalog import OperationCatalog, OperationOptions

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sysguard",
        description="sysguard — safe, reversible host configuration changes",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: /etc/sysguard/config.yaml if present)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug detail")
    subparsers = parser.add_subparsers(dest="command")

    # run command
    run_parser = subparsers.add_parser("run", help="Apply an operation transactionally")
    run_parser.add_argument("operation", choices=OperationCatalog.names())
    run_parser.add_argument("--dns-preset", type=str, default=None, help="DNS preset name")
    run_parser.add_argument(
        "--dns",
        dest="dns_servers",
        nargs="+",
        default=[],
        metavar="SERVER",
        help="DNS servers (overrides --dns-preset)",
    )
    run_parser.add_argument("--port", type=str, default=None, help="New SSH port")
    run_parser.add_argument("--user", type=str, default=None, help="Account to set a password for")
    run_parser.add_argument(
        "--password",
        type=str,
        default=None,
        help="New password (prompted for when --user is given without it)",
    )
    run_parser.add_argument(
        "-y", "--yes", action="store_true", help="Accept advisories that need confirmation"
    )
    run_parser.add_argument("--json", action="store_true", help="Print the summary as JSON")

    # detect command
    detect_parser = subparsers.add_parser("detect", help="Describe this host")
    detect_parser.add_argument("--json", action="store_true", help="Print as JSON")

    # status command
    status_parser = subparsers.add_parser("status", help="Show live state per backend")
    status_parser.add_argument("--json", action="store_true", help="Print as JSON")

    # backups command
    subparsers.add_parser("backups", help="List backup directories")

    # restore command
    restore_parser = subparsers.add_parser("restore", help="Restore a backup directory")
    restore_parser.add_argument("directory", help="Backup directory to restore")
    restore_parser.add_argument("-y", "--yes", action="store_true", help="Do not ask first")

    # version command
    subparsers.add_parser("version", help="Show version")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        from sysguard import __version__

        print(f"sysguard {__version__}")
        return EXIT_OK

    if args.command is None:
        parser.print_help()
        return EXIT_USAGE

    try:
        config = resolve_config(args.config)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    configure_logging(config.logging, args.verbose)

    handler = {
        "run": _run_operation,
        "detect": _run_detect,
        "status": _run_status,
        "backups": _run_backups,
        "restore": _run_restore,
    }[args.command]
    return handler(args, config)


def configure_logging(config: LoggingConfig, verbose: bool = False) -> None:
    """Log to stderr, and to ``logging.file`` when configured."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.file:
        try:
            handlers.append(logging.FileHandler(config.file, encoding="utf-8"))
        except OSError as exc:
            print(f"Warning: cannot open log file {config.file}: {exc}", file=sys.stderr)
    logging.basicConfig(
        level=logging.DEBUG if verbose else config.level,
        format=_LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def _make_engine(config: Any, **kwargs: Any) -> Any:
    """Create a MutationEngine for the loaded configuration."""
    from sysguard.core.engine import MutationEngine

    return MutationEngine(config=config, **kwargs)


# ── run ──────────────────────────────────────────────────────────────────────


def _confirm_callback(assume_yes: bool):
    def confirm(advisories: Sequence[Advisory]) -> bool:
        for advisory in advisories:
            print(f"Warning: {advisory.message}", file=sys.stderr)
        if assume_yes:
            return True
        if not sys.stdin.isatty():
            print("Not confirmed (no terminal); pass --yes to proceed.", file=sys.stderr)
            return False
        answer = input("Proceed anyway? [y/N] ")
        return answer.strip().lower() in ("y", "yes")

    return confirm


def _run_operation(args: argparse.Namespace, config: Any) -> int:
    password = args.password
    if args.user and password is None and sys.stdin.isatty():
        password = getpass.getpass(f"New password for {args.user}: ")

    options = OperationOptions(
        dns_preset=args.dns_preset,
        dns_servers=list(args.dns_servers),
        ssh_port=args.port,
        ssh_user=args.user,
        ssh_password=password,
    )
    engine = _make_engine(config, confirm=_confirm_callback(args.yes))

    try:
        summary = engine.run(args.operation, options)
    except (CandidateError, OperationError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    if args.json:
        print(json.dumps(summary.to_dict(), indent=2, default=str))
    else:
        _print_summary(summary, engine)
    return summary.exit_code


def _print_summary(summary: BatchSummary, engine: Any) -> None:
    for result in summary.results:
        _print_result(result)
        if result.outcome is Outcome.COMMITTED and result.backend == "ssh":
            _print_firewall_hints(result, engine)

    for step, reason in summary.skipped:
        print(f"[{step}] skipped: {reason}")

    if len(summary.results) + len(summary.skipped) > 1:
        print()
        print(
            f"{summary.operation}: {len(summary.committed)} committed, "
            f"{len(summary.failed)} failed, {len(summary.skipped)} skipped"
        )
    if summary.pending_reboot:
        print("A reboot is required to finish the change.")


def _print_result(result: TransactionResult) -> None:
    label = result.outcome.value.replace("_", " ")
    verdict = f" ({result.verdict.value})" if result.verdict else ""
    print(f"[{result.operation}] {label}{verdict}")

    if result.apply is not None and result.apply.detail:
        print(f"  applied:  {result.apply.detail}")
    if result.apply is not None and result.apply.skipped:
        print(f"  skipped:  {', '.join(result.apply.skipped)} (not supported by this kernel)")
    if result.report is not None:
        for check in result.report.results:
            if check.status.value != "pass":
                print(f"  check:    {check.name} {check.status.value}: {check.detail}")

    if result.outcome is not Outcome.COMMITTED:
        print(f"  failed at: {result.failed_step}")
        print(f"  backup:   {result.backup_dir or 'none (nothing was changed)'}")
        if result.rollback_succeeded is not None:
            state = "succeeded" if result.rollback_succeeded else "FAILED, manual action needed"
            print(f"  rollback: {state}")
    elif result.backup_dir:
        print(f"  backup:   {result.backup_dir}")

    for error in result.errors:
        print(f"  {error.kind.value}: {error.message}")


def _print_firewall_hints(result: TransactionResult, engine: Any) -> None:
    if result.apply is None or "port" not in result.apply.applied:
        return
    backend = engine.registry.get(BackendKind.SERVICE)
    port = int(result.apply.applied["port"])
    old_port = backend.previous_port or DEFAULT_SSH_PORT
    hints = firewall_hints(port, old_port, shutil.which)
    if hints:
        print("  Open the new port in your firewall, for example:")
        for hint in hints:
            print(f"    {hint}")
    print(f"  Keep this session open and test: ssh -p {port} <user>@<host>")


# ── detect / status ──────────────────────────────────────────────────────────


def _run_detect(args: argparse.Namespace, config: Any) -> int:
    env = _make_engine(config).detect()
    data = env.to_dict()
    if args.json:
        print(json.dumps(data, indent=2))
        return EXIT_OK
    for key, value in data.items():
        if key == "ambiguities":
            continue
        if isinstance(value, list | tuple):
            value = ", ".join(value) or "-"
        print(f"{key:<16} {value}")
    for note in env.ambiguities:
        print(f"note: {note}")
    return EXIT_OK


def _run_status(args: argparse.Namespace, config: Any) -> int:
    state = _make_engine(config).status()
    if args.json:
        print(json.dumps(state, indent=2, default=str))
        return EXIT_OK
    for name, values in state.items():
        print(f"{name}:")
        for key, value in values.items():
            print(f"  {key:<40} {value}")
    return EXIT_OK


# ── backups / restore ────────────────────────────────────────────────────────


def _run_backups(args: argparse.Namespace, config: Any) -> int:
    backups = _make_engine(config).backups()
    if not backups:
        print(f"No backups under {config.backup.directory}")
        return EXIT_OK
    for info in backups:
        print(
            f"{info.created_at:<34} {info.operation:<8} "
            f"{info.outcome or '-':<12} {info.snapshot_count:>3}  {info.path}"
        )
    return EXIT_OK


def _run_restore(args: argparse.Namespace, config: Any) -> int:
    if not args.yes:
        if not sys.stdin.isatty():
            print("Refusing to restore without a terminal; pass --yes.", file=sys.stderr)
            return EXIT_USAGE
        answer = input(f"Restore {args.directory} over the live configuration? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Cancelled.")
            return EXIT_FAILED

    try:
        errors = _make_engine(config).restore(args.directory)
    except SnapshotNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    if errors:
        for exc in errors:
            print(str(exc), file=sys.stderr)
        return EXIT_FAILED
    print(f"Restored {args.directory}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
