from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import StagehandConfig, default_config_path, load_config
from .errors import BackupError, ConfigurationError, IncompatibleBackup
from .runner import Orchestrator
from .types import EXIT_CONFIG_ERROR, BackupKind, ExecutionResult, ResultStatus, RunReport, Step, Target


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


STATUS_COLORS = {
    ResultStatus.SUCCESS: Ansi.GREEN,
    ResultStatus.SKIPPED: Ansi.BLUE,
    ResultStatus.CANCELLED: Ansi.ORANGE,
    ResultStatus.TIMEOUT: Ansi.RED,
    ResultStatus.CONNECTION_ERROR: Ansi.RED,
    ResultStatus.COMMAND_FAILURE: Ansi.RED,
}
STATUS_LABELS = {
    ResultStatus.SUCCESS: "ok",
    ResultStatus.SKIPPED: "skipped",
    ResultStatus.CANCELLED: "cancelled",
    ResultStatus.TIMEOUT: "timeout",
    ResultStatus.CONNECTION_ERROR: "unreachable",
    ResultStatus.COMMAND_FAILURE: "failed",
}


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"

_last_progress_len = 0


class ArgumentParser(argparse.ArgumentParser):
    """Reports usage errors with the configuration-error exit status."""

    def error(self, message: str):  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(EXIT_CONFIG_ERROR, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = ArgumentParser(
        prog="stagehand",
        description="Deployment orchestration for Docker Compose hosts",
    )
    parser.add_argument(
        "actions",
        nargs="*",
        metavar="action",
        help="Action(s) to run: setup, deploy, optimize, maintenance, backup, monitor",
    )
    parser.add_argument(
        "--target",
        action="append",
        default=[],
        help="Target name or address (repeatable; default: every configured target)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to stagehand config file (default: $STAGEHAND_CONFIG or /etc/stagehand/main.conf)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Report the steps without executing them")
    parser.add_argument("--list", action="store_true", help="List registered actions and exit")
    parser.add_argument("--watch", action="store_true", help="Repeat the actions until interrupted")
    parser.add_argument(
        "--interval",
        type=float,
        default=300.0,
        help="Seconds between --watch iterations (default: 300)",
    )
    parser.add_argument("--list-backups", action="store_true", help="List recorded backups and exit")
    parser.add_argument("--restore", metavar="IDENTIFIER", help="Restore the backup with this identifier")
    parser.add_argument(
        "--kind",
        choices=["filesystem", "database"],
        help="Backup kind for --restore / --list-backups",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Python logging level (default: WARNING)",
    )
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(levelname)s %(name)s - %(message)s",
    )


def usage_error(message: str) -> int:
    sys.stderr.write(build_parser().format_usage())
    print(colorize(f"stagehand: error: {message}", Ansi.RED), file=sys.stderr)
    return EXIT_CONFIG_ERROR


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(args.config or default_config_path())
        orchestrator = Orchestrator(cfg, dry_run=args.dry_run, progress_callback=_progress_for(cfg))
    except ConfigurationError as exc:
        return usage_error(str(exc))

    if args.list:
        for action in orchestrator.registry:
            print(f"{action.name:<12} {action.description}")
        return 0

    try:
        targets = orchestrator.resolve_targets(args.target)
        if not targets:
            return usage_error("no targets configured")
        if args.list_backups or args.restore:
            return _backup_command(orchestrator, args, targets)
        if not args.actions:
            return usage_error("at least one action is required")
        for name in args.actions:
            orchestrator.registry.resolve(name)
    except ConfigurationError as exc:
        return usage_error(str(exc))

    previous = _install_signal_handlers(orchestrator)
    try:
        if args.watch:
            report = orchestrator.watch(args.actions, targets, interval=args.interval, on_report=print_report)
            if report is None:
                return 0
        else:
            report = orchestrator.run(args.actions, targets)
            print_report(report)
    finally:
        _restore_signal_handlers(previous)
        orchestrator.close()
    return report.exit_code


def print_report(report: RunReport) -> None:
    summary = Summary()
    for target_report in report.targets:
        for result in target_report.results:
            _clear_progress()
            summary.add(result)
            print(format_result(result))
    _clear_progress()
    summary.targets = len(report.targets)
    summary.succeeded = sum(1 for target_report in report.targets if target_report.succeeded)
    print(summary.render(report))


def format_result(result: ExecutionResult) -> str:
    status = "critical" if result.critical else STATUS_LABELS[result.status]
    color = STATUS_COLORS[result.status]
    step = f"[{result.step.description}]" if result.step else ""
    attempt = f" (attempt {result.attempt})" if result.attempt > 1 else ""
    line = f"{result.host}::{result.action or '-'}{step} {status}{attempt} - {result.summary()}"
    return colorize(line, color)


def print_progress(target: Target, action: str, step: Step) -> None:
    global _last_progress_len
    line = f"{target.name}::{action}[{step.description}] pending..."
    _clear_progress()
    _last_progress_len = len(line)
    print(colorize(line, Ansi.YELLOW), end="\r", flush=True)


def _progress_for(cfg: StagehandConfig):
    # Progress lines overwrite each other, so only show them for serial runs on a terminal.
    if cfg.parallel == 1 and sys.stdout.isatty():
        return print_progress
    return None


def _clear_progress() -> None:
    global _last_progress_len
    if _last_progress_len:
        print(" " * _last_progress_len, end="\r", flush=True)
        _last_progress_len = 0


def _install_signal_handlers(orchestrator: Orchestrator) -> dict:
    def _handler(signum, frame):  # noqa: ARG001
        orchestrator.cancel()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _handler)
        except ValueError:
            # Not running in the main thread.
            break
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def _backup_command(orchestrator: Orchestrator, args: argparse.Namespace, targets: list[Target]) -> int:
    manager = orchestrator.backups
    wanted_kind = BackupKind(args.kind) if args.kind else None
    hosts = {target.name for target in targets}
    backups = [backup for backup in manager.list_backups(kind=wanted_kind) if backup.host in hosts]

    if args.list_backups:
        for backup in backups:
            print(
                f"{backup.host:<16} {backup.kind.value:<10} {backup.identifier:<20} "
                f"{backup.size:>12}  expires {backup.expires_at:%Y-%m-%d %H:%M} {backup.path}"
            )
        return 0

    matches = [backup for backup in backups if backup.identifier == args.restore]
    if not matches:
        return usage_error(f"no backup '{args.restore}' for {', '.join(sorted(hosts))}")
    if len(matches) > 1:
        return usage_error(f"backup '{args.restore}' is ambiguous; narrow it with --target/--kind")
    backup = matches[0]
    target = next(t for t in targets if t.name == backup.host)

    previous = _install_signal_handlers(orchestrator)
    try:
        result = manager.restore(backup, target, cancel=orchestrator.cancel_event)
    except IncompatibleBackup as exc:
        return usage_error(str(exc))
    except (BackupError, RuntimeError) as exc:
        prefix = "CRITICAL: " if getattr(exc, "severity", "error") == "critical" else ""
        print(colorize(f"{prefix}Restore failed: {exc}", Ansi.RED), file=sys.stderr)
        return 2
    finally:
        _restore_signal_handlers(previous)
        orchestrator.close()
    result.host = target.name
    result.action = "restore"
    print(format_result(result))
    return 0 if result.ok else 2


class Summary:
    def __init__(self) -> None:
        self.steps = 0
        self.failures = 0
        self.skipped = 0
        self.cancelled = 0
        self.critical = 0
        self.targets = 0
        self.succeeded = 0

    def add(self, result: ExecutionResult) -> None:
        self.steps += 1
        if result.critical:
            self.critical += 1
        if result.status is ResultStatus.SKIPPED:
            self.skipped += 1
        elif result.status is ResultStatus.CANCELLED:
            self.cancelled += 1
        elif result.failed:
            self.failures += 1

    def render(self, report: RunReport) -> str:
        parts = [
            f"Targets: {self.succeeded}/{self.targets} ok",
            f"Steps: {self.steps}",
            f"Failures: {self.failures}",
            f"Skipped: {self.skipped}",
            f"Cancelled: {self.cancelled}",
            *([f"Critical: {self.critical}"] if self.critical else []),
            f"Status: {report.status.value} (exit {report.exit_code})",
        ]
        text = " | ".join(parts)
        color = Ansi.GREEN if report.exit_code == 0 else Ansi.RED
        return colorize(text, color)


if __name__ == "__main__":
    raise SystemExit(main())
