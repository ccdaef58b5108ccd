from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from string import Template
from typing import Callable, Optional, Sequence, Union

from .actions import (
    TASK_BACKUP_DATABASE,
    TASK_BACKUP_FILESYSTEM,
    TASK_BACKUP_PRUNE,
    TASK_MONITOR_CHECK,
    build_registry,
    template_context,
)
from .backup import BackupManager, BackupManifest
from .config import StagehandConfig
from .errors import ConfigurationError, ServiceRestartError, UnknownTarget
from .executors import Executor, LocalExecutor, SSHExecutor, default_control_dir
from .monitor import CommandNotifier, HealthMonitor, LogNotifier, Notifier
from .registry import ActionRegistry
from .secrets import KeyFileCache, SecretResolver
from .types import (
    RETRYABLE_STATUSES,
    Action,
    BackupKind,
    ExecutionResult,
    OnFailure,
    ResultStatus,
    RunReport,
    Step,
    Target,
    TargetReport,
)

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"

ProgressCallback = Callable[[Target, str, Step], None]


@dataclass
class TaskContext:
    target: Target
    action: str
    step: Step
    executor: Executor
    cancel: threading.Event
    timeout: Optional[float]


TaskHandler = Callable[[TaskContext], ExecutionResult]


class Orchestrator:
    """Runs registered actions against targets and builds the run report.

    Targets run concurrently, bounded by ``config.parallel``; the steps of
    one target always run in order. ``cancel()`` stops every in-flight
    command and marks everything that did not finish as cancelled.
    """

    retry_delay = 2.0

    def __init__(
        self,
        config: StagehandConfig,
        registry: Optional[ActionRegistry] = None,
        *,
        dry_run: bool = False,
        backups: Optional[BackupManager] = None,
        monitor: Optional[HealthMonitor] = None,
        local_executor: Optional[Executor] = None,
        ssh_executor: Optional[Executor] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.config = config
        self.registry = registry or build_registry(config)
        self.dry_run = dry_run
        self.progress_callback = progress_callback
        self.secret_resolver = SecretResolver()
        self.local_executor = local_executor or LocalExecutor(dry_run=dry_run)
        self.ssh_executor = ssh_executor or SSHExecutor(
            dry_run=dry_run,
            connect_timeout=config.connect_timeout,
            control_dir=config.control_dir or default_control_dir(),
            key_cache=KeyFileCache(self.secret_resolver),
        )
        self.backups = backups or BackupManager(
            config.backup,
            BackupManifest(config.manifest_path),
            self.executor_for,
            targets=config.targets,
            context=template_context(config, {}),
            timeout=config.timeout,
            resolver=self.secret_resolver,
        )
        self.monitor = monitor or HealthMonitor(
            config.alerts,
            self._notifiers(),
            state_path=None if dry_run else config.alert_state_path,
        )
        self.tasks: dict[str, TaskHandler] = {
            TASK_BACKUP_DATABASE: self._backup_database,
            TASK_BACKUP_FILESYSTEM: self._backup_filesystem,
            TASK_BACKUP_PRUNE: self._backup_prune,
            TASK_MONITOR_CHECK: self._monitor_check,
        }
        self._cancel = threading.Event()

    # Public API -------------------------------------------------------------
    def resolve_targets(self, names: Optional[Sequence[str]] = None) -> list[Target]:
        if not names:
            return list(self.config.targets.values())
        resolved: list[Target] = []
        for name in names:
            target = self.config.targets.get(name)
            if target is None:
                target = next((t for t in self.config.targets.values() if t.address == name), None)
            if target is None:
                raise UnknownTarget(name)
            if target not in resolved:
                resolved.append(target)
        return resolved

    def run(
        self,
        actions: Union[str, Sequence[str]],
        targets: Optional[Sequence[Target]] = None,
    ) -> RunReport:
        names = [actions] if isinstance(actions, str) else list(actions)
        resolved = [self.registry.resolve(name) for name in names]
        chosen = list(targets) if targets is not None else self.resolve_targets()
        if not chosen:
            raise ConfigurationError("no targets selected")
        report = RunReport(actions=names, started_at=datetime.now(timezone.utc))
        reports = {target.name: TargetReport(target=target) for target in chosen}

        workers = max(1, min(self.config.parallel, len(chosen)))
        logger.debug("actions=%s targets=%s workers=%d", ",".join(names), ",".join(reports), workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stagehand") as pool:
            futures = {
                pool.submit(self._run_target, target, resolved, reports[target.name]): target
                for target in chosen
            }
            for future in as_completed(futures):
                target = futures[future]
                try:
                    future.result()
                except Exception as exc:  # noqa: BLE001
                    logger.error("host=%s run aborted: %s", target.name, exc, exc_info=True)
                    reports[target.name].results.append(
                        ExecutionResult(
                            command="",
                            status=ResultStatus.COMMAND_FAILURE,
                            host=target.name,
                            detail=f"internal error: {exc}",
                        )
                    )

        report.targets = [reports[target.name] for target in chosen]
        report.finished_at = datetime.now(timezone.utc)
        logger.info("actions=%s status=%s", ",".join(names), report.status.value)
        return report

    def watch(
        self,
        actions: Union[str, Sequence[str]],
        targets: Optional[Sequence[Target]] = None,
        *,
        interval: float,
        iterations: Optional[int] = None,
        on_report: Optional[Callable[[RunReport], None]] = None,
    ) -> Optional[RunReport]:
        """Repeat ``run`` every ``interval`` seconds until cancelled."""
        report: Optional[RunReport] = None
        count = 0
        while not self._cancel.is_set():
            report = self.run(actions, targets)
            count += 1
            if on_report is not None:
                on_report(report)
            if iterations is not None and count >= iterations:
                break
            if self._cancel.wait(interval):
                break
        return report

    def cancel(self) -> None:
        logger.warning("Cancellation requested; stopping in-flight steps")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    def close(self) -> None:
        self.local_executor.close()
        self.ssh_executor.close()

    def executor_for(self, target: Target) -> Executor:
        if target.connection == "local":
            return self.local_executor
        if target.connection == "ssh":
            return self.ssh_executor
        raise ValueError(f"Unknown connection type '{target.connection}'")

    # Per-target execution ---------------------------------------------------
    def _run_target(self, target: Target, actions: list[Action], report: TargetReport) -> None:
        target.reachable = None
        halted: Optional[str] = None
        for action in actions:
            if halted == CANCELLED or self._cancel.is_set():
                self._fill_remaining(target, action, action.steps, report, None)
            elif halted is not None:
                self._fill_remaining(target, action, action.steps, report, halted)
            else:
                halted = self._run_action(target, action, report)

    def _run_action(self, target: Target, action: Action, report: TargetReport) -> Optional[str]:
        """Run one action's steps; returns a reason when the target must stop."""
        for index, step in enumerate(action.steps):
            if self._cancel.is_set():
                self._fill_remaining(target, action, action.steps[index:], report, None)
                return CANCELLED
            result = self._run_step(target, action, step, report)
            if result.ok:
                continue
            remaining = action.steps[index + 1:]
            if result.status is ResultStatus.CANCELLED:
                self._fill_remaining(target, action, remaining, report, None)
                return CANCELLED
            if step.on_failure is OnFailure.CONTINUE:
                continue
            reason = f"{step.on_failure.value} after '{step.description}'"
            self._fill_remaining(target, action, remaining, report, reason)
            if step.on_failure is OnFailure.SKIP_REMAINING:
                return None
            return reason
        return None

    def _fill_remaining(
        self,
        target: Target,
        action: Action,
        steps: Sequence[Step],
        report: TargetReport,
        reason: Optional[str],
    ) -> None:
        cancelled = reason is None
        for step in steps:
            report.results.append(
                ExecutionResult(
                    command=step.command or f"task:{step.task}",
                    status=ResultStatus.CANCELLED if cancelled else ResultStatus.SKIPPED,
                    host=target.name,
                    action=action.name,
                    step=step,
                    started_at=datetime.now(timezone.utc),
                    detail="cancelled" if cancelled else f"skipped ({reason})",
                )
            )

    def _run_step(self, target: Target, action: Action, step: Step, report: TargetReport) -> ExecutionResult:
        attempts = step.retries + 1
        result: Optional[ExecutionResult] = None
        for attempt in range(1, attempts + 1):
            if self.progress_callback:
                self.progress_callback(target, action.name, step)
            result = self._invoke(target, action, step)
            result.host = target.name
            result.action = action.name
            result.step = step
            result.attempt = attempt
            report.results.append(result)
            logger.debug(
                "action=%s step=%s host=%s attempt=%d status=%s",
                action.name,
                step.description,
                target.name,
                attempt,
                result.status.value,
            )
            if result.ok or result.status not in RETRYABLE_STATUSES or attempt == attempts:
                break
            logger.warning(
                "host=%s step=%s %s; retrying (%d/%d)",
                target.name,
                step.description,
                result.status.value,
                attempt,
                step.retries,
            )
            if self._cancel.wait(self.retry_delay):
                break
        assert result is not None
        return result

    def _invoke(self, target: Target, action: Action, step: Step) -> ExecutionResult:
        executor = self.executor_for(target)
        timeout = step.timeout if step.timeout is not None else self.config.timeout
        started = datetime.now(timezone.utc)
        clock = time.monotonic()
        if step.task:
            handler = self.tasks.get(step.task)
            if handler is None:
                return ExecutionResult(
                    command=f"task:{step.task}",
                    status=ResultStatus.COMMAND_FAILURE,
                    started_at=started,
                    detail=f"unknown task '{step.task}'",
                )
            context = TaskContext(target, action.name, step, executor, self._cancel, timeout)
            try:
                result = handler(context)
            except ServiceRestartError as exc:
                # Reported even when cancelled: the host is left with its services down.
                logger.critical("host=%s step=%s %s", target.name, step.description, exc)
                result = ExecutionResult(
                    command=f"task:{step.task}",
                    status=ResultStatus.COMMAND_FAILURE,
                    detail=str(exc),
                    critical=True,
                )
            except Exception as exc:  # noqa: BLE001
                logger.error("host=%s step=%s failed: %s", target.name, step.description, exc)
                status = ResultStatus.CANCELLED if self._cancel.is_set() else ResultStatus.COMMAND_FAILURE
                result = ExecutionResult(command=f"task:{step.task}", status=status, detail=str(exc))
            result.started_at = started
            result.duration = time.monotonic() - clock
            return result

        try:
            command = self.render(step.command or "", target)
        except Exception as exc:  # noqa: BLE001
            return ExecutionResult(
                command=step.command or "",
                status=ResultStatus.COMMAND_FAILURE,
                started_at=started,
                detail=f"unable to render command: {exc}",
            )
        return executor.execute(target, command, timeout, self._cancel)

    def render(self, template: str, target: Target) -> str:
        variables = self.secret_resolver.resolve(target.variables)
        context = template_context(self.config, variables)
        return Template(template).safe_substitute({k: str(v) for k, v in context.items()})

    def _notifiers(self) -> list[Notifier]:
        notifiers: list[Notifier] = [LogNotifier()]
        if self.config.notify.command and self.dry_run:
            logger.info("dry-run: alerts are logged only, notify command not run")
        elif self.config.notify.command:
            notifiers.append(CommandNotifier(self.config.notify.command, self.config.notify.timeout))
        return notifiers

    # Task handlers ----------------------------------------------------------
    def _backup_database(self, ctx: TaskContext) -> ExecutionResult:
        if not self.backups.database_uri(ctx.target):
            return _task_result(ctx, ResultStatus.SKIPPED, "skipped (no database_uri configured)")
        return self._create_backup(ctx, BackupKind.DATABASE)

    def _backup_filesystem(self, ctx: TaskContext) -> ExecutionResult:
        if not self.backups.source_dir(ctx.target):
            return _task_result(ctx, ResultStatus.SKIPPED, "skipped (no backup source configured)")
        return self._create_backup(ctx, BackupKind.FILESYSTEM)

    def _create_backup(self, ctx: TaskContext, kind: BackupKind) -> ExecutionResult:
        if self.dry_run:
            return _task_result(ctx, ResultStatus.SKIPPED, "skipped (dry-run)")
        backup = self.backups.create_backup(kind, ctx.target, cancel=ctx.cancel, timeout=ctx.timeout)
        return _task_result(ctx, ResultStatus.SUCCESS, f"created {backup.identifier} ({backup.size} bytes)")

    def _backup_prune(self, ctx: TaskContext) -> ExecutionResult:
        if self.dry_run:
            return _task_result(ctx, ResultStatus.SKIPPED, "skipped (dry-run)")
        pruned = self.backups.prune(hosts=[ctx.target.name], cancel=ctx.cancel)
        if pruned.failures:
            detail = f"removed {pruned.count}, failed {len(pruned.failures)}: " + "; ".join(
                str(failure) for failure in pruned.failures
            )
            status = ResultStatus.CANCELLED if ctx.cancel.is_set() else ResultStatus.COMMAND_FAILURE
            return _task_result(ctx, status, detail)
        return _task_result(ctx, ResultStatus.SUCCESS, f"removed {pruned.count}")

    def _monitor_check(self, ctx: TaskContext) -> ExecutionResult:
        outcome = self.monitor.check(ctx.target, ctx.executor, cancel=ctx.cancel, timeout=ctx.timeout)
        sample = outcome.sample
        failures = sample.failures
        if failures and not sample.values:
            statuses = {result.status for result in failures.values()}
            for status in (ResultStatus.CANCELLED, ResultStatus.CONNECTION_ERROR, ResultStatus.TIMEOUT):
                if status in statuses:
                    first = next(r for r in failures.values() if r.status is status)
                    return _task_result(ctx, status, first.summary())

        problems: list[str] = []
        for rule in self.monitor.rules:
            value = sample.values.get(rule.metric)
            if value is None or not self.monitor.state(ctx.target.name, rule).breached:
                continue
            problems.append(f"{rule.metric}={value:g} {rule.comparison} {rule.threshold:g}")
        for name, result in failures.items():
            problems.append(f"{name} unavailable ({result.summary()})")
        for alert in outcome.undelivered:
            problems.append(f"alert for {alert.rule.metric} undelivered")

        if problems:
            return _task_result(ctx, ResultStatus.COMMAND_FAILURE, "; ".join(problems))
        rendered = ", ".join(f"{name}={value:g}" for name, value in sorted(sample.values.items()))
        return _task_result(ctx, ResultStatus.SUCCESS, f"healthy ({rendered})" if rendered else "healthy")


def _task_result(ctx: TaskContext, status: ResultStatus, detail: str) -> ExecutionResult:
    return ExecutionResult(command=f"task:{ctx.step.task}", status=status, host=ctx.target.name, detail=detail)
