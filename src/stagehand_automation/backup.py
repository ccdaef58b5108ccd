from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from string import Template
from typing import Any, Callable, Optional

from .config import BackupSettings
from .errors import (
    AggregatedPruneFailure,
    ArchiveError,
    BackupError,
    IncompatibleBackup,
    PruneFailure,
    ServiceRestartError,
)
from .executors import Executor, shell_join
from .secrets import SecretResolver
from .types import Backup, BackupKind, ExecutionResult, ResultStatus, Target

logger = logging.getLogger(__name__)

FORMATS = {
    BackupKind.FILESYSTEM: "tar.gz",
    BackupKind.DATABASE: "mongodump-archive-gzip",
}
SUFFIXES = {
    BackupKind.FILESYSTEM: ".tar.gz",
    BackupKind.DATABASE: ".archive.gz",
}
# GNU tar exits 1 when a file changed while it was being read.
TAR_ACCEPTED = {0, 1}
IDENTIFIER_FORMAT = "%Y%m%dT%H%M%SZ"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupManifest:
    """Durable record of every backup, stored as JSON next to the run state."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.RLock()

    def entries(self, host: Optional[str] = None, kind: Optional[BackupKind] = None) -> list[Backup]:
        with self._lock:
            backups = self._load()
        return [
            backup
            for backup in backups
            if (host is None or backup.host == host) and (kind is None or backup.kind is kind)
        ]

    def add(self, backup: Backup) -> None:
        with self._lock:
            backups = self._load()
            backups.append(backup)
            self._write(backups)

    def discard(self, removed: list[Backup]) -> None:
        keys = {_manifest_key(backup) for backup in removed}
        with self._lock:
            backups = [backup for backup in self._load() if _manifest_key(backup) not in keys]
            self._write(backups)

    def identifier_taken(self, host: str, kind: BackupKind, identifier: str) -> bool:
        return any(backup.identifier == identifier for backup in self.entries(host, kind))

    def _load(self) -> list[Backup]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError:
            logger.warning("Backup manifest %s is corrupt; treating it as empty", self.path)
            return []
        backups: list[Backup] = []
        for raw in data.get("backups", []):
            try:
                backups.append(Backup.from_dict(raw))
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping unreadable manifest entry %r: %s", raw, exc)
        return backups

    def _write(self, backups: list[Backup]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"backups": [backup.to_dict() for backup in backups]}
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2))
        try:
            os.chmod(tmp, 0o600)
        except OSError:
            logger.debug("Unable to chmod manifest %s", tmp, exc_info=True)
        os.replace(tmp, self.path)


def _manifest_key(backup: Backup) -> tuple[str, str, str]:
    return (backup.host, backup.kind.value, backup.identifier)


@dataclass
class PruneResult:
    removed: list[Backup] = field(default_factory=list)
    failures: list[PruneFailure] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.removed)

    def raise_for_failures(self) -> None:
        if self.failures:
            raise AggregatedPruneFailure(self.failures)


class BackupManager:
    """Creates, prunes and restores backups stored on the target hosts.

    The manifest is the only shared state and every change to it goes
    through ``BackupManifest`` under its lock.
    """

    def __init__(
        self,
        settings: BackupSettings,
        manifest: BackupManifest,
        executor_for: Callable[[Target], Executor],
        *,
        targets: Optional[dict[str, Target]] = None,
        context: Optional[dict[str, Any]] = None,
        clock: Callable[[], datetime] = _utcnow,
        timeout: Optional[float] = None,
        resolver: Optional[SecretResolver] = None,
    ):
        self.settings = settings
        self.manifest = manifest
        self.executor_for = executor_for
        self.targets = dict(targets or {})
        self.context = dict(context or {})
        self.clock = clock
        self.timeout = timeout
        self.resolver = resolver or SecretResolver()

    # Create -----------------------------------------------------------------
    def create_backup(
        self,
        kind: BackupKind,
        target: Target,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Backup:
        kind = BackupKind(kind)
        timeout = timeout if timeout is not None else self.timeout
        created = self.clock()
        identifier = self._identifier(target, kind, created)
        path = self.backup_path(target, kind, identifier)
        executor = self.executor_for(target)

        mkdir = executor.execute(target, f"mkdir -p {shell_join([str(Path(path).parent)])}", timeout, cancel)
        if mkdir.failed:
            raise ArchiveError(f"{target.name}: cannot create backup directory: {mkdir.summary()}")

        if kind is BackupKind.DATABASE:
            self._dump_database(target, executor, path, timeout, cancel)
        else:
            self._archive_tree(target, executor, path, timeout, cancel)

        backup = Backup(
            identifier=identifier,
            kind=kind,
            host=target.name,
            path=path,
            size=self._remote_size(target, executor, path),
            format=FORMATS[kind],
            created_at=created,
            expires_at=created + timedelta(days=self.settings.retention_days),
        )
        self.manifest.add(backup)
        logger.info("backup=%s kind=%s host=%s size=%d", identifier, kind.value, target.name, backup.size)
        return backup

    def _dump_database(
        self,
        target: Target,
        executor: Executor,
        path: str,
        timeout: Optional[float],
        cancel: Optional[threading.Event],
    ) -> None:
        uri = self.database_uri(target)
        if not uri:
            raise BackupError(f"{target.name}: no database_uri configured")
        command = shell_join(["mongodump", f"--uri={uri}", f"--archive={path}", "--gzip"])
        result = executor.execute(target, command, timeout, cancel)
        if result.failed:
            self._discard_partial(target, executor, path)
            raise ArchiveError(f"{target.name}: database dump failed: {result.summary()}")

    def _archive_tree(
        self,
        target: Target,
        executor: Executor,
        path: str,
        timeout: Optional[float],
        cancel: Optional[threading.Event],
    ) -> None:
        source = self.source_dir(target)
        if not source:
            raise BackupError(f"{target.name}: no backup source directory configured")
        excludes = [f"--exclude={pattern}" for pattern in self.settings.exclude]
        command = shell_join(["tar", "czf", path, *excludes, "-C", source, "."])

        with self._services_stopped(target, executor, timeout, cancel):
            result = executor.execute(target, command, timeout, cancel)
            if result.status is ResultStatus.COMMAND_FAILURE and result.exit_code in TAR_ACCEPTED:
                logger.warning("host=%s tar reported files changed during archive", target.name)
            elif result.failed:
                self._discard_partial(target, executor, path)
                raise ArchiveError(f"{target.name}: archive failed: {result.summary()}")

    # Prune ------------------------------------------------------------------
    def prune(
        self,
        retention_days: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
        hosts: Optional[list[str]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> PruneResult:
        """Delete every backup whose expiry lies strictly before ``now``.

        Deletion is attempted for each expired backup independently; the
        ones that could not be removed stay in the manifest and are listed
        in ``PruneResult.failures``.
        """
        now = now or self.clock()
        expired = [
            backup
            for backup in self.manifest.entries()
            if (hosts is None or backup.host in hosts) and now > self._expiry(backup, retention_days)
        ]
        result = PruneResult()
        for backup in expired:
            target = self.targets.get(backup.host)
            if target is None:
                result.failures.append(PruneFailure(backup, f"host '{backup.host}' is not configured"))
                continue
            try:
                executor = self.executor_for(target)
                outcome = executor.execute(target, f"rm -f {shell_join([backup.path])}", self.timeout, cancel)
            except Exception as exc:  # noqa: BLE001
                result.failures.append(PruneFailure(backup, str(exc)))
                continue
            if outcome.failed:
                result.failures.append(PruneFailure(backup, outcome.summary()))
                continue
            result.removed.append(backup)
        if result.removed:
            self.manifest.discard(result.removed)
        logger.info("pruned=%d failed=%d", result.count, len(result.failures))
        return result

    def _expiry(self, backup: Backup, retention_days: Optional[int]) -> datetime:
        if retention_days is None:
            return backup.expires_at
        return backup.created_at + timedelta(days=retention_days)

    # Restore ----------------------------------------------------------------
    def restore(
        self,
        backup: Backup,
        target: Target,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        self.check_compatible(backup, target)
        timeout = timeout if timeout is not None else self.timeout
        executor = self.executor_for(target)
        if backup.kind is BackupKind.DATABASE:
            uri = self.database_uri(target)
            command = shell_join(["mongorestore", f"--uri={uri}", f"--archive={backup.path}", "--gzip", "--drop"])
            result = executor.execute(target, command, timeout, cancel)
        else:
            source = str(self.source_dir(target))
            command = shell_join(["tar", "xzf", backup.path, "-C", source])
            with self._services_stopped(target, executor, timeout, cancel):
                result = executor.execute(target, command, timeout, cancel)
        level = logging.INFO if result.ok else logging.ERROR
        logger.log(level, "restore=%s host=%s status=%s", backup.identifier, target.name, result.status.value)
        return result

    def check_compatible(self, backup: Backup, target: Target) -> None:
        expected = FORMATS.get(backup.kind)
        if expected is None or backup.format != expected:
            raise IncompatibleBackup(backup, f"unsupported format '{backup.format}'")
        if backup.host != target.name:
            raise IncompatibleBackup(backup, f"recorded for host '{backup.host}', not '{target.name}'")
        if backup.kind is BackupKind.DATABASE and not self.database_uri(target):
            raise IncompatibleBackup(backup, f"target '{target.name}' has no database endpoint")
        if backup.kind is BackupKind.FILESYSTEM and not self.source_dir(target):
            raise IncompatibleBackup(backup, f"target '{target.name}' has no source directory")

    def list_backups(self, host: Optional[str] = None, kind: Optional[BackupKind] = None) -> list[Backup]:
        return sorted(self.manifest.entries(host, kind), key=lambda backup: backup.created_at)

    # Helpers ----------------------------------------------------------------
    def backup_path(self, target: Target, kind: BackupKind, identifier: str) -> str:
        directory = self._render(self.settings.directory, target).rstrip("/")
        return f"{directory}/{target.name}/{kind.value}-{identifier}{SUFFIXES[kind]}"

    def database_uri(self, target: Target) -> Optional[str]:
        uri = target.variables.get("database_uri") or self.settings.database_uri
        if isinstance(uri, dict):
            uri = self.resolver.resolve_reference(uri)
        return self._render(str(uri), target) if uri else None

    def source_dir(self, target: Target) -> Optional[str]:
        source = target.variables.get("backup_source") or self.settings.source
        return self._render(str(source), target) if source else None

    def _render(self, value: str, target: Target) -> str:
        return Template(value).safe_substitute({**self.context, **target.variables})

    def _identifier(self, target: Target, kind: BackupKind, created: datetime) -> str:
        base = created.strftime(IDENTIFIER_FORMAT)
        identifier = base
        suffix = 1
        while self.manifest.identifier_taken(target.name, kind, identifier):
            identifier = f"{base}-{suffix}"
            suffix += 1
        return identifier

    def _remote_size(self, target: Target, executor: Executor, path: str) -> int:
        result = executor.execute(target, f"stat -c %s {shell_join([path])}", self.timeout, mutable=False)
        try:
            return int(result.stdout.strip())
        except ValueError:
            return 0

    def _discard_partial(self, target: Target, executor: Executor, path: str) -> None:
        cleanup = executor.execute(target, f"rm -f {shell_join([path])}", self.timeout)
        if cleanup.failed:
            logger.warning("host=%s unable to remove partial backup %s", target.name, path)

    def _services_stopped(
        self,
        target: Target,
        executor: Executor,
        timeout: Optional[float],
        cancel: Optional[threading.Event],
    ) -> "_StoppedServices":
        return _StoppedServices(self, target, executor, timeout, cancel)

    def compose_command(self, target: Target, verb: str) -> str:
        app_dir = self._render("${app_dir}", target)
        compose_file = self._render("${compose_file}", target)
        return f"cd {shell_join([app_dir])} && docker compose -f {shell_join([compose_file])} {verb}"


class _StoppedServices:
    """Stops the Compose stack on entry and always tries to start it on exit.

    A failed restart raises ``ServiceRestartError`` chained to whatever
    failure happened while the services were down.
    """

    def __init__(
        self,
        manager: BackupManager,
        target: Target,
        executor: Executor,
        timeout: Optional[float],
        cancel: Optional[threading.Event],
    ):
        self.manager = manager
        self.target = target
        self.executor = executor
        self.timeout = timeout
        self.cancel = cancel
        self.enabled = manager.settings.stop_services

    def __enter__(self) -> "_StoppedServices":
        if not self.enabled:
            return self
        stop = self.executor.execute(
            self.target, self.manager.compose_command(self.target, "stop"), self.timeout, self.cancel
        )
        if stop.failed:
            self._restart(None)
            raise ArchiveError(f"{self.target.name}: unable to stop services: {stop.summary()}")
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.enabled:
            self._restart(exc)
        return False

    def _restart(self, cause: Optional[BaseException]) -> None:
        # Restart ignores the cancel signal: services must come back regardless.
        start = self.executor.execute(self.target, self.manager.compose_command(self.target, "start"), self.timeout)
        if start.failed:
            message = f"{self.target.name}: services did not restart: {start.summary()}"
            logger.critical(message)
            raise ServiceRestartError(message) from cause
