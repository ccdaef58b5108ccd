import copy
import shlex
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from stagehand_automation.actions import DEFAULT_SETTINGS
from stagehand_automation.backup import BackupManager, BackupManifest
from stagehand_automation.config import BackupSettings
from stagehand_automation.errors import (
    AggregatedPruneFailure,
    ArchiveError,
    IncompatibleBackup,
    ServiceRestartError,
)
from stagehand_automation.executors import Executor, LocalExecutor
from stagehand_automation.types import Backup, BackupKind, ExecutionResult, ResultStatus, Target

T0 = datetime(2026, 10, 1, 3, 0, tzinfo=timezone.utc)


class FakeHost(Executor):
    """Pretends to be a remote host with a MongoDB instance and a file store."""

    def __init__(self, failing: tuple[str, ...] = ()):
        super().__init__()
        self.failing = failing
        self.commands: list[str] = []
        self.files: dict[str, object] = {}
        self.database: dict[str, list[str]] = {"users": ["ada", "grace"]}

    def execute(self, target, command, timeout=None, cancel=None, *, mutable=True):  # type: ignore[override]
        self.commands.append(command)
        if any(fragment in command for fragment in self.failing):
            return ExecutionResult(command, ResultStatus.COMMAND_FAILURE, exit_code=2, stderr="boom")
        argv = shlex.split(command)
        stdout = ""
        if argv[0] == "mongodump":
            self.files[_option(argv, "--archive")] = copy.deepcopy(self.database)
        elif argv[0] == "mongorestore":
            self.database = copy.deepcopy(self.files[_option(argv, "--archive")])
        elif argv[0] == "tar" and argv[1] == "czf":
            self.files[argv[2]] = "archive"
        elif argv[0] == "stat":
            stdout = "2048\n" if argv[-1] in self.files else ""
        elif argv[0] == "rm":
            self.files.pop(argv[-1], None)
        return ExecutionResult(command, ResultStatus.SUCCESS, exit_code=0, stdout=stdout)


def _option(argv: list[str], name: str) -> str:
    prefix = name + "="
    return next(arg[len(prefix):] for arg in argv if arg.startswith(prefix))


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _manager(tmp_path: Path, host: Executor, **settings) -> tuple[BackupManager, Target, Clock]:
    target = Target(name="web1", address="203.0.113.10")
    defaults = {"directory": "/var/backups/app", "source": "/opt/app", "database_uri": "mongodb://db/app"}
    defaults.update(settings)
    clock = Clock(T0)
    manager = BackupManager(
        BackupSettings(**defaults),
        BackupManifest(tmp_path / "backups.json"),
        lambda _target: host,
        targets={"web1": target},
        context=DEFAULT_SETTINGS,
        clock=clock,
    )
    return manager, target, clock


def test_database_backup_round_trips(tmp_path: Path) -> None:
    host = FakeHost()
    manager, target, _ = _manager(tmp_path, host)

    backup = manager.create_backup(BackupKind.DATABASE, target)
    captured = copy.deepcopy(host.database)
    host.database["users"].append("mallory")
    host.database["sessions"] = ["stale"]

    result = manager.restore(backup, target)

    assert result.status is ResultStatus.SUCCESS
    assert host.database == captured
    assert backup.identifier == "20261001T030000Z"
    assert backup.path == "/var/backups/app/web1/database-20261001T030000Z.archive.gz"
    assert backup.size == 2048
    assert backup.expires_at == T0 + timedelta(days=7)


def test_filesystem_backup_stops_archives_and_restarts(tmp_path: Path) -> None:
    host = FakeHost()
    manager, target, _ = _manager(tmp_path, host, exclude=("node_modules", ".git"))

    backup = manager.create_backup(BackupKind.FILESYSTEM, target)

    verbs = [cmd for cmd in host.commands if "docker compose" in cmd or cmd.startswith("tar")]
    assert verbs[0].endswith("stop")
    assert verbs[1].startswith("tar czf")
    assert "--exclude=node_modules" in verbs[1] and "--exclude=.git" in verbs[1]
    assert verbs[2].endswith("start")
    assert backup.format == "tar.gz"


def test_archive_failure_still_restarts_services(tmp_path: Path) -> None:
    host = FakeHost(failing=("tar czf",))
    manager, target, _ = _manager(tmp_path, host)

    with pytest.raises(ArchiveError):
        manager.create_backup(BackupKind.FILESYSTEM, target)

    assert host.commands[-1].startswith("rm -f") or host.commands[-1].endswith("start")
    assert any(cmd.endswith("start") for cmd in host.commands)
    assert manager.list_backups() == []


def test_restart_failure_outranks_archive_failure(tmp_path: Path) -> None:
    host = FakeHost(failing=("tar czf", "docker-compose.yml start"))
    manager, target, _ = _manager(tmp_path, host)

    with pytest.raises(ServiceRestartError) as excinfo:
        manager.create_backup(BackupKind.FILESYSTEM, target)

    assert isinstance(excinfo.value.__cause__, ArchiveError)
    assert excinfo.value.severity == "critical"
    assert ArchiveError.severity == "error"


def test_restart_failure_after_good_archive(tmp_path: Path) -> None:
    host = FakeHost(failing=("docker-compose.yml start",))
    manager, target, _ = _manager(tmp_path, host)

    with pytest.raises(ServiceRestartError) as excinfo:
        manager.create_backup(BackupKind.FILESYSTEM, target)

    assert excinfo.value.__cause__ is None


def test_prune_retention_boundary(tmp_path: Path) -> None:
    host = FakeHost()
    manager, target, clock = _manager(tmp_path, host, retention_days=3)
    backup = manager.create_backup(BackupKind.DATABASE, target)
    window = timedelta(days=3)

    early = manager.prune(now=T0 + window - timedelta(seconds=1))
    assert early.count == 0
    at_expiry = manager.prune(now=T0 + window)
    assert at_expiry.count == 0
    assert manager.list_backups() == [backup]

    late = manager.prune(now=T0 + window + timedelta(seconds=1))
    assert late.removed == [backup]
    assert manager.list_backups() == []
    assert backup.path not in host.files


def test_prune_with_explicit_retention_days(tmp_path: Path) -> None:
    host = FakeHost()
    manager, target, _ = _manager(tmp_path, host, retention_days=30)
    manager.create_backup(BackupKind.DATABASE, target)

    result = manager.prune(1, now=T0 + timedelta(days=1, seconds=1))

    assert result.count == 1


def test_prune_failures_are_aggregated(tmp_path: Path) -> None:
    host = FakeHost()
    manager, target, clock = _manager(tmp_path, host, retention_days=1)
    first = manager.create_backup(BackupKind.DATABASE, target)
    clock.now = T0 + timedelta(hours=1)
    second = manager.create_backup(BackupKind.DATABASE, target)
    clock.now = T0 + timedelta(hours=2)
    third = manager.create_backup(BackupKind.DATABASE, target)
    host.failing = (f"rm -f {second.path}",)

    result = manager.prune(now=T0 + timedelta(days=2))

    assert [backup.identifier for backup in result.removed] == [first.identifier, third.identifier]
    assert [failure.backup for failure in result.failures] == [second]
    assert manager.list_backups() == [second]
    with pytest.raises(AggregatedPruneFailure) as excinfo:
        result.raise_for_failures()
    assert excinfo.value.failures == result.failures


def test_prune_reports_unknown_host(tmp_path: Path) -> None:
    manifest = BackupManifest(tmp_path / "backups.json")
    orphan = Backup(
        identifier="20250101T000000Z",
        kind=BackupKind.DATABASE,
        host="retired",
        path="/var/backups/app/retired/db.archive.gz",
        size=1,
        format="mongodump-archive-gzip",
        created_at=T0 - timedelta(days=30),
        expires_at=T0 - timedelta(days=23),
    )
    manifest.add(orphan)
    manager = BackupManager(BackupSettings(), manifest, lambda _t: FakeHost(), targets={})

    result = manager.prune(now=T0)

    assert result.count == 0
    assert "not configured" in result.failures[0].reason
    assert manifest.entries() == [orphan]


def test_manifest_survives_restart(tmp_path: Path) -> None:
    host = FakeHost()
    manager, target, _ = _manager(tmp_path, host)
    backup = manager.create_backup(BackupKind.DATABASE, target)

    reloaded, _, _ = _manager(tmp_path, host)

    assert reloaded.list_backups() == [backup]
    assert ((tmp_path / "backups.json").stat().st_mode & 0o777) == 0o600


def test_identifiers_stay_unique_within_a_second(tmp_path: Path) -> None:
    manager, target, _ = _manager(tmp_path, FakeHost())

    first = manager.create_backup(BackupKind.DATABASE, target)
    second = manager.create_backup(BackupKind.DATABASE, target)

    assert first.identifier != second.identifier
    assert second.identifier.startswith(first.identifier)


def test_restore_rejects_incompatible_backups(tmp_path: Path) -> None:
    host = FakeHost()
    manager, target, _ = _manager(tmp_path, host)
    backup = manager.create_backup(BackupKind.DATABASE, target)

    other = Target(name="web2")
    with pytest.raises(IncompatibleBackup, match="web1"):
        manager.restore(backup, other)

    legacy = Backup(**{**backup.__dict__, "format": "mysqldump-sql"})
    with pytest.raises(IncompatibleBackup, match="format"):
        manager.restore(legacy, target)

    no_db, _, _ = _manager(tmp_path / "nodb", host, database_uri=None)
    with pytest.raises(IncompatibleBackup, match="database endpoint"):
        no_db.restore(backup, target)


def test_target_variables_override_database_uri(tmp_path: Path) -> None:
    host = FakeHost()
    manager, target, _ = _manager(tmp_path, host)
    target.variables["database_uri"] = "mongodb://${db_host}/shop"
    target.variables["db_host"] = "10.0.0.5"

    manager.create_backup(BackupKind.DATABASE, target)

    dump = next(cmd for cmd in host.commands if cmd.startswith("mongodump"))
    assert "--uri=mongodb://10.0.0.5/shop" in dump


def test_filesystem_round_trip_with_tar(tmp_path: Path) -> None:
    app = tmp_path / "app"
    (app / "static").mkdir(parents=True)
    (app / "static" / "index.html").write_text("<h1>v1</h1>")
    (app / "node_modules").mkdir()
    (app / "node_modules" / "huge.js").write_text("x" * 100)
    target = Target(name="local", connection="local")
    manager = BackupManager(
        BackupSettings(
            directory=str(tmp_path / "backups"),
            source=str(app),
            exclude=("node_modules",),
            stop_services=False,
        ),
        BackupManifest(tmp_path / "state" / "backups.json"),
        lambda _target: LocalExecutor(),
        targets={"local": target},
        context=DEFAULT_SETTINGS,
    )

    backup = manager.create_backup(BackupKind.FILESYSTEM, target)
    (app / "static" / "index.html").write_text("<h1>broken</h1>")

    result = manager.restore(backup, target)

    assert result.ok
    assert (app / "static" / "index.html").read_text() == "<h1>v1</h1>"
    assert Path(backup.path).exists()
    assert backup.size > 0
    listing = LocalExecutor().execute(target, f"tar tzf {backup.path}")
    assert "node_modules" not in listing.stdout


def test_database_uri_from_secret_reference(tmp_path: Path) -> None:
    class FakeResolver:
        def resolve_reference(self, spec):
            assert spec == {"aws_secret": "shop/mongo", "key": "uri"}
            return "mongodb://secret-host/shop"

    host = FakeHost()
    manager, target, _ = _manager(tmp_path, host, database_uri={"aws_secret": "shop/mongo", "key": "uri"})
    manager.resolver = FakeResolver()

    manager.create_backup(BackupKind.DATABASE, target)

    dump = next(cmd for cmd in host.commands if cmd.startswith("mongodump"))
    assert "--uri=mongodb://secret-host/shop" in dump
