from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterator, Optional, Union
import os

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import ConfigurationError
from .types import Action, AlertRule, OnFailure, Step, Target


DEFAULT_CONFIG = Path("/etc/stagehand/main.conf")
DEFAULT_STATE_DIR = Path("/var/lib/stagehand")
CONFIG_ENV = "STAGEHAND_CONFIG"

DEFAULT_EXCLUDES = ("node_modules", ".git", "__pycache__", "*.log")
COMPARISONS = {">", ">=", "<", "<=", "==", "!="}


@dataclass(frozen=True)
class BackupSettings:
    directory: str = "/var/backups/stagehand"
    source: Optional[str] = None
    exclude: tuple[str, ...] = DEFAULT_EXCLUDES
    retention_days: int = 7
    database_uri: Optional[Union[str, dict[str, Any]]] = None
    stop_services: bool = True


@dataclass(frozen=True)
class NotifySettings:
    command: Optional[str] = None
    timeout: float = 30.0


@dataclass(frozen=True)
class StagehandConfig:
    targets: dict[str, Target] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)
    parallel: int = 4
    timeout: float = 600.0
    connect_timeout: int = 10
    state_dir: Path = DEFAULT_STATE_DIR
    control_dir: Optional[Path] = None
    backup: BackupSettings = field(default_factory=BackupSettings)
    alerts: tuple[AlertRule, ...] = ()
    notify: NotifySettings = field(default_factory=NotifySettings)
    actions: tuple[Action, ...] = ()

    @property
    def manifest_path(self) -> Path:
        return self.state_dir / "backups.json"

    @property
    def alert_state_path(self) -> Path:
        return self.state_dir / "alerts.json"


def default_config_path() -> Path:
    env = os.environ.get(CONFIG_ENV)
    return Path(env) if env else DEFAULT_CONFIG


def load_config(path: Path) -> StagehandConfig:
    if not path.exists():
        return parse_config({})
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"{path}: {exc}") from None
    return parse_config(data)


def parse_config(data: dict[str, Any]) -> StagehandConfig:
    defaults = _table(data, "defaults")
    settings = dict(_table(data, "settings"))
    with _reading("defaults"):
        control_dir = defaults.get("control_dir")
        parallel = max(1, int(defaults.get("parallel", 4)))
        timeout = float(defaults.get("timeout", 600))
        connect_timeout = int(defaults.get("connect_timeout", 10))
        state_dir = Path(defaults.get("state_dir", DEFAULT_STATE_DIR))
    with _reading("backup"):
        backup = _parse_backup(_table(data, "backup"), settings)
    with _reading("notify"):
        notify = _parse_notify(_table(data, "notify"))
    raw_alerts = data.get("alerts", [])
    if not isinstance(raw_alerts, list):
        raise ConfigurationError("alerts must be an array of tables ([[alerts]])")
    alerts = []
    for idx, raw in enumerate(raw_alerts, start=1):
        with _reading(f"alerts {idx}"):
            alerts.append(_parse_alert(_entry(raw, f"alert {idx}"), idx))
    actions = []
    for name, raw in _table(data, "actions").items():
        with _reading(f"actions.{name}"):
            actions.append(_parse_action(name, _entry(raw, f"action '{name}'")))
    return StagehandConfig(
        targets=_parse_targets(_table(data, "targets")),
        settings=settings,
        parallel=parallel,
        timeout=timeout,
        connect_timeout=connect_timeout,
        state_dir=state_dir,
        control_dir=Path(control_dir) if control_dir else None,
        backup=backup,
        alerts=tuple(alerts),
        notify=notify,
        actions=tuple(actions),
    )


@contextmanager
def _reading(section: str) -> Iterator[None]:
    """Re-raise malformed values as ``ConfigurationError`` naming the section."""
    try:
        yield
    except ConfigurationError:
        raise
    except (TypeError, ValueError, AttributeError) as exc:
        raise ConfigurationError(f"[{section}]: invalid value: {exc}") from None


def _table(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigurationError(f"[{key}] must be a table")
    return value


def _entry(value: Any, label: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigurationError(f"{label} must be a table")
    return value


def _parse_targets(raw_targets: dict[str, Any]) -> dict[str, Target]:
    if not raw_targets:
        return {"local": Target(name="local", connection="local")}
    targets: dict[str, Target] = {}
    for name, raw in raw_targets.items():
        payload = _entry(raw, f"target '{name}'")
        with _reading(f"targets.{name}"):
            targets[name] = _parse_target(name, payload)
    return targets


def _parse_target(name: str, payload: dict[str, Any]) -> Target:
    connection = str(payload.get("connection", "ssh"))
    if connection not in {"ssh", "local"}:
        raise ConfigurationError(f"target '{name}' has unknown connection '{connection}'")
    credential = payload.get("credential")
    if credential is not None and not isinstance(credential, dict):
        raise ConfigurationError(f"target '{name}' credential must be a table")
    return Target(
        name=name,
        address=payload.get("address"),
        user=payload.get("user"),
        port=int(payload.get("port", 22)),
        connection=connection,
        identity_file=payload.get("identity_file"),
        credential=dict(credential) if credential else None,
        variables=dict(payload.get("variables", {})),
    )


def _parse_backup(raw: dict[str, Any], settings: dict[str, Any]) -> BackupSettings:
    exclude = raw.get("exclude", DEFAULT_EXCLUDES)
    if isinstance(exclude, str):
        exclude = [exclude]
    source = raw.get("source") or settings.get("app_dir")
    retention = int(raw.get("retention_days", 7))
    if retention < 0:
        raise ConfigurationError("backup retention_days must be >= 0")
    return BackupSettings(
        directory=str(raw.get("directory", BackupSettings.directory)),
        source=str(source) if source else None,
        exclude=tuple(str(item) for item in exclude),
        retention_days=retention,
        database_uri=raw.get("database_uri"),
        stop_services=bool(raw.get("stop_services", True)),
    )


def _parse_notify(raw: dict[str, Any]) -> NotifySettings:
    return NotifySettings(
        command=raw.get("command"),
        timeout=float(raw.get("timeout", 30)),
    )


def _parse_alert(raw: dict[str, Any], index: int) -> AlertRule:
    metric = raw.get("metric")
    if not metric:
        raise ConfigurationError(f"alert {index} is missing a metric")
    if "threshold" not in raw:
        raise ConfigurationError(f"alert {index} is missing a threshold")
    comparison = str(raw.get("comparison", ">"))
    if comparison not in COMPARISONS:
        raise ConfigurationError(f"alert {index} has unsupported comparison '{comparison}'")
    return AlertRule(
        metric=str(metric),
        threshold=float(raw["threshold"]),
        comparison=comparison,
        cooldown=timedelta(minutes=float(raw.get("cooldown_minutes", 10))),
    )


def _parse_action(name: str, raw: dict[str, Any]) -> Action:
    raw_steps = raw.get("steps", [])
    if not raw_steps:
        raise ConfigurationError(f"action '{name}' defines no steps")
    steps = tuple(parse_step(step, f"{name}.{idx}") for idx, step in enumerate(raw_steps, start=1))
    return Action(name=name, steps=steps, description=str(raw.get("description", "")))


def parse_step(raw: dict[str, Any], label: str) -> Step:
    policy = raw.get("on_failure", OnFailure.ABORT_ALL.value)
    try:
        on_failure = OnFailure(policy)
    except ValueError:
        raise ConfigurationError(f"step {label} has unknown on_failure policy '{policy}'") from None
    timeout = raw.get("timeout")
    try:
        return Step(
            description=str(raw.get("description") or raw.get("name") or label),
            command=raw.get("command"),
            task=raw.get("task"),
            idempotent=bool(raw.get("idempotent", True)),
            timeout=float(timeout) if timeout is not None else None,
            on_failure=on_failure,
            retries=int(raw.get("retries", 0)),
        )
    except ValueError as exc:
        raise ConfigurationError(f"step {label}: {exc}") from None
