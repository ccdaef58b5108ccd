from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional


class OnFailure(str, Enum):
    ABORT_ALL = "abort-all"
    SKIP_REMAINING = "skip-remaining-in-action"
    CONTINUE = "continue"


class ResultStatus(str, Enum):
    SUCCESS = "success"
    COMMAND_FAILURE = "command_failure"
    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


RETRYABLE_STATUSES = frozenset({ResultStatus.CONNECTION_ERROR, ResultStatus.TIMEOUT})


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"


EXIT_CODES = {
    RunStatus.SUCCESS: 0,
    RunStatus.PARTIAL_FAILURE: 1,
    RunStatus.FAILURE: 2,
}
EXIT_CONFIG_ERROR = 3


@dataclass
class Target:
    name: str
    address: Optional[str] = None
    user: Optional[str] = None
    port: int = 22
    connection: str = "ssh"
    identity_file: Optional[str] = None
    credential: Optional[dict[str, Any]] = None
    variables: dict[str, Any] = field(default_factory=dict)
    # Set by the executor when a connection is attempted; never loaded from config.
    reachable: Optional[bool] = field(default=None, compare=False)

    @property
    def destination(self) -> str:
        host = self.address or self.name
        return f"{self.user}@{host}" if self.user else host


@dataclass(frozen=True)
class Step:
    description: str
    command: Optional[str] = None
    task: Optional[str] = None
    idempotent: bool = True
    timeout: Optional[float] = None
    on_failure: OnFailure = OnFailure.ABORT_ALL
    retries: int = 0

    def __post_init__(self) -> None:
        if bool(self.command) == bool(self.task):
            raise ValueError(f"step '{self.description}' needs exactly one of command or task")
        if self.retries < 0:
            raise ValueError(f"step '{self.description}' retries must be >= 0")

    @property
    def retryable(self) -> bool:
        return self.retries > 0


@dataclass(frozen=True)
class Action:
    name: str
    steps: tuple[Step, ...]
    description: str = ""


@dataclass
class ExecutionResult:
    command: str
    status: ResultStatus
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    started_at: Optional[datetime] = None
    host: Optional[str] = None
    action: Optional[str] = None
    step: Optional[Step] = None
    attempt: int = 1
    detail: str = ""
    # Set when the failure left the host degraded (services not restarted).
    critical: bool = False

    @property
    def ok(self) -> bool:
        return self.status in (ResultStatus.SUCCESS, ResultStatus.SKIPPED)

    @property
    def failed(self) -> bool:
        return not self.ok

    def summary(self) -> str:
        if self.detail:
            return self.detail
        if self.status is ResultStatus.SUCCESS:
            return f"ran (rc={self.exit_code})"
        prefix = self.status.value if self.exit_code is None else f"rc={self.exit_code}"
        message = _first_line(self.stderr) or _first_line(self.stdout)
        return f"{prefix}: {message}" if message else prefix


@dataclass
class TargetReport:
    target: Target
    results: list[ExecutionResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        if not self.results:
            return False
        # Only the last attempt of a retried step decides its outcome.
        final: dict[tuple[Optional[str], int], ExecutionResult] = {}
        for index, result in enumerate(self.results):
            marker = id(result.step) if result.step is not None else -index - 1
            final[(result.action, marker)] = result
        return all(result.ok for result in final.values())


@dataclass
class RunReport:
    actions: list[str]
    targets: list[TargetReport] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def status(self) -> RunStatus:
        outcomes = [report.succeeded for report in self.targets]
        if outcomes and all(outcomes):
            return RunStatus.SUCCESS
        if any(outcomes):
            return RunStatus.PARTIAL_FAILURE
        return RunStatus.FAILURE

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    def results(self) -> list[ExecutionResult]:
        return [result for report in self.targets for result in report.results]


class BackupKind(str, Enum):
    FILESYSTEM = "filesystem"
    DATABASE = "database"


@dataclass(frozen=True)
class Backup:
    identifier: str
    kind: BackupKind
    host: str
    path: str
    size: int
    format: str
    created_at: datetime
    expires_at: datetime

    def expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "kind": self.kind.value,
            "host": self.host,
            "path": self.path,
            "size": self.size,
            "format": self.format,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Backup":
        return cls(
            identifier=str(data["identifier"]),
            kind=BackupKind(data["kind"]),
            host=str(data["host"]),
            path=str(data["path"]),
            size=int(data.get("size", 0)),
            format=str(data.get("format", "")),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


@dataclass(frozen=True)
class AlertRule:
    metric: str
    threshold: float
    comparison: str = ">"
    cooldown: timedelta = timedelta(minutes=10)

    @property
    def key(self) -> str:
        return f"{self.metric}{self.comparison}{self.threshold:g}"


class AlertPhase(str, Enum):
    NORMAL = "normal"
    BREACHED_UNNOTIFIED = "breached-unnotified"
    BREACHED_NOTIFIED = "breached-notified"


@dataclass
class AlertState:
    rule: AlertRule
    host: str
    phase: AlertPhase = AlertPhase.NORMAL
    last_fired: Optional[datetime] = None

    @property
    def breached(self) -> bool:
        return self.phase is not AlertPhase.NORMAL


@dataclass(frozen=True)
class Alert:
    rule: AlertRule
    host: str
    value: float
    fired_at: datetime
    reason: str = "breach"

    def message(self) -> str:
        return (
            f"{self.host}: {self.rule.metric}={self.value:g} "
            f"{self.rule.comparison} {self.rule.threshold:g} ({self.reason})"
        )


def _first_line(text: str) -> str:
    stripped = (text or "").strip()
    if not stripped:
        return ""
    line = stripped.splitlines()[0]
    return (line[:157] + "...") if len(line) > 160 else line
