from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .types import Backup


class StagehandError(Exception):
    """Base class for errors raised by the orchestration core."""


class ConfigurationError(StagehandError, ValueError):
    """Raised for configuration or resolution problems; never retried."""


class UnknownAction(ConfigurationError):
    def __init__(self, name: str, known: Optional[list[str]] = None):
        message = f"unknown action '{name}'"
        if known:
            message = f"{message} (expected one of: {', '.join(known)})"
        super().__init__(message)
        self.name = name


class DuplicateAction(ConfigurationError):
    def __init__(self, name: str):
        super().__init__(f"action '{name}' is already registered")
        self.name = name


class UnknownTarget(ConfigurationError):
    def __init__(self, name: str):
        super().__init__(f"target '{name}' is not defined")
        self.name = name


class BackupError(StagehandError):
    severity = "error"


class ArchiveError(BackupError):
    """Archiving or dumping failed; dependent services were restarted."""


class ServiceRestartError(BackupError):
    """Services stopped for a backup could not be restarted."""

    severity = "critical"


class IncompatibleBackup(BackupError):
    def __init__(self, backup: "Backup", reason: str):
        super().__init__(f"backup {backup.identifier} ({backup.kind.value}) cannot be restored: {reason}")
        self.backup = backup
        self.reason = reason


class PruneFailure:
    """One backup that could not be deleted during a prune pass."""

    def __init__(self, backup: "Backup", reason: str):
        self.backup = backup
        self.reason = reason

    def __repr__(self) -> str:
        return f"PruneFailure({self.backup.identifier!r}, {self.reason!r})"

    def __str__(self) -> str:
        return f"{self.backup.identifier} ({self.backup.path}): {self.reason}"


class AggregatedPruneFailure(BackupError):
    def __init__(self, failures: list[PruneFailure]):
        details = "; ".join(str(failure) for failure in failures)
        super().__init__(f"{len(failures)} backup(s) could not be pruned: {details}")
        self.failures = failures
