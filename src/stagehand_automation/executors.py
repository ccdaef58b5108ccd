from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence
import logging
import os
import shlex
import signal
import subprocess
import tempfile
import threading
import time

from .secrets import KeyFileCache
from .types import ExecutionResult, ResultStatus, Target

logger = logging.getLogger(__name__)

# OpenSSH reserves 255 for its own failures (refused, auth, dropped channel).
SSH_CONNECTION_FAILURE = 255


class Executor:
    """Runs a shell command for a target and reports an ``ExecutionResult``.

    ``execute`` never raises for a non-zero exit: the outcome is encoded in
    the result's ``status``. Timeouts and cancellation terminate the whole
    process group that was started for the command.
    """

    poll_interval = 0.1
    kill_grace = 2.0

    def __init__(self, *, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(
        self,
        target: Target,
        command: str,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        *,
        mutable: bool = True,
    ) -> ExecutionResult:
        started = datetime.now(timezone.utc)
        if cancel is not None and cancel.is_set():
            return ExecutionResult(
                command=command,
                status=ResultStatus.CANCELLED,
                started_at=started,
                host=target.name,
                detail="cancelled before start",
            )
        if self.dry_run and mutable:
            return ExecutionResult(
                command=command,
                status=ResultStatus.SKIPPED,
                started_at=started,
                host=target.name,
                detail="skipped (dry-run)",
            )

        try:
            argv = self.build_command(target, command)
        except (RuntimeError, ValueError, KeyError) as exc:
            # Auth material could not be resolved, so no channel can be opened.
            target.reachable = False
            return ExecutionResult(
                command=command,
                status=ResultStatus.CONNECTION_ERROR,
                started_at=started,
                host=target.name,
                detail=f"credential unavailable: {exc}",
            )
        logger.debug("host=%s cmd=%s", target.name, command)
        clock = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except OSError as exc:
            target.reachable = False
            return ExecutionResult(
                command=command,
                status=ResultStatus.CONNECTION_ERROR,
                started_at=started,
                host=target.name,
                duration=time.monotonic() - clock,
                detail=f"unable to start {argv[0]}: {exc}",
            )

        interrupted, stdout, stderr = self._wait(proc, timeout, cancel)
        duration = time.monotonic() - clock
        if interrupted is not None:
            detail = (
                f"timed out after {timeout:g}s" if interrupted is ResultStatus.TIMEOUT else "cancelled"
            )
            return ExecutionResult(
                command=command,
                status=interrupted,
                exit_code=proc.returncode,
                stdout=stdout,
                stderr=stderr,
                duration=duration,
                started_at=started,
                host=target.name,
                detail=detail,
            )

        status = self.classify(proc.returncode)
        target.reachable = status is not ResultStatus.CONNECTION_ERROR
        return ExecutionResult(
            command=command,
            status=status,
            exit_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
            duration=duration,
            started_at=started,
            host=target.name,
        )

    def build_command(self, target: Target, command: str) -> list[str]:
        raise NotImplementedError

    def classify(self, returncode: int) -> ResultStatus:
        return ResultStatus.SUCCESS if returncode == 0 else ResultStatus.COMMAND_FAILURE

    def close(self) -> None:
        """Release pooled resources; safe to call more than once."""

    def _wait(
        self,
        proc: subprocess.Popen,
        timeout: Optional[float],
        cancel: Optional[threading.Event],
    ) -> tuple[Optional[ResultStatus], str, str]:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            wait = self.poll_interval
            if deadline is not None:
                wait = max(min(wait, deadline - time.monotonic()), 0.0)
            try:
                stdout, stderr = proc.communicate(timeout=wait)
                return None, stdout or "", stderr or ""
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.is_set():
                return (ResultStatus.CANCELLED, *self._terminate(proc))
            if deadline is not None and time.monotonic() >= deadline:
                return (ResultStatus.TIMEOUT, *self._terminate(proc))

    def _terminate(self, proc: subprocess.Popen) -> tuple[str, str]:
        self._signal_group(proc, signal.SIGTERM)
        try:
            stdout, stderr = proc.communicate(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            self._signal_group(proc, signal.SIGKILL)
            stdout, stderr = proc.communicate()
        return stdout or "", stderr or ""

    @staticmethod
    def _signal_group(proc: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.send_signal(sig)


class LocalExecutor(Executor):
    """Executor that runs commands on the control host through ``sh -c``."""

    def build_command(self, target: Target, command: str) -> list[str]:
        return ["sh", "-c", command]


class SSHExecutor(Executor):
    """Executor backed by the OpenSSH client.

    Connections are pooled through OpenSSH multiplexing: the first command
    for a host opens a master connection under ``control_dir`` that later
    commands reuse until ``control_persist`` seconds of idleness.
    """

    def __init__(
        self,
        *,
        dry_run: bool = False,
        connect_timeout: int = 10,
        control_dir: Optional[Path] = None,
        control_persist: int = 60,
        ssh_binary: str = "ssh",
        key_cache: Optional[KeyFileCache] = None,
    ):
        super().__init__(dry_run=dry_run)
        self.connect_timeout = connect_timeout
        self.control_dir = control_dir
        self.control_persist = control_persist
        self.ssh_binary = ssh_binary
        self.key_cache = key_cache or KeyFileCache()
        self._lock = threading.Lock()
        self._used: dict[str, Target] = {}

    def build_command(self, target: Target, command: str) -> list[str]:
        argv = self.ssh_options(target)
        argv.extend([target.destination, "--", command])
        with self._lock:
            self._used[target.name] = target
        return argv

    def ssh_options(self, target: Target) -> list[str]:
        argv = [
            self.ssh_binary,
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
            "-p",
            str(target.port),
        ]
        control_path = self._control_path()
        if control_path:
            argv.extend(
                [
                    "-o",
                    "ControlMaster=auto",
                    "-o",
                    f"ControlPath={control_path}",
                    "-o",
                    f"ControlPersist={self.control_persist}",
                ]
            )
        identity = self._identity(target)
        if identity:
            argv.extend(["-i", identity])
        return argv

    def classify(self, returncode: int) -> ResultStatus:
        if returncode == SSH_CONNECTION_FAILURE:
            return ResultStatus.CONNECTION_ERROR
        return super().classify(returncode)

    def close(self) -> None:
        with self._lock:
            used = list(self._used.values())
            self._used.clear()
        control_path = self._control_path(create=False)
        if control_path:
            for target in used:
                cmd = [self.ssh_binary, "-o", f"ControlPath={control_path}", "-O", "exit", target.destination]
                try:
                    subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=self.connect_timeout)
                except (OSError, subprocess.TimeoutExpired):
                    logger.debug("Unable to close control connection for %s", target.name, exc_info=True)
        self.key_cache.cleanup()

    def _identity(self, target: Target) -> Optional[str]:
        if target.credential:
            with self._lock:
                return str(self.key_cache.path_for(target.name, target.credential))
        if target.identity_file:
            return os.path.expanduser(target.identity_file)
        return None

    def _control_path(self, create: bool = True) -> Optional[str]:
        if self.control_dir is None:
            return None
        if create and not self.control_dir.exists():
            self.control_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.control_dir, 0o700)
        # %C hashes host, port and user so the socket path stays short.
        return str(self.control_dir / "%C")


def default_control_dir() -> Path:
    return Path(tempfile.gettempdir()) / f"stagehand-ssh-{os.getuid()}"


def shell_join(parts: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in parts)
