from __future__ import annotations

import json
import logging
import operator
import os
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol

from .executors import Executor
from .types import Alert, AlertPhase, AlertRule, AlertState, ExecutionResult, Target

logger = logging.getLogger(__name__)

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}

METRIC_COMMANDS: dict[str, str] = {
    "disk_percent": "df -P / | awk 'NR==2 {gsub(\"%\", \"\", $5); print $5}'",
    "memory_percent": "free | awk '/^Mem:/ {printf \"%.1f\", $3 / $2 * 100}'",
    "load_1m": "cut -d ' ' -f1 /proc/loadavg",
    "unhealthy_containers": "docker ps --filter health=unhealthy --format '{{.Names}}'",
}
# Metrics whose command prints one name per line; the value is the count.
LIST_METRICS = {"unhealthy_containers"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MetricSample:
    host: str
    values: dict[str, float] = field(default_factory=dict)
    items: dict[str, list[str]] = field(default_factory=dict)
    failures: dict[str, ExecutionResult] = field(default_factory=dict)


@dataclass
class CheckOutcome:
    sample: MetricSample
    alerts: list[Alert] = field(default_factory=list)
    undelivered: list[Alert] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.alerts and not self.sample.failures


class Notifier(Protocol):
    def send(self, alert: Alert) -> None: ...


class LogNotifier:
    def send(self, alert: Alert) -> None:
        logger.warning("ALERT %s", alert.message())


class CommandNotifier:
    """Runs a local command per alert with the alert exposed as environment."""

    def __init__(self, command: str, timeout: float = 30.0):
        self.command = command
        self.timeout = timeout

    def send(self, alert: Alert) -> None:
        env = os.environ.copy()
        env.update(
            {
                "STAGEHAND_ALERT_HOST": alert.host,
                "STAGEHAND_ALERT_METRIC": alert.rule.metric,
                "STAGEHAND_ALERT_VALUE": f"{alert.value:g}",
                "STAGEHAND_ALERT_THRESHOLD": f"{alert.rule.threshold:g}",
                "STAGEHAND_ALERT_COMPARISON": alert.rule.comparison,
                "STAGEHAND_ALERT_REASON": alert.reason,
                "STAGEHAND_ALERT_MESSAGE": alert.message(),
            }
        )
        try:
            proc = subprocess.run(
                ["sh", "-c", self.command],
                capture_output=True,
                text=True,
                env=env,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise RuntimeError(f"notify command timed out after {self.timeout:g}s") from None
        if proc.returncode != 0:
            raise RuntimeError(
                f"notify command failed (rc={proc.returncode}): {proc.stderr.strip() or proc.stdout.strip()}"
            )


class HealthMonitor:
    """Evaluates alert rules with hysteresis.

    Each (host, rule) pair moves between three phases:

    * ``normal`` to ``breached-notified`` on the first breaching reading
      (an alert fires),
    * ``breached-notified`` stays put while breached, re-firing once the
      rule's cooldown has elapsed since the last alert,
    * any phase returns to ``normal`` on one non-breaching reading.

    ``breached-unnotified`` is entered when delivering an alert failed; the
    next breaching reading fires again without waiting for the cooldown.
    """

    def __init__(
        self,
        rules: Iterable[AlertRule] = (),
        notifiers: Optional[list[Notifier]] = None,
        *,
        state_path: Optional[Path] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.rules = tuple(rules)
        self.notifiers = list(notifiers) if notifiers is not None else [LogNotifier()]
        self.state_path = state_path
        self.clock = clock
        self._lock = threading.Lock()
        self._states: dict[tuple[str, str], AlertState] = {}
        self._load()

    def evaluate(
        self,
        rules: Iterable[AlertRule],
        metrics: dict[str, float],
        *,
        host: str = "local",
        now: Optional[datetime] = None,
    ) -> list[Alert]:
        now = now or self.clock()
        fired: list[Alert] = []
        with self._lock:
            for rule in rules:
                value = metrics.get(rule.metric)
                if value is None:
                    logger.debug("host=%s metric=%s missing; rule skipped", host, rule.metric)
                    continue
                alert = self._advance(self._state_for(host, rule), value, now)
                if alert is not None:
                    fired.append(alert)
            self._save()
        return fired

    def _advance(self, state: AlertState, value: float, now: datetime) -> Optional[Alert]:
        rule = state.rule
        if not OPERATORS[rule.comparison](value, rule.threshold):
            if state.breached:
                logger.info("host=%s metric=%s recovered value=%g", state.host, rule.metric, value)
            state.phase = AlertPhase.NORMAL
            return None

        if state.phase is AlertPhase.NORMAL:
            reason = "breach"
        elif state.phase is AlertPhase.BREACHED_UNNOTIFIED:
            reason = "redelivery"
        elif state.last_fired is None or now - state.last_fired >= rule.cooldown:
            reason = "reminder"
        else:
            return None

        state.phase = AlertPhase.BREACHED_NOTIFIED
        state.last_fired = now
        return Alert(rule=rule, host=state.host, value=value, fired_at=now, reason=reason)

    def mark_unnotified(self, alert: Alert) -> None:
        with self._lock:
            state = self._state_for(alert.host, alert.rule)
            if state.breached:
                state.phase = AlertPhase.BREACHED_UNNOTIFIED
            self._save()

    def state(self, host: str, rule: AlertRule) -> AlertState:
        with self._lock:
            return self._state_for(host, rule)

    def notify(self, alerts: list[Alert]) -> list[Alert]:
        """Deliver alerts; returns the ones no notifier could deliver."""
        undelivered: list[Alert] = []
        for alert in alerts:
            delivered = False
            for notifier in self.notifiers:
                try:
                    notifier.send(alert)
                except Exception as exc:  # noqa: BLE001
                    logger.error("notifier=%s alert=%s failed: %s", type(notifier).__name__, alert.message(), exc)
                    continue
                delivered = True
            if not delivered:
                self.mark_unnotified(alert)
                undelivered.append(alert)
        return undelivered

    def collect(
        self,
        target: Target,
        executor: Executor,
        *,
        metrics: Optional[Iterable[str]] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> MetricSample:
        wanted = list(metrics) if metrics is not None else self._wanted_metrics()
        sample = MetricSample(host=target.name)
        for name in wanted:
            command = METRIC_COMMANDS.get(name)
            if command is None:
                logger.warning("host=%s metric=%s has no collector", target.name, name)
                continue
            result = executor.execute(target, command, timeout, cancel, mutable=False)
            if result.failed:
                sample.failures[name] = result
                continue
            try:
                self._record(sample, name, result.stdout)
            except ValueError:
                result.detail = f"unparseable output {result.stdout.strip()!r}"
                sample.failures[name] = result
        return sample

    def check(
        self,
        target: Target,
        executor: Executor,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> CheckOutcome:
        sample = self.collect(target, executor, cancel=cancel, timeout=timeout)
        alerts = self.evaluate(self.rules, sample.values, host=target.name)
        undelivered = self.notify(alerts)
        return CheckOutcome(sample=sample, alerts=alerts, undelivered=undelivered)

    @staticmethod
    def _record(sample: MetricSample, name: str, output: str) -> None:
        if name in LIST_METRICS:
            names = [line.strip() for line in output.splitlines() if line.strip()]
            sample.items[name] = names
            sample.values[name] = float(len(names))
            return
        sample.values[name] = float(output.strip())

    def _wanted_metrics(self) -> list[str]:
        seen: list[str] = []
        for rule in self.rules:
            if rule.metric not in seen:
                seen.append(rule.metric)
        return seen or list(METRIC_COMMANDS)

    def _state_for(self, host: str, rule: AlertRule) -> AlertState:
        key = (host, rule.key)
        state = self._states.get(key)
        if state is None or state.rule != rule:
            previous = state
            state = AlertState(rule=rule, host=host)
            if previous is not None:
                state.phase = previous.phase
                state.last_fired = previous.last_fired
            self._states[key] = state
        return state

    # Persistence ------------------------------------------------------------
    def _load(self) -> None:
        if not self.state_path or not self.state_path.exists():
            return
        try:
            data = json.loads(self.state_path.read_text())
        except json.JSONDecodeError:
            logger.warning("Alert state %s is corrupt; starting fresh", self.state_path)
            return
        rules = {rule.key: rule for rule in self.rules}
        for host, entries in data.items():
            for key, raw in entries.items():
                rule = rules.get(key)
                if rule is None:
                    continue
                last_fired = raw.get("last_fired")
                self._states[(host, key)] = AlertState(
                    rule=rule,
                    host=host,
                    phase=AlertPhase(raw.get("phase", AlertPhase.NORMAL.value)),
                    last_fired=datetime.fromisoformat(last_fired) if last_fired else None,
                )

    def _save(self) -> None:
        if not self.state_path:
            return
        data: dict[str, dict[str, dict[str, Optional[str]]]] = {}
        for (host, key), state in self._states.items():
            data.setdefault(host, {})[key] = {
                "phase": state.phase.value,
                "last_fired": state.last_fired.isoformat() if state.last_fired else None,
            }
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_path.with_name(self.state_path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        try:
            os.chmod(tmp, 0o600)
        except OSError:
            logger.debug("Unable to chmod alert state %s", tmp, exc_info=True)
        os.replace(tmp, self.state_path)
