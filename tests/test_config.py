from dataclasses import FrozenInstanceError
from datetime import timedelta
from pathlib import Path

import pytest

from stagehand_automation.config import (
    DEFAULT_CONFIG,
    StagehandConfig,
    default_config_path,
    load_config,
)
from stagehand_automation.errors import ConfigurationError
from stagehand_automation.types import OnFailure


def test_load_config_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.conf")
    assert isinstance(config, StagehandConfig)
    assert list(config.targets) == ["local"]
    assert config.targets["local"].connection == "local"
    assert config.backup.retention_days == 7
    assert config.manifest_path == Path("/var/lib/stagehand/backups.json")


def test_load_config_overrides(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text(
        """
        [defaults]
        parallel = 2
        timeout = 120
        state_dir = "/srv/stagehand"

        [settings]
        app_dir = "/srv/app"
        repo_branch = "production"

        [backup]
        directory = "/srv/backups"
        exclude = ["node_modules"]
        retention_days = 14
        database_uri = "mongodb://localhost:27017/app"

        [targets.web1]
        address = "203.0.113.10"
        user = "deploy"
        port = 2222
        identity_file = "~/.ssh/deploy"
        variables = { domain = "example.com" }

        [targets.web2]
        address = "203.0.113.11"
        user = "deploy"
        credential = { aws_secret = "deploy-key", key = "private_key" }

        [[alerts]]
        metric = "disk_percent"
        threshold = 90
        cooldown_minutes = 15

        [[alerts]]
        metric = "unhealthy_containers"
        threshold = 0
        comparison = ">"

        [notify]
        command = "mail -s alert ops@example.com"

        [actions.warm-cache]
        description = "Prime the HTTP cache"

        [[actions.warm-cache.steps]]
        description = "Hit the home page"
        command = "curl -fsS http://localhost/"
        on_failure = "continue"
        retries = 2
        timeout = 30
        """
    )

    config = load_config(cfg_path)

    assert config.parallel == 2
    assert config.timeout == 120.0
    assert config.state_dir == Path("/srv/stagehand")
    assert config.settings["app_dir"] == "/srv/app"
    assert config.backup.source == "/srv/app"
    assert config.backup.exclude == ("node_modules",)
    assert config.backup.retention_days == 14

    web1 = config.targets["web1"]
    assert web1.destination == "deploy@203.0.113.10"
    assert web1.port == 2222
    assert web1.variables == {"domain": "example.com"}
    assert web1.reachable is None
    assert config.targets["web2"].credential == {"aws_secret": "deploy-key", "key": "private_key"}

    disk, unhealthy = config.alerts
    assert disk.cooldown == timedelta(minutes=15)
    assert unhealthy.cooldown == timedelta(minutes=10)
    assert config.notify.command == "mail -s alert ops@example.com"

    (action,) = config.actions
    assert action.name == "warm-cache"
    step = action.steps[0]
    assert step.on_failure is OnFailure.CONTINUE
    assert step.retries == 2
    assert step.timeout == 30.0


def test_config_is_immutable(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.conf")
    with pytest.raises(FrozenInstanceError):
        config.parallel = 8  # type: ignore[misc]


def test_rejects_unknown_policy(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text(
        """
        [[actions.bad.steps]]
        command = "true"
        on_failure = "retry-forever"
        """
    )
    with pytest.raises(ConfigurationError, match="on_failure"):
        load_config(cfg_path)


def test_rejects_bad_comparison(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text(
        """
        [[alerts]]
        metric = "load_1m"
        threshold = 4
        comparison = "=>"
        """
    )
    with pytest.raises(ConfigurationError, match="comparison"):
        load_config(cfg_path)


def test_rejects_malformed_toml(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text("[defaults\nparallel = 2\n")
    with pytest.raises(ConfigurationError):
        load_config(cfg_path)


def test_config_path_from_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("STAGEHAND_CONFIG", raising=False)
    assert default_config_path() == DEFAULT_CONFIG
    monkeypatch.setenv("STAGEHAND_CONFIG", str(tmp_path / "alt.conf"))
    assert default_config_path() == tmp_path / "alt.conf"


def test_rejects_non_numeric_defaults(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text('[defaults]\nparallel = "four"\n')
    with pytest.raises(ConfigurationError, match=r"\[defaults\]"):
        load_config(cfg_path)


def test_rejects_target_that_is_not_a_table(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text('[targets]\nweb = "10.0.0.1"\n')
    with pytest.raises(ConfigurationError, match="target 'web' must be a table"):
        load_config(cfg_path)


def test_rejects_non_numeric_threshold(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text('[[alerts]]\nmetric = "disk_percent"\nthreshold = "high"\n')
    with pytest.raises(ConfigurationError, match=r"\[alerts 1\]"):
        load_config(cfg_path)


def test_rejects_bad_target_port(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text('[targets.web1]\naddress = "203.0.113.10"\nport = "ssh"\n')
    with pytest.raises(ConfigurationError, match=r"\[targets.web1\]"):
        load_config(cfg_path)
