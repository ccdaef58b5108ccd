"""Built-in actions for a Docker Compose web application host.

Commands are ``string.Template`` strings rendered with ``safe_substitute``
against the ``[settings]`` table and each target's ``variables``, so shell
variables such as ``$HOME`` pass through untouched.
"""

from __future__ import annotations

from typing import Any, Iterable

from .config import StagehandConfig
from .registry import ActionRegistry
from .types import Action, OnFailure, Step

DEFAULT_SETTINGS: dict[str, Any] = {
    "app_dir": "/opt/app",
    "compose_file": "docker-compose.yml",
    "repo_url": "",
    "repo_branch": "main",
    "ssh_port": 22,
    "packages": "git curl ca-certificates",
    "swap_size": "2G",
    "log_retention_days": 14,
    "image_retention_hours": 168,
    "health_wait_seconds": 60,
}

COMPOSE = "cd ${app_dir} && docker compose -f ${compose_file}"

TASK_BACKUP_DATABASE = "backup.database"
TASK_BACKUP_FILESYSTEM = "backup.filesystem"
TASK_BACKUP_PRUNE = "backup.prune"
TASK_MONITOR_CHECK = "monitor.check"

CONTINUE = OnFailure.CONTINUE
SKIP_REMAINING = OnFailure.SKIP_REMAINING


SETUP = Action(
    name="setup",
    description="Prepare a fresh host: packages, Docker, firewall, fail2ban",
    steps=(
        Step("Update package index", "sudo apt-get update -y", retries=2, timeout=300),
        Step(
            "Install base packages",
            "sudo DEBIAN_FRONTEND=noninteractive apt-get install -y ${packages} ufw fail2ban",
            retries=1,
            timeout=900,
        ),
        Step(
            "Install Docker engine",
            "command -v docker >/dev/null 2>&1 || curl -fsSL https://get.docker.com | sudo sh",
            timeout=900,
        ),
        Step("Allow deploy user to run Docker", 'sudo usermod -aG docker "$(id -un)"'),
        Step(
            "Configure firewall",
            "sudo ufw allow ${ssh_port}/tcp && sudo ufw allow 80/tcp && sudo ufw allow 443/tcp"
            " && sudo ufw --force enable",
        ),
        Step("Enable fail2ban", "sudo systemctl enable --now fail2ban"),
        Step(
            "Create application directory",
            'sudo mkdir -p ${app_dir} && sudo chown "$(id -un)" ${app_dir}',
        ),
        Step(
            "Clone repository",
            "test -d ${app_dir}/.git || git clone --branch ${repo_branch} ${repo_url} ${app_dir}",
            retries=2,
            timeout=600,
        ),
    ),
)

DEPLOY = Action(
    name="deploy",
    description="Pull the latest code and (re)start the Compose stack",
    steps=(
        Step(
            "Fetch latest code",
            "cd ${app_dir} && git fetch --prune origin && git checkout ${repo_branch}"
            " && git reset --hard origin/${repo_branch}",
            retries=2,
            timeout=300,
        ),
        Step("Build images", COMPOSE + " build --pull", timeout=1800),
        Step("Start containers", COMPOSE + " up -d --remove-orphans", timeout=600),
        Step(
            "Wait for healthy containers",
            "for i in $(seq 1 ${health_wait_seconds}); do"
            ' test -z "$(docker ps -q --filter health=starting)" && break; sleep 1; done;'
            ' test -z "$(docker ps -q --filter health=unhealthy)"',
            timeout=300,
        ),
        Step("Remove dangling images", "docker image prune -f", on_failure=CONTINUE),
    ),
)

OPTIMIZE = Action(
    name="optimize",
    description="Reclaim disk and tune the host",
    steps=(
        Step(
            "Prune unused Docker data",
            'docker system prune -af --filter "until=${image_retention_hours}h"',
            on_failure=CONTINUE,
            timeout=900,
        ),
        Step(
            "Vacuum journal logs",
            "sudo journalctl --vacuum-time=${log_retention_days}d",
            on_failure=CONTINUE,
        ),
        Step(
            "Ensure swap file",
            "swapon --show | grep -q /swapfile || (sudo fallocate -l ${swap_size} /swapfile"
            " && sudo chmod 600 /swapfile && sudo mkswap /swapfile && sudo swapon /swapfile)",
            on_failure=CONTINUE,
        ),
        Step(
            "Tune kernel parameters",
            "sudo sysctl -w vm.swappiness=10 net.core.somaxconn=1024",
            on_failure=CONTINUE,
        ),
    ),
)

MAINTENANCE = Action(
    name="maintenance",
    description="Routine upkeep: upgrades, certificates, security daemons",
    steps=(
        Step(
            "Upgrade packages",
            "sudo apt-get update -y && sudo DEBIAN_FRONTEND=noninteractive apt-get upgrade -y",
            retries=1,
            timeout=1800,
            on_failure=SKIP_REMAINING,
        ),
        Step("Renew TLS certificates", "sudo certbot renew --quiet", on_failure=CONTINUE, timeout=600),
        Step("Refresh containers", COMPOSE + " up -d", on_failure=CONTINUE, timeout=600),
        Step("Check fail2ban", "sudo fail2ban-client status", on_failure=CONTINUE),
        Step("Check firewall", "sudo ufw status verbose", on_failure=CONTINUE),
        Step("Remove unused packages", "sudo apt-get autoremove -y", on_failure=CONTINUE),
    ),
)

BACKUP = Action(
    name="backup",
    description="Dump the database, archive the application tree, prune old backups",
    steps=(
        Step("Dump database", task=TASK_BACKUP_DATABASE, on_failure=CONTINUE, timeout=1800),
        Step("Archive application files", task=TASK_BACKUP_FILESYSTEM, on_failure=CONTINUE, timeout=1800),
        Step("Prune expired backups", task=TASK_BACKUP_PRUNE, on_failure=CONTINUE),
    ),
)

MONITOR = Action(
    name="monitor",
    description="Collect health metrics and raise alerts",
    steps=(
        Step("Evaluate health rules", task=TASK_MONITOR_CHECK, on_failure=CONTINUE, retries=1, timeout=60),
        Step("List container status", COMPOSE + " ps", on_failure=CONTINUE, timeout=60),
    ),
)

BUILTIN_ACTIONS: tuple[Action, ...] = (SETUP, DEPLOY, OPTIMIZE, MAINTENANCE, BACKUP, MONITOR)


def build_registry(config: StagehandConfig, extra: Iterable[Action] = ()) -> ActionRegistry:
    """Registry with the built-ins followed by configured actions.

    A configured action reusing a built-in name raises ``DuplicateAction``.
    """
    registry = ActionRegistry(BUILTIN_ACTIONS)
    for action in (*config.actions, *extra):
        registry.register(action)
    return registry


def template_context(config: StagehandConfig, variables: dict[str, Any]) -> dict[str, Any]:
    return {**DEFAULT_SETTINGS, **config.settings, **variables}
