import pytest

from stagehand_automation.actions import BUILTIN_ACTIONS, build_registry
from stagehand_automation.config import StagehandConfig
from stagehand_automation.errors import DuplicateAction, UnknownAction
from stagehand_automation.registry import ActionRegistry
from stagehand_automation.types import Action, Step


def _action(name: str, *commands: str) -> Action:
    return Action(name=name, steps=tuple(Step(f"step {i}", cmd) for i, cmd in enumerate(commands, start=1)))


def test_resolve_returns_steps_in_registration_order():
    registry = ActionRegistry()
    action = _action("release", "git pull", "docker compose build", "docker compose up -d")
    registry.register(action)

    resolved = registry.resolve("release")

    assert resolved is action
    assert [step.command for step in resolved.steps] == [
        "git pull",
        "docker compose build",
        "docker compose up -d",
    ]


def test_resolve_unknown_action_raises():
    registry = ActionRegistry([_action("deploy", "true")])

    with pytest.raises(UnknownAction) as excinfo:
        registry.resolve("launch")

    assert excinfo.value.name == "launch"
    assert "deploy" in str(excinfo.value)


def test_register_duplicate_raises():
    registry = ActionRegistry([_action("deploy", "true")])

    with pytest.raises(DuplicateAction):
        registry.register(_action("deploy", "false"))

    assert registry.resolve("deploy").steps[0].command == "true"


def test_builtin_registry_has_all_actions():
    registry = build_registry(StagehandConfig())

    assert registry.names() == ["setup", "deploy", "optimize", "maintenance", "backup", "monitor"]
    for action in BUILTIN_ACTIONS:
        assert registry.resolve(action.name) is action


def test_configured_action_cannot_shadow_builtin():
    config = StagehandConfig(actions=(_action("deploy", "echo custom"),))

    with pytest.raises(DuplicateAction):
        build_registry(config)


def test_configured_actions_follow_builtins():
    config = StagehandConfig(actions=(_action("warm-cache", "curl -fsS http://localhost/"),))

    registry = build_registry(config)

    assert registry.names()[-1] == "warm-cache"
    assert len(registry) == 7


def test_step_requires_exactly_one_of_command_or_task():
    with pytest.raises(ValueError):
        Step("nothing")
    with pytest.raises(ValueError):
        Step("both", command="true", task="backup.prune")
