from __future__ import annotations

import logging
from typing import Iterable, Iterator

from .errors import DuplicateAction, UnknownAction
from .types import Action

logger = logging.getLogger(__name__)


class ActionRegistry:
    """Name to ``Action`` mapping, filled once at startup through ``register``."""

    def __init__(self, actions: Iterable[Action] = ()):
        self._actions: dict[str, Action] = {}
        for action in actions:
            self.register(action)

    def register(self, action: Action) -> None:
        if action.name in self._actions:
            raise DuplicateAction(action.name)
        if not action.steps:
            raise ValueError(f"action '{action.name}' has no steps")
        logger.debug("registered action=%s steps=%d", action.name, len(action.steps))
        self._actions[action.name] = action

    def resolve(self, name: str) -> Action:
        try:
            return self._actions[name]
        except KeyError:
            raise UnknownAction(name, self.names()) from None

    def names(self) -> list[str]:
        return list(self._actions)

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def __iter__(self) -> Iterator[Action]:
        return iter(self._actions.values())

    def __len__(self) -> int:
        return len(self._actions)
