"""Stagehand deployment orchestration toolkit."""

from .runner import Orchestrator
from .config import load_config

__all__ = ["Orchestrator", "load_config"]
