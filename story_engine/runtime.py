"""Runtime wiring: storage, config, generator, queue and crucible.

`Runtime.handler_for` is the one place a GenerationTarget is mapped to its
handler; the target union is closed, so an unmatched variant is a bug.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from story_engine.config import CrucibleSettings, get_config
from story_engine.crucible import handlers as crucible_handlers
from story_engine.crucible.engine import Crucible
from story_engine.handlers import BrainstormHandler, FieldHandler, GenerationHandler, ListHandler
from story_engine.llm import EchoGenerator, Generator, HttpGenerator, TokenBudget
from story_engine.models import (
    BrainstormTarget,
    CrucibleChainTarget,
    CrucibleDirectorTarget,
    CrucibleElementsTarget,
    CrucibleExpansionTarget,
    CrucibleGoalsTarget,
    CruciblePrerequisitesTarget,
    CrucibleStructuralGoalTarget,
    FieldTarget,
    GenerationTarget,
    ListTarget,
)
from story_engine.queue import GenerationQueue
from story_engine.storage import Storage

logger = logging.getLogger(__name__)


def build_generator(config: dict[str, Any]) -> Generator:
    """HttpGenerator from config, or EchoGenerator when no backend is set."""
    conn = config["connection"]
    if not conn["provider_url"]:
        logger.warning("no provider_url configured; using EchoGenerator")
        return EchoGenerator()
    budget_cfg = config["generation"]["token_budget"]
    budget = None
    if budget_cfg["capacity"] > 0:
        budget = TokenBudget(budget_cfg["capacity"], budget_cfg["refill_per_second"])
    return HttpGenerator(
        provider_url=conn["provider_url"],
        api_key=conn["api_key"],
        model=conn["model"],
        timeout=conn["timeout"],
        budget=budget,
    )


class Runtime:
    def __init__(
        self,
        storage: Storage,
        generator: Generator | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.storage = storage
        self.config = config or get_config(storage.base_path)
        generation = self.config["generation"]
        self.queue = GenerationQueue(
            generator or build_generator(self.config),
            self.handler_for,
            auto_continue=generation["auto_continue"],
            tick_seconds=generation["budget_tick_seconds"],
        )
        self.crucible = Crucible(
            self.queue,
            storage=storage,
            settings=CrucibleSettings(**self.config["crucible"]),
            templates=self.config["prompts"],
        )
        self.crucible.load()

    @classmethod
    def from_data_dir(cls, data_dir: Path, generator: Generator | None = None) -> Runtime:
        return cls(Storage(data_dir), generator)

    def apply_config(self, config: dict[str, Any], rebuild_generator: bool = False) -> None:
        """Pick up changed settings without dropping queued work."""
        self.config = config
        self.queue.auto_continue = config["generation"]["auto_continue"]
        self.queue.tick_seconds = config["generation"]["budget_tick_seconds"]
        self.crucible.settings = CrucibleSettings(**config["crucible"])
        self.crucible.templates = config["prompts"]
        if rebuild_generator:
            self.queue.generator = build_generator(config)

    def handler_for(self, target: GenerationTarget) -> GenerationHandler:
        templates = self.config["prompts"]
        if isinstance(target, FieldTarget):
            return FieldHandler(target, self.storage, templates)
        if isinstance(target, ListTarget):
            return ListHandler(target, self.storage, templates)
        if isinstance(target, BrainstormTarget):
            return BrainstormHandler(target, self.storage, templates)
        if isinstance(target, CrucibleGoalsTarget):
            return crucible_handlers.GoalsHandler(target, self.crucible)
        if isinstance(target, CrucibleStructuralGoalTarget):
            return crucible_handlers.StructuralGoalHandler(target, self.crucible)
        if isinstance(target, CruciblePrerequisitesTarget):
            return crucible_handlers.PrerequisitesHandler(target, self.crucible)
        if isinstance(target, CrucibleElementsTarget):
            return crucible_handlers.ElementsHandler(target, self.crucible)
        if isinstance(target, CrucibleChainTarget):
            return crucible_handlers.ChainHandler(target, self.crucible)
        if isinstance(target, CrucibleDirectorTarget):
            return crucible_handlers.DirectorHandler(target, self.crucible)
        if isinstance(target, CrucibleExpansionTarget):
            return crucible_handlers.ExpansionHandler(target, self.crucible)
        raise TypeError(f"Unhandled generation target: {target!r}")
