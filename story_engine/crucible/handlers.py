"""Generation handlers for the crucible targets.

Each handler builds its step's prompt from the live crucible state and, on
completion, hands the text to the matching Crucible.apply_* method.
"""

from __future__ import annotations

from story_engine.crucible import prompts
from story_engine.crucible.director import DirectiveScanner
from story_engine.crucible.engine import Crucible, CrucibleError
from story_engine.handlers import GenerationHandler, Prompt
from story_engine.models import (
    CrucibleChainTarget,
    CrucibleDirectorTarget,
    CrucibleElementsTarget,
    CrucibleExpansionTarget,
    CrucibleGoalsTarget,
    CruciblePrerequisitesTarget,
    CrucibleStructuralGoalTarget,
)


class GoalsHandler(GenerationHandler):
    def __init__(self, target: CrucibleGoalsTarget, crucible: Crucible) -> None:
        self.target = target
        self.crucible = crucible

    async def build(self) -> Prompt:
        return prompts.goals_prompt(self.crucible.state, self.crucible.canon(), self.crucible.templates)

    async def on_complete(self, text: str) -> None:
        self.crucible.apply_goals(text)


class StructuralGoalHandler(GenerationHandler):
    def __init__(self, target: CrucibleStructuralGoalTarget, crucible: Crucible) -> None:
        self.target = target
        self.crucible = crucible

    async def build(self) -> Prompt:
        goal = self.crucible.require_goal(self.target.goal_id)
        return prompts.structural_goal_prompt(goal, self.crucible.templates)

    async def on_complete(self, text: str) -> None:
        self.crucible.apply_structural_goal(self.target.goal_id, text)


class PrerequisitesHandler(GenerationHandler):
    def __init__(self, target: CruciblePrerequisitesTarget, crucible: Crucible) -> None:
        self.target = target
        self.crucible = crucible

    async def build(self) -> Prompt:
        goal = self.crucible.require_goal(self.target.goal_id)
        structural = self.crucible.structural_goal_for(goal.id)
        if structural is None:
            raise CrucibleError(f"No structural goal for goal: {goal.id}")
        return prompts.prerequisites_prompt(goal, structural, self.crucible.templates)

    async def on_complete(self, text: str) -> None:
        self.crucible.apply_prerequisites(self.target.goal_id, text)


class ElementsHandler(GenerationHandler):
    def __init__(self, target: CrucibleElementsTarget, crucible: Crucible) -> None:
        self.target = target
        self.crucible = crucible

    async def build(self) -> Prompt:
        crucible = self.crucible
        goal = crucible.require_goal(self.target.goal_id)
        existing = [e for e in crucible.state.elements if e.goal_id != goal.id]
        guidance = crucible.state.director_guidance
        return prompts.elements_prompt(
            goal,
            crucible.prerequisites_for(goal.id),
            existing,
            guidance.builder if guidance else "",
            crucible.templates,
        )

    async def on_complete(self, text: str) -> None:
        self.crucible.apply_elements(self.target.goal_id, text)


class ChainHandler(GenerationHandler):
    def __init__(self, target: CrucibleChainTarget, crucible: Crucible) -> None:
        self.target = target
        self.crucible = crucible

    async def build(self) -> Prompt:
        crucible = self.crucible
        goal = crucible.require_goal(self.target.goal_id)
        chain = crucible.require_chain(goal.id)
        guidance = crucible.state.director_guidance
        return prompts.chain_prompt(
            goal,
            chain,
            crucible.elements_for(goal.id),
            guidance.solver if guidance else "",
            crucible.templates,
        )

    async def on_complete(self, text: str) -> None:
        self.crucible.apply_beat_output(self.target.goal_id, text)

    def on_abort(self, reason: str) -> None:
        self.crucible.beat_aborted(reason)


class DirectorHandler(GenerationHandler):
    """Scans directives line by line; applies them only once complete."""

    def __init__(self, target: CrucibleDirectorTarget, crucible: Crucible) -> None:
        self.target = target
        self.crucible = crucible
        self.scanner = DirectiveScanner()

    async def build(self) -> Prompt:
        goal = self.crucible.require_goal(self.target.goal_id)
        chain = self.crucible.require_chain(goal.id)
        return prompts.director_prompt(goal, chain, self.crucible.state, self.crucible.templates)

    def on_line(self, line: str) -> None:
        self.scanner(line)

    async def on_complete(self, text: str) -> None:
        self.crucible.apply_director_output(self.target.goal_id, text, self.scanner)


class ExpansionHandler(GenerationHandler):
    def __init__(self, target: CrucibleExpansionTarget, crucible: Crucible) -> None:
        self.target = target
        self.crucible = crucible

    async def build(self) -> Prompt:
        element = self.crucible.state.element(self.target.element_id)
        if element is None:
            raise CrucibleError(f"Element not found: {self.target.element_id}")
        return prompts.expansion_prompt(element, self.crucible.state, self.crucible.templates)

    async def on_complete(self, text: str) -> None:
        self.crucible.apply_expansion(self.target.element_id, text)

    def on_abort(self, reason: str) -> None:
        self.crucible.end_expansion()
