"""Crucible: the goal-driven planning state machine.

Phases:

    idle ──request_goals──▶ goals ──confirm_goals──▶ chaining ──┐
                                 └──confirm_goals──▶ building ──┴─▶ review
    review ──merge──▶ merged ◀──▶ expanding (one element at a time)
    any ──reset──▶ idle

Generation work is never run inline: every step is submitted to the
GenerationQueue as a typed target, and the matching handler calls back into
the apply_* methods here when its text is complete. Output that does not
parse leaves the state where it was.

Every mutation is persisted through Storage when one is attached.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Literal

from story_engine.config import CrucibleSettings
from story_engine.crucible import constraints
from story_engine.crucible.director import DirectiveScanner, apply_verdict, parse_director_output
from story_engine.crucible.merge import flatten, merge_world
from story_engine.crucible.parsing import (
    excerpt,
    parse_beat,
    parse_elements,
    parse_goals,
    parse_prerequisites,
    parse_structural_goal,
)
from story_engine.crucible.prompts import prerequisite_ids
from story_engine.models import (
    CRUCIBLE_TARGETS,
    Beat,
    Constraint,
    CrucibleChain,
    CrucibleChainTarget,
    CrucibleDirectorTarget,
    CrucibleElementsTarget,
    CrucibleExpansionTarget,
    CrucibleGoal,
    CrucibleGoalsTarget,
    CruciblePrerequisitesTarget,
    CrucibleState,
    CrucibleStructuralGoalTarget,
    CrucibleWorldElement,
    DirectorGuidance,
    DulfsFieldId,
    GenerationRequest,
    GenerationTarget,
    MergedElement,
    Prerequisite,
    StructuralGoal,
)
from story_engine.queue import GenerationQueue
from story_engine.storage import Storage
from story_engine.tags import parse_tag

logger = logging.getLogger(__name__)

# Director requests jump ahead of queued beats.
DIRECTOR_PRIORITY = 1


class CrucibleError(ValueError):
    """Raised for crucible actions that are invalid in the current state."""


def _as_goal_text(text: str) -> str:
    text = text.strip()
    return text if "[GOAL]" in text else f"[GOAL] {text}"


class Crucible:
    def __init__(
        self,
        queue: GenerationQueue,
        storage: Storage | None = None,
        settings: CrucibleSettings | None = None,
        templates: dict[str, str] | None = None,
    ) -> None:
        self.queue = queue
        self.storage = storage
        self.settings = settings or CrucibleSettings()
        self.templates = templates or {}
        self.state = CrucibleState()
        self._pacing: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> CrucibleState:
        """Restore persisted state. Auto-chaining never survives a reload."""
        if self.storage is not None:
            state = self.storage.load_crucible()
            if state is not None:
                state.auto_chaining = False
                self.state = state
        return self.state

    def _save(self) -> None:
        if self.storage is not None:
            self.storage.save_crucible(self.state)

    def canon(self) -> str:
        return self.storage.get_field("canon") if self.storage is not None else ""

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_phase(self, *phases: str) -> None:
        if self.state.phase not in phases:
            raise CrucibleError(
                f"Not allowed in phase '{self.state.phase}' (needs {' or '.join(phases)})"
            )

    def require_goal(self, goal_id: str) -> CrucibleGoal:
        goal = self.state.goal(goal_id)
        if goal is None:
            raise CrucibleError(f"Goal not found: {goal_id}")
        return goal

    def require_chain(self, goal_id: str | None) -> CrucibleChain:
        chain = self.state.chains.get(goal_id or "")
        if chain is None:
            raise CrucibleError(f"No chain for goal: {goal_id}")
        return chain

    def _pending(self, kind: type, **fields: str) -> bool:
        return self.queue.has_pending(
            lambda t: isinstance(t, kind) and all(getattr(t, k) == v for k, v in fields.items())
        )

    def _submit(self, target: GenerationTarget, priority: int = 0) -> GenerationRequest | None:
        fields = {k: v for k, v in target.model_dump().items() if k != "kind"}
        if self._pending(type(target), **fields):
            logger.debug("%s already pending for %s", target.kind, fields)
            return None
        return self.queue.submit(target, priority)

    def structural_goal_for(self, goal_id: str) -> StructuralGoal | None:
        return next((s for s in self.state.structural_goals if s.source_goal_id == goal_id), None)

    def prerequisites_for(self, goal_id: str | None) -> list[Prerequisite]:
        return [p for p in self.state.prerequisites if p.goal_id == goal_id]

    def elements_for(self, goal_id: str | None) -> list[CrucibleWorldElement]:
        return [e for e in self.state.elements if e.goal_id == goal_id]

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    def set_intent(self, text: str) -> None:
        self._require_phase("idle", "goals")
        self.state.intent = text.strip()
        self._save()

    def request_goals(self) -> GenerationRequest | None:
        self._require_phase("idle", "goals")
        return self._submit(CrucibleGoalsTarget())

    def apply_goals(self, text: str) -> bool:
        if self.state.phase not in ("idle", "goals"):
            logger.info("ignoring goals output in phase %s", self.state.phase)
            return False
        goals = parse_goals(text)
        if not goals:
            return False
        self.state.goals = goals
        self.state.phase = "goals"
        self._save()
        return True

    def add_goal(self, text: str) -> CrucibleGoal:
        self._require_phase("idle", "goals")
        goal = CrucibleGoal(text=_as_goal_text(text), selected=True)
        if not goal.goal:
            raise CrucibleError("Goal text is empty")
        self.state.goals.append(goal)
        self.state.phase = "goals"
        self._save()
        return goal

    def edit_goal(self, goal_id: str, text: str) -> CrucibleGoal:
        self._require_phase("goals")
        goal = self.require_goal(goal_id)
        new_text = _as_goal_text(text)
        if not parse_tag(new_text, "GOAL"):
            raise CrucibleError("Goal text is empty")
        goal.text = new_text
        self._save()
        return goal

    def toggle_goal(self, goal_id: str) -> CrucibleGoal:
        self._require_phase("goals")
        goal = self.require_goal(goal_id)
        goal.selected = not goal.selected
        self._save()
        return goal

    def remove_goal(self, goal_id: str) -> None:
        self._require_phase("goals")
        goal = self.require_goal(goal_id)
        self.state.goals.remove(goal)
        self._save()

    def confirm_goals(self, mode: Literal["chaining", "building"] = "chaining") -> list[CrucibleGoal]:
        self._require_phase("goals")
        selected = self.state.selected_goals()
        if not selected:
            raise CrucibleError("Select at least one goal")
        if mode == "chaining":
            for goal in selected:
                self.state.chains.setdefault(goal.id, CrucibleChain(goal_id=goal.id))
            self.state.active_goal_id = selected[0].id
            self.state.phase = "chaining"
        else:
            self.state.phase = "building"
            for goal in selected:
                self._submit(CrucibleStructuralGoalTarget(goal_id=goal.id))
        self._save()
        logger.info("confirmed %d goal(s) for %s", len(selected), mode)
        return selected

    # ------------------------------------------------------------------
    # Derivation: structural goal → prerequisites → elements
    # ------------------------------------------------------------------

    def request_structural_goal(self, goal_id: str) -> GenerationRequest | None:
        self._require_phase("building", "chaining")
        self.require_goal(goal_id)
        return self._submit(CrucibleStructuralGoalTarget(goal_id=goal_id))

    def request_prerequisites(self, goal_id: str) -> GenerationRequest | None:
        self._require_phase("building", "chaining")
        if self.structural_goal_for(goal_id) is None:
            raise CrucibleError("Derive the structural goal first")
        return self._submit(CruciblePrerequisitesTarget(goal_id=goal_id))

    def request_elements(self, goal_id: str) -> GenerationRequest | None:
        self._require_phase("building", "chaining")
        if not self.prerequisites_for(goal_id):
            raise CrucibleError("Derive prerequisites first")
        return self._submit(CrucibleElementsTarget(goal_id=goal_id))

    def _mark_prerequisites_stale(self, goal_id: str) -> None:
        for prereq in self.prerequisites_for(goal_id):
            prereq.stale = True

    def _mark_elements_stale(self, prereq_ids: set[str]) -> None:
        for element in self.state.elements:
            if prereq_ids & set(element.satisfies):
                element.stale = True

    def apply_structural_goal(self, goal_id: str, text: str) -> StructuralGoal | None:
        if self.state.goal(goal_id) is None:
            logger.info("ignoring structural goal for removed goal %s", goal_id)
            return None
        structural = parse_structural_goal(text, goal_id)
        if structural is None:
            return None
        self.state.structural_goals = [
            s for s in self.state.structural_goals if s.source_goal_id != goal_id
        ] + [structural]
        self._mark_prerequisites_stale(goal_id)
        if self.state.phase == "building":
            self._submit(CruciblePrerequisitesTarget(goal_id=goal_id))
        self._save()
        return structural

    def apply_prerequisites(self, goal_id: str, text: str) -> list[Prerequisite]:
        if self.state.goal(goal_id) is None:
            logger.info("ignoring prerequisites for removed goal %s", goal_id)
            return []
        prereqs = parse_prerequisites(text, goal_id)
        if not prereqs:
            logger.warning("no prerequisites parsed for goal %s: %s", goal_id, excerpt(text))
            return []
        superseded = {p.id for p in self.prerequisites_for(goal_id)}
        self.state.prerequisites = [p for p in self.state.prerequisites if p.goal_id != goal_id] + prereqs
        self._mark_elements_stale(superseded)
        if self.state.phase == "building":
            self._submit(CrucibleElementsTarget(goal_id=goal_id))
        self._save()
        return prereqs

    def apply_elements(self, goal_id: str, text: str) -> list[CrucibleWorldElement]:
        if self.state.goal(goal_id) is None:
            logger.info("ignoring elements for removed goal %s", goal_id)
            return []
        elements = parse_elements(text, goal_id)
        if not elements:
            logger.warning("no elements parsed for goal %s: %s", goal_id, excerpt(text))
            return []
        prereqs = self.prerequisites_for(goal_id)
        by_short_id = prerequisite_ids(prereqs)
        by_id = {p.id: p for p in prereqs}
        for element in elements:
            element.satisfies = [
                by_short_id[ref.upper()] for ref in element.satisfies if ref.upper() in by_short_id
            ]
            for prereq_id in element.satisfies:
                by_id[prereq_id].satisfied_by.append(element.id)
                by_id[prereq_id].stale = False

        self.state.elements = [
            e for e in self.state.elements if not (e.goal_id == goal_id and e.source == "derived")
        ] + elements
        if goal_id not in self.state.derived_goal_ids:
            self.state.derived_goal_ids.append(goal_id)
        if self.state.phase == "building" and all(
            g.id in self.state.derived_goal_ids for g in self.state.selected_goals()
        ):
            self.state.phase = "review"
            logger.info("all goals derived; ready for review")
        self._save()
        return elements

    def edit_structural_goal(self, goal_id: str, goal: str, why: str | None = None) -> StructuralGoal:
        structural = self.structural_goal_for(goal_id)
        if structural is None:
            raise CrucibleError(f"No structural goal for goal: {goal_id}")
        structural.goal = goal
        if why is not None:
            structural.why = why
        self._mark_prerequisites_stale(goal_id)
        self._save()
        return structural

    def edit_prerequisite(
        self,
        prereq_id: str,
        element: str | None = None,
        load_bearing: str | None = None,
        category: str | None = None,
    ) -> Prerequisite:
        prereq = next((p for p in self.state.prerequisites if p.id == prereq_id), None)
        if prereq is None:
            raise CrucibleError(f"Prerequisite not found: {prereq_id}")
        if element is not None:
            prereq.element = element
        if load_bearing is not None:
            prereq.load_bearing = load_bearing
        if category is not None:
            prereq.category = category  # type: ignore[assignment]
        prereq.stale = False
        self._mark_elements_stale({prereq.id})
        self._save()
        return prereq

    def edit_element(self, element_id: str, name: str | None = None, content: str | None = None) -> CrucibleWorldElement:
        element = self.state.element(element_id)
        if element is None:
            raise CrucibleError(f"Element not found: {element_id}")
        if name is not None:
            element.name = name
        if content is not None:
            element.content = content
        element.stale = False
        self._save()
        return element

    def remove_element(self, element_id: str) -> None:
        element = self.state.element(element_id)
        if element is None:
            raise CrucibleError(f"Element not found: {element_id}")
        self.state.elements.remove(element)
        for prereq in self.state.prerequisites:
            if element_id in prereq.satisfied_by:
                prereq.satisfied_by.remove(element_id)
        self._save()

    # ------------------------------------------------------------------
    # Chaining
    # ------------------------------------------------------------------

    def request_beat(self, goal_id: str | None = None) -> GenerationRequest | None:
        """Queue the next beat. None if one is already queued or running."""
        self._require_phase("chaining")
        goal_id = goal_id or self.state.active_goal_id
        chain = self.require_chain(goal_id)
        if chain.complete:
            raise CrucibleError("Chain is already complete")
        return self._submit(CrucibleChainTarget(goal_id=chain.goal_id))

    def _add_beat_elements(self, goal_id: str, names: list[tuple[DulfsFieldId, str]]) -> list[CrucibleWorldElement]:
        known = {(e.field_id, e.name.strip().lower()) for e in self.elements_for(goal_id)}
        added: list[CrucibleWorldElement] = []
        for field_id, name in names:
            key = (field_id, name.strip().lower())
            if not name or key in known:
                continue
            known.add(key)
            element = CrucibleWorldElement(field_id=field_id, name=name, goal_id=goal_id, source="beat")
            self.state.elements.append(element)
            added.append(element)
        return added

    def _detect_checkpoint(self, chain: CrucibleChain, new_elements: list[CrucibleWorldElement]) -> str | None:
        """Checkpoint reason for a freshly applied beat, if any.

        Runs after the completion check so a completing beat never trips the
        beat-count limit.
        """
        characters = [e for e in new_elements if e.field_id == "dramatis_personae"]
        total = sum(1 for e in self.elements_for(chain.goal_id) if e.field_id == "dramatis_personae")
        if characters and total <= 2:
            return f"New major character introduced: {', '.join(c.name for c in characters)}"
        if constraints.constraint_explosion(chain):
            return "Open constraints keep multiplying; review the chain"
        if len(chain.beats) >= self.settings.max_beats and not chain.complete:
            return f"Chain reached {len(chain.beats)} beats"
        return None

    def apply_beat_output(self, goal_id: str, text: str) -> Beat | None:
        chain = self.state.chains.get(goal_id)
        if chain is None or self.state.phase != "chaining" or chain.complete:
            logger.info("ignoring beat output for goal %s", goal_id)
            return None

        parsed = parse_beat(text)
        if parsed is None:
            self.state.solver_stalls += 1
            if self.state.solver_stalls >= self.settings.max_solver_stalls:
                self.set_checkpoint(f"Solver produced no usable scene {self.state.solver_stalls} times")
            self._save()
            self._continue_auto_chain()
            return None
        self.state.solver_stalls = 0

        beat = constraints.apply_beat(chain, parsed)
        new_elements = self._add_beat_elements(goal_id, parsed.elements)
        completed = parsed.terminal and constraints.try_complete(chain, terminal=True)
        reason = self._detect_checkpoint(chain, new_elements)
        if parsed.terminal and not completed:
            reason = reason or (
                f"Opening reached with {len(chain.open_constraints)} open constraint(s)"
            )
        if reason:
            self.set_checkpoint(reason)

        self.state.beats_since_director += 1
        if not chain.complete and self.state.beats_since_director >= self.settings.director_cadence:
            self.state.beats_since_director = 0
            self._submit(CrucibleDirectorTarget(goal_id=goal_id), DIRECTOR_PRIORITY)

        if chain.complete:
            logger.info("chain for goal %s complete after %d beats", goal_id, len(chain.beats))
            self._advance_goal()
        self._save()
        self._continue_auto_chain()
        return beat

    def _advance_goal(self) -> None:
        for goal in self.state.selected_goals():
            chain = self.state.chains.get(goal.id)
            if chain is not None and not chain.complete:
                if self.state.active_goal_id != goal.id:
                    self.state.active_goal_id = goal.id
                    self.state.beats_since_director = 0
                    self.state.director_guidance = None
                return
        self.state.phase = "review"
        self.state.auto_chaining = False
        logger.info("all chains complete; ready for review")

    def _after_chain_edit(self, chain: CrucibleChain) -> None:
        if self.state.phase == "review" and not chain.complete:
            self.state.phase = "chaining"
            self.state.active_goal_id = chain.goal_id

    def set_checkpoint(self, reason: str) -> None:
        logger.info("checkpoint: %s", reason)
        self.state.checkpoint_reason = reason
        self.state.auto_chaining = False

    def clear_checkpoint(self) -> None:
        self.state.checkpoint_reason = None
        self.state.solver_stalls = 0
        self._save()

    def start_auto_chain(self) -> GenerationRequest | None:
        self._require_phase("chaining")
        self.state.auto_chaining = True
        self.state.checkpoint_reason = None
        self.state.solver_stalls = 0
        self._save()
        return self.request_beat()

    def stop_auto_chain(self) -> None:
        self.state.auto_chaining = False
        if self._pacing is not None:
            self._pacing.cancel()
            self._pacing = None
        self._save()

    def beat_aborted(self, reason: str) -> None:
        """A beat request ended without output. Auto-chaining halts."""
        if not self.state.auto_chaining:
            return
        if reason == "cancelled":
            self.stop_auto_chain()
            return
        self.set_checkpoint(f"Beat generation failed: {reason}")
        self._save()

    def _continue_auto_chain(self) -> None:
        if not self.state.auto_chaining or self.state.phase != "chaining":
            return
        if self.state.checkpoint_reason is not None:
            return
        delay = self.settings.auto_chain_delay_seconds
        if delay > 0:
            if self._pacing is None or self._pacing.done():
                self._pacing = asyncio.get_running_loop().create_task(self._paced_beat(delay))
            return
        self._next_auto_beat()

    async def _paced_beat(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._next_auto_beat()

    def _next_auto_beat(self) -> None:
        if not self.state.auto_chaining or self.state.phase != "chaining":
            return
        chain = self.state.chains.get(self.state.active_goal_id or "")
        if chain is None or chain.complete:
            return
        self._submit(CrucibleChainTarget(goal_id=chain.goal_id))

    # ------------------------------------------------------------------
    # Director
    # ------------------------------------------------------------------

    def request_director(self, goal_id: str | None = None) -> GenerationRequest | None:
        self._require_phase("chaining")
        chain = self.require_chain(goal_id or self.state.active_goal_id)
        return self._submit(CrucibleDirectorTarget(goal_id=chain.goal_id), DIRECTOR_PRIORITY)

    def apply_director_output(
        self, goal_id: str, text: str, scanner: DirectiveScanner | None = None
    ) -> DirectorGuidance | None:
        chain = self.state.chains.get(goal_id)
        if chain is None:
            logger.info("ignoring director output for goal %s", goal_id)
            return None
        guidance = apply_verdict(chain, parse_director_output(text, scanner))
        if guidance is None:
            return None
        self.state.director_guidance = guidance
        self._after_chain_edit(chain)
        self._save()
        return guidance

    # ------------------------------------------------------------------
    # Beat editing
    # ------------------------------------------------------------------

    def reject_beat(self, goal_id: str) -> Beat | None:
        """Drop the last beat. On an empty chain this is a no-op returning None."""
        chain = self.require_chain(goal_id)
        beat = constraints.reject_last_beat(chain)
        if beat is None:
            logger.debug("no beats to reject for goal %s", goal_id)
            return None
        self.state.checkpoint_reason = None
        self._after_chain_edit(chain)
        self._save()
        return beat

    def delete_beats_from(self, goal_id: str, index: int) -> list[Beat]:
        chain = self.require_chain(goal_id)
        if not 0 <= index < len(chain.beats):
            raise CrucibleError(f"Beat index out of range: {index}")
        removed = constraints.truncate_beats(chain, index)
        self.state.checkpoint_reason = None
        self._after_chain_edit(chain)
        self._save()
        return removed

    def _require_beat(self, chain: CrucibleChain, index: int) -> Beat:
        if not 0 <= index < len(chain.beats):
            raise CrucibleError(f"Beat index out of range: {index}")
        return chain.beats[index]

    def edit_beat(self, goal_id: str, index: int, text: str) -> Beat:
        beat = self._require_beat(self.require_chain(goal_id), index)
        beat.text = text
        beat.scene = parse_tag(text, "SCENE") or text.strip()
        beat.tainted = False
        self._save()
        return beat

    def toggle_favorite(self, goal_id: str, index: int) -> Beat:
        beat = self._require_beat(self.require_chain(goal_id), index)
        beat.favorited = not beat.favorited
        self._save()
        return beat

    # ------------------------------------------------------------------
    # Constraints (manual)
    # ------------------------------------------------------------------

    def add_constraint(self, goal_id: str, description: str) -> Constraint:
        chain = self.require_chain(goal_id)
        constraint = constraints.add_constraint(chain, description)
        self._after_chain_edit(chain)
        self._save()
        return constraint

    def _edit_constraint(self, goal_id: str, ref: str, op, verb: str) -> None:
        chain = self.require_chain(goal_id)
        if not op(chain, ref):
            raise CrucibleError(f"Cannot {verb} constraint: {ref}")
        self._after_chain_edit(chain)
        self._save()

    def resolve_constraint(self, goal_id: str, ref: str) -> None:
        self._edit_constraint(goal_id, ref, constraints.resolve_constraint, "resolve")

    def reopen_constraint(self, goal_id: str, ref: str) -> None:
        self._edit_constraint(goal_id, ref, constraints.reopen_constraint, "reopen")

    def ground_constraint(self, goal_id: str, ref: str) -> None:
        self._edit_constraint(goal_id, ref, constraints.ground_constraint, "ground")

    def remove_constraint(self, goal_id: str, ref: str) -> None:
        self._edit_constraint(goal_id, ref, constraints.remove_constraint, "remove")

    def mark_chain_complete(self, goal_id: str) -> CrucibleChain:
        chain = self.require_chain(goal_id)
        if not constraints.try_complete(chain, terminal=True):
            raise CrucibleError(
                f"Chain cannot complete: {len(chain.open_constraints)} open constraint(s), "
                f"{len(chain.beats)} beat(s)"
            )
        if self.state.phase == "chaining":
            self._advance_goal()
        self._save()
        return chain

    # ------------------------------------------------------------------
    # Merge and expansion
    # ------------------------------------------------------------------

    def _mergeable_elements(self) -> list[CrucibleWorldElement]:
        selected = {g.id for g in self.state.selected_goals()}
        return [e for e in self.state.elements if e.goal_id is None or e.goal_id in selected]

    def _goal_order(self) -> list[str]:
        return [g.id for g in self.state.selected_goals()]

    def merge(self) -> dict[DulfsFieldId, list[MergedElement]]:
        self._require_phase("review")
        merged = merge_world(self._mergeable_elements(), self._goal_order())
        self.state.merged_elements = flatten(merged)
        self.state.phase = "merged"
        if self.storage is not None:
            for field_id, items in merged.items():
                self.storage.create_elements(field_id, items)
        self._save()
        logger.info("merged %d world element(s)", len(self.state.merged_elements))
        return merged

    def request_expansion(self, element_id: str) -> GenerationRequest | None:
        self._require_phase("merged")
        if self.state.element(element_id) is None:
            raise CrucibleError(f"Element not found: {element_id}")
        request = self._submit(CrucibleExpansionTarget(element_id=element_id))
        if request is not None:
            self.state.phase = "expanding"
            self.state.expansion_element_id = element_id
            self._save()
        return request

    def apply_expansion(self, element_id: str, text: str) -> list[CrucibleWorldElement]:
        if self.state.phase != "expanding" or self.state.expansion_element_id != element_id:
            logger.info("ignoring expansion output for element %s", element_id)
            return []
        prereqs = parse_prerequisites(text, None)
        elements = parse_elements(text, None)
        for element in elements:
            element.source = "expansion"
        if not prereqs and not elements:
            logger.warning("expansion of %s produced nothing usable: %s", element_id, excerpt(text))
        self.state.prerequisites.extend(prereqs)
        self.state.elements.extend(elements)

        before = {e.name.strip().lower() for e in self.state.merged_elements or []}
        merged = merge_world(self._mergeable_elements(), self._goal_order())
        self.state.merged_elements = flatten(merged)
        if self.storage is not None:
            for field_id, items in merged.items():
                new = [e for e in items if e.name.strip().lower() not in before]
                if new:
                    self.storage.create_elements(field_id, new)
        self.end_expansion()
        return elements

    def end_expansion(self) -> None:
        if self.state.phase == "expanding":
            self.state.phase = "merged"
        self.state.expansion_element_id = None
        self._save()

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def reset(self) -> None:
        cancelled = self.queue.cancel_where(lambda t: isinstance(t, CRUCIBLE_TARGETS))
        if self._pacing is not None:
            self._pacing.cancel()
            self._pacing = None
        self.state = CrucibleState()
        self._save()
        logger.info("crucible reset (%d request(s) cancelled)", cancelled)
