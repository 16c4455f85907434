"""Prompt templates and builders for the crucible steps.

Each step renders a Handlebars system prompt (overridable through config
`prompts.crucible_<step>`), a plain user message carrying the working
context, and an assistant prefill that pins the output format.
"""

from __future__ import annotations

from story_engine.crucible.director import format_director_context
from story_engine.handlers import Prompt, chat_messages
from story_engine.llm import GenerationParams
from story_engine.models import (
    FIELD_ELEMENT_TAG,
    CrucibleChain,
    CrucibleGoal,
    CrucibleState,
    CrucibleWorldElement,
    Prerequisite,
    StructuralGoal,
)
from story_engine.prompts import render_prompt, resolve_template

THINK_STOP = ["</think>"]

CRUCIBLE_TEMPLATES: dict[str, str] = {
    "crucible_goals": """\
You are a story architect. From the author's direction, propose {{count}} distinct dramatic goals the story could end on.
{{#if intent}}Author's direction:
{{{intent}}}
{{/if}}{{#if canon}}Established canon:
{{{canon}}}
{{/if}}
Write each goal as a block, blocks separated by a line containing only +++:
[GOAL] the dramatic endpoint in one sentence
[STAKES] what is lost if it fails
[THEME] the idea it tests
[EMOTIONAL ARC] how the protagonist changes
[TERMINAL CONDITION] the observable state that means the story is over""",

    "crucible_structural_goal": """\
You are a story architect. Restate the goal below as a structural goal: the concrete situation that must exist at the climax.
Answer with exactly:
[GOAL] the structural goal
[WHY] why this situation delivers the dramatic goal""",

    "crucible_prerequisites": """\
You are a story architect. List what must already be true in the world for the structural goal to be reachable.
Write each prerequisite as a block, blocks separated by +++:
[PREREQ] the fact that must hold
[LOADBEARING] why the goal collapses without it
[CATEGORY] one of RELATIONSHIP, SECRET, POWER, HISTORY, OBJECT, BELIEF, PLACE""",

    "crucible_elements": """\
You are a world builder. Propose world elements that satisfy the prerequisites.
{{#if guidance}}Director's note for the builder: {{{guidance}}}
{{/if}}Write each element as a block, blocks separated by +++. Start with one of [CHARACTER], [LOCATION], [FACTION], [SYSTEM] or [SITUATION] followed by its name, then:
[DESCRIPTION] one or two sentences
[WANT] what it pursues (characters and factions)
[NEED] what it lacks (characters)
[RELATIONSHIP] its tie to other elements
[PURPOSE] the job it does for the goal
[SATISFIES] comma-separated prerequisite ids, e.g. P1, P3""",

    "crucible_chain": """\
You are a backward-chaining story solver. Working backward from the goal, write the scene that comes immediately BEFORE the earliest scene so far and makes it possible.
{{#if guidance}}Director's note for the solver: {{{guidance}}}
{{/if}}Answer with:
[SCENE] what happens, in two or three sentences
[RESOLVED] ids of open constraints this scene answers, separated by ;
[OPEN] new questions this scene raises, as `R#: description`, separated by ;
[GROUND] ids of open constraints that are simply true when the story starts
Optionally name new world elements with [CHARACTER], [LOCATION], [FACTION], [SYSTEM] or [SITUATION].
When this scene is the story's opening and no constraints remain open, add [OPENER].""",

    "crucible_director": """\
You are the story director overseeing a backward-chained plan. Judge whether the beats still serve the goal.
Answer with:
[ASSESSMENT] your reading of the chain
[FOR SOLVER] concrete guidance for the next scenes
[FOR BUILDER] guidance for world elements
Add [REJECT] on its own line to discard the most recent scene.
Add [TAINT Scene N] on its own line for each earlier scene that no longer fits.""",

    "crucible_expansion": """\
You are a world builder deepening one element of a finished world plan.
First list what must be true for this element to work, as blocks of:
[PREREQ] / [LOADBEARING] / [CATEGORY]
then propose supporting elements as blocks starting with [CHARACTER], [LOCATION], [FACTION], [SYSTEM] or [SITUATION] followed by a name, with [DESCRIPTION] and [PURPOSE].
Separate every block with +++.""",
}

# Per-step sampling defaults.
STEP_PARAMS: dict[str, dict] = {
    "crucible_goals": {"max_tokens": 1024, "temperature": 1.0, "min_p": 0.05},
    "crucible_structural_goal": {"max_tokens": 512, "temperature": 0.9, "min_p": 0.05},
    "crucible_prerequisites": {"max_tokens": 1024, "temperature": 0.9, "min_p": 0.05},
    "crucible_elements": {"max_tokens": 1024, "temperature": 0.8, "min_p": 0.05},
    "crucible_chain": {"max_tokens": 1024, "temperature": 0.9, "min_p": 0.05},
    "crucible_director": {"max_tokens": 512, "temperature": 0.8, "min_p": 0.05},
    "crucible_expansion": {"max_tokens": 1024, "temperature": 0.8, "min_p": 0.05},
}

PREFILLS: dict[str, str] = {
    "crucible_goals": "[GOAL] ",
    "crucible_structural_goal": "[GOAL] ",
    "crucible_prerequisites": "[PREREQ] ",
    "crucible_elements": "+++\n",
    "crucible_chain": "[SCENE] ",
    "crucible_director": "[ASSESSMENT] ",
    "crucible_expansion": "[PREREQ] ",
}


def _prompt(step: str, overrides: dict[str, str] | None, context: dict, user: str) -> Prompt:
    system = render_prompt(resolve_template(step, CRUCIBLE_TEMPLATES, overrides), context)
    prefill = PREFILLS[step]
    return Prompt(
        messages=chat_messages(system, user, prefill),
        params=GenerationParams(stop_sequences=list(THINK_STOP), **STEP_PARAMS[step]),
        prefill=prefill,
        priority="background",
    )


def prerequisite_ids(prereqs: list[Prerequisite]) -> dict[str, str]:
    """Short ids (P1, P2, ...) for prerequisites, in list order."""
    return {f"P{i}": p.id for i, p in enumerate(prereqs, start=1)}


def _goal_block(goal: CrucibleGoal) -> str:
    return goal.text


def _element_lines(elements: list[CrucibleWorldElement]) -> list[str]:
    return [
        f"[{FIELD_ELEMENT_TAG[e.field_id]}] {e.name}" + (f": {e.content}" if e.content else "")
        for e in elements
    ]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def goals_prompt(state: CrucibleState, canon: str, overrides: dict[str, str] | None = None) -> Prompt:
    return _prompt(
        "crucible_goals",
        overrides,
        {"intent": state.intent, "canon": canon, "count": 4},
        "Propose the goals.",
    )


def structural_goal_prompt(goal: CrucibleGoal, overrides: dict[str, str] | None = None) -> Prompt:
    return _prompt("crucible_structural_goal", overrides, {}, f"Goal:\n{_goal_block(goal)}")


def prerequisites_prompt(
    goal: CrucibleGoal, structural: StructuralGoal, overrides: dict[str, str] | None = None
) -> Prompt:
    user = f"Goal:\n{_goal_block(goal)}\n\nStructural goal: {structural.goal}"
    if structural.why:
        user += f"\nWhy: {structural.why}"
    return _prompt("crucible_prerequisites", overrides, {}, user)


def elements_prompt(
    goal: CrucibleGoal,
    prereqs: list[Prerequisite],
    existing: list[CrucibleWorldElement],
    guidance: str = "",
    overrides: dict[str, str] | None = None,
) -> Prompt:
    lines = [f"Goal:\n{_goal_block(goal)}", "", "Prerequisites:"]
    for short_id, prereq in zip(prerequisite_ids(prereqs), prereqs):
        lines.append(f"{short_id} [{prereq.category}] {prereq.element}")
    if existing:
        lines.extend(["", "Elements already in the world (reuse, do not duplicate):"])
        lines.extend(_element_lines(existing))
    return _prompt("crucible_elements", overrides, {"guidance": guidance}, "\n".join(lines))


def chain_prompt(
    goal: CrucibleGoal,
    chain: CrucibleChain,
    elements: list[CrucibleWorldElement],
    guidance: str = "",
    overrides: dict[str, str] | None = None,
) -> Prompt:
    lines = [f"Goal:\n{_goal_block(goal)}", ""]
    if chain.beats:
        lines.append("Scenes so far, earliest first (the story runs forward from the top):")
        for beat in reversed(chain.beats):
            lines.append(f"- {beat.scene}")
    else:
        lines.append("No scenes yet: write the climax scene where the goal is decided.")
    lines.extend(["", "Open constraints:"])
    lines.extend(f"{c.short_id}: {c.description}" for c in chain.open_constraints)
    if not chain.open_constraints:
        lines.append("(none)")
    if elements:
        lines.extend(["", "World elements:"])
        lines.extend(_element_lines(elements))
    return _prompt("crucible_chain", overrides, {"guidance": guidance}, "\n".join(lines))


def director_prompt(
    goal: CrucibleGoal,
    chain: CrucibleChain,
    state: CrucibleState,
    overrides: dict[str, str] | None = None,
) -> Prompt:
    elements = [e for e in state.elements if e.goal_id in (goal.id, None)]
    context = format_director_context(goal, chain, elements, state.director_guidance)
    return _prompt("crucible_director", overrides, {}, context)


def expansion_prompt(
    element: CrucibleWorldElement,
    state: CrucibleState,
    overrides: dict[str, str] | None = None,
) -> Prompt:
    lines = [f"Element to expand: [{FIELD_ELEMENT_TAG[element.field_id]}] {element.name}"]
    if element.content:
        lines.append(f"Description: {element.content}")
    others = [e for e in state.elements if e.id != element.id]
    if others:
        lines.extend(["", "Rest of the world:"])
        lines.extend(_element_lines(others))
    return _prompt("crucible_expansion", overrides, {}, "\n".join(lines))
