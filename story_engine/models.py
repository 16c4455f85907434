"""Core domain models.

Generation requests, their targets, the crucible planning entities and the
story data they feed. Pydantic is used for validation and serialisation at
every data boundary; the whole CrucibleState round-trips through JSON.
"""

from __future__ import annotations

import uuid
from typing import Annotated, Literal, Union, get_args

from pydantic import BaseModel, Field

from story_engine.tags import parse_tag


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Story data
# ---------------------------------------------------------------------------

DulfsFieldId = Literal[
    "dramatis_personae",
    "universe_systems",
    "locations",
    "factions",
    "situational_dynamics",
]

TextFieldId = Literal["canon", "story_prompt", "attg", "style"]

DULFS_FIELDS: tuple[DulfsFieldId, ...] = (
    "dramatis_personae",
    "universe_systems",
    "locations",
    "factions",
    "situational_dynamics",
)

# Element tag in model output → DULFS category
ELEMENT_TAG_FIELD: dict[str, DulfsFieldId] = {
    "CHARACTER": "dramatis_personae",
    "LOCATION": "locations",
    "FACTION": "factions",
    "SYSTEM": "universe_systems",
    "SITUATION": "situational_dynamics",
}

FIELD_ELEMENT_TAG: dict[DulfsFieldId, str] = {v: k for k, v in ELEMENT_TAG_FIELD.items()}


class DulfsItem(BaseModel):
    """One entry in a DULFS list (character, location, faction, ...)."""

    id: str = Field(default_factory=new_id)
    field_id: DulfsFieldId
    name: str
    content: str = ""


class BrainstormMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


# ---------------------------------------------------------------------------
# Generation targets: closed union, one handler per variant
# ---------------------------------------------------------------------------

class FieldTarget(BaseModel):
    kind: Literal["field"] = "field"
    field_id: TextFieldId


class ListTarget(BaseModel):
    kind: Literal["list"] = "list"
    field_id: DulfsFieldId


class BrainstormTarget(BaseModel):
    kind: Literal["brainstorm"] = "brainstorm"


class CrucibleGoalsTarget(BaseModel):
    kind: Literal["crucible-goals"] = "crucible-goals"


class CrucibleStructuralGoalTarget(BaseModel):
    kind: Literal["crucible-structural-goal"] = "crucible-structural-goal"
    goal_id: str


class CruciblePrerequisitesTarget(BaseModel):
    kind: Literal["crucible-prerequisites"] = "crucible-prerequisites"
    goal_id: str


class CrucibleElementsTarget(BaseModel):
    kind: Literal["crucible-elements"] = "crucible-elements"
    goal_id: str


class CrucibleChainTarget(BaseModel):
    kind: Literal["crucible-chain"] = "crucible-chain"
    goal_id: str


class CrucibleDirectorTarget(BaseModel):
    kind: Literal["crucible-director"] = "crucible-director"
    goal_id: str


class CrucibleExpansionTarget(BaseModel):
    kind: Literal["crucible-expansion"] = "crucible-expansion"
    element_id: str


GenerationTarget = Annotated[
    Union[
        FieldTarget,
        ListTarget,
        BrainstormTarget,
        CrucibleGoalsTarget,
        CrucibleStructuralGoalTarget,
        CruciblePrerequisitesTarget,
        CrucibleElementsTarget,
        CrucibleChainTarget,
        CrucibleDirectorTarget,
        CrucibleExpansionTarget,
    ],
    Field(discriminator="kind"),
]

CRUCIBLE_TARGETS = (
    CrucibleGoalsTarget,
    CrucibleStructuralGoalTarget,
    CruciblePrerequisitesTarget,
    CrucibleElementsTarget,
    CrucibleChainTarget,
    CrucibleDirectorTarget,
    CrucibleExpansionTarget,
)

RequestStatus = Literal["queued", "processing", "completed", "cancelled"]


class GenerationRequest(BaseModel):
    """A queued or in-flight unit of generation work."""

    id: str = Field(default_factory=new_id)
    target: GenerationTarget
    status: RequestStatus = "queued"
    priority: int = 0
    error: str | None = None


class Notification(BaseModel):
    """A user-visible, recoverable report of a failed generation."""

    request_id: str
    level: Literal["error", "warning", "info"] = "error"
    message: str


# ---------------------------------------------------------------------------
# Crucible planning entities
# ---------------------------------------------------------------------------

CruciblePhase = Literal[
    "idle",
    "goals",
    "building",
    "chaining",
    "review",
    "merged",
    "expanding",
]

ConstraintStatus = Literal["open", "resolved", "groundState"]

PrereqCategory = Literal[
    "RELATIONSHIP",
    "SECRET",
    "POWER",
    "HISTORY",
    "OBJECT",
    "BELIEF",
    "PLACE",
]

PREREQ_CATEGORIES: tuple[str, ...] = get_args(PrereqCategory)


class CrucibleGoal(BaseModel):
    """A candidate dramatic endpoint. `text` is the raw tagged section."""

    id: str = Field(default_factory=new_id)
    text: str
    selected: bool = False

    @property
    def goal(self) -> str:
        return parse_tag(self.text, "GOAL") or ""

    @property
    def stakes(self) -> str:
        return parse_tag(self.text, "STAKES") or ""

    @property
    def theme(self) -> str:
        return parse_tag(self.text, "THEME") or ""

    @property
    def terminal_condition(self) -> str:
        return parse_tag(self.text, "TERMINAL CONDITION") or ""


class StructuralGoal(BaseModel):
    id: str = Field(default_factory=new_id)
    source_goal_id: str
    goal: str
    why: str = ""


class Prerequisite(BaseModel):
    """A must-be-true fact the plan for a goal depends on."""

    id: str = Field(default_factory=new_id)
    goal_id: str | None = None
    element: str
    load_bearing: str = ""
    category: PrereqCategory = "RELATIONSHIP"
    satisfied_by: list[str] = Field(default_factory=list)
    stale: bool = False


ElementSource = Literal["derived", "beat", "expansion"]


class CrucibleWorldElement(BaseModel):
    """A world entity proposed during planning, attributed to a goal."""

    id: str = Field(default_factory=new_id)
    field_id: DulfsFieldId
    name: str
    content: str = ""
    want: str = ""
    need: str = ""
    relationship: str = ""
    purpose: str = ""
    satisfies: list[str] = Field(default_factory=list)
    goal_id: str | None = None
    source: ElementSource = "derived"
    stale: bool = False


class Constraint(BaseModel):
    """An open question or obligation tracked during backward chaining.

    `source_beat_index` is the beat that opened it while open, and the beat
    that resolved or grounded it afterwards (None when set by hand).
    `opened_beat_index` keeps the opening beat so a rejected beat can restore
    what it resolved.
    """

    id: str = Field(default_factory=new_id)
    short_id: str
    description: str
    status: ConstraintStatus = "open"
    source_beat_index: int | None = None
    opened_beat_index: int | None = None


class Beat(BaseModel):
    text: str
    scene: str = ""
    constraints_resolved: list[str] = Field(default_factory=list)
    new_open_constraints: list[str] = Field(default_factory=list)
    ground_state_constraints: list[str] = Field(default_factory=list)
    elements_introduced: list[str] = Field(default_factory=list)
    tainted: bool = False
    favorited: bool = False


class CrucibleChain(BaseModel):
    """Backward-chained beat sequence for one goal."""

    goal_id: str
    beats: list[Beat] = Field(default_factory=list)
    open_constraints: list[Constraint] = Field(default_factory=list)
    resolved_constraints: list[Constraint] = Field(default_factory=list)
    complete: bool = False
    net_growth: list[int] = Field(default_factory=list)


class DirectorGuidance(BaseModel):
    solver: str = ""
    builder: str = ""
    at_beat_index: int = 0


class MergedElement(BaseModel):
    """A world element after cross-goal dedupe, ready for the story."""

    name: str
    field_id: DulfsFieldId
    content: str = ""
    goal_purposes: dict[str, str] = Field(default_factory=dict)
    source_ids: list[str] = Field(default_factory=list)


class CrucibleState(BaseModel):
    """Everything the planning workflow persists."""

    phase: CruciblePhase = "idle"
    intent: str = ""
    goals: list[CrucibleGoal] = Field(default_factory=list)
    structural_goals: list[StructuralGoal] = Field(default_factory=list)
    prerequisites: list[Prerequisite] = Field(default_factory=list)
    elements: list[CrucibleWorldElement] = Field(default_factory=list)
    chains: dict[str, CrucibleChain] = Field(default_factory=dict)
    active_goal_id: str | None = None
    director_guidance: DirectorGuidance | None = None
    beats_since_director: int = 0
    checkpoint_reason: str | None = None
    auto_chaining: bool = False
    solver_stalls: int = 0
    derived_goal_ids: list[str] = Field(default_factory=list)
    merged_elements: list[MergedElement] | None = None
    expansion_element_id: str | None = None

    def goal(self, goal_id: str) -> CrucibleGoal | None:
        return next((g for g in self.goals if g.id == goal_id), None)

    def selected_goals(self) -> list[CrucibleGoal]:
        return [g for g in self.goals if g.selected]

    def element(self, element_id: str) -> CrucibleWorldElement | None:
        return next((e for e in self.elements if e.id == element_id), None)
