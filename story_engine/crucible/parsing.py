"""Parsers for crucible step outputs.

Every parser works on the bracketed tag form (display glyphs are restored
first) after <think> artifacts are stripped. A parser that finds nothing it
recognises returns an empty result or None; callers treat that as a parse
failure and do not advance.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from story_engine.models import (
    ELEMENT_TAG_FIELD,
    PREREQ_CATEGORIES,
    CrucibleGoal,
    CrucibleWorldElement,
    DulfsFieldId,
    Prerequisite,
    StructuralGoal,
)
from story_engine.tags import (
    has_tag,
    parse_tag,
    parse_tag_all,
    restore_tags_from_emoji,
    split_sections,
    strip_thinking_tags,
)

logger = logging.getLogger(__name__)

# Beat tag marking the story's opening scene, i.e. the chain's terminal beat.
OPENER_TAG = "OPENER"

_NONE_VALUES = {"none", "n/a", "-", "nothing"}

# "R2: description", "R2 - description" or "[R2] description"
_REF_WITH_TEXT = re.compile(r"^([A-Za-z]{1,3}\d+)\s*(?::|\s-\s)\s*(.+)$")
_BRACKET_REF_WITH_TEXT = re.compile(r"^\[([A-Za-z]{1,3}\d+)\]\s*:?\s*(.+)$")
_BARE_REF = re.compile(r"^\[?([A-Za-z]{1,3}\d+)\]?$")


def clean(text: str) -> str:
    return restore_tags_from_emoji(strip_thinking_tags(text))


def excerpt(text: str, limit: int = 200) -> str:
    text = text.strip().replace("\n", " ")
    return text if len(text) <= limit else text[:limit] + "..."


# ---------------------------------------------------------------------------
# Goals
# ---------------------------------------------------------------------------

def parse_goals(text: str) -> list[CrucibleGoal]:
    """One goal per "+++" section; sections without a [GOAL] are dropped."""
    goals: list[CrucibleGoal] = []
    for section in split_sections(clean(text)):
        if parse_tag(section, "GOAL"):
            goals.append(CrucibleGoal(text=section))
    if not goals:
        logger.warning("no goals parsed from: %s", excerpt(text))
    return goals


# ---------------------------------------------------------------------------
# Structural goal, prerequisites, elements
# ---------------------------------------------------------------------------

def parse_structural_goal(text: str, source_goal_id: str) -> StructuralGoal | None:
    text = clean(text)
    goal = parse_tag(text, "GOAL")
    if not goal:
        logger.warning("no structural goal parsed from: %s", excerpt(text))
        return None
    return StructuralGoal(source_goal_id=source_goal_id, goal=goal, why=parse_tag(text, "WHY") or "")


def parse_prerequisites(text: str, goal_id: str | None) -> list[Prerequisite]:
    prereqs: list[Prerequisite] = []
    for section in split_sections(clean(text)):
        element = parse_tag(section, "PREREQ")
        if not element:
            continue
        category = (parse_tag(section, "CATEGORY") or "").upper()
        if category not in PREREQ_CATEGORIES:
            category = "RELATIONSHIP"
        prereqs.append(Prerequisite(
            goal_id=goal_id,
            element=element,
            load_bearing=parse_tag(section, "LOADBEARING") or "",
            category=category,
        ))
    return prereqs


def _element_heading(section: str) -> tuple[DulfsFieldId, str] | None:
    """Find the element tag of a section: whichever appears first."""
    found: list[tuple[int, DulfsFieldId, str]] = []
    for tag, field_id in ELEMENT_TAG_FIELD.items():
        pos = section.find(f"[{tag}]")
        if pos == -1:
            continue
        name = parse_tag(section[pos:], tag)
        if name:
            found.append((pos, field_id, name))
    if not found:
        return None
    _, field_id, name = min(found)
    return field_id, name


def parse_elements(text: str, goal_id: str | None) -> list[CrucibleWorldElement]:
    elements: list[CrucibleWorldElement] = []
    for section in split_sections(clean(text)):
        heading = _element_heading(section)
        if heading is None:
            continue
        field_id, name = heading
        satisfies = parse_tag(section, "SATISFIES") or ""
        elements.append(CrucibleWorldElement(
            field_id=field_id,
            name=name,
            content=parse_tag(section, "DESCRIPTION") or "",
            want=parse_tag(section, "WANT") or "",
            need=parse_tag(section, "NEED") or "",
            relationship=parse_tag(section, "RELATIONSHIP") or "",
            purpose=parse_tag(section, "PURPOSE") or "",
            satisfies=[s.strip() for s in satisfies.split(",") if s.strip()],
            goal_id=goal_id,
        ))
    return elements


# ---------------------------------------------------------------------------
# Beats
# ---------------------------------------------------------------------------

@dataclass
class ParsedBeat:
    text: str
    scene: str
    resolved: list[str] = field(default_factory=list)
    opened: list[tuple[str | None, str]] = field(default_factory=list)
    grounded: list[str] = field(default_factory=list)
    elements: list[tuple[DulfsFieldId, str]] = field(default_factory=list)
    terminal: bool = False


def _items(contents: list[str]) -> list[str]:
    items: list[str] = []
    for content in contents:
        for part in re.split(r"[;\n]", content):
            part = re.sub(r"^\s*[-*•]\s*", "", part).strip()
            if not part or part.lower() in _NONE_VALUES:
                continue
            # "R1, R3" is a list of references, not one description.
            pieces = [p.strip() for p in part.split(",")]
            if len(pieces) > 1 and all(_BARE_REF.match(p) for p in pieces):
                items.extend(pieces)
            else:
                items.append(part)
    return items


def split_reference(item: str) -> tuple[str | None, str]:
    """Split "R2: text" into ("R2", "text"); bare "R2" gives ("R2", "")."""
    m = _REF_WITH_TEXT.match(item) or _BRACKET_REF_WITH_TEXT.match(item)
    if m:
        return m.group(1).upper(), m.group(2).strip()
    m = _BARE_REF.match(item)
    if m:
        return m.group(1).upper(), ""
    return None, item


def parse_beat(text: str) -> ParsedBeat | None:
    text = clean(text)
    scene = parse_tag(text, "SCENE")
    if not scene:
        logger.warning("no [SCENE] in beat output: %s", excerpt(text))
        return None
    elements: list[tuple[DulfsFieldId, str]] = []
    for tag, field_id in ELEMENT_TAG_FIELD.items():
        for name in parse_tag_all(text, tag):
            elements.append((field_id, name.split("\n")[0].strip()))
    return ParsedBeat(
        text=text,
        scene=scene,
        resolved=_items(parse_tag_all(text, "RESOLVED")),
        opened=[split_reference(i) for i in _items(parse_tag_all(text, "OPEN"))],
        grounded=_items(parse_tag_all(text, "GROUND")),
        elements=elements,
        terminal=has_tag(text, OPENER_TAG),
    )
