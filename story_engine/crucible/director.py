"""Director oversight: periodic review of a chain in progress.

The director reads the goal, the beats so far and the constraint ledger,
and answers with guidance for the two planning roles plus optional
directives:

    [ASSESSMENT] free-form notes
    [FOR SOLVER] guidance for the next beats
    [FOR BUILDER] guidance for world elements
    [REJECT]                  drop the most recent beat
    [TAINT Scene 3]           flag scene 3 as suspect (advisory only)

Scenes are numbered from 1 in generation order, the same numbering the
director sees in its context.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from story_engine.crucible.constraints import reject_last_beat
from story_engine.crucible.parsing import clean, excerpt
from story_engine.models import CrucibleChain, CrucibleGoal, CrucibleWorldElement, DirectorGuidance
from story_engine.tags import parse_tag

logger = logging.getLogger(__name__)

_TAINT = re.compile(r"\[TAINT\s+Scene\s+(\d+)\]", re.IGNORECASE)
_REJECT = "[REJECT]"


@dataclass
class DirectorVerdict:
    solver: str = ""
    builder: str = ""
    reject: bool = False
    taint_scenes: list[int] = field(default_factory=list)

    @property
    def has_guidance(self) -> bool:
        return bool(self.solver or self.builder)


class DirectiveScanner:
    """Collects [REJECT]/[TAINT] directives line by line while streaming."""

    def __init__(self) -> None:
        self.reject = False
        self.taint_scenes: list[int] = []

    def __call__(self, line: str) -> None:
        if _REJECT in line.upper():
            self.reject = True
        for m in _TAINT.finditer(line):
            scene = int(m.group(1))
            if scene not in self.taint_scenes:
                self.taint_scenes.append(scene)


def parse_director_output(text: str, scanner: DirectiveScanner | None = None) -> DirectorVerdict:
    """Parse a full director response.

    Directives seen by a streaming *scanner* are merged with those found in
    the final text, so either source alone is enough.
    """
    text = clean(text)
    if scanner is None:
        scanner = DirectiveScanner()
    for line in text.split("\n"):
        scanner(line)
    return DirectorVerdict(
        solver=parse_tag(text, "FOR SOLVER") or "",
        builder=parse_tag(text, "FOR BUILDER") or "",
        reject=scanner.reject,
        taint_scenes=list(scanner.taint_scenes),
    )


def apply_verdict(chain: CrucibleChain, verdict: DirectorVerdict) -> DirectorGuidance | None:
    """Apply a verdict to *chain*; returns the new guidance.

    A verdict with neither FOR SOLVER nor FOR BUILDER is ignored entirely
    (returns None). Guidance records the beat count it was issued at, taken
    before any rejection. Rejection on an empty chain is a no-op.
    """
    if not verdict.has_guidance:
        logger.warning("director output had no guidance; ignoring")
        return None
    guidance = DirectorGuidance(
        solver=verdict.solver,
        builder=verdict.builder,
        at_beat_index=len(chain.beats),
    )
    if verdict.reject:
        beat = reject_last_beat(chain)
        if beat is not None:
            logger.info("director rejected beat: %s", excerpt(beat.scene, 80))
    for scene in verdict.taint_scenes:
        index = scene - 1
        if 0 <= index < len(chain.beats):
            chain.beats[index].tainted = True
        else:
            logger.debug("director tainted scene %d out of range", scene)
    return guidance


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

def format_director_context(
    goal: CrucibleGoal,
    chain: CrucibleChain,
    elements: list[CrucibleWorldElement],
    previous: DirectorGuidance | None,
) -> str:
    lines = [f"GOAL: {goal.goal}"]
    if goal.stakes:
        lines.append(f"STAKES: {goal.stakes}")
    lines.append("")
    lines.append(f"BEATS ({len(chain.beats)}, most recent last):")
    for i, beat in enumerate(chain.beats, start=1):
        flags = []
        if beat.tainted:
            flags.append("tainted")
        if beat.favorited:
            flags.append("favorite")
        suffix = f" ({', '.join(flags)})" if flags else ""
        lines.append(f"Scene {i}{suffix}: {beat.scene}")
    lines.append("")
    lines.append("OPEN CONSTRAINTS:")
    lines.extend(f"[{c.short_id}] {c.description}" for c in chain.open_constraints)
    if not chain.open_constraints:
        lines.append("(none)")
    lines.append("RESOLVED CONSTRAINTS:")
    lines.extend(
        f"[{c.short_id}] {c.description} ({'ground state' if c.status == 'groundState' else 'resolved'})"
        for c in chain.resolved_constraints
    )
    if not chain.resolved_constraints:
        lines.append("(none)")
    if elements:
        lines.append("")
        lines.append("WORLD ELEMENTS:")
        lines.extend(f"- {e.name}: {e.content}".rstrip(": ") for e in elements)
    if previous is not None:
        lines.append("")
        lines.append("YOUR PREVIOUS GUIDANCE:")
        if previous.solver:
            lines.append(f"For solver: {previous.solver}")
        if previous.builder:
            lines.append(f"For builder: {previous.builder}")
    return "\n".join(lines)
