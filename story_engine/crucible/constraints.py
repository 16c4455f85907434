"""Constraint tracking for backward-chained beat sequences.

A chain carries two lists: open constraints (questions the story still has
to answer, looking backward from the goal) and resolved ones (answered by a
beat, or declared ground state, i.e. simply true at the story's start).

Invariants kept here:
  - a constraint lives in exactly one of the two lists;
  - status "groundState" never reopens on its own;
  - a chain is complete only with no open constraints, at least one beat
    and a terminal signal;
  - rolling back the last beat undoes exactly what that beat applied.
"""

from __future__ import annotations

import logging
import re

from story_engine.crucible.parsing import ParsedBeat, split_reference
from story_engine.models import Beat, Constraint, CrucibleChain

logger = logging.getLogger(__name__)

_SHORT_ID_NUMBER = re.compile(r"(\d+)$")

# Net constraint growth above this, for EXPLOSION_BEATS beats in a row,
# raises a checkpoint.
EXPLOSION_GROWTH = 2
EXPLOSION_BEATS = 3


def _all(chain: CrucibleChain) -> list[Constraint]:
    return chain.open_constraints + chain.resolved_constraints


def next_short_id(chain: CrucibleChain) -> str:
    highest = 0
    for c in _all(chain):
        m = _SHORT_ID_NUMBER.search(c.short_id)
        if m:
            highest = max(highest, int(m.group(1)))
    return f"R{highest + 1}"


def find_constraint(constraints: list[Constraint], ref: str) -> Constraint | None:
    """Match by id, short id, or description (case-insensitive)."""
    short_id, text = split_reference(ref.strip())
    for c in constraints:
        if c.id == ref:
            return c
    if short_id:
        for c in constraints:
            if c.short_id.upper() == short_id:
                return c
    key = (text or ref).strip().lower()
    for c in constraints:
        if c.description.strip().lower() == key:
            return c
    return None


def _refresh_complete(chain: CrucibleChain) -> None:
    if chain.open_constraints:
        chain.complete = False


# ---------------------------------------------------------------------------
# Beats
# ---------------------------------------------------------------------------

def apply_beat(chain: CrucibleChain, parsed: ParsedBeat) -> Beat:
    """Append a parsed beat and apply its constraint changes."""
    index = len(chain.beats)
    before = len(chain.open_constraints)
    resolved: list[str] = []
    grounded: list[str] = []

    for ref, status, bucket in (
        *((r, "resolved", resolved) for r in parsed.resolved),
        *((r, "groundState", grounded) for r in parsed.grounded),
    ):
        constraint = find_constraint(chain.open_constraints, ref)
        if constraint is None:
            logger.debug("beat %d references unknown open constraint %r", index, ref)
            continue
        chain.open_constraints.remove(constraint)
        constraint.status = status
        constraint.source_beat_index = index
        chain.resolved_constraints.append(constraint)
        bucket.append(constraint.short_id)

    opened: list[str] = []
    taken = {c.short_id.upper() for c in _all(chain)}
    for short_id, description in parsed.opened:
        if not description:
            continue
        if short_id is None or short_id in taken:
            short_id = next_short_id(chain)
        taken.add(short_id)
        chain.open_constraints.append(Constraint(
            short_id=short_id,
            description=description,
            source_beat_index=index,
            opened_beat_index=index,
        ))
        opened.append(short_id)

    beat = Beat(
        text=parsed.text,
        scene=parsed.scene,
        constraints_resolved=resolved,
        new_open_constraints=opened,
        ground_state_constraints=grounded,
        elements_introduced=[name for _, name in parsed.elements],
    )
    chain.beats.append(beat)
    chain.net_growth.append(len(chain.open_constraints) - before)
    _refresh_complete(chain)
    return beat


def reject_last_beat(chain: CrucibleChain) -> Beat | None:
    """Pop the last beat and undo its constraint changes. None if empty."""
    if not chain.beats:
        return None
    index = len(chain.beats) - 1
    beat = chain.beats.pop()
    if chain.net_growth:
        chain.net_growth.pop()

    chain.open_constraints = [c for c in chain.open_constraints if c.opened_beat_index != index]
    undone = set(beat.constraints_resolved) | set(beat.ground_state_constraints)
    kept: list[Constraint] = []
    for c in chain.resolved_constraints:
        if c.source_beat_index == index and c.short_id in undone:
            c.status = "open"
            c.source_beat_index = c.opened_beat_index
            chain.open_constraints.append(c)
        elif c.opened_beat_index == index:
            # Opened and later settled by hand; it goes with its beat.
            continue
        else:
            kept.append(c)
    chain.resolved_constraints = kept
    chain.complete = False
    return beat


def truncate_beats(chain: CrucibleChain, from_index: int) -> list[Beat]:
    """Remove the contiguous suffix starting at *from_index*."""
    removed: list[Beat] = []
    while len(chain.beats) > max(0, from_index):
        beat = reject_last_beat(chain)
        if beat is None:
            break
        removed.append(beat)
    removed.reverse()
    return removed


def constraint_explosion(chain: CrucibleChain) -> bool:
    recent = chain.net_growth[-EXPLOSION_BEATS:]
    return len(recent) == EXPLOSION_BEATS and all(g > EXPLOSION_GROWTH for g in recent)


# ---------------------------------------------------------------------------
# Manual edits
# ---------------------------------------------------------------------------

def add_constraint(chain: CrucibleChain, description: str, short_id: str | None = None) -> Constraint:
    taken = {c.short_id.upper() for c in _all(chain)}
    if not short_id or short_id.upper() in taken:
        short_id = next_short_id(chain)
    constraint = Constraint(short_id=short_id.upper(), description=description)
    chain.open_constraints.append(constraint)
    _refresh_complete(chain)
    return constraint


def resolve_constraint(chain: CrucibleChain, ref: str) -> bool:
    constraint = find_constraint(chain.open_constraints, ref)
    if constraint is None:
        return False
    chain.open_constraints.remove(constraint)
    constraint.status = "resolved"
    constraint.source_beat_index = None
    chain.resolved_constraints.append(constraint)
    return True


def ground_constraint(chain: CrucibleChain, ref: str) -> bool:
    constraint = find_constraint(chain.open_constraints, ref)
    if constraint is not None:
        chain.open_constraints.remove(constraint)
        chain.resolved_constraints.append(constraint)
    else:
        constraint = find_constraint(chain.resolved_constraints, ref)
        if constraint is None:
            return False
    constraint.status = "groundState"
    constraint.source_beat_index = None
    return True


def reopen_constraint(chain: CrucibleChain, ref: str) -> bool:
    """Move a resolved constraint back to open. Ground state stays put."""
    constraint = find_constraint(chain.resolved_constraints, ref)
    if constraint is None or constraint.status != "resolved":
        return False
    chain.resolved_constraints.remove(constraint)
    constraint.status = "open"
    constraint.source_beat_index = constraint.opened_beat_index
    chain.open_constraints.append(constraint)
    chain.complete = False
    return True


def remove_constraint(chain: CrucibleChain, ref: str) -> bool:
    for bucket in (chain.open_constraints, chain.resolved_constraints):
        constraint = find_constraint(bucket, ref)
        if constraint is not None:
            bucket.remove(constraint)
            return True
    return False


def try_complete(chain: CrucibleChain, terminal: bool) -> bool:
    """Mark the chain complete if the completion rule holds."""
    if terminal and chain.beats and not chain.open_constraints:
        chain.complete = True
    return chain.complete
