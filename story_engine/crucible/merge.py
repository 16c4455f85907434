"""World merge: collapse per-goal element proposals into one world.

Elements are grouped by DULFS category and deduplicated by name
(case-insensitive). The first occurrence, in goal order, keeps its
description; every goal that proposed the same name contributes its
rationale to `goal_purposes`.
"""

from __future__ import annotations

from story_engine.models import DULFS_FIELDS, CrucibleWorldElement, DulfsFieldId, MergedElement


def _rationale(element: CrucibleWorldElement) -> str:
    return element.purpose or element.content or element.relationship


def merge_world(
    elements: list[CrucibleWorldElement],
    goal_order: list[str] | None = None,
) -> dict[DulfsFieldId, list[MergedElement]]:
    """Return merged elements per category, categories in DULFS order."""
    if goal_order:
        rank = {goal_id: i for i, goal_id in enumerate(goal_order)}
        # Stable: elements of one goal keep their proposal order.
        elements = sorted(elements, key=lambda e: rank.get(e.goal_id or "", len(rank)))

    merged: dict[DulfsFieldId, dict[str, MergedElement]] = {f: {} for f in DULFS_FIELDS}
    for element in elements:
        key = element.name.strip().lower()
        if not key:
            continue
        bucket = merged[element.field_id]
        entry = bucket.get(key)
        if entry is None:
            entry = MergedElement(
                name=element.name.strip(),
                field_id=element.field_id,
                content=element.content,
            )
            bucket[key] = entry
        entry.source_ids.append(element.id)
        if element.goal_id and element.goal_id not in entry.goal_purposes:
            entry.goal_purposes[element.goal_id] = _rationale(element)

    return {f: list(bucket.values()) for f, bucket in merged.items() if bucket}


def flatten(merged: dict[DulfsFieldId, list[MergedElement]]) -> list[MergedElement]:
    return [e for items in merged.values() for e in items]
