"""Crucible planning endpoints: goals, derivation, chains, director, merge."""

from fastapi import APIRouter, Depends

from story_engine.models import GenerationRequest
from story_engine.runtime import Runtime

from .deps import crucible_errors, get_runtime
from .models import (
    BeatEditBody,
    ConfirmBody,
    ConstraintActionBody,
    ConstraintBody,
    ElementBody,
    GoalBody,
    IntentBody,
    PrerequisiteBody,
    StructuralGoalBody,
)

router = APIRouter(prefix="/crucible")


def _queued(request: GenerationRequest | None) -> dict:
    """A None request means an equivalent one is already pending."""
    return {"request": request.model_dump() if request else None}


@router.get("")
async def get_state(runtime: Runtime = Depends(get_runtime)):
    """Full crucible planning state."""
    return runtime.crucible.state.model_dump()


@router.post("/reset")
async def reset(runtime: Runtime = Depends(get_runtime)):
    """Cancel crucible work and return to idle."""
    runtime.crucible.reset()
    return runtime.crucible.state.model_dump()


# ── Goals ────────────────────────────────────────────────


@router.put("/intent")
async def set_intent(body: IntentBody, runtime: Runtime = Depends(get_runtime)):
    """Set the author's direction used to propose goals."""
    with crucible_errors():
        runtime.crucible.set_intent(body.text)
    return runtime.crucible.state.model_dump()


@router.post("/goals/generate")
async def generate_goals(runtime: Runtime = Depends(get_runtime)):
    """Queue goal generation."""
    with crucible_errors():
        return _queued(runtime.crucible.request_goals())


@router.post("/goals")
async def add_goal(body: GoalBody, runtime: Runtime = Depends(get_runtime)):
    """Add a hand-written goal (selected)."""
    with crucible_errors():
        return runtime.crucible.add_goal(body.text).model_dump()


@router.put("/goals/{goal_id}")
async def edit_goal(goal_id: str, body: GoalBody, runtime: Runtime = Depends(get_runtime)):
    """Replace a goal's tagged text."""
    with crucible_errors():
        return runtime.crucible.edit_goal(goal_id, body.text).model_dump()


@router.post("/goals/{goal_id}/toggle")
async def toggle_goal(goal_id: str, runtime: Runtime = Depends(get_runtime)):
    """Star or unstar a goal."""
    with crucible_errors():
        return runtime.crucible.toggle_goal(goal_id).model_dump()


@router.delete("/goals/{goal_id}")
async def remove_goal(goal_id: str, runtime: Runtime = Depends(get_runtime)):
    """Remove a goal."""
    with crucible_errors():
        runtime.crucible.remove_goal(goal_id)
    return {"ok": True}


@router.post("/confirm")
async def confirm_goals(body: ConfirmBody, runtime: Runtime = Depends(get_runtime)):
    """Confirm the selected goals and start chaining or building."""
    with crucible_errors():
        runtime.crucible.confirm_goals(body.mode)
    return runtime.crucible.state.model_dump()


# ── Derivation ───────────────────────────────────────────


@router.post("/goals/{goal_id}/structural-goal")
async def derive_structural_goal(goal_id: str, runtime: Runtime = Depends(get_runtime)):
    """Queue (re-)derivation of a goal's structural goal."""
    with crucible_errors():
        return _queued(runtime.crucible.request_structural_goal(goal_id))


@router.put("/goals/{goal_id}/structural-goal")
async def edit_structural_goal(goal_id: str, body: StructuralGoalBody, runtime: Runtime = Depends(get_runtime)):
    """Edit a structural goal; its prerequisites become stale."""
    with crucible_errors():
        return runtime.crucible.edit_structural_goal(goal_id, body.goal, body.why).model_dump()


@router.post("/goals/{goal_id}/prerequisites")
async def derive_prerequisites(goal_id: str, runtime: Runtime = Depends(get_runtime)):
    """Queue (re-)derivation of a goal's prerequisites."""
    with crucible_errors():
        return _queued(runtime.crucible.request_prerequisites(goal_id))


@router.patch("/prerequisites/{prereq_id}")
async def edit_prerequisite(prereq_id: str, body: PrerequisiteBody, runtime: Runtime = Depends(get_runtime)):
    """Edit a prerequisite; elements satisfying it become stale."""
    with crucible_errors():
        return runtime.crucible.edit_prerequisite(
            prereq_id, body.element, body.load_bearing, body.category
        ).model_dump()


@router.post("/goals/{goal_id}/elements")
async def derive_elements(goal_id: str, runtime: Runtime = Depends(get_runtime)):
    """Queue (re-)derivation of a goal's world elements."""
    with crucible_errors():
        return _queued(runtime.crucible.request_elements(goal_id))


@router.patch("/elements/{element_id}")
async def edit_element(element_id: str, body: ElementBody, runtime: Runtime = Depends(get_runtime)):
    """Edit a world element's name or description."""
    with crucible_errors():
        return runtime.crucible.edit_element(element_id, body.name, body.content).model_dump()


@router.delete("/elements/{element_id}")
async def remove_element(element_id: str, runtime: Runtime = Depends(get_runtime)):
    """Remove a world element."""
    with crucible_errors():
        runtime.crucible.remove_element(element_id)
    return {"ok": True}


# ── Chains ───────────────────────────────────────────────


@router.post("/chains/{goal_id}/beat")
async def request_beat(goal_id: str, runtime: Runtime = Depends(get_runtime)):
    """Queue one beat for a goal's chain."""
    with crucible_errors():
        return _queued(runtime.crucible.request_beat(goal_id))


@router.post("/auto-chain/start")
async def start_auto_chain(runtime: Runtime = Depends(get_runtime)):
    """Keep generating beats until a checkpoint, completion or stop."""
    with crucible_errors():
        return _queued(runtime.crucible.start_auto_chain())


@router.post("/auto-chain/stop")
async def stop_auto_chain(runtime: Runtime = Depends(get_runtime)):
    """Stop requesting further beats."""
    runtime.crucible.stop_auto_chain()
    return runtime.crucible.state.model_dump()


@router.delete("/checkpoint")
async def clear_checkpoint(runtime: Runtime = Depends(get_runtime)):
    """Acknowledge the current checkpoint."""
    runtime.crucible.clear_checkpoint()
    return runtime.crucible.state.model_dump()


@router.post("/chains/{goal_id}/reject")
async def reject_beat(goal_id: str, runtime: Runtime = Depends(get_runtime)):
    """Reject the most recent beat and undo its constraint changes.

    Rejecting on an empty chain changes nothing.
    """
    with crucible_errors():
        runtime.crucible.reject_beat(goal_id)
        return runtime.crucible.require_chain(goal_id).model_dump()


@router.delete("/chains/{goal_id}/beats/{index}")
async def delete_beats_from(goal_id: str, index: int, runtime: Runtime = Depends(get_runtime)):
    """Delete the beat at index and every later beat."""
    with crucible_errors():
        removed = runtime.crucible.delete_beats_from(goal_id, index)
    return {"removed": len(removed)}


@router.put("/chains/{goal_id}/beats/{index}")
async def edit_beat(goal_id: str, index: int, body: BeatEditBody, runtime: Runtime = Depends(get_runtime)):
    """Replace a beat's text."""
    with crucible_errors():
        return runtime.crucible.edit_beat(goal_id, index, body.text).model_dump()


@router.post("/chains/{goal_id}/beats/{index}/favorite")
async def toggle_favorite(goal_id: str, index: int, runtime: Runtime = Depends(get_runtime)):
    """Toggle a beat's favorite flag."""
    with crucible_errors():
        return runtime.crucible.toggle_favorite(goal_id, index).model_dump()


@router.post("/chains/{goal_id}/constraints")
async def add_constraint(goal_id: str, body: ConstraintBody, runtime: Runtime = Depends(get_runtime)):
    """Add an open constraint by hand."""
    with crucible_errors():
        return runtime.crucible.add_constraint(goal_id, body.description).model_dump()


@router.post("/chains/{goal_id}/constraints/{ref}")
async def edit_constraint(goal_id: str, ref: str, body: ConstraintActionBody, runtime: Runtime = Depends(get_runtime)):
    """Resolve, reopen, ground or remove a constraint (by id or short id)."""
    crucible = runtime.crucible
    actions = {
        "resolve": crucible.resolve_constraint,
        "reopen": crucible.reopen_constraint,
        "ground": crucible.ground_constraint,
        "remove": crucible.remove_constraint,
    }
    with crucible_errors():
        actions[body.action](goal_id, ref)
    return crucible.require_chain(goal_id).model_dump()


@router.post("/chains/{goal_id}/complete")
async def complete_chain(goal_id: str, runtime: Runtime = Depends(get_runtime)):
    """Mark a chain complete; fails while constraints are open."""
    with crucible_errors():
        return runtime.crucible.mark_chain_complete(goal_id).model_dump()


@router.post("/chains/{goal_id}/director")
async def request_director(goal_id: str, runtime: Runtime = Depends(get_runtime)):
    """Queue a director review now."""
    with crucible_errors():
        return _queued(runtime.crucible.request_director(goal_id))


# ── Merge and expansion ──────────────────────────────────


@router.post("/merge")
async def merge(runtime: Runtime = Depends(get_runtime)):
    """Merge all goals' elements into the story's world lists."""
    with crucible_errors():
        merged = runtime.crucible.merge()
    return {field_id: [e.model_dump() for e in items] for field_id, items in merged.items()}


@router.post("/elements/{element_id}/expand")
async def expand_element(element_id: str, runtime: Runtime = Depends(get_runtime)):
    """Queue expansion of one element of the merged world."""
    with crucible_errors():
        return _queued(runtime.crucible.request_expansion(element_id))
