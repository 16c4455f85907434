"""Generation queue endpoints: status, cancel, budget continue."""

from fastapi import APIRouter, Depends, HTTPException

from story_engine.runtime import Runtime

from .deps import get_runtime

router = APIRouter(prefix="/generation")


@router.get("")
async def get_queue(runtime: Runtime = Depends(get_runtime)):
    """Active request (with budget wait state), queued requests, notifications."""
    return runtime.queue.snapshot()


@router.post("/continue")
async def continue_budget(runtime: Runtime = Depends(get_runtime)):
    """Start the budget countdown for a request waiting on the user."""
    if not runtime.queue.continue_budget():
        raise HTTPException(400, "No generation is waiting for budget")
    return {"ok": True}


@router.get("/notifications")
async def get_notifications(runtime: Runtime = Depends(get_runtime)):
    """Failures reported by finished requests, oldest first."""
    return [n.model_dump() for n in runtime.queue.notifications]


@router.delete("/notifications")
async def clear_notifications(runtime: Runtime = Depends(get_runtime)):
    """Dismiss all notifications."""
    runtime.queue.notifications.clear()
    return {"ok": True}


@router.post("/{request_id}/cancel")
async def cancel(request_id: str, runtime: Runtime = Depends(get_runtime)):
    """Cancel a queued or processing request."""
    if not runtime.queue.cancel(request_id):
        raise HTTPException(404, f"Request '{request_id}' not found or already finished")
    return {"ok": True}
