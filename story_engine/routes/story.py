"""Story text fields, DULFS lists and brainstorm endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from story_engine.models import (
    BrainstormMessage,
    BrainstormTarget,
    DulfsFieldId,
    FieldTarget,
    ListTarget,
    TextFieldId,
)
from story_engine.runtime import Runtime

from .deps import get_runtime
from .models import BrainstormBody, FieldBody, GenerateFieldBody, GenerateListBody

router = APIRouter()


# ── Fields ───────────────────────────────────────────────


@router.get("/fields")
async def get_fields(runtime: Runtime = Depends(get_runtime)):
    """All story text fields."""
    return runtime.storage.get_fields()


@router.put("/fields/{field_id}")
async def set_field(field_id: TextFieldId, body: FieldBody, runtime: Runtime = Depends(get_runtime)):
    """Overwrite a story text field."""
    runtime.storage.set_field(field_id, body.content)
    return {"field_id": field_id, "content": body.content}


@router.post("/fields/generate")
async def generate_field(body: GenerateFieldBody, runtime: Runtime = Depends(get_runtime)):
    """Queue generation of a story text field."""
    request = runtime.queue.submit(FieldTarget(field_id=body.field_id))
    return {"request": request.model_dump()}


# ── Lists ────────────────────────────────────────────────


@router.get("/lists")
async def get_lists(runtime: Runtime = Depends(get_runtime)):
    """All DULFS lists keyed by field id."""
    return {
        field_id: [item.model_dump() for item in items]
        for field_id, items in runtime.storage.get_all_lists().items()
    }


@router.delete("/lists/{field_id}/{item_id}")
async def remove_list_item(field_id: DulfsFieldId, item_id: str, runtime: Runtime = Depends(get_runtime)):
    """Delete one list entry."""
    if not runtime.storage.remove_list_item(field_id, item_id):
        raise HTTPException(404, f"Item '{item_id}' not found in {field_id}")
    return {"ok": True}


@router.post("/lists/generate")
async def generate_list(body: GenerateListBody, runtime: Runtime = Depends(get_runtime)):
    """Queue generation of new entries for a DULFS list."""
    request = runtime.queue.submit(ListTarget(field_id=body.field_id))
    return {"request": request.model_dump()}


# ── Brainstorm ───────────────────────────────────────────


@router.get("/brainstorm")
async def get_brainstorm(runtime: Runtime = Depends(get_runtime)):
    """Brainstorm conversation, oldest first."""
    return [m.model_dump() for m in runtime.storage.get_brainstorm()]


@router.post("/brainstorm")
async def brainstorm(body: BrainstormBody, runtime: Runtime = Depends(get_runtime)):
    """Append a user message and queue the assistant's reply."""
    if not body.message.strip():
        raise HTTPException(400, "Message must not be empty")
    runtime.storage.append_brainstorm(BrainstormMessage(role="user", content=body.message))
    request = runtime.queue.submit(BrainstormTarget())
    return {"request": request.model_dump()}


@router.delete("/brainstorm")
async def clear_brainstorm(runtime: Runtime = Depends(get_runtime)):
    """Start the brainstorm over."""
    runtime.storage.clear_brainstorm()
    return {"ok": True}
