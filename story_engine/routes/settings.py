"""Health check, settings and connection check endpoints."""

from typing import Any

import httpx
from fastapi import APIRouter, Depends, HTTPException

from story_engine.config import get_config, update_config
from story_engine.runtime import Runtime

from .deps import get_runtime
from .models import CheckConnectionBody

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.post("/check-connection")
async def check_connection(body: CheckConnectionBody):
    """Quick health check against an LLM provider URL."""
    url = f"{body.provider_url.rstrip('/')}/v1/models"
    headers: dict[str, str] = {}
    if body.api_key:
        headers["Authorization"] = f"Bearer {body.api_key}"
    try:
        async with httpx.AsyncClient(timeout=5) as client:
            resp = await client.get(url, headers=headers)
            resp.raise_for_status()
        return {"ok": True}
    except httpx.HTTPError:
        return {"ok": False}


@router.get("/settings")
async def get_settings(runtime: Runtime = Depends(get_runtime)):
    """Get global settings (connection, generation, crucible pacing, prompts)."""
    return get_config(runtime.storage.base_path)


@router.patch("/settings")
async def update_settings(body: dict[str, Any], runtime: Runtime = Depends(get_runtime)):
    """Update global settings (partial merge) and apply them live."""
    try:
        config = update_config(runtime.storage.base_path, body)
    except ValueError as e:
        raise HTTPException(400, str(e))
    runtime.apply_config(config, rebuild_generator="connection" in body or "generation" in body)
    return config
