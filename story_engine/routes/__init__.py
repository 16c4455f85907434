"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, settings, check-connection), generation
(queue status, cancel, budget continue, notifications), story (fields,
DULFS lists, brainstorm) and crucible (goals, derivation, chains,
constraints, director, merge, expansion).
"""

from fastapi import APIRouter

from .crucible import router as crucible_router
from .generation import router as generation_router
from .settings import router as settings_router
from .story import router as story_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(generation_router)
router.include_router(story_router)
router.include_router(crucible_router)
