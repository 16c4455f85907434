"""Crucible: goal-driven world planning by backward chaining."""

from story_engine.crucible.engine import Crucible, CrucibleError, CrucibleSettings

__all__ = ["Crucible", "CrucibleError", "CrucibleSettings"]
