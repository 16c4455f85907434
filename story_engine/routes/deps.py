"""Shared route dependencies."""

from contextlib import contextmanager
from collections.abc import Iterator

from fastapi import HTTPException, Request

from story_engine.crucible import CrucibleError
from story_engine.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


@contextmanager
def crucible_errors() -> Iterator[None]:
    """Map CrucibleError to 404 (unknown ids) or 400 (invalid action)."""
    try:
        yield
    except CrucibleError as e:
        status = 404 if "not found" in str(e).lower() else 400
        raise HTTPException(status, str(e))
