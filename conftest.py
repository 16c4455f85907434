import asyncio
import os
from pathlib import Path

import pytest

# story_engine.app builds a default app at import time; keep it out of ./data.
os.environ.setdefault("DATA_DIR", "data-tests")

from story_engine.llm import CancellationToken, GenerationParams  # noqa: E402
from story_engine.storage import Storage  # noqa: E402


class ScriptedGenerator:
    """Generator stub that streams canned replies in small chunks.

    Replies are consumed in order; once exhausted the last one repeats.
    Every call's messages and params are recorded in `calls`. Set `gate`
    to an asyncio.Event to hold each call until the test releases it.
    """

    def __init__(self, *replies: str, chunk_size: int = 7) -> None:
        self.replies = list(replies) or [""]
        self.chunk_size = chunk_size
        self.calls: list[tuple[list[dict], GenerationParams]] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, messages, params, on_delta, priority, token: CancellationToken) -> str:
        self.calls.append((messages, params))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if self.gate is not None:
            await self.gate.wait()
        for i in range(0, len(reply), self.chunk_size):
            token.raise_if_cancelled()
            on_delta(reply[i:i + self.chunk_size])
            await asyncio.sleep(0)
        return reply


@pytest.fixture
def storage(tmp_path: Path) -> Storage:
    return Storage(tmp_path / "data")


@pytest.fixture
def scripted():
    """Factory: scripted("reply one", "reply two") -> ScriptedGenerator."""
    return ScriptedGenerator
