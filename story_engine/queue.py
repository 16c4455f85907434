"""Generation queue: single-flight scheduler over GenerationRequests.

At most one request is processing at any instant. Activation picks the
highest-priority queued request, oldest first among equals. Each activation
resolves the target's handler, builds its prompt and runs it through
`run_session`.

Failure handling:
  - Cancellation is not a failure: status becomes "cancelled", nothing is
    reported to the user.
  - Any other exception (LLMError, a handler bug) is logged, stored on the
    request and published once as a Notification. It is never retried; the
    next queued request then activates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from story_engine.budget import Clock, Sleep
from story_engine.handlers import GenerationHandler
from story_engine.llm import GenerationCancelled, Generator
from story_engine.models import GenerationRequest, GenerationTarget, Notification
from story_engine.session import GenerationSession, run_session

logger = logging.getLogger(__name__)

HandlerResolver = Callable[[GenerationTarget], GenerationHandler]


class GenerationQueue:
    """Args:
        generator:        The text-generation collaborator.
        resolve_handler:  Maps a target to its handler.
        auto_continue:    Resolve budget waits without asking the user.
        tick_seconds:     Budget countdown poll interval.
        clock, sleep:     Injected into sessions (tests fake them).
        on_change:        Called with the active session on every update.
    """

    def __init__(
        self,
        generator: Generator,
        resolve_handler: HandlerResolver,
        *,
        auto_continue: bool = False,
        tick_seconds: float = 1.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        on_change: Callable[[GenerationSession], None] | None = None,
        max_notifications: int = 50,
    ) -> None:
        self.generator = generator
        self._resolve_handler = resolve_handler
        self.auto_continue = auto_continue
        self.tick_seconds = tick_seconds
        self._clock = clock
        self._sleep = sleep
        self._on_change = on_change
        self._pending: list[GenerationRequest] = []
        self._active: GenerationSession | None = None
        self._worker: asyncio.Task[None] | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self.history: deque[GenerationRequest] = deque(maxlen=50)
        self.notifications: deque[Notification] = deque(maxlen=max_notifications)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def active(self) -> GenerationSession | None:
        return self._active

    @property
    def pending(self) -> list[GenerationRequest]:
        return [r for r in self._pending if r.status == "queued"]

    def has_pending(self, predicate: Callable[[GenerationTarget], bool]) -> bool:
        """True if a queued or processing request's target matches."""
        active = self._active
        if active is not None and active.request.status == "processing" and predicate(active.request.target):
            return True
        return any(predicate(r.target) for r in self.pending)

    def snapshot(self) -> dict[str, Any]:
        active = self._active
        return {
            "active": None if active is None else {
                "request": active.request.model_dump(),
                "budget_state": active.budget_state,
                "budget_wait_ms": active.budget_wait_ms,
                "budget_time_remaining_ms": active.budget_time_remaining_ms,
                "output": active.output,
            },
            "queued": [r.model_dump() for r in self.pending],
            "notifications": [n.model_dump() for n in self.notifications],
        }

    # ------------------------------------------------------------------
    # Submission and control
    # ------------------------------------------------------------------

    def submit(self, target: GenerationTarget, priority: int = 0) -> GenerationRequest:
        request = GenerationRequest(target=target, priority=priority)
        self._pending.append(request)
        logger.debug("queued request %s kind=%s priority=%d", request.id, target.kind, priority)
        self._ensure_worker()
        return request

    def cancel(self, request_id: str) -> bool:
        """Cancel a queued or the active request. False if unknown/finished."""
        if self._active is not None and self._active.request.id == request_id:
            self._active.token.cancel()
            return True
        for request in self._pending:
            if request.id == request_id and request.status == "queued":
                request.status = "cancelled"
                self.history.append(request)
                return True
        return False

    def cancel_where(self, predicate: Callable[[GenerationTarget], bool]) -> int:
        """Cancel every queued or active request whose target matches."""
        count = 0
        for request in self.pending:
            if predicate(request.target) and self.cancel(request.id):
                count += 1
        if self._active is not None and predicate(self._active.request.target):
            self._active.token.cancel()
            count += 1
        return count

    def continue_budget(self, request_id: str | None = None) -> bool:
        active = self._active
        if active is None or (request_id is not None and active.request.id != request_id):
            return False
        return active.continue_budget()

    async def wait_idle(self) -> None:
        """Block until nothing is queued or processing."""
        await self._idle.wait()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._idle.clear()
            self._worker = asyncio.get_running_loop().create_task(self._process())

    def _next(self) -> GenerationRequest | None:
        self._pending = [r for r in self._pending if r.status == "queued"]
        if not self._pending:
            return None
        # min() keeps the first of equals, i.e. the oldest.
        request = min(self._pending, key=lambda r: -r.priority)
        self._pending.remove(request)
        return request

    async def _process(self) -> None:
        try:
            while (request := self._next()) is not None:
                await self._run(request)
        finally:
            self._idle.set()

    async def _run(self, request: GenerationRequest) -> None:
        session = GenerationSession(
            request=request,
            auto_continue=self.auto_continue,
            clock=self._clock,
            sleep=self._sleep,
            tick_seconds=self.tick_seconds,
            on_change=self._on_change,
        )
        request.status = "processing"
        self._active = session
        handler: GenerationHandler | None = None
        try:
            handler = self._resolve_handler(request.target)
            prompt = await handler.build()
            text = await run_session(session, self.generator, prompt, handler)
            if text is None:
                request.status = "cancelled"
                handler.on_abort("cancelled")
                return
            # Finished output no longer blocks follow-up submissions.
            request.status = "completed"
            await handler.on_complete(text)
        except GenerationCancelled:
            request.status = "cancelled"
            if handler is not None:
                handler.on_abort("cancelled")
        except Exception as e:
            logger.warning("generation %s (%s) failed: %s", request.id, request.target.kind, e)
            request.status = "completed"
            request.error = str(e)
            session.error = str(e)
            self.notifications.append(Notification(request_id=request.id, message=str(e)))
            if handler is not None:
                handler.on_abort(str(e))
        finally:
            self._active = None
            self.history.append(request)
