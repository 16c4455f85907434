"""Generation sessions: runtime state of the one in-flight request.

A session owns the request's cancellation token, its budget-wait state and
the accumulated output. `run_session` is the single "suspendable generation"
combinator every target kind goes through: it wires the budget hooks into
the generator parameters, feeds streamed deltas through a LineBuffer to the
handler, and turns cancellation into a quiet `None` result.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from story_engine.budget import BudgetState, BudgetWait, Clock, Sleep
from story_engine.llm import CancellationToken, GenerationCancelled, Generator
from story_engine.models import GenerationRequest
from story_engine.streaming import LineBuffer

if TYPE_CHECKING:
    from story_engine.handlers import GenerationHandler, Prompt

logger = logging.getLogger(__name__)


@dataclass
class GenerationSession:
    """Runtime state for one active GenerationRequest."""

    request: GenerationRequest
    token: CancellationToken = field(default_factory=CancellationToken)
    auto_continue: bool = False
    clock: Clock = time.monotonic
    sleep: Sleep = asyncio.sleep
    tick_seconds: float = 1.0
    on_change: Callable[[GenerationSession], None] | None = field(default=None, repr=False)
    output: str = ""
    error: str | None = None
    processing: bool = False
    _budget_wait: BudgetWait | None = field(default=None, repr=False)

    # ------------------------------------------------------------------
    # Budget state
    # ------------------------------------------------------------------

    @property
    def budget_state(self) -> BudgetState:
        if self._budget_wait is None:
            return "normal"
        return self._budget_wait.state

    @property
    def budget_wait_ms(self) -> int | None:
        return self._budget_wait.wait_ms if self._budget_wait else None

    @property
    def budget_time_remaining_ms(self) -> int | None:
        return self._budget_wait.time_remaining_ms if self._budget_wait else None

    def on_budget_wait(self, available: int, needed: int, wait_ms: int) -> Awaitable[None]:
        """Collaborator hook: park until the budget wait completes."""
        if not self.processing:
            logger.warning(
                "budget wait for request %s while not processing; ignoring", self.request.id
            )
            done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            done.set_result(None)
            return done
        if self._budget_wait is not None and not self._budget_wait.done:
            logger.warning("budget wait already pending for request %s", self.request.id)
            return self._budget_wait

        logger.info(
            "request %s waiting for budget: available=%d needed=%d wait_ms=%d",
            self.request.id, available, needed, wait_ms,
        )
        wait = BudgetWait(
            wait_ms,
            clock=self.clock,
            sleep=self.sleep,
            tick_seconds=self.tick_seconds,
            on_change=self._notify,
        )
        self._budget_wait = wait
        self._notify()
        if self.auto_continue:
            wait.resolve()
        return wait

    def on_budget_resume(self) -> None:
        """Collaborator hook: streaming resumed after a budget wait."""
        if self._budget_wait is None:
            logger.debug("budget resume without a wait for request %s", self.request.id)
            return
        self._budget_wait = None
        self._notify()

    def continue_budget(self) -> bool:
        """User confirmation: start the countdown of a parked wait."""
        wait = self._budget_wait
        if wait is None or wait.state != "waiting_for_user":
            logger.warning("no budget wait to continue for request %s", self.request.id)
            return False
        return wait.resolve()

    def _reject_budget_wait(self) -> None:
        if self._budget_wait is not None and not self._budget_wait.done:
            self._budget_wait.reject()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    def _teardown(self) -> None:
        self._reject_budget_wait()
        self._budget_wait = None
        self.processing = False
        self._notify()


async def run_session(
    session: GenerationSession,
    generator: Generator,
    prompt: Prompt,
    handler: GenerationHandler,
) -> str | None:
    """Stream one generation through *session*.

    Returns the accumulated output (assistant prefill included), or None if
    the session was cancelled. Collaborator failures propagate.
    """
    params = dataclasses.replace(
        prompt.params,
        on_budget_wait=session.on_budget_wait,
        on_budget_resume=session.on_budget_resume,
    )
    buffer = LineBuffer(handler.on_line)
    session.output = prompt.prefill
    if prompt.prefill:
        buffer.feed(prompt.prefill)

    streamed = False

    def _on_delta(text: str) -> None:
        nonlocal streamed
        if session.token.cancelled:
            return
        streamed = True
        session.output += text
        buffer.feed(text)
        handler.on_delta(session.output)
        session._notify()

    session.processing = True
    unsubscribe = session.token.on_cancel(session._reject_budget_wait)
    try:
        text = await session.token.guard(
            generator(prompt.messages, params, _on_delta, prompt.priority, session.token)
        )
    except GenerationCancelled:
        logger.info("request %s cancelled", session.request.id)
        return None
    finally:
        unsubscribe()
        session._teardown()

    if session.token.cancelled:
        return None
    if text and not streamed:
        # Non-streaming generators only return the full text.
        _on_delta(text)
    buffer.flush()
    return session.output
