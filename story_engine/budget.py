"""Budget waits: the suspend point a generation parks on while the
output-token allowance refills.

Lifecycle of one wait:

    waiting_for_user   → created by the collaborator's on_budget_wait hook;
                         parked until the user (or an auto-continue policy)
                         resolves it.
    waiting_for_timer  → resolved; a countdown runs against an absolute
                         deadline, polling every `tick_seconds`.
    done               → the deadline has passed and the awaiting
                         collaborator resumes streaming.

Rejecting at any point before completion wakes the collaborator with
GenerationCancelled and stops the countdown. Resolving or rejecting twice
is a logged no-op.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable, Generator
from typing import Any, Literal

from story_engine.llm import GenerationCancelled

logger = logging.getLogger(__name__)

BudgetState = Literal["normal", "waiting_for_user", "waiting_for_timer"]

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


class BudgetWait:
    """One budget suspension. Await the instance to block until it completes.

    Args:
        wait_ms:      How long the collaborator says the allowance needs.
        clock:        Seconds-valued wall clock; time remaining is always
                      recomputed from the deadline, never from tick counts.
        sleep:        Coroutine used between countdown polls.
        tick_seconds: Poll interval while counting down.
        on_change:    Called on every state or countdown update.
    """

    def __init__(
        self,
        wait_ms: int,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        tick_seconds: float = 1.0,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.wait_ms = max(0, int(wait_ms))
        self.state: BudgetState = "waiting_for_user"
        self.time_remaining_ms = self.wait_ms
        self.deadline: float | None = None
        self._clock = clock
        self._sleep = sleep
        self._tick = tick_seconds
        self._on_change = on_change
        self._timer: asyncio.Task[None] | None = None
        self._future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        # The awaiting collaborator normally retrieves a rejection; mark it
        # retrieved so an abandoned wait does not log a stray traceback.
        self._future.add_done_callback(lambda f: f.cancelled() or f.exception())

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self) -> bool:
        """Leave waiting_for_user and start the countdown."""
        if self._future.done() or self._timer is not None:
            logger.warning("budget wait already resolved or finished; ignoring resolve")
            return False
        self.state = "waiting_for_timer"
        self.deadline = self._clock() + self.wait_ms / 1000
        logger.info("budget wait resolved; counting down %d ms", self.wait_ms)
        self._notify()
        self._timer = asyncio.get_running_loop().create_task(self._countdown())
        return True

    def reject(self, reason: str = "Generation cancelled during budget wait") -> bool:
        """Wake the awaiting collaborator with GenerationCancelled."""
        if self._future.done():
            logger.warning("budget wait already finished; ignoring reject")
            return False
        if self._timer is not None:
            self._timer.cancel()
        self._future.set_exception(GenerationCancelled(reason))
        logger.info("budget wait rejected: %s", reason)
        return True

    async def _countdown(self) -> None:
        assert self.deadline is not None
        while True:
            now = self._clock()
            if now >= self.deadline:
                self.time_remaining_ms = 0
                self._notify()
                if not self._future.done():
                    self._future.set_result(None)
                return
            self.time_remaining_ms = max(1, math.ceil((self.deadline - now) * 1000))
            self._notify()
            await self._sleep(min(self._tick, self.deadline - now))

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def __await__(self) -> Generator[Any, None, None]:
        return self._future.__await__()
