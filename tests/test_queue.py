"""Tests for story_engine.queue.GenerationQueue."""

import asyncio

from story_engine.handlers import GenerationHandler, Prompt
from story_engine.llm import LLMError
from story_engine.models import BrainstormTarget, FieldTarget, ListTarget
from story_engine.queue import GenerationQueue


# ── helpers ──────────────────────────────────────────────


class TargetHandler(GenerationHandler):
    def __init__(self, target, log: list) -> None:
        self.target = target
        self.log = log

    async def build(self) -> Prompt:
        return Prompt(messages=[{"role": "user", "content": self.target.kind}])

    async def on_complete(self, text: str) -> None:
        self.log.append(("complete", self.target.kind, text))

    def on_abort(self, reason: str) -> None:
        self.log.append(("abort", self.target.kind, reason))


class EchoKind:
    """Replies with the prompt's content; optionally held on a gate."""

    def __init__(self) -> None:
        self.order: list[str] = []
        self.gate: asyncio.Event | None = None
        self.fail_on: str | None = None

    async def __call__(self, messages, params, on_delta, priority, token) -> str:
        kind = messages[-1]["content"]
        self.order.append(kind)
        if self.gate is not None:
            await self.gate.wait()
        if kind == self.fail_on:
            raise LLMError("backend down")
        on_delta(kind)
        return kind


class BudgetOnce:
    async def __call__(self, messages, params, on_delta, priority, token) -> str:
        await params.on_budget_wait(0, 50, 1000)
        params.on_budget_resume()
        return "ok"


def _queue(generator, log: list, **kwargs) -> GenerationQueue:
    return GenerationQueue(generator, lambda t: TargetHandler(t, log), **kwargs)


async def _until(predicate, steps: int = 200) -> None:
    for _ in range(steps):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

class TestScheduling:
    async def test_runs_request_to_completion(self) -> None:
        log: list = []
        queue = _queue(EchoKind(), log)
        request = queue.submit(BrainstormTarget())
        assert request.status == "queued"
        await queue.wait_idle()
        assert request.status == "completed"
        assert log == [("complete", "brainstorm", "brainstorm")]
        assert queue.history[-1] is request

    async def test_highest_priority_first_then_oldest(self) -> None:
        gen = EchoKind()
        queue = _queue(gen, [])
        queue.submit(FieldTarget(field_id="canon"))
        queue.submit(ListTarget(field_id="locations"))
        queue.submit(BrainstormTarget(), priority=1)
        await queue.wait_idle()
        assert gen.order == ["brainstorm", "field", "list"]

    async def test_one_request_processing_at_a_time(self) -> None:
        gen = EchoKind()
        gen.gate = asyncio.Event()
        queue = _queue(gen, [])
        first = queue.submit(BrainstormTarget())
        second = queue.submit(FieldTarget(field_id="canon"))
        await _until(lambda: gen.order)
        assert first.status == "processing"
        assert second.status == "queued"
        assert queue.active is not None and queue.active.request is first
        gen.gate.set()
        await queue.wait_idle()
        assert second.status == "completed"
        assert queue.active is None

    async def test_has_pending_sees_active_and_queued(self) -> None:
        gen = EchoKind()
        gen.gate = asyncio.Event()
        queue = _queue(gen, [])
        queue.submit(BrainstormTarget())
        queue.submit(FieldTarget(field_id="canon"))
        await _until(lambda: gen.order)
        assert queue.has_pending(lambda t: t.kind == "brainstorm")
        assert queue.has_pending(lambda t: t.kind == "field")
        assert not queue.has_pending(lambda t: t.kind == "list")
        gen.gate.set()
        await queue.wait_idle()
        assert not queue.has_pending(lambda t: True)


# ---------------------------------------------------------------------------
# Cancellation and failure
# ---------------------------------------------------------------------------

class TestCancellation:
    async def test_cancel_queued_request_never_runs(self) -> None:
        gen = EchoKind()
        gen.gate = asyncio.Event()
        queue = _queue(gen, [])
        queue.submit(BrainstormTarget())
        queued = queue.submit(FieldTarget(field_id="canon"))
        assert queue.cancel(queued.id)
        gen.gate.set()
        await queue.wait_idle()
        assert queued.status == "cancelled"
        assert gen.order == ["brainstorm"]

    async def test_cancel_active_request_aborts_handler(self) -> None:
        log: list = []
        gen = EchoKind()
        gen.gate = asyncio.Event()
        queue = _queue(gen, log)
        request = queue.submit(BrainstormTarget())
        await _until(lambda: gen.order)
        assert queue.cancel(request.id)
        await queue.wait_idle()
        assert request.status == "cancelled"
        assert log == [("abort", "brainstorm", "cancelled")]
        assert not queue.notifications

    async def test_cancel_unknown_request(self) -> None:
        queue = _queue(EchoKind(), [])
        assert not queue.cancel("nope")

    async def test_cancel_where_matches_active_and_queued(self) -> None:
        gen = EchoKind()
        gen.gate = asyncio.Event()
        queue = _queue(gen, [])
        a = queue.submit(BrainstormTarget())
        b = queue.submit(BrainstormTarget())
        c = queue.submit(FieldTarget(field_id="canon"))
        await _until(lambda: gen.order)
        assert queue.cancel_where(lambda t: t.kind == "brainstorm") == 2
        gen.gate.set()
        await queue.wait_idle()
        assert (a.status, b.status, c.status) == ("cancelled", "cancelled", "completed")

    async def test_failure_reported_once_and_queue_moves_on(self) -> None:
        log: list = []
        gen = EchoKind()
        gen.fail_on = "brainstorm"
        queue = _queue(gen, log)
        failed = queue.submit(BrainstormTarget())
        after = queue.submit(FieldTarget(field_id="canon"))
        await queue.wait_idle()
        assert failed.status == "completed"
        assert failed.error == "backend down"
        assert [n.request_id for n in queue.notifications] == [failed.id]
        assert queue.notifications[0].message == "backend down"
        assert after.status == "completed"
        assert ("abort", "brainstorm", "backend down") in log

    async def test_handler_build_error_is_reported(self) -> None:
        class Broken(TargetHandler):
            async def build(self) -> Prompt:
                raise ValueError("no such goal")

        queue = GenerationQueue(EchoKind(), lambda t: Broken(t, []))
        request = queue.submit(BrainstormTarget())
        await queue.wait_idle()
        assert request.error == "no such goal"
        assert len(queue.notifications) == 1


# ---------------------------------------------------------------------------
# Budget waits through the queue
# ---------------------------------------------------------------------------

class TestQueueBudget:
    async def test_snapshot_and_continue(self) -> None:
        queue = _queue(BudgetOnce(), [], tick_seconds=0.001)
        request = queue.submit(BrainstormTarget())
        await _until(lambda: queue.active is not None and queue.active.budget_state == "waiting_for_user")
        snap = queue.snapshot()
        assert snap["active"]["request"]["id"] == request.id
        assert snap["active"]["budget_state"] == "waiting_for_user"
        assert snap["active"]["budget_wait_ms"] == 1000

        assert not queue.continue_budget("other-id")
        # Shrink the wait so the real countdown is quick.
        queue.active._budget_wait.wait_ms = 1
        assert queue.continue_budget(request.id)
        await asyncio.wait_for(queue.wait_idle(), timeout=2)
        assert request.status == "completed"

    async def test_auto_continue_needs_no_user(self) -> None:
        clock = [0.0]

        async def fast_sleep(seconds: float) -> None:
            clock[0] += seconds
            await asyncio.sleep(0)

        queue = _queue(BudgetOnce(), [], auto_continue=True, clock=lambda: clock[0], sleep=fast_sleep)
        request = queue.submit(BrainstormTarget())
        await asyncio.wait_for(queue.wait_idle(), timeout=2)
        assert request.status == "completed"

    async def test_cancel_while_waiting_for_budget(self) -> None:
        queue = _queue(BudgetOnce(), [])
        request = queue.submit(BrainstormTarget())
        await _until(lambda: queue.active is not None and queue.active.budget_state == "waiting_for_user")
        assert queue.cancel(request.id)
        await asyncio.wait_for(queue.wait_idle(), timeout=2)
        assert request.status == "cancelled"
