"""Tests for story_engine.llm: HttpGenerator, EchoGenerator, budgets, tokens."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from story_engine.llm import (
    CancellationToken,
    EchoGenerator,
    GenerationCancelled,
    GenerationParams,
    HttpGenerator,
    LLMError,
    TokenBudget,
)

MESSAGES = [{"role": "user", "content": "Describe the harbor."}]


# ── SSE helpers ──────────────────────────────────────────


def _sse(*pieces: str) -> bytes:
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": p}}]})
        for p in pieces
    ]
    lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode()


class Backend:
    """MockTransport handler that replays responses and records requests."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def body(self) -> dict:
        return json.loads(self.requests[-1].content)


def _generator(backend: Backend, **kwargs) -> HttpGenerator:
    return HttpGenerator(
        provider_url="http://localhost:5001/",
        transport=httpx.MockTransport(backend),
        **kwargs,
    )


async def _call(gen, params: GenerationParams | None = None, token: CancellationToken | None = None):
    deltas: list[str] = []
    text = await gen(MESSAGES, params or GenerationParams(), deltas.append, "background", token or CancellationToken())
    return text, deltas


# ---------------------------------------------------------------------------
# HttpGenerator
# ---------------------------------------------------------------------------

class TestHttpGenerator:
    async def test_streams_deltas_and_returns_full_text(self) -> None:
        backend = Backend(httpx.Response(200, content=_sse("The harbor ", "is dark.")))
        text, deltas = await _call(_generator(backend))
        assert text == "The harbor is dark."
        assert deltas == ["The harbor ", "is dark."]

    async def test_posts_streaming_chat_completion(self) -> None:
        backend = Backend(httpx.Response(200, content=_sse("ok")))
        params = GenerationParams(max_tokens=300, temperature=0.7, min_p=0.05, stop_sequences=["</think>"])
        await _call(_generator(backend, model="mistral"), params)
        request = backend.requests[0]
        assert str(request.url) == "http://localhost:5001/v1/chat/completions"
        body = backend.body
        assert body["stream"] is True
        assert body["messages"] == MESSAGES
        assert body["model"] == "mistral"
        assert body["max_tokens"] == 300
        assert body["temperature"] == 0.7
        assert body["min_p"] == 0.05
        assert body["stop"] == ["</think>"]
        assert "top_k" not in body

    async def test_bearer_token_sent_when_api_key_set(self) -> None:
        backend = Backend(httpx.Response(200, content=_sse("ok")))
        await _call(_generator(backend, api_key="secret"))
        assert backend.requests[0].headers["Authorization"] == "Bearer secret"

    async def test_no_auth_header_without_api_key(self) -> None:
        backend = Backend(httpx.Response(200, content=_sse("ok")))
        await _call(_generator(backend))
        assert "Authorization" not in backend.requests[0].headers

    async def test_text_completion_chunks_accepted(self) -> None:
        content = b'data: {"choices": [{"text": "plain"}]}\n\ndata: [DONE]\n\n'
        backend = Backend(httpx.Response(200, content=content))
        text, _ = await _call(_generator(backend))
        assert text == "plain"

    async def test_connect_error_raises_llm_error(self) -> None:
        backend = Backend(httpx.ConnectError("refused"))
        with pytest.raises(LLMError, match="Cannot connect"):
            await _call(_generator(backend))

    async def test_timeout_raises_llm_error(self) -> None:
        backend = Backend(httpx.ReadTimeout("slow"))
        with pytest.raises(LLMError, match="timed out"):
            await _call(_generator(backend, timeout=3.0))

    async def test_http_error_raises_llm_error(self) -> None:
        backend = Backend(httpx.Response(503))
        with pytest.raises(LLMError, match="HTTP 503"):
            await _call(_generator(backend))

    async def test_malformed_chunk_raises_llm_error(self) -> None:
        backend = Backend(httpx.Response(200, content=b"data: {not json\n\n"))
        with pytest.raises(LLMError, match="Malformed"):
            await _call(_generator(backend))

    async def test_cancelled_token_stops_before_request(self) -> None:
        backend = Backend(httpx.Response(200, content=_sse("ok")))
        token = CancellationToken()
        token.cancel()
        with pytest.raises(GenerationCancelled):
            await _call(_generator(backend), token=token)
        assert backend.requests == []


class TestRateLimiting:
    async def test_retries_after_429(self) -> None:
        backend = Backend(
            httpx.Response(429, headers={"Retry-After": "0"}),
            httpx.Response(200, content=_sse("ok")),
        )
        text, _ = await _call(_generator(backend))
        assert text == "ok"
        assert len(backend.requests) == 2

    async def test_429_goes_through_budget_hooks(self) -> None:
        backend = Backend(
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, content=_sse("ok")),
        )
        on_wait = AsyncMock()
        on_resume = MagicMock()
        params = GenerationParams(max_tokens=64, on_budget_wait=on_wait, on_budget_resume=on_resume)
        await _call(_generator(backend), params)
        on_wait.assert_awaited_once_with(0, 64, 2000)
        on_resume.assert_called_once()

    async def test_gives_up_after_max_retries(self) -> None:
        backend = Backend(httpx.Response(429, headers={"Retry-After": "0"}))
        with pytest.raises(LLMError, match="rate limiting"):
            await _call(_generator(backend, max_rate_limit_retries=2))
        assert len(backend.requests) == 3


class TestTokenBudget:
    def test_refills_up_to_capacity(self) -> None:
        now = [0.0]
        budget = TokenBudget(1000, 100.0, clock=lambda: now[0])
        budget.consume(900)
        assert budget.available() == 100
        now[0] = 2.0
        assert budget.available() == 300
        now[0] = 60.0
        assert budget.available() == 1000

    def test_time_until(self) -> None:
        now = [0.0]
        budget = TokenBudget(1000, 100.0, clock=lambda: now[0])
        assert budget.time_until(500) == 0
        budget.consume(1000)
        assert budget.time_until(500) == 5001

    def test_no_refill_rate_never_waits(self) -> None:
        budget = TokenBudget(10, 0.0)
        budget.consume(10)
        assert budget.time_until(5) == 0

    async def test_short_budget_waits_through_hook(self) -> None:
        now = [0.0]
        budget = TokenBudget(1000, 100.0, clock=lambda: now[0])
        budget.consume(900)
        calls: list[tuple[int, int, int]] = []

        async def on_wait(available: int, needed: int, wait_ms: int) -> None:
            calls.append((available, needed, wait_ms))
            now[0] += wait_ms / 1000

        backend = Backend(httpx.Response(200, content=_sse("x" * 40)))
        params = GenerationParams(max_tokens=500, on_budget_wait=on_wait)
        await _call(_generator(backend, budget=budget), params)
        assert calls == [(100, 500, 4001)]
        # 40 characters at roughly four per token.
        assert budget.available() == 490

    async def test_enough_budget_does_not_wait(self) -> None:
        on_wait = AsyncMock()
        backend = Backend(httpx.Response(200, content=_sse("ok")))
        params = GenerationParams(max_tokens=100, on_budget_wait=on_wait)
        await _call(_generator(backend, budget=TokenBudget(1000, 1.0)), params)
        on_wait.assert_not_awaited()


# ---------------------------------------------------------------------------
# EchoGenerator
# ---------------------------------------------------------------------------

class TestEchoGenerator:
    async def test_streams_last_message_back(self) -> None:
        text, deltas = await _call(EchoGenerator(chunk_size=5))
        assert text == "Describe the harbor."
        assert "".join(deltas) == text
        assert deltas[0] == "Descr"

    async def test_respects_cancellation(self) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(GenerationCancelled):
            await _call(EchoGenerator(), token=token)


# ---------------------------------------------------------------------------
# CancellationToken
# ---------------------------------------------------------------------------

class TestCancellationToken:
    async def test_guard_returns_result(self) -> None:
        async def work() -> str:
            return "done"

        assert await CancellationToken().guard(work()) == "done"

    async def test_guard_abandons_work_on_cancel(self) -> None:
        token = CancellationToken()
        started = asyncio.Event()
        finished = False

        async def forever() -> None:
            nonlocal finished
            started.set()
            await asyncio.Event().wait()
            finished = True

        guarded = asyncio.ensure_future(token.guard(forever()))
        await started.wait()
        token.cancel()
        with pytest.raises(GenerationCancelled):
            await guarded
        assert not finished

    def test_callbacks_run_once_and_can_unsubscribe(self) -> None:
        token = CancellationToken()
        hits: list[str] = []
        token.on_cancel(lambda: hits.append("a"))
        remove = token.on_cancel(lambda: hits.append("b"))
        remove()
        token.cancel()
        token.cancel()
        assert hits == ["a"]

    def test_callback_after_cancel_runs_immediately(self) -> None:
        token = CancellationToken()
        token.cancel()
        hits: list[str] = []
        token.on_cancel(lambda: hits.append("late"))
        assert hits == ["late"]


class TestGenerationParams:
    def test_sampling_omits_unset_options(self) -> None:
        assert GenerationParams(max_tokens=10, temperature=0.5).sampling() == {
            "max_tokens": 10,
            "temperature": 0.5,
        }
