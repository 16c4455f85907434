"""LLM client: streaming connection to a chat-completion backend.

The generation queue injects a Generator callable matching the protocol:

    async def __call__(self, messages, params, on_delta, priority, token) -> str: ...

`messages` is an OpenAI-style chat list. `on_delta` receives each streamed
chunk. `priority` tells the backend whether the request is user-facing.
`token` is a CancellationToken; once it fires the call must stop promptly
and raise GenerationCancelled.

When the output-token allowance is short, an implementation calls
`params.on_budget_wait(available, needed, wait_ms)`, awaits the returned
awaitable (a BudgetWait, which may raise GenerationCancelled), then calls
`params.on_budget_resume()` before streaming.

Two implementations are provided:

    HttpGenerator: real HTTP client for OpenAI-compatible backends
        (POST /v1/chat/completions with stream=true).
    EchoGenerator: streams the last message back. Useful for
        smoke-testing the wiring without a running model.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import httpx

logger = logging.getLogger(__name__)

ChatMessage = dict[str, str]
DeltaCallback = Callable[[str], None]
BudgetWaitHook = Callable[[int, int, int], Awaitable[Any]]
BudgetResumeHook = Callable[[], None]
Priority = Literal["foreground", "background"]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""


class GenerationCancelled(Exception):
    """Raised when a generation is stopped through its cancellation token."""


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancellationToken:
    """Cooperative cancellation shared by a session and its generator call."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self._waiters: list[asyncio.Future[None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(None)
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise GenerationCancelled("Generation cancelled")

    async def guard(self, awaitable: Awaitable[Any]) -> Any:
        """Await *awaitable*, abandoning it as soon as the token fires."""
        self.raise_if_cancelled()
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(awaitable)
        waiter: asyncio.Future[None] = loop.create_future()
        self._waiters.append(waiter)
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._waiters.remove(waiter)
            waiter.cancel()

        if task.done():
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise GenerationCancelled("Generation cancelled")


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

@dataclass
class GenerationParams:
    """Sampling settings plus the budget hooks for one call."""

    max_tokens: int = 1024
    min_tokens: int = 1
    temperature: float = 1.0
    top_p: float | None = None
    top_k: int | None = None
    min_p: float | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    stop_sequences: list[str] | None = None
    on_budget_wait: BudgetWaitHook | None = field(default=None, repr=False)
    on_budget_resume: BudgetResumeHook | None = field(default=None, repr=False)

    def sampling(self) -> dict[str, Any]:
        """Request-body sampling fields, with unset options omitted."""
        body: dict[str, Any] = {
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        optional = {
            "top_p": self.top_p,
            "top_k": self.top_k,
            "min_p": self.min_p,
            "presence_penalty": self.presence_penalty,
            "frequency_penalty": self.frequency_penalty,
            "stop": self.stop_sequences,
        }
        body.update({k: v for k, v in optional.items() if v is not None})
        return body


# ---------------------------------------------------------------------------
# Protocol: every generator implementation must match this signature
# ---------------------------------------------------------------------------

class Generator(Protocol):
    async def __call__(
        self,
        messages: list[ChatMessage],
        params: GenerationParams,
        on_delta: DeltaCallback,
        priority: Priority,
        token: CancellationToken,
    ) -> str: ...


# ---------------------------------------------------------------------------
# TokenBudget: refilling output-token allowance
# ---------------------------------------------------------------------------

class TokenBudget:
    """Output-token allowance that refills linearly up to *capacity*.

    Args:
        capacity:          Maximum tokens that can be banked.
        refill_per_second: Tokens regained per second.
        clock:             Seconds-valued clock, injectable for tests.
    """

    def __init__(
        self,
        capacity: int,
        refill_per_second: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._capacity = capacity
        self._rate = refill_per_second
        self._clock = clock
        self._tokens = float(capacity)
        self._stamp = clock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self._capacity, self._tokens + (now - self._stamp) * self._rate)
        self._stamp = now

    def available(self) -> int:
        self._refill()
        return int(self._tokens)

    def time_until(self, tokens: int) -> int:
        """Milliseconds until *tokens* are available (0 if already there)."""
        self._refill()
        missing = min(tokens, self._capacity) - self._tokens
        if missing <= 0 or self._rate <= 0:
            return 0
        return int(missing / self._rate * 1000) + 1

    def consume(self, tokens: int) -> None:
        self._refill()
        self._tokens = max(0.0, self._tokens - tokens)


# ---------------------------------------------------------------------------
# HttpGenerator: connects to a real backend
# ---------------------------------------------------------------------------

class _RateLimited(Exception):
    def __init__(self, wait_ms: int) -> None:
        super().__init__(f"rate limited for {wait_ms} ms")
        self.wait_ms = wait_ms


class HttpGenerator:
    """Streaming client for OpenAI-compatible chat-completion backends.

    POST {provider_url}/v1/chat/completions with ``stream: true``; the
    response is server-sent events, one ``data: {json}`` line per chunk,
    terminated by ``data: [DONE]``.

    Args:
        provider_url: Base URL of the backend, e.g. "http://localhost:5001".
        api_key:      Bearer token, or empty string if not required.
        model:        Model identifier sent with each request.
        timeout:      HTTP timeout in seconds. Defaults to 120.
        budget:       Optional output-token allowance checked before calls.
        max_rate_limit_retries: HTTP 429 responses tolerated per call.
        transport:    Optional httpx transport (tests use MockTransport).
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        model: str = "",
        timeout: float = 120.0,
        budget: TokenBudget | None = None,
        max_rate_limit_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._budget = budget
        self._max_retries = max_rate_limit_retries
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(
        self, messages: list[ChatMessage], params: GenerationParams, max_tokens: int
    ) -> tuple[str, dict]:
        """Return (url, body) for one streamed chat completion."""
        url = f"{self._base_url}/v1/chat/completions"
        body: dict = {"messages": messages, "stream": True, **params.sampling()}
        body["max_tokens"] = max_tokens
        if self._model:
            body["model"] = self._model
        return url, body

    def _parse_chunk(self, data: str) -> str:
        """Extract the text from one SSE data payload."""
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError as e:
            raise LLMError("Malformed stream chunk from LLM backend") from e
        choices = chunk.get("choices")
        if not choices:
            return ""
        delta = choices[0].get("delta") or {}
        return delta.get("content") or choices[0].get("text") or ""

    async def _wait_for_budget(self, params: GenerationParams, available: int, needed: int, wait_ms: int) -> None:
        logger.info("budget wait available=%d needed=%d wait_ms=%d", available, needed, wait_ms)
        if params.on_budget_wait is not None:
            await params.on_budget_wait(available, needed, wait_ms)
        else:
            await asyncio.sleep(wait_ms / 1000)
        if self._budget is not None:
            remaining = self._budget.time_until(needed)
            if remaining:
                await asyncio.sleep(remaining / 1000)
        if params.on_budget_resume is not None:
            params.on_budget_resume()

    async def _ensure_budget(self, params: GenerationParams) -> int:
        """Block until the allowance covers the request; return max_tokens."""
        if self._budget is None:
            return params.max_tokens
        needed = params.max_tokens
        available = self._budget.available()
        if available < needed:
            await self._wait_for_budget(params, available, needed, self._budget.time_until(needed))
        return needed

    async def _stream(
        self,
        url: str,
        body: dict,
        on_delta: DeltaCallback,
        token: CancellationToken,
    ) -> str:
        parts: list[str] = []
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                async with client.stream("POST", url, json=body, headers=self._headers()) as resp:
                    if resp.status_code == 429:
                        retry_after = resp.headers.get("Retry-After", "1")
                        try:
                            wait_ms = int(float(retry_after) * 1000)
                        except ValueError:
                            wait_ms = 1000
                        raise _RateLimited(wait_ms)
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        token.raise_if_cancelled()
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if data == "[DONE]":
                            break
                        text = self._parse_chunk(data)
                        if text:
                            parts.append(text)
                            on_delta(text)
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        return "".join(parts)

    async def __call__(
        self,
        messages: list[ChatMessage],
        params: GenerationParams,
        on_delta: DeltaCallback,
        priority: Priority,
        token: CancellationToken,
    ) -> str:
        max_tokens = await self._ensure_budget(params)
        url, body = self._build_request(messages, params, max_tokens)
        logger.debug("llm call priority=%s url=%s messages=%d", priority, url, len(messages))

        attempts = 0
        while True:
            token.raise_if_cancelled()
            try:
                text = await self._stream(url, body, on_delta, token)
                break
            except _RateLimited as e:
                attempts += 1
                if attempts > self._max_retries:
                    raise LLMError("LLM backend kept rate limiting the request") from e
                await self._wait_for_budget(params, 0, max_tokens, e.wait_ms)

        if self._budget is not None:
            # Roughly four characters per token.
            self._budget.consume(max(1, len(text) // 4))
        logger.debug("llm response priority=%s len=%d", priority, len(text))
        return text


# ---------------------------------------------------------------------------
# EchoGenerator: streams the last message back; useful for smoke tests
# ---------------------------------------------------------------------------

class EchoGenerator:
    """Streams the last message's content back in small chunks. No network.

    Lets you verify queue, session and handler wiring end-to-end without a
    running model.
    """

    def __init__(self, chunk_size: int = 16) -> None:
        self._chunk_size = chunk_size

    async def __call__(
        self,
        messages: list[ChatMessage],
        params: GenerationParams,
        on_delta: DeltaCallback,
        priority: Priority,
        token: CancellationToken,
    ) -> str:
        text = messages[-1]["content"] if messages else ""
        logger.debug("EchoGenerator priority=%s len=%d", priority, len(text))
        for i in range(0, len(text), self._chunk_size):
            token.raise_if_cancelled()
            on_delta(text[i:i + self._chunk_size])
            await asyncio.sleep(0)
        return text
