"""Model gateway: bounded, cached and retried completion calls.

Architecture
------------
Every prompt issued by Risk Radar (risk enrichment, translation, benchmark)
goes through a :class:`ModelGateway`:

- **Limiter**: a :class:`RequestLimiter` bounds in-flight backend requests
  with one semaphore and optionally spaces requests by a requests-per-minute
  ceiling.  Sibling gateways (other backends) share the same limiter.
- **Cache**: completions are cached by a sha256 over the system prompt,
  prompt and normalised options.  A hit never reaches the backend.
- **Retry**: each attempt produces a tagged :class:`CallOutcome`
  (``ok`` / ``transient`` / ``fatal``).  Transient failures back off
  exponentially with jitter; fatal ones stop immediately.  Only the public
  :meth:`ModelGateway.complete` raises, with :class:`ModelError`.
- **Metrics**: a :class:`GatewayState` owned by the gateway tracks calls,
  failures, cache hits, latency and token usage.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

import httpx

log = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are an AI risk analyzer for supply chain disruptions. Return ONLY JSON output."
)

_PREVIEW_CHARS = 120
_TRANSIENT_MARKERS = ("quota exceeded", "rate limit", "too many requests", "overloaded")


class ModelError(Exception):
    """Inference backend unavailable, or retries exhausted."""
    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


@dataclass
class Completion:
    text: str
    usage: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# LLM Client (transport)
# ---------------------------------------------------------------------------


class LLMClient:
    """Async chat-completion client supporting Anthropic and OpenAI-compatible endpoints."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "openai_compatible")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        # Retries are owned by ModelGateway, so the SDKs must not retry on their own.
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY"),
                timeout=self._timeout,
                max_retries=0,
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "llama-4-scout-17b-16e-instruct"
            kwargs: dict[str, Any] = {"timeout": self._timeout, "max_retries": 0}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if not key:
                # The SDK refuses to build without a key; calls then fail as fatal 401s.
                log.warning("No API key configured for %s; model calls will fail", self.provider)
            kwargs["api_key"] = key or "unset"
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(
        self,
        system: str,
        user: str,
        *,
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 512,
    ) -> Completion:
        """Send one system+user exchange and return the raw text with token usage."""
        model = model or self.model
        if self.provider == "anthropic":
            response = await self._client.messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            text = response.content[0].text if response.content else ""
            usage = getattr(response, "usage", None)
            prompt_tokens = getattr(usage, "input_tokens", 0) or 0
            completion_tokens = getattr(usage, "output_tokens", 0) or 0
            return Completion(text=text, usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            })

        response = await self._client.chat.completions.create(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        text = response.choices[0].message.content if response.choices else ""
        usage = getattr(response, "usage", None)
        return Completion(text=text or "", usage={
            "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
            "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
            "total_tokens": getattr(usage, "total_tokens", 0) or 0,
        })


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallOutcome:
    """Result of one backend attempt."""
    kind: Literal["ok", "transient", "fatal"]
    completion: Completion | None = None
    detail: str = ""
    cause: BaseException | None = None


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    return status if isinstance(status, int) else None


def classify_exception(exc: BaseException) -> CallOutcome:
    """Map a backend exception to a transient or fatal outcome."""
    detail = str(exc) or exc.__class__.__name__
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TransportError)):
        return CallOutcome("transient", detail=f"timeout or transport error: {detail}", cause=exc)
    status = _status_code(exc)
    if status == 429 or (status is not None and status >= 500):
        return CallOutcome("transient", detail=f"HTTP {status}: {detail}", cause=exc)
    if any(marker in detail.lower() for marker in _TRANSIENT_MARKERS):
        return CallOutcome("transient", detail=detail, cause=exc)
    if status is not None and 400 <= status < 500:
        return CallOutcome("fatal", detail=f"HTTP {status}: {detail}", cause=exc)
    # No status at all: connection-level failure
    return CallOutcome("transient", detail=detail, cause=exc)


def cache_key(system: str, prompt: str, model: str, temperature: float, max_tokens: int) -> str:
    opts = json.dumps(
        {"model": model, "temperature": round(float(temperature), 4), "max_tokens": int(max_tokens)},
        sort_keys=True,
    )
    return hashlib.sha256(f"{system}\x00{prompt}\x00{opts}".encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# State & limiter
# ---------------------------------------------------------------------------


@dataclass
class GatewayState:
    """Running metrics and response cache owned by one gateway."""
    total_calls: int = 0
    failed_calls: int = 0
    cache_hits: int = 0
    in_flight: int = 0
    successful_calls: int = 0
    last_latency_ms: float = 0.0
    avg_latency_ms: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    last_prompt_preview: str = ""
    cache: dict[str, str] = field(default_factory=dict, repr=False)

    def record_success(self, latency_ms: float, usage: dict[str, int]) -> None:
        self.successful_calls += 1
        self.last_latency_ms = latency_ms
        n = self.successful_calls
        self.avg_latency_ms = (self.avg_latency_ms * (n - 1) + latency_ms) / n
        self.prompt_tokens += int(usage.get("prompt_tokens") or 0)
        self.completion_tokens += int(usage.get("completion_tokens") or 0)
        self.total_tokens += int(usage.get("total_tokens") or 0)

    def snapshot(self) -> dict[str, Any]:
        return {
            "total_calls": self.total_calls,
            "failed_calls": self.failed_calls,
            "cache_hits": self.cache_hits,
            "in_flight": self.in_flight,
            "last_latency_ms": round(self.last_latency_ms, 1),
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "tokens_used": {
                "prompt": self.prompt_tokens,
                "completion": self.completion_tokens,
                "total": self.total_tokens,
            },
            "last_prompt_preview": self.last_prompt_preview,
            "cached_responses": len(self.cache),
        }


class RequestLimiter:
    """Bounds in-flight requests and enforces a minimum spacing between them.

    The spacing lock is held while sleeping so that waiting callers queue up
    in order, the same way the enrichment rate limiters do.
    """

    def __init__(self, concurrency: int = 3, requests_per_minute: int = 0):
        self.capacity = max(1, int(concurrency))
        self._semaphore = asyncio.Semaphore(self.capacity)
        self._min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0.0
        self._lock = asyncio.Lock()
        self._last_call: float = 0.0

    @asynccontextmanager
    async def slot(self):
        async with self._semaphore:
            await self._wait_for_spacing()
            yield

    async def _wait_for_spacing(self) -> None:
        if not self._min_interval:
            return
        async with self._lock:
            wait = self._min_interval - (time.monotonic() - self._last_call)
            if wait > 0:
                log.debug("Model rate limiter: waiting %.2fs", wait)
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class ModelGateway:
    """Single entry point for completion requests against one backend."""

    def __init__(
        self,
        client: LLMClient,
        *,
        state: GatewayState | None = None,
        limiter: RequestLimiter | None = None,
        concurrency: int = 3,
        requests_per_minute: int = 0,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_cap: float = 5.0,
        jitter: float = 0.25,
        timeout: float = 60.0,
        temperature: float = 0.2,
        max_tokens: int = 512,
        cache_enabled: bool = True,
    ):
        self._client = client
        self.state = state or GatewayState()
        self.limiter = limiter or RequestLimiter(concurrency, requests_per_minute)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.jitter = jitter
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.cache_enabled = cache_enabled

    @property
    def model(self) -> str:
        return getattr(self._client, "model", "") or ""

    @property
    def provider(self) -> str:
        return getattr(self._client, "provider", "") or ""

    def sibling(self, client: LLMClient) -> ModelGateway:
        """Gateway for another backend sharing this gateway's limiter and retry policy."""
        return ModelGateway(
            client,
            limiter=self.limiter,
            max_attempts=self.max_attempts,
            backoff_base=self.backoff_base,
            backoff_cap=self.backoff_cap,
            jitter=self.jitter,
            timeout=self.timeout,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            cache_enabled=self.cache_enabled,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        delay = min(self.backoff_cap, self.backoff_base * (2 ** (attempt - 1)))
        return delay + (random.uniform(0, self.jitter) if self.jitter > 0 else 0.0)

    def metrics(self) -> dict[str, Any]:
        """Read-only snapshot of the running metrics."""
        return {
            **self.state.snapshot(),
            "model": self.model,
            "concurrency_limit": self.limiter.capacity,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    async def complete(
        self,
        prompt: str,
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        max_attempts: int | None = None,
        system: str | None = None,
        use_cache: bool = True,
    ) -> str:
        """Return the backend's completion text for *prompt*.

        ``use_cache=False`` neither reads nor stores a cached answer, so the
        backend is always reached (used when timing calls).

        Raises:
            ModelError: when a fatal failure occurs or transient failures
                exhaust ``max_attempts``.
        """
        model = model or self.model
        temperature = self.temperature if temperature is None else temperature
        max_tokens = self.max_tokens if max_tokens is None else max_tokens
        system = system or DEFAULT_SYSTEM_PROMPT
        attempts = max(1, int(max_attempts or self.max_attempts))

        cached = self.cache_enabled and use_cache
        key = cache_key(system, prompt, model, temperature, max_tokens)
        if cached and key in self.state.cache:
            self.state.cache_hits += 1
            log.debug("Cache hit for model %s", model)
            return self.state.cache[key]

        self.state.total_calls += 1
        self.state.last_prompt_preview = prompt[:_PREVIEW_CHARS]

        outcome = CallOutcome("transient", detail="not attempted")
        attempt = 0
        for attempt in range(1, attempts + 1):
            outcome = await self._attempt(system, prompt, model, temperature, max_tokens)
            if outcome.kind == "ok" and outcome.completion is not None:
                text = outcome.completion.text
                if cached:
                    self.state.cache[key] = text
                log.info(
                    "Model %s answered in %.0fms (tokens: %s)",
                    model, self.state.last_latency_ms,
                    outcome.completion.usage.get("total_tokens", "?"),
                )
                return text
            log.warning(
                "Model attempt %d/%d failed (%s): %s",
                attempt, attempts, outcome.kind, outcome.detail,
            )
            if outcome.kind == "fatal" or attempt == attempts:
                break
            await asyncio.sleep(self.backoff_delay(attempt))

        self.state.failed_calls += 1
        raise ModelError(
            f"Model call failed after {attempt} attempt(s): {outcome.detail}",
            cause=outcome.cause,
        )

    async def _attempt(
        self, system: str, prompt: str, model: str, temperature: float, max_tokens: int,
    ) -> CallOutcome:
        async with self.limiter.slot():
            self.state.in_flight += 1
            start = time.perf_counter()
            try:
                completion = await asyncio.wait_for(
                    self._client.complete(
                        system, prompt, model=model,
                        temperature=temperature, max_tokens=max_tokens,
                    ),
                    timeout=self.timeout,
                )
            except Exception as exc:
                return classify_exception(exc)
            finally:
                self.state.in_flight -= 1

        text = (completion.text or "").strip()
        if not text:
            return CallOutcome("transient", detail="empty response body")
        self.state.record_success((time.perf_counter() - start) * 1000, completion.usage or {})
        return CallOutcome("ok", completion=Completion(text=text, usage=completion.usage or {}))
