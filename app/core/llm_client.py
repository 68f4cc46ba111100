"""Resilient async OpenAI client.

Wraps chat, structured (schema-validated) and tool-calling completions with:
- retry with exponential backoff + jitter on 429 / 5xx / timeouts
- a circuit breaker that fails fast after repeated failures
- idempotency-key deduplication over a short window
- usage telemetry (callback + optional persisted usage rows)

Breaker and idempotency state belong to the client instance. Separate
processes (or separate instances) do not share it; `get_shared_client`
hands out one long-lived instance per settings object.

Usage:
    client = LLMClient(settings)
    result = await client.chat([{"role": "user", "content": "hi"}])
    plan = await client.chat_structured(PlannerOutput, messages, schema_name="PlannerOutput")
"""

from __future__ import annotations

import asyncio
import inspect
import json
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar
from uuid import uuid4

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)
from pydantic import BaseModel

from app.core.config import Settings, get_settings
from app.core.exceptions import (
    CapabilityError,
    CircuitOpenError,
    DuplicateRequestError,
    LLMError,
    StructuredOutputError,
)
from app.core.llm import FIX_SCHEMA_PROMPT, as_json_schema, parse_structured
from app.core.llm_models import get_model_config
from app.core.llm_usage import get_cost_cents
from app.core.logging import get_logger
from app.core.rate_limiter import SharedInstances
from app.core.usage_meter import UsageMeter, build_usage_from_client_event

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

Message = dict[str, Any]
ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]

IDEMPOTENCY_TTL_SECONDS = 300
BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 32_000
BACKOFF_JITTER_MS = 1000
DEFAULT_MAX_TOOL_CALLS = 3
MAX_TOOL_CALLS_TEXT = "Max tool calls reached"


# ============================================================================
# Result types
# ============================================================================


@dataclass
class Telemetry:
    """Who a call is billed to; enables persisted usage rows."""

    tenant_id: str
    user_id: str
    assistant: str | None = None
    request_id: str | None = None
    meta: dict[str, Any] | None = None


@dataclass
class UsageEvent:
    model: str
    tokens_in: int
    tokens_out: int
    cost_cents: float
    latency_ms: int
    tool_invocations: dict[str, int] = field(default_factory=dict)


UsageCallback = Callable[[UsageEvent], Any]


@dataclass
class ChatResult:
    text: str
    model: str
    tokens_in: int
    tokens_out: int
    cost_cents: float
    latency_ms: int
    cached_input_tokens: int = 0
    raw: Any = None


@dataclass
class StructuredResult(Generic[T]):
    data: T
    model: str
    tokens_in: int
    tokens_out: int
    cost_cents: float
    latency_ms: int
    raw: Any = None


@dataclass
class ToolCallRecord:
    name: str
    arguments: dict[str, Any]
    result: Any


@dataclass
class ToolChatResult:
    text: str
    model: str
    tokens_in: int
    tokens_out: int
    cost_cents: float
    latency_ms: int
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    tool_invocations: dict[str, int] = field(default_factory=dict)
    raw: Any = None


# ============================================================================
# Resilience primitives
# ============================================================================


class CircuitBreaker:
    """Failure counter that opens after `threshold` and half-opens after `reset_ms`."""

    def __init__(self, threshold: int, reset_ms: int, clock: Callable[[], float] = time.monotonic):
        self.threshold = threshold
        self.reset_ms = reset_ms
        self._clock = clock
        self.failure_count = 0
        self.last_failure_time = 0.0
        self.is_open = False

    def check(self) -> None:
        """Raise CircuitOpenError while open and cooling down; otherwise reset."""
        if not self.is_open:
            return
        elapsed_ms = (self._clock() - self.last_failure_time) * 1000
        if elapsed_ms < self.reset_ms:
            raise CircuitOpenError()
        self.is_open = False
        self.failure_count = 0
        logger.info("Circuit breaker reset")

    def record_success(self) -> None:
        if self.failure_count > 0:
            self.failure_count -= 1

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.failure_count >= self.threshold and not self.is_open:
            self.is_open = True
            logger.error(
                f"Circuit breaker opened after {self.failure_count} failures",
                extra={"failure_count": self.failure_count},
            )


class IdempotencyCache:
    """Recently used idempotency keys with lazy TTL eviction."""

    def __init__(
        self,
        ttl_seconds: float = IDEMPOTENCY_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._keys: dict[str, float] = {}

    def _evict(self) -> None:
        now = self._clock()
        expired = [k for k, expires in self._keys.items() if expires <= now]
        for key in expired:
            del self._keys[key]

    def seen(self, key: str) -> bool:
        self._evict()
        return key in self._keys

    def add(self, key: str) -> None:
        self._keys[key] = self._clock() + self.ttl_seconds

    def __len__(self) -> int:
        self._evict()
        return len(self._keys)


def is_retryable_error(error: BaseException) -> bool:
    """429, 5xx and connection timeouts/resets are retryable."""
    if isinstance(error, (RateLimitError, InternalServerError, APITimeoutError, APIConnectionError)):
        return True
    if isinstance(error, APIStatusError):
        return error.status_code == 429 or 500 <= error.status_code < 600
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(error, (TimeoutError, ConnectionResetError)):
        return True
    return False


def get_retry_delay_ms(attempt: int) -> float:
    """Exponential backoff capped at 32s, plus up to 1s of jitter."""
    delay = min(BACKOFF_BASE_MS * (2**attempt), BACKOFF_CAP_MS)
    return delay + random.random() * BACKOFF_JITTER_MS


def _usage_counts(completion: Any) -> tuple[int, int, int]:
    """(prompt_tokens, completion_tokens, cached_prompt_tokens) from a completion."""
    usage = getattr(completion, "usage", None)
    if usage is None:
        return 0, 0, 0
    tokens_in = getattr(usage, "prompt_tokens", 0) or 0
    tokens_out = getattr(usage, "completion_tokens", 0) or 0
    details = getattr(usage, "prompt_tokens_details", None)
    cached = (getattr(details, "cached_tokens", 0) or 0) if details is not None else 0
    return tokens_in, tokens_out, cached


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


# ============================================================================
# Client
# ============================================================================


class LLMClient:
    """OpenAI chat client with retry, circuit breaker and idempotency."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: AsyncOpenAI | None = None,
        usage_meter: UsageMeter | None = None,
        on_usage: UsageCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self._client = client or AsyncOpenAI(
            api_key=self.settings.OPENAI_API_KEY,
            timeout=self.settings.LLM_TIMEOUT_MS / 1000,
            max_retries=0,
        )
        self.usage_meter = usage_meter
        self.on_usage = on_usage
        self.max_retries = max(1, self.settings.LLM_MAX_RETRIES)
        self.breaker = CircuitBreaker(
            threshold=self.settings.CIRCUIT_BREAKER_THRESHOLD,
            reset_ms=self.settings.CIRCUIT_BREAKER_RESET_MS,
            clock=clock,
        )
        self.idempotency = IdempotencyCache(clock=clock)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _preflight(self, idempotency_key: str | None) -> None:
        self.breaker.check()
        if idempotency_key and self.idempotency.seen(idempotency_key):
            raise DuplicateRequestError(idempotency_key)

    def _max_tokens(self, model: str, requested: int | None) -> int:
        config = get_model_config(model)
        return min(requested or self.settings.MAX_TOKENS_EXECUTOR, config.max_output_tokens)

    def _params(
        self,
        model: str,
        messages: list[Message],
        max_tokens: int,
        temperature: float | None,
        idempotency_key: str | None = None,
        cache_tag: str | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": (
                temperature if temperature is not None
                else get_model_config(model).default_temperature
            ),
        }
        if idempotency_key:
            params["extra_headers"] = {"Idempotency-Key": idempotency_key}
        if cache_tag and self.settings.ENABLE_PROMPT_CACHING:
            params["extra_body"] = {"prompt_cache_key": cache_tag}
        params.update(extra)
        return params

    async def _create_with_retries(self, params: dict[str, Any]) -> Any:
        """Call chat.completions.create, retrying retryable errors with backoff."""
        for attempt in range(self.max_retries):
            try:
                return await self._client.chat.completions.create(**params)
            except Exception as e:
                if is_retryable_error(e) and attempt < self.max_retries - 1:
                    delay_ms = get_retry_delay_ms(attempt)
                    logger.warning(
                        f"Retry attempt {attempt + 1}/{self.max_retries} after "
                        f"{delay_ms:.0f}ms: {type(e).__name__}: {e}"
                    )
                    await self._sleep(delay_ms / 1000)
                    continue
                raise
        raise LLMError("Chat completion failed")

    async def _on_success(
        self,
        model: str,
        tokens_in: int,
        tokens_out: int,
        cached_input_tokens: int,
        cost_cents: float,
        latency_ms: int,
        telemetry: Telemetry | None,
        idempotency_key: str | None = None,
        tool_invocations: dict[str, int] | None = None,
    ) -> None:
        self.breaker.record_success()
        if idempotency_key:
            self.idempotency.add(idempotency_key)

        if self.on_usage:
            event = UsageEvent(
                model=model,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                cost_cents=cost_cents,
                latency_ms=latency_ms,
                tool_invocations=dict(tool_invocations or {}),
            )
            try:
                outcome = self.on_usage(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                # The completion is already paid for; a broken sink must not lose it
                logger.error(f"on_usage callback failed: {e}", extra={"model": model})

        if telemetry and self.usage_meter:
            metrics = build_usage_from_client_event(
                model=model,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                latency_ms=latency_ms,
                cached_input_tokens=cached_input_tokens,
                tool_invocations=tool_invocations,
            )
            try:
                await self.usage_meter.emit_usage(
                    tenant_id=telemetry.tenant_id,
                    user_id=telemetry.user_id,
                    assistant=telemetry.assistant,
                    metrics=metrics,
                    request_id=telemetry.request_id or str(uuid4()),
                    meta=telemetry.meta,
                )
            except Exception as e:
                # Usage persistence never fails a completed call
                logger.error(f"Failed to emit usage: {e}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def chat(
        self,
        messages: list[Message],
        model: str | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
        idempotency_key: str | None = None,
        cache_tag: str | None = None,
        telemetry: Telemetry | None = None,
    ) -> ChatResult:
        """
        Plain chat completion.

        Raises:
            CircuitOpenError: Breaker open and still cooling down
            DuplicateRequestError: Idempotency key reused within 5 minutes
            openai.APIError: Upstream failure after retries
        """
        model = model or self.settings.MODEL_MINI
        max_tokens = self._max_tokens(model, max_output_tokens)
        self._preflight(idempotency_key)

        start = time.monotonic()
        params = self._params(model, list(messages), max_tokens, temperature, idempotency_key, cache_tag)
        try:
            completion = await self._create_with_retries(params)
        except Exception:
            self.breaker.record_failure()
            raise

        latency_ms = int((time.monotonic() - start) * 1000)
        text = completion.choices[0].message.content or "" if completion.choices else ""
        tokens_in, tokens_out, cached = _usage_counts(completion)
        cost_cents = get_cost_cents(model, tokens_in, tokens_out, cached)

        await self._on_success(
            model, tokens_in, tokens_out, cached, cost_cents, latency_ms, telemetry, idempotency_key
        )

        return ChatResult(
            text=text,
            model=model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_cents=cost_cents,
            latency_ms=latency_ms,
            cached_input_tokens=cached,
            raw=completion,
        )

    async def chat_structured(
        self,
        schema: type[T],
        messages: list[Message],
        schema_name: str | None = None,
        description: str | None = None,
        model: str | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
        idempotency_key: str | None = None,
        cache_tag: str | None = None,
        telemetry: Telemetry | None = None,
    ) -> StructuredResult[T]:
        """
        Schema-constrained chat completion validated against `schema`.

        On a first-attempt schema violation the model's output and a corrective
        instruction are appended and the call is retried once.

        Raises:
            CapabilityError: Model lacks structured output support
            StructuredOutputError: Output still invalid after the corrective retry
        """
        model = model or self.settings.MODEL_MINI
        config = get_model_config(model)
        if not config.capabilities.supports_structured_output:
            raise CapabilityError(f"Model {model} does not support structured outputs")

        max_tokens = self._max_tokens(model, max_output_tokens)
        self._preflight(idempotency_key)

        name = schema_name or schema.__name__
        response_format = as_json_schema(schema, name, description)
        conversation = list(messages)
        tokens_in = tokens_out = cached = 0
        start = time.monotonic()
        data: T | None = None
        completion: Any = None

        try:
            for schema_attempt in range(2):
                params = self._params(
                    model,
                    conversation,
                    max_tokens,
                    temperature,
                    idempotency_key,
                    cache_tag,
                    response_format=response_format,
                )
                completion = await self._create_with_retries(params)
                call_in, call_out, call_cached = _usage_counts(completion)
                tokens_in += call_in
                tokens_out += call_out
                cached += call_cached

                raw_text = (
                    completion.choices[0].message.content or "{}" if completion.choices else "{}"
                )
                try:
                    data = parse_structured(raw_text, schema)
                    break
                except StructuredOutputError as e:
                    if schema_attempt > 0:
                        raise
                    logger.warning(f"Schema violation for {name}, retrying once: {e}")
                    conversation = [
                        *conversation,
                        {"role": "assistant", "content": raw_text},
                        {
                            "role": "user",
                            "content": FIX_SCHEMA_PROMPT.format(schema_name=name, error=str(e)),
                        },
                    ]
        except Exception:
            self.breaker.record_failure()
            raise

        latency_ms = int((time.monotonic() - start) * 1000)
        cost_cents = get_cost_cents(model, tokens_in, tokens_out, cached)
        await self._on_success(
            model, tokens_in, tokens_out, cached, cost_cents, latency_ms, telemetry, idempotency_key
        )

        return StructuredResult(
            data=data,
            model=model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_cents=cost_cents,
            latency_ms=latency_ms,
            raw=completion,
        )

    async def chat_with_tools(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        handlers: dict[str, ToolHandler] | None = None,
        model: str | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
        max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS,
        telemetry: Telemetry | None = None,
    ) -> ToolChatResult:
        """
        Tool-calling loop bounded by `max_tool_calls` model turns.

        Each turn calls the model; requested tools are dispatched to their
        handlers and the results appended as tool messages. A missing handler
        is logged and answered with an error result; a handler exception is
        answered with {"error": "Tool execution failed"}. When the cap is hit,
        the best-effort partial text is returned.
        """
        model = model or self.settings.MODEL_MINI
        config = get_model_config(model)
        if not config.capabilities.supports_tools:
            raise CapabilityError(f"Model {model} does not support tools")

        max_tokens = self._max_tokens(model, max_output_tokens)
        handlers = handlers or {}
        self._preflight(None)

        conversation: list[Message] = list(messages)
        tool_calls: list[ToolCallRecord] = []
        tool_invocations: dict[str, int] = {}
        tokens_in = tokens_out = cached = 0
        partial_text = ""
        completion: Any = None
        start = time.monotonic()

        try:
            for _iteration in range(max_tool_calls):
                extra = {"tools": tools} if tools else {}
                params = self._params(model, conversation, max_tokens, temperature, **extra)
                completion = await self._create_with_retries(params)
                call_in, call_out, call_cached = _usage_counts(completion)
                tokens_in += call_in
                tokens_out += call_out
                cached += call_cached

                if not completion.choices:
                    raise LLMError("No completion choice returned")
                message = completion.choices[0].message
                requested = list(message.tool_calls or [])
                partial_text = message.content or partial_text

                assistant_message: Message = {"role": "assistant", "content": message.content}
                if requested:
                    assistant_message["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.function.name,
                                "arguments": call.function.arguments,
                            },
                        }
                        for call in requested
                    ]
                conversation = [*conversation, assistant_message]

                if not requested:
                    break

                tool_messages = []
                for call in requested:
                    tool_messages.append(
                        await self._run_tool(call, handlers, tool_calls, tool_invocations)
                    )
                conversation = [*conversation, *tool_messages]
            else:
                logger.warning(f"Max tool calls ({max_tool_calls}) reached")
                partial_text = partial_text or MAX_TOOL_CALLS_TEXT
        except Exception:
            self.breaker.record_failure()
            raise

        latency_ms = int((time.monotonic() - start) * 1000)
        cost_cents = get_cost_cents(model, tokens_in, tokens_out, cached)
        await self._on_success(
            model,
            tokens_in,
            tokens_out,
            cached,
            cost_cents,
            latency_ms,
            telemetry,
            tool_invocations=tool_invocations,
        )

        return ToolChatResult(
            text=partial_text,
            model=model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_cents=cost_cents,
            latency_ms=latency_ms,
            tool_calls=tool_calls,
            tool_invocations=tool_invocations,
            raw=completion,
        )

    async def _run_tool(
        self,
        call: Any,
        handlers: dict[str, ToolHandler],
        tool_calls: list[ToolCallRecord],
        tool_invocations: dict[str, int],
    ) -> Message:
        name = call.function.name
        handler = handlers.get(name)
        if handler is None:
            logger.warning(f"No handler for tool: {name}")
            return {
                "role": "tool",
                "tool_call_id": call.id,
                "content": json.dumps({"error": f"Unknown tool: {name}"}),
            }

        try:
            args = json.loads(call.function.arguments or "{}")
            result = _jsonable(await handler(args))
        except Exception as e:
            logger.error(f"Tool execution failed: {name}: {e}")
            return {
                "role": "tool",
                "tool_call_id": call.id,
                "content": json.dumps({"error": "Tool execution failed"}),
            }

        tool_invocations[name] = tool_invocations.get(name, 0) + 1
        tool_calls.append(ToolCallRecord(name=name, arguments=args, result=result))
        return {
            "role": "tool",
            "tool_call_id": call.id,
            "content": json.dumps(result, default=str),
        }


# ============================================================================
# Process-wide default
# ============================================================================

_shared_clients: SharedInstances[LLMClient] = SharedInstances()


def get_shared_client(settings: Settings | None = None) -> LLMClient:
    """
    The long-lived client for a settings object.

    Callers that do not inject a client share this one, so breaker and
    idempotency state carry across requests.
    """
    settings = settings or get_settings()
    return _shared_clients.get_or_create(settings, lambda: LLMClient(settings))
