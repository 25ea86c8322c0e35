"""
Governed completion client.

Wraps the OpenAI-compatible chat completions endpoint with token
budgeting, spend ceilings, phase timeouts, retries and continuation of
truncated answers. Usage is recorded exactly once per request, whatever
the outcome.
"""

import asyncio
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Union

import httpx
import openai
from openai import AsyncOpenAI

from ..config.loader import GovernorConfig, RetryPolicy
from ..core.capabilities import (
    DEFAULT_MODEL,
    ModelCapabilities,
    ModelCapabilityRegistry,
    get_capabilities,
)
from ..core.errors import (
    BudgetExceededError,
    CompletionError,
    CompletionTimeoutError,
    ErrorType,
    GovernorError,
    InvalidArgumentError,
)
from ..core.guardrails import ContinuationMode, CostGuardian, PreflightResult
from ..core.planner import (
    BudgetPlan,
    OVERLAP_CHARS,
    build_continuation_messages,
    plan,
    overlap_settled,
    reserve_for,
    trim_overlap,
    truncate_messages,
    validate_messages,
)
from ..core.pricing import CostEstimate, calculate_cost
from ..core.timeouts import AdaptiveTimeoutController, Phase, TimeoutContext
from ..core.token_counter import TokenUsage, estimate_message_tokens, estimate_tokens
from ..log import get_logger

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.deepseek.com/v1"
API_KEY_ENV_VARS = ("DEEPSEEK_API_KEY", "OPENAI_API_KEY")


def classify_error(exc: BaseException) -> ErrorType:
    """Map a transport exception to an ErrorType.

    APITimeoutError subclasses APIConnectionError, so it is checked first.
    """
    if isinstance(exc, (openai.APITimeoutError, httpx.TimeoutException)):
        return ErrorType.TIMEOUT
    if isinstance(exc, (openai.APIConnectionError, httpx.TransportError)):
        return ErrorType.NETWORK
    if isinstance(exc, openai.RateLimitError):
        return ErrorType.RATE_LIMIT
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ErrorType.INVALID_KEY
    if isinstance(exc, openai.APIStatusError):
        return ErrorType.API_ERROR
    return ErrorType.UNKNOWN


@dataclass(frozen=True)
class CompletionRequest:
    """A single governed completion request."""
    messages: List[Dict[str, str]]
    model: str = DEFAULT_MODEL
    user_id: str = "anonymous"
    requested_max_tokens: Optional[int] = None
    stream: bool = False


@dataclass(frozen=True)
class CompletionResult:
    """Final (or partial) outcome of a governed completion."""
    content: str
    reasoning_content: str
    model: str
    request_id: str
    usage: TokenUsage
    cost: CostEstimate
    plan: BudgetPlan
    finish_reason: Optional[str]
    continued: bool
    segments: int
    retries: int
    latency: float
    stopped_reason: Optional[str] = None


@dataclass(frozen=True)
class PerformanceStats:
    total_requests: int
    successful_requests: int
    failed_requests: int
    cancelled_requests: int
    total_latency: float
    average_latency: float
    retries: int
    continuations: int
    errors_by_type: Dict[str, int] = field(default_factory=dict)


class _Stalled(Exception):
    """A phase timer fired before the awaited step finished."""


class _CallCancelled(Exception):
    """The stream handle asked the call to stop."""


class _StatsCollector:
    """Thread-safe performance counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._total = 0
        self._succeeded = 0
        self._failed = 0
        self._cancelled = 0
        self._latency = 0.0
        self._retries = 0
        self._continuations = 0
        self._errors: Dict[str, int] = {}

    def record(
        self,
        outcome: str,
        latency: float,
        retries: int,
        continuations: int,
        error_type: Optional[ErrorType] = None
    ) -> None:
        with self._lock:
            self._total += 1
            if outcome == "success":
                self._succeeded += 1
            elif outcome == "cancelled":
                self._cancelled += 1
            else:
                self._failed += 1
            self._latency += latency
            self._retries += retries
            self._continuations += continuations
            if error_type is not None:
                self._errors[error_type.value] = self._errors.get(error_type.value, 0) + 1

    def snapshot(self) -> PerformanceStats:
        with self._lock:
            return PerformanceStats(
                total_requests=self._total,
                successful_requests=self._succeeded,
                failed_requests=self._failed,
                cancelled_requests=self._cancelled,
                total_latency=self._latency,
                average_latency=self._latency / self._total if self._total else 0.0,
                retries=self._retries,
                continuations=self._continuations,
                errors_by_type=dict(self._errors)
            )


class _GovernedCall:
    """State of one logical request across attempts and segments."""

    def __init__(
        self,
        owner: "ResilientCompletionClient",
        request_id: str,
        user_id: str,
        capabilities: ModelCapabilities,
        messages: List[Dict[str, str]],
        budget_plan: BudgetPlan,
        preflight: PreflightResult,
        requested_max_tokens: Optional[int],
        params: Dict[str, Any]
    ):
        self.owner = owner
        self.request_id = request_id
        self.user_id = user_id
        self.capabilities = capabilities
        self.messages = messages
        self.plan = budget_plan
        self.preflight = preflight
        self.params = params
        self.wanted = requested_max_tokens

        self.ctx = TimeoutContext(
            model=capabilities.model_name,
            total_segments=owner.retry_policy.max_continuations + 1
        )
        self.timeout_override: Optional[float] = None
        self.content: List[str] = []
        self.reasoning: List[str] = []
        self.usage = TokenUsage(0, 0, 0)
        self.finish_reason: Optional[str] = None
        self.stopped_reason: Optional[str] = None
        self.retries = 0
        self.continuations = 0
        self.started = time.monotonic()
        self.result: Optional[CompletionResult] = None
        self.finished = asyncio.Event()

        self._cancel_requested: Optional[asyncio.Future] = None
        self._attempt_messages: Optional[List[Dict[str, str]]] = None
        self._attempt_text: List[str] = []
        self._attempt_reasoning: List[str] = []
        self._attempt_usage: Optional[TokenUsage] = None
        self._overlap_tail: Optional[str] = None
        self._pending = ""

    @property
    def text(self) -> str:
        return "".join(self.content)

    def request_cancel(self) -> None:
        if self._cancel_requested is None:
            self._cancel_requested = asyncio.get_running_loop().create_future()
        if not self._cancel_requested.done():
            self._cancel_requested.set_result(None)

    async def run(self) -> AsyncIterator[str]:
        """Drive the request to completion, yielding content deltas."""
        outcome = "failed"
        error_type: Optional[ErrorType] = None
        deltas = self._run()
        try:
            async for delta in deltas:
                yield delta
            outcome = "success"
        except _CallCancelled:
            self.stopped_reason = "cancelled"
            outcome = "cancelled"
        except (asyncio.CancelledError, GeneratorExit):
            self.stopped_reason = "cancelled"
            outcome = "cancelled"
            raise
        except CompletionError as e:
            error_type = e.error_type
            raise
        finally:
            await deltas.aclose()
            self.finalize(outcome, error_type)

    async def _run(self) -> AsyncIterator[str]:
        policy = self.owner.retry_policy
        timeouts = self.owner.timeouts
        transport_retries = 0
        request_messages = self.messages
        max_tokens = self.plan.max_tokens

        while True:
            segment = self._stream_once(request_messages, max_tokens)
            try:
                async for delta in segment:
                    yield delta
            except _Stalled:
                analysis = timeouts.analyze_timeout(self.ctx)
                if not analysis.should_retry:
                    logger.warning(f"{self.request_id}: {analysis.error_message}, giving up")
                    raise CompletionTimeoutError(analysis.error_message, analysis)
                logger.warning(
                    f"{self.request_id}: {analysis.error_message}, "
                    f"retrying with {analysis.next_timeout:.1f}s timeout"
                )
                self.ctx.retry_count += 1
                self.retries += 1
                self.timeout_override = analysis.next_timeout
                request_messages, max_tokens = self._follow_up()
                if max_tokens <= 0:
                    self.stopped_reason = "context_exhausted"
                    return
                continue
            except CompletionError as e:
                if not e.retryable or transport_retries >= policy.max_retries:
                    raise
                delay = policy.delay_for(
                    transport_retries,
                    rate_limited=e.error_type is ErrorType.RATE_LIMIT
                )
                logger.warning(
                    f"{self.request_id}: {e.error_type.value} error ({e.message}), "
                    f"retry {transport_retries + 1}/{policy.max_retries} in {delay:.1f}s"
                )
                transport_retries += 1
                self.retries += 1
                await self._wait(asyncio.sleep(delay), timed=False)
                request_messages, max_tokens = self._follow_up()
                if max_tokens <= 0:
                    self.stopped_reason = "context_exhausted"
                    return
                continue
            finally:
                await segment.aclose()

            if self.finish_reason != "length" or not self.plan.can_continue:
                return

            # Truncated by max_tokens: ask the model to continue.
            budget = self.owner.guardian.continuation_budget(
                self.user_id, policy.max_continuations
            )
            if self.continuations >= budget.max_continuations:
                self.stopped_reason = "max_continuations"
                return
            produced = estimate_tokens(self.text)
            if self.wanted is not None and produced >= self.wanted:
                self.stopped_reason = "output_limit"
                return

            request_messages = build_continuation_messages(
                self.messages,
                self.text,
                segment_index=self.continuations + 1,
                total_segments=self.ctx.total_segments,
                concise=budget.mode is ContinuationMode.SUMMARY
            )
            segment_plan = plan(request_messages, self.capabilities, self._remaining(produced))
            if segment_plan.max_tokens <= 0:
                self.stopped_reason = "context_exhausted"
                return
            max_tokens = budget.scale_tokens(segment_plan.max_tokens)

            preflight = self.owner.guardian.preflight_check(
                self.user_id,
                self.capabilities,
                segment_plan.input_tokens,
                max_tokens
            )
            if not preflight.allowed:
                logger.info(f"{self.request_id}: continuation stopped, {preflight.reason}")
                self.stopped_reason = f"budget_exceeded:{preflight.ceiling.value}"
                return

            self.continuations += 1
            self.ctx.phase = Phase.CONTINUATION
            self.ctx.segment_index = self.continuations
            self.ctx.retry_count = 0
            self.timeout_override = None
            self._overlap_tail = self.text[-OVERLAP_CHARS:]
            logger.info(
                f"{self.request_id}: continuing answer in {budget.mode.value} mode, segment "
                f"{self.continuations + 1}/{self.ctx.total_segments}, max_tokens={max_tokens}"
            )

    def _follow_up(self):
        """Request to send after a failed attempt, resuming from partial output."""
        if not self.content:
            return self.messages, self.plan.max_tokens
        return self._resume_plan()

    def _resume_plan(self):
        produced = estimate_tokens(self.text)
        messages = build_continuation_messages(
            self.messages,
            self.text,
            segment_index=self.continuations,
            total_segments=self.ctx.total_segments
        )
        self._overlap_tail = self.text[-OVERLAP_CHARS:]
        return messages, plan(messages, self.capabilities, self._remaining(produced)).max_tokens

    def _remaining(self, produced: int) -> Optional[int]:
        """Output tokens still wanted, or None when the caller set no limit."""
        if self.wanted is None:
            return None
        return max(self.wanted - produced, 1)

    async def _stream_once(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int
    ) -> AsyncIterator[str]:
        """Send one request and yield content deltas as they arrive."""
        self._attempt_messages = messages
        self.finish_reason = None
        stream = None
        try:
            stream = await self._call(
                self.owner.client.chat.completions.create(
                    model=self.capabilities.model_name,
                    messages=messages,
                    max_tokens=max_tokens,
                    stream=True,
                    stream_options={"include_usage": True},
                    **self.params
                )
            )
            chunks = stream.__aiter__()
            while True:
                chunk = await self._call(_next_chunk(chunks))
                if chunk is None:
                    break

                # A retry's longer timeout only covers the wait for its first chunk
                self.ctx.last_chunk_time = time.monotonic()
                self.timeout_override = None
                if self.ctx.phase is Phase.INITIAL:
                    self.ctx.phase = Phase.STREAMING

                usage = getattr(chunk, "usage", None)
                if usage is not None:
                    self._attempt_usage = _usage_from(usage)

                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    self.finish_reason = choice.finish_reason

                delta = choice.delta
                if delta is None:
                    continue
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    self._attempt_reasoning.append(reasoning)
                    self.reasoning.append(reasoning)
                if delta.content:
                    self._attempt_text.append(delta.content)
                    text = self._dedupe(delta.content)
                    if text:
                        self.content.append(text)
                        yield text

            if self._overlap_tail is not None and self._pending:
                text = trim_overlap(self._overlap_tail, self._pending)
                self._overlap_tail = None
                self._pending = ""
                if text:
                    self.content.append(text)
                    yield text
        finally:
            self._pending = ""
            if stream is not None:
                await _close_stream(stream)
            self._settle_attempt(opened=stream is not None)

    def _dedupe(self, text: str) -> str:
        """Hold back the start of a resumed segment until its overlap is known.

        Returns:
            Text ready to emit, empty while still buffering
        """
        if self._overlap_tail is None:
            return text
        self._pending += text
        if not overlap_settled(self._overlap_tail, self._pending):
            return ""
        text = trim_overlap(self._overlap_tail, self._pending)
        self._overlap_tail = None
        self._pending = ""
        return text

    async def _call(self, awaitable):
        """Await a transport step under the phase timer.

        Raises:
            _Stalled: If the timer fired first or the transport timed out
            _CallCancelled: If cancellation was requested
            CompletionError: For any other transport failure
        """
        try:
            return await self._wait(awaitable, timed=True)
        except (_Stalled, _CallCancelled, GovernorError):
            raise
        except Exception as exc:
            error_type = classify_error(exc)
            if error_type is ErrorType.TIMEOUT:
                raise _Stalled() from exc
            raise CompletionError(
                f"{type(exc).__name__}: {exc}",
                error_type,
                status_code=getattr(exc, "status_code", None)
            ) from exc

    async def _wait(self, awaitable, timed: bool):
        """Race an awaitable against the phase timer and cancellation."""
        loop = asyncio.get_running_loop()
        if self._cancel_requested is None:
            self._cancel_requested = loop.create_future()
        if self._cancel_requested.done():
            _discard(awaitable)
            raise _CallCancelled()

        work = asyncio.ensure_future(awaitable)
        waiters = {work, self._cancel_requested}
        stalled = None
        cancel_timer = None
        if timed:
            stalled = loop.create_future()

            def on_timeout(ctx: TimeoutContext) -> None:
                if not stalled.done():
                    stalled.set_result(ctx)

            cancel_timer = self.owner.timeouts.create_progressive_timeout(
                self.request_id,
                self.ctx,
                on_timeout,
                timeout=self.timeout_override
            )
            waiters.add(stalled)

        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_timer is not None:
                cancel_timer()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)

        if work.done() and not work.cancelled():
            return work.result()
        if self._cancel_requested.done():
            raise _CallCancelled()
        raise _Stalled()

    def _settle_attempt(self, opened: bool) -> None:
        """Fold the current attempt's usage into the request total."""
        if self._attempt_messages is None:
            return
        if self._attempt_usage is not None:
            usage = self._attempt_usage
        elif opened or self._attempt_text:
            # No usage chunk: the request reached the server, so estimate.
            usage = TokenUsage(
                prompt_tokens=estimate_message_tokens(self._attempt_messages),
                completion_tokens=estimate_tokens("".join(self._attempt_text)),
                reasoning_tokens=estimate_tokens("".join(self._attempt_reasoning))
            )
        else:
            usage = TokenUsage(0, 0, 0)
        self.usage = self.usage + usage
        self._attempt_messages = None
        self._attempt_text = []
        self._attempt_reasoning = []
        self._attempt_usage = None

    def finalize(self, outcome: str, error_type: Optional[ErrorType] = None) -> None:
        """Record usage and statistics. Runs once per request."""
        if self.result is not None:
            return
        self._settle_attempt(opened=False)
        latency = time.monotonic() - self.started
        cost = calculate_cost(self.capabilities, self.usage)

        self.result = CompletionResult(
            content=self.text,
            reasoning_content="".join(self.reasoning),
            model=self.capabilities.model_name,
            request_id=self.request_id,
            usage=self.usage,
            cost=cost,
            plan=self.plan,
            finish_reason=self.finish_reason,
            continued=self.continuations > 0,
            segments=self.continuations + 1,
            retries=self.retries,
            latency=latency,
            stopped_reason=self.stopped_reason
        )

        try:
            self.owner.guardian.record_usage(
                self.request_id,
                self.user_id,
                cost,
                success=outcome == "success"
            )
        finally:
            self.owner._stats.record(
                outcome,
                latency,
                self.retries,
                self.continuations,
                error_type
            )
            self.finished.set()
        logger.debug(
            f"{self.request_id}: {outcome} in {latency:.2f}s, "
            f"{self.usage.total_tokens} tokens, ${cost.total_cost:.6f}"
        )


class StreamHandle:
    """Async iterator over the content deltas of a governed completion.

    Iterate it to receive text, `await collect()` to drain it, or
    `await cancel()` to stop the request early. `result` is set once the
    request has finished, however it finished.
    """

    def __init__(self, call: _GovernedCall):
        self._call = call
        self._deltas = call.run()

    @property
    def request_id(self) -> str:
        return self._call.request_id

    @property
    def plan(self) -> BudgetPlan:
        return self._call.plan

    @property
    def preflight(self) -> PreflightResult:
        return self._call.preflight

    @property
    def result(self) -> Optional[CompletionResult]:
        return self._call.result

    def __aiter__(self) -> "StreamHandle":
        return self

    async def __anext__(self) -> str:
        return await self._deltas.__anext__()

    async def collect(self) -> CompletionResult:
        """Drain the stream and return the final result."""
        async for _ in self:
            pass
        return self._call.result

    async def cancel(self) -> None:
        """Stop the request, closing the network stream and timers.

        Usage consumed so far is recorded. Calling cancel on a finished
        handle does nothing.
        """
        if self._call.result is not None:
            return
        self._call.request_cancel()
        if self._deltas.ag_running:
            # Another task is mid-iteration; it will observe the request.
            await self._call.finished.wait()
            return
        await self._deltas.aclose()
        self._call.stopped_reason = self._call.stopped_reason or "cancelled"
        self._call.finalize("cancelled")


class ResilientCompletionClient:
    """Governed chat completions over an OpenAI-compatible API.

    Plans the token budget, enforces spend ceilings before any network
    call, drives the stream under phase timeouts, retries transient
    failures and continues answers cut off by the output cap.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        *,
        registry: Optional[ModelCapabilityRegistry] = None,
        guardian: Optional[CostGuardian] = None,
        timeouts: Optional[AdaptiveTimeoutController] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[AsyncOpenAI] = None
    ):
        """Initialize the client.

        Args:
            api_key: API key (defaults to DEEPSEEK_API_KEY, then OPENAI_API_KEY)
            base_url: API base URL
            registry: Capability registry (defaults to the process-wide one)
            guardian: Spend guardian (defaults to CostGuardian())
            timeouts: Timeout controller (defaults to AdaptiveTimeoutController())
            retry_policy: Retry behaviour (defaults to RetryPolicy())
            client: Pre-built AsyncOpenAI-compatible client

        Raises:
            InvalidArgumentError: If no client is given and no API key is found
        """
        self.registry = registry
        self.guardian = guardian or CostGuardian()
        self.timeouts = timeouts or AdaptiveTimeoutController()
        self.retry_policy = retry_policy or RetryPolicy()
        self._stats = _StatsCollector()

        if client is None:
            api_key = api_key or _api_key_from_env()
            if not api_key:
                raise InvalidArgumentError(
                    f"API key is required; set one of {', '.join(API_KEY_ENV_VARS)}"
                )
            # Retries and timeouts are owned by this class, not the SDK.
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url.rstrip("/"),
                max_retries=0,
                timeout=None,
            )
        self.client = client

        max_retries = self.retry_policy.max_retries
        logger.info(
            f"Initialized {self.__class__.__name__} "
            f"with {base_url=}, {max_retries=}"
        )

    @classmethod
    def from_config(
        cls,
        config: GovernorConfig,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        client: Optional[AsyncOpenAI] = None
    ) -> "ResilientCompletionClient":
        """Build a client from a GovernorConfig."""
        return cls(
            api_key=api_key,
            base_url=base_url,
            registry=ModelCapabilityRegistry(config.models.values()),
            guardian=CostGuardian(config.budget, max_records=config.max_records),
            timeouts=AdaptiveTimeoutController(config.timeouts),
            retry_policy=config.retry,
            client=client
        )

    async def chat(
        self,
        messages: Sequence[Mapping[str, str]],
        model: str = DEFAULT_MODEL,
        *,
        user_id: str = "anonymous",
        max_tokens: Optional[int] = None,
        stream: bool = False,
        temperature: Optional[float] = None,
        request_id: Optional[str] = None,
        **kwargs: Any
    ) -> Union[CompletionResult, StreamHandle]:
        """Create a governed chat completion.

        Args:
            messages: Ordered conversation of {role, content} mappings
            model: Model identifier; unknown models use fallback capabilities
            user_id: Caller identity for spend ceilings
            max_tokens: Requested output cap; longer answers are continued
            stream: Return a StreamHandle instead of waiting for the result
            temperature: Sampling temperature (optional)
            request_id: Identifier for logs and usage records
            **kwargs: Additional completion parameters

        Returns:
            CompletionResult, or StreamHandle when stream=True

        Raises:
            InvalidArgumentError: If messages are malformed or cannot fit the context
            BudgetExceededError: If a spend ceiling would be exceeded
            CompletionTimeoutError: If a phase stalls with no retries left
            CompletionError: If the endpoint fails after retry handling
        """
        validate_messages(messages)
        capabilities = get_capabilities(model, self.registry)
        outbound = [dict(m) for m in messages]

        budget_plan = plan(outbound, capabilities, max_tokens)
        if budget_plan.needs_truncation:
            target = capabilities.context_window - reserve_for(capabilities)
            outbound = truncate_messages(outbound, target)
            budget_plan = plan(outbound, capabilities, max_tokens)
            if budget_plan.needs_truncation:
                raise InvalidArgumentError(
                    f"Conversation needs {budget_plan.input_tokens} tokens and cannot fit "
                    f"the {capabilities.context_window}-token context of {model}",
                    user_message="The message is too long for this model"
                )
            logger.info(
                f"Dropped older turns to fit {model} context: "
                f"{len(messages)} -> {len(outbound)} messages"
            )

        preflight = self.guardian.preflight_check(
            user_id,
            capabilities,
            budget_plan.input_tokens,
            budget_plan.max_tokens
        )
        if not preflight.allowed:
            raise BudgetExceededError(preflight.reason, preflight.ceiling, preflight)

        params = dict(kwargs)
        if temperature is not None:
            params["temperature"] = temperature

        call = _GovernedCall(
            owner=self,
            request_id=request_id or f"req-{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            capabilities=capabilities,
            messages=outbound,
            budget_plan=budget_plan,
            preflight=preflight,
            requested_max_tokens=max_tokens,
            params=params
        )
        handle = StreamHandle(call)
        if stream:
            return handle
        return await handle.collect()

    async def complete(self, request: CompletionRequest) -> Union[CompletionResult, StreamHandle]:
        """Run a CompletionRequest. See chat()."""
        return await self.chat(
            request.messages,
            request.model,
            user_id=request.user_id,
            max_tokens=request.requested_max_tokens,
            stream=request.stream
        )

    def get_performance_stats(self) -> PerformanceStats:
        """Counters across all requests made by this client."""
        return self._stats.snapshot()


def _api_key_from_env() -> Optional[str]:
    for name in API_KEY_ENV_VARS:
        value = os.getenv(name)
        if value:
            return value
    return None


def _usage_from(raw: Any) -> TokenUsage:
    # completion_tokens includes reasoning tokens; bill them separately.
    details = getattr(raw, "completion_tokens_details", None)
    reasoning = getattr(details, "reasoning_tokens", None) or 0
    completion = getattr(raw, "completion_tokens", 0) or 0
    return TokenUsage(
        prompt_tokens=getattr(raw, "prompt_tokens", 0) or 0,
        completion_tokens=max(completion - reasoning, 0),
        reasoning_tokens=reasoning
    )


async def _next_chunk(chunks: AsyncIterator[Any]) -> Any:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


async def _close_stream(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        await close()
    except Exception as e:
        logger.debug(f"Error closing stream: {e}")


def _discard(awaitable: Any) -> None:
    # Avoid "coroutine was never awaited" for work we will not start.
    if asyncio.iscoroutine(awaitable):
        awaitable.close()
