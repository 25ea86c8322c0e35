"""
Adaptive timeout control.

Per-model, per-phase timeouts with bounded exponential backoff, plus
cancellable phase timers scheduled on the running asyncio loop. Timeout
history is kept for reporting only; it never changes the live policy.
"""

import asyncio
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Deque, Dict, Optional

from ..log import get_logger

logger = get_logger(__name__)

HISTORY_SIZE = 10
RECENT_WINDOW = 5

# Recommended-config heuristic
STREAMING_TIMEOUT_THRESHOLD = 5
STREAMING_TIMEOUT_BOOST = 1.5


class Phase(Enum):
    """Phases of a completion call, in the order they occur."""
    INITIAL = "initial"
    STREAMING = "streaming"
    CONTINUATION = "continuation"


@dataclass(frozen=True)
class TimeoutPolicy:
    """Timeouts (seconds) and retry behaviour for one model.

    The streaming value bounds the gap between chunks, not the total
    duration of the call.
    """
    initial: float
    streaming: float
    continuation: float
    max_retries: int
    backoff_multiplier: float
    max_backoff_factor: float = 4.0

    def __post_init__(self):
        """Validate policy values."""
        for name in ("initial", "streaming", "continuation"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} timeout must be > 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_multiplier <= 1:
            raise ValueError("backoff_multiplier must be > 1")
        if self.max_backoff_factor <= 1:
            raise ValueError("max_backoff_factor must be > 1")

    def for_phase(self, phase: Phase) -> float:
        return getattr(self, phase.value)


DEFAULT_POLICY_MODEL = "deepseek-chat"

DEFAULT_TIMEOUT_POLICIES: Dict[str, TimeoutPolicy] = {
    "deepseek-chat": TimeoutPolicy(
        initial=45.0, streaming=180.0, continuation=120.0,
        max_retries=3, backoff_multiplier=1.5
    ),
    "deepseek-coder": TimeoutPolicy(
        initial=60.0, streaming=300.0, continuation=180.0,
        max_retries=3, backoff_multiplier=1.5
    ),
    "deepseek-reasoner": TimeoutPolicy(
        initial=90.0, streaming=600.0, continuation=300.0,
        max_retries=2, backoff_multiplier=2.0
    ),
}


@dataclass
class TimeoutContext:
    """Where a call stands when a timer is armed or fires."""
    model: str
    phase: Phase = Phase.INITIAL
    last_chunk_time: float = field(default_factory=time.monotonic)
    retry_count: int = 0
    segment_index: int = 0
    total_segments: int = 0


@dataclass(frozen=True)
class TimeoutAnalysis:
    """Decision taken after a phase timed out."""
    should_retry: bool
    next_timeout: float
    error_message: str
    user_friendly_message: str
    suggestion: str


@dataclass(frozen=True)
class TimeoutStats:
    total_timeouts: int
    recent_timeouts: int
    average_retry_count: float
    most_common_phase: Optional[Phase]


@dataclass
class TimeoutHistory:
    """Timeout history for one model."""
    total_timeouts: int = 0
    recent: Deque[TimeoutContext] = field(default_factory=lambda: deque(maxlen=HISTORY_SIZE))
    phase_counts: Counter = field(default_factory=Counter)

    def add(self, ctx: TimeoutContext) -> None:
        # Snapshot, the caller keeps mutating its context
        self.recent.append(replace(ctx))
        self.phase_counts[ctx.phase] += 1
        self.total_timeouts += 1


class _PhaseTimer:
    """A single cancellable timer bound to one call id."""

    def __init__(self, controller: "AdaptiveTimeoutController", call_id: str):
        self.controller = controller
        self.call_id = call_id
        self.handle: Optional[asyncio.TimerHandle] = None
        self.done = False

    def fire(self, ctx: TimeoutContext, on_timeout: Callable[[TimeoutContext], None]) -> None:
        if self.done:
            return
        self.done = True
        self.controller._forget(self)
        logger.debug(f"Timer {self.call_id} fired in phase {ctx.phase.value}")
        on_timeout(ctx)

    def cancel(self) -> None:
        if self.done:
            return
        self.done = True
        if self.handle is not None:
            self.handle.cancel()
        self.controller._forget(self)


class AdaptiveTimeoutController:
    """Hands out phase timeouts and arms progressive timers.

    Timers are owned by the event loop thread: create and cancel them
    from coroutines running on that loop. History is guarded by a
    per-model lock and may be read from any thread.
    """

    def __init__(self, policies: Optional[Dict[str, TimeoutPolicy]] = None):
        """Initialize the controller.

        Args:
            policies: Per-model policies layered over DEFAULT_TIMEOUT_POLICIES
        """
        self._policies: Dict[str, TimeoutPolicy] = dict(DEFAULT_TIMEOUT_POLICIES)
        if policies:
            self._policies.update(policies)
        self._histories: Dict[str, TimeoutHistory] = {}
        self._history_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._timers: Dict[str, _PhaseTimer] = {}

    def get_policy(self, model: str) -> TimeoutPolicy:
        """Policy for a model; unknown models get the deepseek-chat policy."""
        policy = self._policies.get(model)
        if policy is None:
            policy = self._policies.get(DEFAULT_POLICY_MODEL, DEFAULT_TIMEOUT_POLICIES[DEFAULT_POLICY_MODEL])
        return policy

    def get_timeout(self, model: str, phase: Phase) -> float:
        """Timeout in seconds for a model and phase."""
        return self.get_policy(model).for_phase(phase)

    def _lock_for(self, model: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._history_locks.get(model)
            if lock is None:
                lock = self._history_locks[model] = threading.Lock()
                self._histories[model] = TimeoutHistory()
            return lock

    def analyze_timeout(self, ctx: TimeoutContext) -> TimeoutAnalysis:
        """Decide whether a timed-out phase should be retried.

        next_timeout grows as base * multiplier ** (retry_count + 1), so the
        first retry always waits longer than the base, and is capped at
        base * max_backoff_factor.

        Args:
            ctx: Context of the call that timed out

        Returns:
            TimeoutAnalysis with the retry decision and messages
        """
        policy = self.get_policy(ctx.model)
        base = policy.for_phase(ctx.phase)
        should_retry = ctx.retry_count < policy.max_retries
        next_timeout = min(
            base * policy.backoff_multiplier ** (ctx.retry_count + 1),
            base * policy.max_backoff_factor
        )

        with self._lock_for(ctx.model):
            self._histories[ctx.model].add(ctx)

        error_message, friendly = _phase_messages(ctx, base)
        if should_retry:
            suggestion = (
                f"Retrying automatically with a {next_timeout:g}s timeout "
                f"(attempt {ctx.retry_count + 1} of {policy.max_retries})"
            )
        elif ctx.phase is Phase.INITIAL:
            suggestion = "Try again later, or shorten the prompt"
        elif ctx.phase is Phase.STREAMING:
            suggestion = "Check your network connection, or request a shorter answer"
        else:
            suggestion = "Use the partial answer, or ask for the rest in a new message"

        return TimeoutAnalysis(
            should_retry=should_retry,
            next_timeout=next_timeout,
            error_message=error_message,
            user_friendly_message=friendly,
            suggestion=suggestion
        )

    def create_progressive_timeout(
        self,
        call_id: str,
        ctx: TimeoutContext,
        on_timeout: Callable[[TimeoutContext], None],
        timeout: Optional[float] = None
    ) -> Callable[[], None]:
        """Arm a timer for the current phase of a call.

        The callback fires at most once. The returned cancel function is
        idempotent; once it has returned the callback never runs. Arming a
        timer for a call id that already has one cancels the old timer.

        Must be called from a coroutine running on the event loop.

        Args:
            call_id: Identifier of the call being timed
            ctx: Context handed to on_timeout
            on_timeout: Callback invoked on the loop when the timer fires
            timeout: Explicit duration; defaults to the phase timeout

        Returns:
            Cancel function
        """
        loop = asyncio.get_running_loop()
        duration = timeout if timeout is not None else self.get_timeout(ctx.model, ctx.phase)

        previous = self._timers.get(call_id)
        if previous is not None:
            previous.cancel()

        timer = _PhaseTimer(self, call_id)
        timer.handle = loop.call_later(duration, timer.fire, ctx, on_timeout)
        self._timers[call_id] = timer
        return timer.cancel

    def _forget(self, timer: _PhaseTimer) -> None:
        if self._timers.get(timer.call_id) is timer:
            del self._timers[timer.call_id]

    def active_timers(self) -> int:
        """Number of timers armed and not yet fired or cancelled."""
        return len(self._timers)

    def get_timeout_stats(self, model: str) -> TimeoutStats:
        """Summarize recorded timeouts for a model."""
        with self._lock_for(model):
            history = self._histories[model]
            recent = list(history.recent)
            most_common = history.phase_counts.most_common(1)
            total = history.total_timeouts

        average_retry = sum(c.retry_count for c in recent) / len(recent) if recent else 0.0
        return TimeoutStats(
            total_timeouts=total,
            recent_timeouts=len(recent[-RECENT_WINDOW:]),
            average_retry_count=average_retry,
            most_common_phase=most_common[0][0] if most_common else None
        )

    def get_recommended_config(self, model: str) -> TimeoutPolicy:
        """Policy suggested by the timeout history. Reporting only."""
        policy = self.get_policy(model)
        stats = self.get_timeout_stats(model)
        if (stats.total_timeouts > STREAMING_TIMEOUT_THRESHOLD
                and stats.most_common_phase is Phase.STREAMING):
            return replace(policy, streaming=policy.streaming * STREAMING_TIMEOUT_BOOST)
        return policy

    def cleanup(self) -> None:
        """Cancel all outstanding timers and clear history."""
        for timer in list(self._timers.values()):
            timer.cancel()
        self._timers.clear()
        with self._registry_lock:
            self._histories.clear()
            self._history_locks.clear()


def _phase_messages(ctx: TimeoutContext, base: float):
    if ctx.phase is Phase.INITIAL:
        return (
            f"{ctx.model}: no response within {base:g}s of sending the request",
            "The model is taking longer than usual to start answering"
        )
    if ctx.phase is Phase.STREAMING:
        return (
            f"{ctx.model}: stream stalled, no chunk for {base:g}s",
            "The answer stopped arriving partway through"
        )
    segment = ""
    if ctx.total_segments:
        segment = f" (segment {ctx.segment_index + 1}/{ctx.total_segments})"
    return (
        f"{ctx.model}: continuation{segment} timed out after {base:g}s",
        "Continuing the long answer is taking too long"
    )
