"""
Cost guardrails and spend ceilings.

Implements three independent spending limits with strict enforcement.

Enforcement Order:
1. Per-request max cost - Prevents catastrophic single-request costs
2. Per-user rolling 24h spend - Keeps any one user within their allowance
3. Site-wide rolling 1h spend - Caps total burn rate across all users
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .capabilities import ModelCapabilities
from .pricing import CostEstimate, estimate_cost
from ..storage.models import SpendCounter, UsageRecord
from ..storage.repository import DEFAULT_MAX_RECORDS, UsageRepository
from ..log import get_logger

logger = get_logger(__name__)

USER_WINDOW = timedelta(days=1)
SITE_WINDOW = timedelta(hours=1)

# Floor for the output-token recommendation on request-cap violations
MIN_RECOMMENDED_OUTPUT_TOKENS = 512

# Users with an expired window are swept at most this often
PRUNE_INTERVAL = timedelta(minutes=10)

# Remaining budget, in per-request limits, below which continuations shrink
CONSTRAINED_BUDGET_RATIO = 0.5
SUMMARY_BUDGET_RATIO = 0.2
CONSTRAINED_TOKEN_FACTOR = 0.6
CONSTRAINED_CONTINUATION_FACTOR = 0.8
SUMMARY_TOKEN_FACTOR = 0.3
SUMMARY_MAX_CONTINUATIONS = 1


class BudgetCeiling(Enum):
    """Spend ceilings in evaluation order."""
    REQUEST = "request"
    USER_DAILY = "user_daily"
    SITE_HOURLY = "site_hourly"


@dataclass(frozen=True)
class BudgetLimits:
    """Spend ceilings in USD."""
    request_max_usd: float = 0.40
    user_daily_max_usd: float = 2.50
    site_hourly_max_usd: float = 8.00

    def __post_init__(self):
        """Validate limits are positive."""
        if self.request_max_usd <= 0:
            raise ValueError("request_max_usd must be > 0")
        if self.user_daily_max_usd <= 0:
            raise ValueError("user_daily_max_usd must be > 0")
        if self.site_hourly_max_usd <= 0:
            raise ValueError("site_hourly_max_usd must be > 0")


class ContinuationMode(Enum):
    """How a continuation is sized given the budget left."""
    NORMAL = "normal"
    BUDGET_CONSTRAINED = "budget-constrained"
    SUMMARY = "summary"


@dataclass(frozen=True)
class ContinuationBudget:
    """Sizing of follow-up requests for one continuation step."""
    mode: ContinuationMode
    budget_ratio: float
    token_factor: float
    max_continuations: int

    def scale_tokens(self, max_tokens: int) -> int:
        """Shrink a segment's output cap, never below the recommendation floor."""
        if self.token_factor >= 1.0:
            return max_tokens
        scaled = max(int(max_tokens * self.token_factor), MIN_RECOMMENDED_OUTPUT_TOKENS)
        return min(scaled, max_tokens)


@dataclass(frozen=True)
class CostBreakdown:
    """Estimated cost and whether it fits the single-request cap."""
    estimated: CostEstimate
    within_request_limit: bool


@dataclass(frozen=True)
class PreflightResult:
    """Outcome of a budget evaluation performed before a network call."""
    allowed: bool
    cost_breakdown: CostBreakdown
    reason: Optional[str] = None
    ceiling: Optional[BudgetCeiling] = None
    recommended_output_tokens: Optional[int] = None
    suggested_actions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BudgetStatus:
    """Snapshot of spend for a user and the site."""
    user_spent_today_usd: float
    last_reset_time: datetime
    site_spent_this_hour_usd: float


@dataclass(frozen=True)
class UserCost:
    user_id: str
    cost: float
    requests: int


@dataclass(frozen=True)
class CostReport:
    """Aggregate spend over a time range."""
    total_requests: int
    successful_requests: int
    total_cost: float
    average_cost_per_request: float
    top_users: List[UserCost] = field(default_factory=list)


class CostGuardian:
    """Estimates request cost and enforces spend ceilings.

    Counters are mutated under a per-user lock plus one site-wide lock,
    always acquired in that order. Reads take the same locks, so
    concurrent preflight checks never observe spend going backwards
    within a window.
    """

    def __init__(
        self,
        limits: Optional[BudgetLimits] = None,
        max_records: int = DEFAULT_MAX_RECORDS,
        clock: Callable[[], datetime] = datetime.now
    ):
        """Initialize the guardian.

        Args:
            limits: Spend ceilings (defaults to BudgetLimits())
            max_records: Maximum usage records kept in memory
            clock: Time source for window rollover
        """
        self.limits = limits or BudgetLimits()
        self._clock = clock
        self._repository = UsageRepository(
            retention=USER_WINDOW,
            max_records=max_records,
            clock=clock
        )
        self._user_counters: Dict[str, SpendCounter] = {}
        self._user_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._site_lock = threading.Lock()
        self._site_counter = SpendCounter(window=SITE_WINDOW, window_start=clock())
        self._last_prune = clock()

    def _acquire_user_lock(self, user_id: str, create: bool) -> Optional[threading.Lock]:
        # A lock pruned between lookup and acquire is retried, so the
        # holder always owns the lock currently registered for the user.
        while True:
            with self._registry_lock:
                lock = self._user_locks.get(user_id)
                if lock is None:
                    if not create:
                        return None
                    lock = self._user_locks[user_id] = threading.Lock()
            lock.acquire()
            with self._registry_lock:
                if self._user_locks.get(user_id) is lock:
                    return lock
            lock.release()

    @contextmanager
    def _user_lock(self, user_id: str, create: bool = True) -> Iterator[bool]:
        """Hold a user's lock. Yields False for untracked users when create is False."""
        lock = self._acquire_user_lock(user_id, create)
        try:
            yield lock is not None
        finally:
            if lock is not None:
                lock.release()

    def _user_counter(self, user_id: str, now: datetime) -> SpendCounter:
        # Caller must hold the user's lock
        counter = self._user_counters.get(user_id)
        if counter is None:
            counter = self._user_counters[user_id] = SpendCounter(window=USER_WINDOW, window_start=now)
        else:
            counter.roll_over(now)
        return counter

    def _prune_idle_users(self, now: datetime, force: bool = False) -> None:
        """Forget users whose 24h window has expired, at most once per PRUNE_INTERVAL."""
        with self._registry_lock:
            if not force and now - self._last_prune < PRUNE_INTERVAL:
                return
            self._last_prune = now
            for user_id, lock in list(self._user_locks.items()):
                # Users mid-update are skipped and swept next time
                if not lock.acquire(blocking=False):
                    continue
                try:
                    counter = self._user_counters.get(user_id)
                    if counter is None or counter.is_expired(now):
                        self._user_counters.pop(user_id, None)
                        del self._user_locks[user_id]
                finally:
                    lock.release()

    def estimate_cost(
        self,
        capabilities: ModelCapabilities,
        input_tokens: int,
        output_tokens: int,
        reasoning_tokens: int = 0
    ) -> CostEstimate:
        """Estimate cost for a request. See pricing.estimate_cost."""
        return estimate_cost(capabilities, input_tokens, output_tokens, reasoning_tokens)

    def preflight_check(
        self,
        user_id: str,
        capabilities: ModelCapabilities,
        input_tokens: int,
        output_tokens: int
    ) -> PreflightResult:
        """Evaluate a request against all three ceilings before sending it.

        Ceilings are checked in order (request, user, site) and evaluation
        stops at the first violation. Counters are not modified, so two
        calls without an intervening record_usage give the same answer.

        Args:
            user_id: Caller identity
            capabilities: Capability record providing pricing
            input_tokens: Planned prompt tokens
            output_tokens: Planned maximum output tokens

        Returns:
            PreflightResult naming the violated ceiling, if any

        Raises:
            InvalidArgumentError: If any token count is negative
        """
        estimated = estimate_cost(capabilities, input_tokens, output_tokens)
        cost = estimated.total_cost

        within_request_limit = cost <= self.limits.request_max_usd
        breakdown = CostBreakdown(estimated=estimated, within_request_limit=within_request_limit)

        if not within_request_limit:
            fixed_cost = estimated.input_cost + estimated.reasoning_cost
            affordable = self.limits.request_max_usd - fixed_cost
            recommended = MIN_RECOMMENDED_OUTPUT_TOKENS
            if capabilities.pricing.output_per_1k > 0:
                recommended = max(
                    int(affordable / capabilities.pricing.output_per_1k * 1000),
                    MIN_RECOMMENDED_OUTPUT_TOKENS
                )
            return self._deny(
                breakdown,
                BudgetCeiling.REQUEST,
                f"request cost ${cost:.4f} exceeds per-request limit "
                f"${self.limits.request_max_usd:.2f}",
                ("Reduce the requested output length", "Split the task into smaller requests"),
                recommended_output_tokens=recommended
            )

        user_spent = self.get_user_spent_today(user_id)
        if user_spent + cost > self.limits.user_daily_max_usd:
            remaining = self.limits.user_daily_max_usd - user_spent
            return self._deny(
                breakdown,
                BudgetCeiling.USER_DAILY,
                f"user daily limit ${self.limits.user_daily_max_usd:.2f} would be exceeded "
                f"(remaining: ${max(remaining, 0.0):.4f})",
                ("Try again tomorrow", "Ask for a higher daily allowance")
            )

        site_spent = self.get_site_spent_this_hour()
        if site_spent + cost > self.limits.site_hourly_max_usd:
            remaining = self.limits.site_hourly_max_usd - site_spent
            return self._deny(
                breakdown,
                BudgetCeiling.SITE_HOURLY,
                f"site hourly limit ${self.limits.site_hourly_max_usd:.2f} would be exceeded "
                f"(remaining: ${max(remaining, 0.0):.4f})",
                ("Retry later", "Contact the site administrator")
            )

        return PreflightResult(allowed=True, cost_breakdown=breakdown)

    def _deny(
        self,
        breakdown: CostBreakdown,
        ceiling: BudgetCeiling,
        detail: str,
        suggestions: Tuple[str, ...],
        recommended_output_tokens: Optional[int] = None
    ) -> PreflightResult:
        reason = f"{ceiling.value}: {detail}"
        logger.warning(f"Preflight denied: {reason}")
        return PreflightResult(
            allowed=False,
            cost_breakdown=breakdown,
            reason=reason,
            ceiling=ceiling,
            recommended_output_tokens=recommended_output_tokens,
            suggested_actions=suggestions
        )

    def record_usage(
        self,
        request_id: str,
        user_id: str,
        estimate: CostEstimate,
        success: bool
    ) -> UsageRecord:
        """Record spend for a finished request.

        Spend is counted regardless of success: failed and partial
        requests still consumed tokens.

        Args:
            request_id: Identifier of the logical request
            user_id: Caller identity
            estimate: Best-known cost of what was consumed
            success: Whether the request completed successfully

        Returns:
            The appended UsageRecord
        """
        now = self._clock()
        record = UsageRecord(
            request_id=request_id,
            user_id=user_id,
            cost_estimate=estimate,
            success=success,
            timestamp=now
        )

        self._prune_idle_users(now)
        with self._user_lock(user_id):
            self._user_counter(user_id, now).add(estimate.total_cost, now)
            with self._site_lock:
                self._site_counter.add(estimate.total_cost, now)

        self._repository.append(record)
        logger.debug(
            f"Recorded usage {request_id} for {user_id}: "
            f"${estimate.total_cost:.6f} (success={success})"
        )
        return record

    def get_user_spent_today(self, user_id: str) -> float:
        """Spend by a user in the current 24h window."""
        now = self._clock()
        with self._user_lock(user_id, create=False) as tracked:
            counter = self._user_counters.get(user_id) if tracked else None
            if counter is None:
                return 0.0
            counter.roll_over(now)
            return counter.spent_usd

    def get_site_spent_this_hour(self) -> float:
        """Site-wide spend in the current 1h window."""
        now = self._clock()
        with self._site_lock:
            self._site_counter.roll_over(now)
            return self._site_counter.spent_usd

    def get_budget_status(self, user_id: str) -> BudgetStatus:
        """Snapshot of a user's and the site's current spend."""
        now = self._clock()
        user_spent, last_reset = 0.0, now
        with self._user_lock(user_id, create=False) as tracked:
            counter = self._user_counters.get(user_id) if tracked else None
            if counter is not None:
                counter.roll_over(now)
                user_spent, last_reset = counter.spent_usd, counter.window_start
        return BudgetStatus(
            user_spent_today_usd=user_spent,
            last_reset_time=last_reset,
            site_spent_this_hour_usd=self.get_site_spent_this_hour()
        )

    def continuation_budget(self, user_id: str, max_continuations: int) -> ContinuationBudget:
        """Size the next continuation by the budget left for this user and site.

        The ratio is the smaller remaining allowance (user or site) divided by
        the per-request limit. Above 0.5 continuations run at full size.
        Above 0.2 segments shrink to 60% and the follow-up count to 80%.
        Below that, segments shrink to 30% and a single follow-up is allowed.

        Args:
            user_id: Caller identity
            max_continuations: Configured follow-up limit

        Returns:
            ContinuationBudget for the next follow-up
        """
        user_remaining = self.limits.user_daily_max_usd - self.get_user_spent_today(user_id)
        site_remaining = self.limits.site_hourly_max_usd - self.get_site_spent_this_hour()
        ratio = max(min(user_remaining, site_remaining), 0.0) / self.limits.request_max_usd

        if ratio > CONSTRAINED_BUDGET_RATIO:
            return ContinuationBudget(ContinuationMode.NORMAL, ratio, 1.0, max_continuations)
        if ratio > SUMMARY_BUDGET_RATIO:
            return ContinuationBudget(
                ContinuationMode.BUDGET_CONSTRAINED,
                ratio,
                CONSTRAINED_TOKEN_FACTOR,
                int(max_continuations * CONSTRAINED_CONTINUATION_FACTOR)
            )
        return ContinuationBudget(
            ContinuationMode.SUMMARY,
            ratio,
            SUMMARY_TOKEN_FACTOR,
            min(max_continuations, SUMMARY_MAX_CONTINUATIONS)
        )

    def get_usage_records(self, user_id: Optional[str] = None, limit: int = 100) -> List[UsageRecord]:
        """Recent usage records, newest first."""
        return self._repository.get_recent(user_id=user_id, limit=limit)

    def generate_cost_report(self, start: datetime, end: datetime, top_n: int = 10) -> CostReport:
        """Aggregate recorded spend between start and end (inclusive).

        Args:
            start: Range start
            end: Range end
            top_n: Number of highest-spending users to include

        Returns:
            CostReport for the range
        """
        records = self._repository.get_between(start, end)
        total_cost = sum(r.cost_estimate.total_cost for r in records)

        per_user: Dict[str, List[float]] = {}
        for record in records:
            per_user.setdefault(record.user_id, []).append(record.cost_estimate.total_cost)

        top_users = sorted(
            (UserCost(user_id=u, cost=sum(costs), requests=len(costs)) for u, costs in per_user.items()),
            key=lambda u: u.cost,
            reverse=True
        )[:top_n]

        return CostReport(
            total_requests=len(records),
            successful_requests=sum(1 for r in records if r.success),
            total_cost=total_cost,
            average_cost_per_request=total_cost / max(len(records), 1),
            top_users=top_users
        )

    def get_memory_stats(self) -> Dict[str, int]:
        """Sizes of the in-memory stores, after sweeping idle users."""
        self._prune_idle_users(self._clock(), force=True)
        with self._registry_lock:
            tracked_users = len(self._user_counters)
        return {
            "total_records": len(self._repository),
            "tracked_users": tracked_users,
            "users_with_records": len(self._repository.count_by_user()),
        }

    def reset(self) -> None:
        """Forget all counters and records."""
        with self._registry_lock:
            self._user_counters.clear()
            self._user_locks.clear()
        with self._site_lock:
            self._site_counter = SpendCounter(window=SITE_WINDOW, window_start=self._clock())
        self._repository.clear()
