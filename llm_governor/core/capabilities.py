"""
Model capability records and registry.

Supplies per-model context window, output cap, rate limit and pricing.
Unknown models resolve to a documented default record instead of failing.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional


class CapabilitySource(Enum):
    """Where a capability record came from."""
    BUILTIN = "builtin"
    CONFIGURED = "configured"
    LIVE = "live"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class RateLimit:
    """Provider rate limits for a model."""
    requests_per_second: float
    tokens_per_minute: int


@dataclass(frozen=True)
class ModelPricing:
    """Per-1K-token pricing in USD."""
    input_per_1k: float
    output_per_1k: float
    reasoning_per_1k: float

    def __post_init__(self):
        """Validate prices are non-negative."""
        for name in ("input_per_1k", "output_per_1k", "reasoning_per_1k"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")


@dataclass(frozen=True)
class ModelCapabilities:
    """Immutable snapshot of what a model accepts and what it costs."""
    model_name: str
    context_window: int
    max_output_per_request: int
    supports_reasoning: bool
    rate_limit: RateLimit
    pricing: ModelPricing
    last_updated: datetime = field(default_factory=datetime.now)
    source: CapabilitySource = CapabilitySource.BUILTIN

    def __post_init__(self):
        """Validate token limits are coherent."""
        if self.context_window <= 0:
            raise ValueError("context_window must be > 0")
        if self.max_output_per_request <= 0:
            raise ValueError("max_output_per_request must be > 0")
        if self.max_output_per_request > self.context_window:
            raise ValueError("max_output_per_request cannot exceed context_window")


DEFAULT_MODEL = "deepseek-chat"

_DEFAULT_PRICING = ModelPricing(
    input_per_1k=0.0014,
    output_per_1k=0.0028,
    reasoning_per_1k=0.0056
)
_DEFAULT_RATE_LIMIT = RateLimit(requests_per_second=0.5, tokens_per_minute=30000)


def _builtin(model_name: str, supports_reasoning: bool = False) -> ModelCapabilities:
    return ModelCapabilities(
        model_name=model_name,
        context_window=128000,
        max_output_per_request=8192,
        supports_reasoning=supports_reasoning,
        rate_limit=_DEFAULT_RATE_LIMIT,
        pricing=_DEFAULT_PRICING,
        last_updated=datetime(2025, 1, 1),
        source=CapabilitySource.BUILTIN
    )


BUILTIN_CAPABILITIES: Dict[str, ModelCapabilities] = {
    "deepseek-chat": _builtin("deepseek-chat"),
    "deepseek-coder": _builtin("deepseek-coder"),
    "deepseek-reasoner": _builtin("deepseek-reasoner", supports_reasoning=True),
}

# Fallback for unregistered models: deepseek-chat limits and pricing.
DEFAULT_CAPABILITIES = replace(
    BUILTIN_CAPABILITIES[DEFAULT_MODEL],
    source=CapabilitySource.FALLBACK
)


class ModelCapabilityRegistry:
    """Read-mostly table of capability records.

    Lookups never fail: unknown models get DEFAULT_CAPABILITIES renamed to
    the requested model. Refreshes replace the whole table at once, so
    readers always see a consistent snapshot.
    """

    def __init__(
        self,
        records: Optional[Iterable[ModelCapabilities]] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        """Initialize the registry.

        Args:
            records: Initial records (defaults to BUILTIN_CAPABILITIES)
            clock: Time source used for staleness checks
        """
        if records is None:
            records = BUILTIN_CAPABILITIES.values()
        self._records: Dict[str, ModelCapabilities] = {r.model_name: r for r in records}
        self._write_lock = threading.Lock()
        self._clock = clock

    def get(self, model: str) -> ModelCapabilities:
        """Get capabilities for a model, falling back to the default record."""
        record = self._records.get(model)
        if record is not None:
            return record
        return replace(DEFAULT_CAPABILITIES, model_name=model)

    def is_registered(self, model: str) -> bool:
        return model in self._records

    def register(self, capabilities: ModelCapabilities) -> None:
        """Add or replace a single record."""
        with self._write_lock:
            records = dict(self._records)
            records[capabilities.model_name] = capabilities
            self._records = records

    def refresh(self, records: Iterable[ModelCapabilities]) -> None:
        """Atomically replace the whole table with records.

        Models missing from records are dropped and fall back to defaults.
        """
        updated = {record.model_name: record for record in records}
        with self._write_lock:
            self._records = updated

    def is_stale(self, model: str, ttl: timedelta = timedelta(minutes=30)) -> bool:
        """Whether a record is missing or older than the TTL."""
        record = self._records.get(model)
        if record is None:
            return True
        return self._clock() - record.last_updated >= ttl

    def all(self) -> List[ModelCapabilities]:
        return list(self._records.values())

    def clear(self) -> None:
        with self._write_lock:
            self._records = {}


_default_registry: Optional[ModelCapabilityRegistry] = None


def get_registry() -> ModelCapabilityRegistry:
    """Get the process-wide registry holding the built-in records."""
    global _default_registry
    if _default_registry is None:
        _default_registry = ModelCapabilityRegistry()
    return _default_registry


def get_capabilities(
    model: str,
    registry: Optional[ModelCapabilityRegistry] = None
) -> ModelCapabilities:
    """Look up capabilities for a model with fallback.

    Args:
        model: Model identifier
        registry: Registry to consult (defaults to the process-wide one)

    Returns:
        The registered record, or DEFAULT_CAPABILITIES under the requested name
    """
    return (registry or get_registry()).get(model)
