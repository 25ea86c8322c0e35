"""
Configuration management and loading.

Handles spend limits, retry behaviour, timeout policies and model
capability overrides.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

import yaml

from ..core.capabilities import (
    BUILTIN_CAPABILITIES,
    DEFAULT_CAPABILITIES,
    CapabilitySource,
    ModelCapabilities,
)
from ..core.guardrails import BudgetLimits
from ..core.timeouts import DEFAULT_POLICY_MODEL, DEFAULT_TIMEOUT_POLICIES, TimeoutPolicy
from ..storage.repository import DEFAULT_MAX_RECORDS


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behaviour for transport failures and continuations."""
    max_retries: int = 3
    retry_delay: float = 0.8
    rate_limit_delay: float = 2.0
    max_continuations: int = 6

    def __post_init__(self):
        """Validate retry values."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be >= 0")
        if self.rate_limit_delay < 0:
            raise ValueError("rate_limit_delay must be >= 0")
        if self.max_continuations < 0:
            raise ValueError("max_continuations must be >= 0")

    def delay_for(self, attempt: int, rate_limited: bool = False) -> float:
        """Backoff before retry number `attempt` (zero-based)."""
        base = self.rate_limit_delay if rate_limited else self.retry_delay
        return base * 2 ** attempt


@dataclass(frozen=True)
class GovernorConfig:
    """Complete governor configuration."""
    budget: BudgetLimits = field(default_factory=BudgetLimits)
    max_records: int = DEFAULT_MAX_RECORDS
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeouts: Dict[str, TimeoutPolicy] = field(default_factory=lambda: dict(DEFAULT_TIMEOUT_POLICIES))
    models: Dict[str, ModelCapabilities] = field(default_factory=lambda: dict(BUILTIN_CAPABILITIES))

    def __post_init__(self):
        """Validate record cap."""
        if self.max_records <= 0:
            raise ValueError("max_records must be > 0")

    @classmethod
    def default(cls) -> "GovernorConfig":
        """Built-in defaults."""
        return cls()


def load_governor_config(path: str) -> GovernorConfig:
    """Load and validate governor configuration from YAML file.

    Every section is optional; omitted values keep their built-in
    defaults. Unknown keys are rejected so that a typo never silently
    loosens a spend ceiling.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GovernorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Governor config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return GovernorConfig.default()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'budget', 'retry', 'timeouts', 'models'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    budget, max_records = _parse_budget(raw_config.get('budget', {}))
    retry = _parse_retry(raw_config.get('retry', {}))

    # Parse timeout overrides
    timeouts_data = raw_config.get('timeouts', {})
    if not isinstance(timeouts_data, dict):
        raise ValueError("'timeouts' must be a dictionary")

    timeouts = dict(DEFAULT_TIMEOUT_POLICIES)
    for model, policy_data in timeouts_data.items():
        timeouts[model] = _parse_timeout_policy(str(model), policy_data)

    # Parse model capability overrides
    models_data = raw_config.get('models', {})
    if not isinstance(models_data, dict):
        raise ValueError("'models' must be a dictionary")

    models = dict(BUILTIN_CAPABILITIES)
    for model, model_data in models_data.items():
        models[model] = _parse_model(str(model), model_data)

    return GovernorConfig(
        budget=budget,
        max_records=max_records,
        retry=retry,
        timeouts=timeouts,
        models=models
    )


def _check_keys(data: Any, allowed: set, path: str) -> Dict:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    return data


def _number(value: Any, key: str, path: str) -> float:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _integer(value: Any, key: str, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _parse_budget(data: Any):
    """Parse the budget section into limits and the record cap."""
    keys = {'request_max_usd', 'user_daily_max_usd', 'site_hourly_max_usd', 'max_records'}
    data = _check_keys(data, keys, 'budget')

    limits = {
        key: _number(value, key, 'budget')
        for key, value in data.items()
        if key != 'max_records'
    }
    max_records = DEFAULT_MAX_RECORDS
    if 'max_records' in data:
        max_records = _integer(data['max_records'], 'max_records', 'budget')
        if max_records <= 0:
            raise ValueError("'max_records' in budget must be > 0")

    return BudgetLimits(**limits), max_records


def _parse_retry(data: Any) -> RetryPolicy:
    keys = {f.name for f in fields(RetryPolicy)}
    data = _check_keys(data, keys, 'retry')
    values: Dict[str, Any] = {}
    for key, value in data.items():
        if key in ('max_retries', 'max_continuations'):
            values[key] = _integer(value, key, 'retry')
        else:
            values[key] = _number(value, key, 'retry')
    return RetryPolicy(**values)


def _parse_timeout_policy(model: str, data: Any) -> TimeoutPolicy:
    """Parse a partial timeout policy layered over the model's built-in one.

    Args:
        model: Model the policy applies to
        data: Partial policy fields

    Returns:
        Validated TimeoutPolicy

    Raises:
        ValueError: If the policy is invalid
    """
    path = f"timeouts.{model}"
    keys = {f.name for f in fields(TimeoutPolicy)}
    data = _check_keys(data, keys, path)

    base = DEFAULT_TIMEOUT_POLICIES.get(model, DEFAULT_TIMEOUT_POLICIES[DEFAULT_POLICY_MODEL])
    overrides: Dict[str, Any] = {}
    for key, value in data.items():
        if key == 'max_retries':
            overrides[key] = _integer(value, key, path)
        else:
            overrides[key] = _number(value, key, path)
    return replace(base, **overrides)


def _parse_model(model: str, data: Any) -> ModelCapabilities:
    """Parse a capability record, starting from the built-in or fallback one."""
    path = f"models.{model}"
    keys = {'context_window', 'max_output_per_request', 'supports_reasoning', 'pricing', 'rate_limit'}
    data = _check_keys(data, keys, path)

    base = BUILTIN_CAPABILITIES.get(model, DEFAULT_CAPABILITIES)
    overrides: Dict[str, Any] = {}

    for key in ('context_window', 'max_output_per_request'):
        if key in data:
            overrides[key] = _integer(data[key], key, path)

    if 'supports_reasoning' in data:
        if not isinstance(data['supports_reasoning'], bool):
            raise ValueError(f"'supports_reasoning' in {path} must be a boolean")
        overrides['supports_reasoning'] = data['supports_reasoning']

    if 'pricing' in data:
        pricing_keys = {'input_per_1k', 'output_per_1k', 'reasoning_per_1k'}
        pricing_data = _check_keys(data['pricing'], pricing_keys, f"{path}.pricing")
        overrides['pricing'] = replace(
            base.pricing,
            **{k: _number(v, k, f"{path}.pricing") for k, v in pricing_data.items()}
        )

    if 'rate_limit' in data:
        rate_keys = {'requests_per_second', 'tokens_per_minute'}
        rate_data = _check_keys(data['rate_limit'], rate_keys, f"{path}.rate_limit")
        rate_overrides: Dict[str, Any] = {}
        if 'requests_per_second' in rate_data:
            rate_overrides['requests_per_second'] = _number(
                rate_data['requests_per_second'], 'requests_per_second', f"{path}.rate_limit"
            )
        if 'tokens_per_minute' in rate_data:
            rate_overrides['tokens_per_minute'] = _integer(
                rate_data['tokens_per_minute'], 'tokens_per_minute', f"{path}.rate_limit"
            )
        overrides['rate_limit'] = replace(base.rate_limit, **rate_overrides)

    return replace(
        base,
        model_name=model,
        source=CapabilitySource.CONFIGURED,
        last_updated=datetime.now(),
        **overrides
    )
