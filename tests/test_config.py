"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for governor configs.
"""

import os
import tempfile

import pytest
import yaml

from llm_governor.config.loader import (
    GovernorConfig,
    RetryPolicy,
    load_governor_config,
)
from llm_governor.core.capabilities import BUILTIN_CAPABILITIES, CapabilitySource
from llm_governor.core.guardrails import BudgetLimits
from llm_governor.core.timeouts import DEFAULT_TIMEOUT_POLICIES


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "budget": {
                "request_max_usd": 0.5,
                "user_daily_max_usd": 5.0,
                "site_hourly_max_usd": 20.0,
                "max_records": 500
            },
            "retry": {
                "max_retries": 5,
                "retry_delay": 0.1,
                "max_continuations": 2
            },
            "timeouts": {
                "deepseek-chat": {"streaming": 240}
            },
            "models": {
                "deepseek-chat": {
                    "pricing": {"input_per_1k": 0.001}
                }
            }
        }

        config = load_governor_config(self._write_config(config_data))

        assert config.budget == BudgetLimits(0.5, 5.0, 20.0)
        assert config.max_records == 500
        assert config.retry == RetryPolicy(max_retries=5, retry_delay=0.1, max_continuations=2)
        assert config.retry.rate_limit_delay == 2.0

        chat_timeouts = config.timeouts["deepseek-chat"]
        assert chat_timeouts.streaming == 240.0
        assert chat_timeouts.initial == 45.0
        assert config.timeouts["deepseek-coder"] == DEFAULT_TIMEOUT_POLICIES["deepseek-coder"]

        chat = config.models["deepseek-chat"]
        assert chat.pricing.input_per_1k == 0.001
        assert chat.pricing.output_per_1k == 0.0028
        assert chat.source is CapabilitySource.CONFIGURED
        assert config.models["deepseek-coder"] is BUILTIN_CAPABILITIES["deepseek-coder"]

    def test_empty_file_gives_defaults(self):
        """An empty file is the same as no overrides."""
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, 'w').close()

        assert load_governor_config(path) == GovernorConfig.default()

    def test_partial_sections_keep_defaults(self):
        config = load_governor_config(self._write_config({"budget": {"request_max_usd": 1.0}}))

        assert config.budget.request_max_usd == 1.0
        assert config.budget.user_daily_max_usd == 2.50
        assert config.retry == RetryPolicy()

    def test_new_model(self):
        """Unknown models start from the fallback record."""
        config_data = {
            "models": {
                "local-llm": {
                    "context_window": 32000,
                    "max_output_per_request": 4096,
                    "supports_reasoning": True,
                    "rate_limit": {"tokens_per_minute": 1000}
                }
            },
            "timeouts": {
                "local-llm": {"initial": 5, "max_retries": 1}
            }
        }

        config = load_governor_config(self._write_config(config_data))
        model = config.models["local-llm"]
        assert model.model_name == "local-llm"
        assert model.context_window == 32000
        assert model.supports_reasoning is True
        assert model.rate_limit.tokens_per_minute == 1000

        policy = config.timeouts["local-llm"]
        assert policy.initial == 5.0
        assert policy.max_retries == 1
        assert policy.streaming == 180.0

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError, match="not found"):
            load_governor_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("budget: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_governor_config(path)

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_governor_config(self._write_config({"budgets": {}}))

    def test_unknown_budget_key(self):
        with pytest.raises(ValueError, match="Unknown keys in budget"):
            load_governor_config(self._write_config({"budget": {"daily": 5}}))

    def test_non_positive_limit(self):
        with pytest.raises(ValueError, match="request_max_usd must be > 0"):
            load_governor_config(self._write_config({"budget": {"request_max_usd": 0}}))

    def test_non_numeric_limit(self):
        with pytest.raises(ValueError, match="must be a number"):
            load_governor_config(self._write_config({"budget": {"request_max_usd": "lots"}}))

    def test_boolean_is_not_a_number(self):
        with pytest.raises(ValueError, match="must be an integer"):
            load_governor_config(self._write_config({"retry": {"max_retries": True}}))

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="'retry' must be a dictionary"):
            load_governor_config(self._write_config({"retry": [1, 2]}))

    def test_invalid_timeout_policy(self):
        with pytest.raises(ValueError, match="backoff_multiplier must be > 1"):
            load_governor_config(self._write_config({
                "timeouts": {"deepseek-chat": {"backoff_multiplier": 0.5}}
            }))

    def test_unknown_model_key(self):
        with pytest.raises(ValueError, match="Unknown keys in models.deepseek-chat"):
            load_governor_config(self._write_config({
                "models": {"deepseek-chat": {"window": 1000}}
            }))

    def test_incoherent_model_limits(self):
        with pytest.raises(ValueError, match="cannot exceed context_window"):
            load_governor_config(self._write_config({
                "models": {"deepseek-chat": {"context_window": 4096}}
            }))

    def test_top_level_must_be_mapping(self):
        with pytest.raises(ValueError, match="must be a dictionary"):
            load_governor_config(self._write_config(["budget"]))


class TestRetryPolicy:
    """Test retry policy defaults and backoff."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.retry_delay == 0.8
        assert policy.rate_limit_delay == 2.0
        assert policy.max_continuations == 6

    def test_exponential_backoff(self):
        policy = RetryPolicy()
        assert policy.delay_for(0) == pytest.approx(0.8)
        assert policy.delay_for(2) == pytest.approx(3.2)
        assert policy.delay_for(1, rate_limited=True) == pytest.approx(4.0)

    def test_rate_limit_waits_longer(self):
        policy = RetryPolicy()
        for attempt in range(4):
            assert policy.delay_for(attempt, rate_limited=True) > policy.delay_for(attempt)

    def test_negative_values_rejected(self):
        with pytest.raises(ValueError, match="max_retries must be >= 0"):
            RetryPolicy(max_retries=-1)
