"""
Tests for the CLI interface.
"""
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from llm_governor.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from llm_governor.core.guardrails import CostGuardian
from llm_governor.sdk.openai_client import ResilientCompletionClient

runner = CliRunner()


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run in a temp dir so config paths stay short in console output."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


def write_config(data, name="config.yaml"):
    with open(name, 'w', encoding='utf-8') as f:
        yaml.dump(data, f)
    return name


class FakeStream:
    def __init__(self, *texts):
        self.texts = texts

    async def _chunks(self):
        for i, text in enumerate(self.texts):
            finish = "stop" if i == len(self.texts) - 1 else None
            delta = SimpleNamespace(content=text, reasoning_content=None)
            yield SimpleNamespace(
                choices=[SimpleNamespace(delta=delta, finish_reason=finish)],
                usage=None
            )

    def __aiter__(self):
        return self._chunks()

    async def close(self):
        pass


def fake_client_factory(*texts):
    """from_config replacement returning a client over a canned stream."""
    async def create(**kwargs):
        return FakeStream(*texts)

    transport = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

    def from_config(config, **kwargs):
        return ResilientCompletionClient(
            guardian=CostGuardian(config.budget),
            retry_policy=config.retry,
            client=transport
        )
    return from_config


class TestPlanCommand:
    """Test the plan command."""

    def test_plan_prompt(self):
        result = runner.invoke(app, ["plan", "Hello there"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Budget plan for deepseek-chat" in result.output
        assert "8,192" in result.output
        assert "full" in result.output

    def test_plan_from_file(self, workdir):
        (workdir / "prompt.txt").write_text("Summarize this document", encoding="utf-8")

        result = runner.invoke(app, ["plan", "--file", "prompt.txt", "-m", "deepseek-reasoner"])

        assert result.exit_code == EXIT_CODE_PASS
        # Rich may wrap the table title across lines
        assert "Budget plan for" in result.output
        assert "deepseek-reasoner" in result.output

    def test_plan_requires_prompt(self):
        result = runner.invoke(app, ["plan"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "provide a prompt" in result.output

    def test_plan_rejects_non_positive_max_tokens(self):
        result = runner.invoke(app, ["plan", "Hello", "--max-tokens", "0"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "requested_max_tokens must be > 0" in result.output

    def test_plan_unknown_model_uses_fallback(self):
        result = runner.invoke(app, ["plan", "Hello", "--model", "mystery"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "fallback" in result.output


class TestEstimateCommand:
    """Test the estimate command."""

    def test_estimate(self):
        result = runner.invoke(app, ["estimate", "-i", "1000", "-o", "1000"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Cost estimate for deepseek-chat" in result.output
        assert "$0.0042" in result.output
        assert "Exceeds" not in result.output

    def test_estimate_over_request_limit(self):
        result = runner.invoke(app, ["estimate", "-o", "200000"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Exceeds per-request limit of $0.4000" in result.output

    def test_estimate_uses_config_pricing(self, workdir):
        path = write_config({"models": {"deepseek-chat": {"pricing": {"input_per_1k": 1.0}}}})

        result = runner.invoke(app, ["estimate", "-i", "1000", "--config", path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "$1.0000" in result.output

    def test_estimate_negative_tokens(self):
        result = runner.invoke(app, ["estimate", "--input=-5"])

        assert result.exit_code == EXIT_CODE_FAIL


class TestTimeoutsCommand:
    """Test the timeouts command."""

    def test_reasoner_timeouts(self):
        result = runner.invoke(app, ["timeouts", "deepseek-reasoner"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Timeouts for deepseek-reasoner" in result.output
        assert "600s" in result.output
        assert "Max retries: 2" in result.output

    def test_configured_timeouts(self, workdir):
        path = write_config({"timeouts": {"deepseek-chat": {"initial": 12}}})

        result = runner.invoke(app, ["timeouts", "--config", path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "12s" in result.output


class TestCheckConfigCommand:
    """Test the check-config command."""

    def test_valid_config(self, workdir):
        path = write_config({"budget": {"request_max_usd": 0.25}})

        result = runner.invoke(app, ["check-config", path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "is valid" in result.output
        assert "$0.2500" in result.output

    def test_invalid_config(self, workdir):
        path = write_config({"budget": {"request_max_usd": -1}})

        result = runner.invoke(app, ["check-config", path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid config" in result.output

    def test_missing_config(self, workdir):
        result = runner.invoke(app, ["check-config", "missing.yaml"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "not found" in result.output


class TestChatCommand:
    """Test the chat command."""

    def test_chat_streams_answer(self):
        with patch.object(
            ResilientCompletionClient,
            "from_config",
            side_effect=fake_client_factory("Hello", " world")
        ):
            result = runner.invoke(app, ["chat", "Say hello", "--user", "tester"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Hello world" in result.output
        assert "1 segment(s)" in result.output
        assert "Spent today" in result.output

    def test_chat_without_api_key(self, monkeypatch):
        monkeypatch.delenv("DEEPSEEK_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        result = runner.invoke(app, ["chat", "Say hello"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "API key is required" in result.output

    def test_chat_over_budget(self, workdir, monkeypatch):
        """Budget denial happens before any network call."""
        monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test")
        path = write_config({"budget": {"request_max_usd": 0.0001}})

        result = runner.invoke(app, ["chat", "Say hello", "--config", path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Spending limit reached" in result.output
