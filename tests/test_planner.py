"""
Unit tests for token budget planning.
"""

from dataclasses import replace

import pytest

from llm_governor.core.capabilities import BUILTIN_CAPABILITIES, get_capabilities
from llm_governor.core.errors import InvalidArgumentError
from llm_governor.core.planner import (
    CONTINUATION_PROMPT,
    SUMMARY_CONTINUATION_PROMPT,
    PlanStrategy,
    build_continuation_messages,
    overlap_settled,
    plan,
    reserve_for,
    trim_overlap,
    truncate_messages,
    validate_messages,
)
from llm_governor.core.token_counter import estimate_message_tokens

CHAT = BUILTIN_CAPABILITIES["deepseek-chat"]
REASONER = BUILTIN_CAPABILITIES["deepseek-reasoner"]


def user_message(tokens: int):
    """A single user message estimated at exactly `tokens` tokens."""
    return [{"role": "user", "content": "a" * (tokens * 4)}]


class TestPlan:
    """Test output allocation."""

    def test_reference_example(self):
        """1000 input tokens on deepseek-chat gets the full output cap."""
        result = plan(user_message(1000), CHAT)

        assert result.input_tokens == 1000
        assert result.max_tokens == 8192
        assert result.needs_truncation is False
        assert result.strategy is PlanStrategy.FULL
        assert result.can_continue is True
        assert result.remaining_context == 128000 - 1000 - 8192

    def test_requested_below_cap(self):
        result = plan(user_message(100), CHAT, requested_max_tokens=2000)
        assert result.max_tokens == 2000
        assert result.strategy is PlanStrategy.FULL
        assert result.can_continue is False

    def test_requested_above_cap_can_continue(self):
        """Asking for more than one request can produce enables continuation."""
        result = plan(user_message(100), CHAT, requested_max_tokens=20000)
        assert result.max_tokens == 8192
        assert result.can_continue is True

    def test_window_squeezes_output(self):
        """Little room left in the window gives a minimal-reserve plan."""
        result = plan(user_message(124000), CHAT)

        assert result.max_tokens == 4000
        assert result.strategy is PlanStrategy.MINIMAL_RESERVE
        assert result.needs_truncation is False
        assert result.can_continue is False
        assert result.remaining_context == 0

    def test_reserve_floor(self):
        """A tiny request is floored at the model's reserve."""
        result = plan(user_message(10), REASONER, requested_max_tokens=100)
        assert result.max_tokens == 2048

    def test_needs_truncation(self):
        """Input leaving less than the reserve needs truncation."""
        result = plan(user_message(127500), CHAT)

        assert result.needs_truncation is True
        assert result.strategy is PlanStrategy.TRUNCATED
        assert result.max_tokens == 500
        assert result.input_tokens + result.max_tokens <= CHAT.context_window

    def test_input_overflowing_window(self):
        """Input larger than the window clamps output to zero."""
        result = plan(user_message(130000), CHAT)
        assert result.max_tokens == 0
        assert result.needs_truncation is True

    @pytest.mark.parametrize("input_tokens", [0, 1, 500, 60000, 119808, 126000, 127999, 128000])
    @pytest.mark.parametrize("requested", [None, 1, 1024, 8192, 50000])
    def test_never_exceeds_window(self, input_tokens, requested):
        """Input plus output always fits the context window."""
        messages = [{"role": "user", "content": "a" * (input_tokens * 4)}]
        result = plan(messages, CHAT, requested_max_tokens=requested)
        assert result.input_tokens + result.max_tokens <= CHAT.context_window

    def test_deterministic(self):
        messages = user_message(4321)
        assert plan(messages, CHAT, 3000) == plan(messages, CHAT, 3000)

    def test_unknown_model_uses_fallback(self):
        """Planning never fails for unknown models."""
        result = plan(user_message(1000), get_capabilities("not-a-model"))
        assert result.max_tokens == 8192

    @pytest.mark.parametrize("requested", [0, -10])
    def test_non_positive_request_rejected(self, requested):
        with pytest.raises(InvalidArgumentError, match="requested_max_tokens"):
            plan(user_message(10), CHAT, requested_max_tokens=requested)

    def test_does_not_mutate_messages(self):
        messages = user_message(10)
        snapshot = [dict(m) for m in messages]
        plan(messages, CHAT)
        assert messages == snapshot


class TestReserves:
    """Test per-model output reserves."""

    def test_builtin_reserves(self):
        assert reserve_for(CHAT) == 1024
        assert reserve_for(BUILTIN_CAPABILITIES["deepseek-coder"]) == 1024
        assert reserve_for(REASONER) == 2048

    def test_unknown_reasoning_model(self):
        caps = replace(REASONER, model_name="other-reasoner")
        assert reserve_for(caps) == 2048

    def test_reserve_capped_by_output_limit(self):
        caps = replace(CHAT, model_name="small", max_output_per_request=512)
        assert reserve_for(caps) == 512


class TestValidateMessages:
    """Test message validation."""

    @pytest.mark.parametrize("messages", [[], None, "hello"])
    def test_empty_or_wrong_type(self, messages):
        with pytest.raises(InvalidArgumentError, match="cannot be empty"):
            validate_messages(messages)

    def test_invalid_role(self):
        with pytest.raises(InvalidArgumentError, match="invalid role"):
            validate_messages([{"role": "robot", "content": "hi"}])

    def test_non_string_content(self):
        with pytest.raises(InvalidArgumentError, match="content must be a string"):
            validate_messages([{"role": "user", "content": None}])

    def test_non_mapping_entry(self):
        with pytest.raises(InvalidArgumentError, match="must be a mapping"):
            validate_messages([("user", "hi")])

    def test_valid_roles(self):
        validate_messages([
            {"role": "system", "content": "s"},
            {"role": "user", "content": "u"},
            {"role": "assistant", "content": "a"},
            {"role": "tool", "content": "t"},
        ])


class TestTruncateMessages:
    """Test dropping old turns to fit the window."""

    def conversation(self):
        return [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "a" * 400},
            {"role": "assistant", "content": "b" * 400},
            {"role": "user", "content": "c" * 400},
            {"role": "assistant", "content": "d" * 400},
            {"role": "user", "content": "final question"},
        ]

    def test_drops_oldest_pairs(self):
        messages = self.conversation()
        result = truncate_messages(messages, target_tokens=250)

        assert result[0] == {"role": "system", "content": "be brief"}
        assert result[-1]["content"] == "final question"
        assert len(result) == 4
        assert result[1]["content"] == "c" * 400
        assert estimate_message_tokens(result) <= 250

    def test_keeps_system_and_last_message(self):
        result = truncate_messages(self.conversation(), target_tokens=1)
        assert [m["role"] for m in result] == ["system", "user"]
        assert result[-1]["content"] == "final question"

    def test_fitting_conversation_unchanged(self):
        messages = self.conversation()
        assert truncate_messages(messages, target_tokens=100000) == messages

    def test_returns_new_list(self):
        messages = self.conversation()
        truncate_messages(messages, target_tokens=1)
        assert len(messages) == 6


class TestContinuationMessages:
    """Test the follow-up request for truncated answers."""

    def test_appends_partial_answer_and_prompt(self):
        messages = [{"role": "user", "content": "write a long story"}]
        result = build_continuation_messages(messages, "Once upon a time")

        assert result[0] == messages[0]
        assert result[1] == {"role": "assistant", "content": "Once upon a time"}
        assert result[2] == {"role": "user", "content": CONTINUATION_PROMPT}
        assert len(messages) == 1

    def test_segment_marker(self):
        result = build_continuation_messages(
            [{"role": "user", "content": "q"}],
            "partial",
            segment_index=1,
            total_segments=7
        )
        assert "[Continuation segment 2/7]" in result[-1]["content"]

    def test_concise_prompt(self):
        result = build_continuation_messages(
            [{"role": "user", "content": "q"}],
            "partial",
            concise=True
        )
        assert result[-1] == {"role": "user", "content": SUMMARY_CONTINUATION_PROMPT}


class TestTrimOverlap:
    """Test removal of text a continuation repeats."""

    PREVIOUS = "The first segment ends with a sentence about rivers and mountains."

    def test_repeated_suffix_removed(self):
        new = "about rivers and mountains. Then the story moves on."
        assert trim_overlap(self.PREVIOUS, new) == " Then the story moves on."

    def test_longest_match_wins(self):
        previous = "abcdefghijklmnop abcdefghijklmnop"
        new = "abcdefghijklmnop abcdefghijklmnop tail"
        assert trim_overlap(previous, new) == " tail"

    def test_short_overlap_kept(self):
        """Matches below the minimum length are treated as chance."""
        new = "mountains. Next"
        assert trim_overlap(self.PREVIOUS, new) == new

    def test_no_overlap(self):
        new = "A completely different opening that shares nothing."
        assert trim_overlap(self.PREVIOUS, new) == new

    def test_only_recent_text_considered(self):
        previous = "repeated opening text here" + "x" * 100
        new = "repeated opening text here and more"
        assert trim_overlap(previous, new, overlap_chars=50) == new

    def test_fully_repeated_segment(self):
        assert trim_overlap(self.PREVIOUS, "rivers and mountains.") == ""

    def test_settled(self):
        tail = "rivers and mountains."
        assert overlap_settled(tail, "rivers") is False
        assert overlap_settled(tail, "rivers and mountains. More") is True
        assert overlap_settled(tail, "Something else") is True
