"""
Token counting and estimation.

Character-count heuristics for planning, plus the usage record returned
by the completion endpoint.
"""

import math
import re
from dataclasses import dataclass
from typing import Mapping, Sequence

_CJK_PATTERN = re.compile(r"[\u4e00-\u9fff]")

# Roughly 1.5 CJK characters or 4 other characters per token.
CJK_CHARS_PER_TOKEN = 1.5
OTHER_CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int
    reasoning_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens
        )


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a piece of text.

    Deterministic and monotonic in content length: appending characters
    never lowers the estimate.

    Args:
        text: Text to estimate

    Returns:
        Estimated token count (0 for empty text)
    """
    if not text:
        return 0
    cjk_chars = len(_CJK_PATTERN.findall(text))
    other_chars = len(text) - cjk_chars
    return math.ceil(cjk_chars / CJK_CHARS_PER_TOKEN + other_chars / OTHER_CHARS_PER_TOKEN)


def estimate_message_tokens(messages: Sequence[Mapping[str, str]]) -> int:
    """Estimate input tokens for a conversation (contents joined by newlines)."""
    return estimate_tokens("\n".join(m["content"] for m in messages))
