"""
Token budget planning.

Converts a conversation into an input/output token allocation bounded by
a model's context window. Planning is pure: no state, no I/O, and
identical inputs always produce an identical plan.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence

from .capabilities import ModelCapabilities
from .errors import InvalidArgumentError
from .token_counter import estimate_message_tokens

VALID_ROLES = frozenset({"system", "user", "assistant", "tool"})

CONTINUATION_PROMPT = (
    "Please continue exactly where the previous answer stopped, "
    "keeping the same style and tone. Do not repeat earlier text."
)
SUMMARY_CONTINUATION_PROMPT = (
    "Please finish the previous answer concisely, covering only the key "
    "remaining points. Do not repeat earlier text."
)

# Roughly 600 tokens at four characters per token
OVERLAP_CHARS = 2400
MIN_OVERLAP_CHARS = 16


class PlanStrategy(Enum):
    """How the output allocation was decided."""
    FULL = "full"
    TRUNCATED = "truncated"
    MINIMAL_RESERVE = "minimal-reserve"


@dataclass(frozen=True)
class OutputReserve:
    """Minimum output allowance kept for a model even under tight budgets."""
    min_output_tokens: int


DEFAULT_RESERVE = OutputReserve(min_output_tokens=1024)
REASONING_RESERVE = OutputReserve(min_output_tokens=2048)

MODEL_RESERVES: Dict[str, OutputReserve] = {
    "deepseek-chat": DEFAULT_RESERVE,
    "deepseek-coder": DEFAULT_RESERVE,
    "deepseek-reasoner": REASONING_RESERVE,
}


@dataclass(frozen=True)
class BudgetPlan:
    """Token allocation for a single request."""
    input_tokens: int
    max_tokens: int
    strategy: PlanStrategy
    needs_truncation: bool
    can_continue: bool
    remaining_context: int


def reserve_for(capabilities: ModelCapabilities) -> int:
    """Minimum output tokens reserved for a model, capped by its output limit."""
    reserve = MODEL_RESERVES.get(capabilities.model_name)
    if reserve is None:
        reserve = REASONING_RESERVE if capabilities.supports_reasoning else DEFAULT_RESERVE
    return min(reserve.min_output_tokens, capabilities.max_output_per_request)


def validate_messages(messages: Sequence[Mapping[str, str]]) -> None:
    """Reject malformed message lists.

    Raises:
        InvalidArgumentError: If messages is empty or any entry is malformed
    """
    if not messages or not isinstance(messages, (list, tuple)):
        raise InvalidArgumentError("messages is required and cannot be empty")
    for i, message in enumerate(messages):
        if not isinstance(message, Mapping):
            raise InvalidArgumentError(f"Message at index {i} must be a mapping")
        role = message.get("role")
        if role not in VALID_ROLES:
            raise InvalidArgumentError(
                f"Message at index {i} has invalid role {role!r}; "
                f"expected one of {sorted(VALID_ROLES)}"
            )
        if not isinstance(message.get("content"), str):
            raise InvalidArgumentError(f"Message at index {i} content must be a string")


def plan(
    messages: Sequence[Mapping[str, str]],
    capabilities: ModelCapabilities,
    requested_max_tokens: Optional[int] = None
) -> BudgetPlan:
    """Plan input and output tokens for a request.

    The output cap is the smallest of the requested tokens, the model's
    per-request cap and the room left in the context window, floored at
    the model's minimum reserve. The result is then clamped so input plus
    output never exceeds the context window.

    Content is never truncated here: a plan that reports needs_truncation
    leaves trimming to the caller. can_continue is set when the chosen cap
    is below what the caller wanted: the requested tokens, or the whole
    remaining window when nothing was requested.

    Args:
        messages: Ordered conversation of {role, content} mappings
        capabilities: Capability record for the target model
        requested_max_tokens: Optional caller-requested output cap

    Returns:
        BudgetPlan for the request

    Raises:
        InvalidArgumentError: If messages is malformed or requested_max_tokens <= 0
    """
    validate_messages(messages)
    if requested_max_tokens is not None and requested_max_tokens <= 0:
        raise InvalidArgumentError("requested_max_tokens must be > 0")

    input_tokens = estimate_message_tokens(messages)
    reserve = reserve_for(capabilities)
    window_room = max(capabilities.context_window - input_tokens, 0)

    cap = capabilities.max_output_per_request
    ceiling = min(requested_max_tokens or cap, cap)
    # Unrequested answers may run on into whatever room the window has left
    wanted = requested_max_tokens if requested_max_tokens is not None else window_room

    max_tokens = max(min(ceiling, window_room), reserve)
    max_tokens = min(max_tokens, window_room)

    needs_truncation = input_tokens > capabilities.context_window - reserve

    if needs_truncation:
        strategy = PlanStrategy.TRUNCATED
    elif max_tokens < ceiling:
        strategy = PlanStrategy.MINIMAL_RESERVE
    else:
        strategy = PlanStrategy.FULL

    return BudgetPlan(
        input_tokens=input_tokens,
        max_tokens=max_tokens,
        strategy=strategy,
        needs_truncation=needs_truncation,
        can_continue=max_tokens < wanted,
        remaining_context=window_room - max_tokens
    )


def truncate_messages(
    messages: Sequence[Mapping[str, str]],
    target_tokens: int
) -> List[Dict[str, str]]:
    """Drop the oldest conversation turns until the input fits target_tokens.

    System messages and the final message are always kept. Turns are
    removed in user/assistant pairs to keep the dialogue structure.

    Args:
        messages: Conversation to trim
        target_tokens: Input token budget to fit

    Returns:
        A new, possibly shorter, list of messages
    """
    system = [dict(m) for m in messages if m["role"] == "system"]
    turns = [dict(m) for m in messages if m["role"] != "system"]

    while len(turns) > 1 and estimate_message_tokens(system + turns) > target_tokens:
        drop = 2 if len(turns) > 2 else 1
        del turns[:drop]

    return system + turns


def build_continuation_messages(
    messages: Sequence[Mapping[str, str]],
    produced: str,
    segment_index: int = 0,
    total_segments: int = 0,
    concise: bool = False
) -> List[Dict[str, str]]:
    """Build the follow-up request that asks the model to keep going.

    Args:
        messages: The original outbound conversation
        produced: Text generated so far for this request
        segment_index: Zero-based index of the segment being requested
        total_segments: Maximum number of segments (0 if unknown)
        concise: Ask for a condensed continuation when budget is short

    Returns:
        The conversation with the partial answer and a continuation prompt appended
    """
    prompt = SUMMARY_CONTINUATION_PROMPT if concise else CONTINUATION_PROMPT
    if total_segments:
        prompt = f"{prompt}\n\n[Continuation segment {segment_index + 1}/{total_segments}]"
    return [dict(m) for m in messages] + [
        {"role": "assistant", "content": produced},
        {"role": "user", "content": prompt},
    ]


def trim_overlap(previous: str, new: str, overlap_chars: int = OVERLAP_CHARS) -> str:
    """Strip text at the start of a new segment that repeats the end of the last one.

    Only the final overlap_chars of previous are considered, and overlaps
    shorter than MIN_OVERLAP_CHARS are kept since they are usually chance.

    Args:
        previous: Text produced so far
        new: Start of the next segment
        overlap_chars: How far back into previous to look

    Returns:
        new without the repeated prefix
    """
    tail = previous[-overlap_chars:]
    for size in range(min(len(tail), len(new)), MIN_OVERLAP_CHARS - 1, -1):
        if tail.endswith(new[:size]):
            return new[size:]
    return new


def overlap_settled(previous_tail: str, pending: str) -> bool:
    """Whether more text could still change how pending overlaps previous_tail.

    Returns True once the answer is final: pending is at least as long as
    the tail, or no longer occurs inside it.
    """
    return len(pending) >= len(previous_tail) or pending not in previous_tail
