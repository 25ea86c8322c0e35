"""
Error taxonomy for governed completions.

Every failure that crosses the package boundary carries a short
machine-readable code and a human-readable message.
"""

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .guardrails import BudgetCeiling, PreflightResult
    from .timeouts import TimeoutAnalysis


class ErrorType(Enum):
    """Transport-level failure classes."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    API_ERROR = "api_error"
    INVALID_KEY = "invalid_key"
    UNKNOWN = "unknown"


# Only these are retried by the completion client; TIMEOUT is governed
# separately by the timeout controller.
RETRYABLE_ERROR_TYPES = frozenset({ErrorType.NETWORK, ErrorType.RATE_LIMIT})


class GovernorError(Exception):
    """Base class for all errors raised by llm_governor."""
    code = "governor_error"

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message


class InvalidArgumentError(GovernorError, ValueError):
    """Raised for negative token counts or malformed message lists."""
    code = "invalid_argument"


class BudgetExceededError(GovernorError):
    """Raised when a spend ceiling would be exceeded by a request."""
    code = "budget_exceeded"

    def __init__(
        self,
        message: str,
        ceiling: "BudgetCeiling",
        preflight: Optional["PreflightResult"] = None
    ):
        super().__init__(message, user_message="Spending limit reached for this request")
        self.ceiling = ceiling
        self.preflight = preflight


class CompletionError(GovernorError):
    """Raised when the completion endpoint fails after retry handling."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType,
        status_code: Optional[int] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message, user_message=user_message or _USER_MESSAGES[error_type])
        self.error_type = error_type
        self.status_code = status_code

    @property
    def code(self) -> str:
        return self.error_type.value

    @property
    def retryable(self) -> bool:
        return self.error_type in RETRYABLE_ERROR_TYPES


class CompletionTimeoutError(CompletionError):
    """Raised when a phase stalls and no retries remain."""

    def __init__(self, message: str, analysis: "TimeoutAnalysis"):
        super().__init__(
            message,
            ErrorType.TIMEOUT,
            user_message=analysis.user_friendly_message
        )
        self.analysis = analysis


_USER_MESSAGES = {
    ErrorType.NETWORK: "Network connection problem, please check your connection",
    ErrorType.TIMEOUT: "The model took too long to respond",
    ErrorType.RATE_LIMIT: "Too many requests, please try again shortly",
    ErrorType.API_ERROR: "The model service returned an error",
    ErrorType.INVALID_KEY: "The API key is invalid or lacks permission",
    ErrorType.UNKNOWN: "An unexpected error occurred",
}
