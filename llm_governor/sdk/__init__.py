"""
SDK for LLM Governor.

Provides the governed completion client.
"""

from .openai_client import (
    CompletionRequest,
    CompletionResult,
    PerformanceStats,
    ResilientCompletionClient,
    StreamHandle,
    classify_error,
)

__all__ = [
    "CompletionRequest",
    "CompletionResult",
    "PerformanceStats",
    "ResilientCompletionClient",
    "StreamHandle",
    "classify_error",
]
