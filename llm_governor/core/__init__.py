"""
Core modules for LLM Governor.

This package contains the model capability registry, token budget
planning, pricing, spend guardrails and adaptive timeouts.
"""
