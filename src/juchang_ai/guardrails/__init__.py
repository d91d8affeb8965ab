"""Input/output guardrails and request rate limiting."""

from juchang_ai.guardrails.input_guard import (
    REFUSAL,
    GuardResult,
    check_input,
    record_block,
    sanitize_input,
)
from juchang_ai.guardrails.output_guard import check_output, mask_pii, sanitize_output
from juchang_ai.guardrails.rate_limiter import RateLimitResult, SlidingWindowRateLimiter

__all__ = [
    "GuardResult",
    "REFUSAL",
    "RateLimitResult",
    "SlidingWindowRateLimiter",
    "check_input",
    "check_output",
    "mask_pii",
    "record_block",
    "sanitize_input",
    "sanitize_output",
]
