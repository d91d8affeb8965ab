"""Custom exceptions for Juchang AI."""


class JuchangError(Exception):
    """Base class for errors surfaced to API callers with a rejection code."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class QuotaExceededError(JuchangError):
    """Raised when a user has no AI calls left for today."""

    code = "QUOTA_EXCEEDED"
    status_code = 402

    def __init__(self, user_id: str | None = None):
        self.user_id = user_id
        super().__init__("今日 AI 额度已用完，明天再来吧")


class AuthenticationRequiredError(JuchangError):
    """Raised when an operation needs a signed-in user."""

    code = "AUTH_REQUIRED"
    status_code = 401

    def __init__(self, action: str | None = None):
        self.action = action
        message = "需要登录"
        if action:
            message += f": {action}"
        super().__init__(message)


class RateLimitedError(JuchangError):
    """Raised when a user sends requests faster than the sliding window allows."""

    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, retry_after: float):
        self.retry_after = retry_after
        super().__init__(f"请求太频繁，请 {int(retry_after) + 1} 秒后再试")


class GuardrailViolationError(JuchangError):
    """Raised when input is blocked by the guardrails."""

    code = "GUARDRAIL_BLOCKED"
    status_code = 400

    def __init__(self, reason: str, refusal: str):
        self.reason = reason
        self.refusal = refusal
        super().__init__(refusal)


class InvalidRequestError(JuchangError):
    """Raised when a chat request carries nothing to answer."""

    code = "INVALID_REQUEST"
    status_code = 400


class ToolError(JuchangError):
    """Raised by tool handlers for invalid arguments or failed side effects."""

    code = "TOOL_ERROR"
    status_code = 400


class BrokerStateError(JuchangError):
    """Raised on an illegal broker state transition."""

    code = "BROKER_STATE_ERROR"
    status_code = 409

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move broker flow from {current} to {target}")


class MatchConfirmationError(JuchangError):
    """Raised when a match cannot be confirmed."""

    code = "MATCH_CONFIRMATION_FAILED"
    status_code = 409


class LLMProviderError(Exception):
    """Raised when an LLM provider call fails."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class EmbeddingError(LLMProviderError):
    """Raised when embedding generation fails or is unsupported."""
