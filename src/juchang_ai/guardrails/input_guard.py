"""
Input guardrails.

Checks run before any classification, tool or model call. A blocked input
short-circuits the request with a canned refusal and is recorded as a
security event.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from juchang_ai.config import settings
from juchang_ai.db.repositories import SecurityEventRepository

logger = logging.getLogger(__name__)

REFUSAL = "这个话题我帮不了你 😅"
TOO_LONG_REFUSAL = "消息太长了，请精简一下再发送～"

INJECTION_PATTERNS: list[re.Pattern] = [
    re.compile(r"ignore\s+(previous|above|all)\s+(instructions?|prompts?)", re.I),
    re.compile(r"disregard\s+(previous|above|all)", re.I),
    re.compile(r"forget\s+(everything|all|previous)", re.I),
    re.compile(r"你现在是|假装你是|扮演"),
    re.compile(r"system\s*prompt", re.I),
    re.compile(r"\[INST\]|\[/INST\]", re.I),
    re.compile(r"<\|im_start\|>|<\|im_end\|>", re.I),
    re.compile(r"jailbreak", re.I),
    re.compile(r"DAN\s*mode", re.I),
    re.compile(r"developer\s*mode", re.I),
]

SENSITIVE_WORDS: list[str] = [
    "杀人",
    "自杀",
    "炸弹",
    "枪支",
    "色情",
    "裸体",
    "刷单",
    "兼职赚钱",
    "高额回报",
]

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_LONG_WHITESPACE = re.compile(r"\s{10,}")
_TEMPLATE_TOKENS = re.compile(r"<\|[^|]+\|>|\[INST\]|\[/INST\]", re.I)


@dataclass
class GuardResult:
    """Outcome of a guard check."""

    blocked: bool
    reason: Optional[str] = None
    triggered_rules: list[str] = field(default_factory=list)
    refusal: Optional[str] = None
    trigger_word: Optional[str] = None

    @property
    def passed(self) -> bool:
        return not self.blocked


def sanitize_input(text: str) -> str:
    """Strip control characters and chat-template tokens, collapse long whitespace."""
    text = _CONTROL_CHARS.sub("", text)
    text = _LONG_WHITESPACE.sub(" ", text)
    text = _TEMPLATE_TOKENS.sub("", text)
    return text.strip()


def check_input(
    text: str,
    max_length: Optional[int] = None,
    extra_sensitive_words: Optional[list[str]] = None,
) -> GuardResult:
    """
    Check a user message.

    Args:
        text: Raw user input
        max_length: Character cap (defaults to settings)
        extra_sensitive_words: Added to the built-in list

    Returns:
        GuardResult; ``refusal`` is set whenever ``blocked`` is
    """
    max_length = max_length if max_length is not None else settings.max_input_length
    if len(text) > max_length:
        return GuardResult(
            blocked=True,
            reason="max_length",
            triggered_rules=["max_length"],
            refusal=TOO_LONG_REFUSAL,
        )

    rules: list[str] = []
    trigger: Optional[str] = None

    for pattern in INJECTION_PATTERNS:
        match = pattern.search(text)
        if match:
            rules.append("injection_detected")
            trigger = match.group(0)
            break

    words = SENSITIVE_WORDS + list(settings.sensitive_words) + (extra_sensitive_words or [])
    for word in words:
        if word and word in text:
            rules.append("sensitive_word")
            trigger = word
            break

    if not rules:
        return GuardResult(blocked=False)

    return GuardResult(
        blocked=True,
        reason=rules[0],
        triggered_rules=rules,
        refusal=REFUSAL,
        trigger_word=trigger,
    )


def record_block(
    session: Session,
    result: GuardResult,
    text: str,
    user_id: Optional[uuid.UUID] = None,
    event_type: str = "input_blocked",
) -> None:
    """Persist a security event for a blocked message. Failures are logged."""
    try:
        SecurityEventRepository(session).record(
            event_type=event_type,
            reason=result.reason or "blocked",
            user_id=user_id,
            content=text,
            extra_data={
                "triggered_rules": result.triggered_rules,
                "trigger_word": result.trigger_word,
                "length": len(text),
            },
        )
    except Exception as e:
        logger.error(f"Failed to record security event: {e}")
    logger.warning(
        f"Guardrail {event_type} for user {user_id}: {result.triggered_rules}"
    )
