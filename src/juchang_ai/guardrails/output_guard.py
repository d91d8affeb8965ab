"""Output guardrails: PII masking and harmful-content blocking."""

import re
from typing import Optional

from juchang_ai.config import settings
from juchang_ai.guardrails.input_guard import SENSITIVE_WORDS, GuardResult

OUTPUT_REFUSAL = "抱歉，我无法回答这个问题。"
MAX_OUTPUT_LENGTH = 4000

# ID cards before phones so an 18-digit number is not partly read as a phone.
PII_PATTERNS: list[tuple[str, re.Pattern, str]] = [
    ("id_card", re.compile(r"(?<!\d)\d{17}[\dXx](?!\d)"), "[身份证号]"),
    ("phone", re.compile(r"(?<!\d)1[3-9]\d{9}(?!\d)"), "[手机号]"),
    ("email", re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), "[邮箱]"),
]

HARMFUL_PATTERNS: list[re.Pattern] = [
    re.compile(r"傻[逼B]|智障|脑残"),
    re.compile(r"去死|弄死你|打死"),
    re.compile(r"教你.*骗|如何.*诈骗"),
]


def check_output(text: str) -> GuardResult:
    """Block harmful or sensitive model output."""
    for pattern in HARMFUL_PATTERNS:
        if pattern.search(text):
            return GuardResult(
                blocked=True,
                reason="harmful_content",
                triggered_rules=["harmful_content"],
                refusal=OUTPUT_REFUSAL,
            )
    for word in SENSITIVE_WORDS + list(settings.sensitive_words):
        if word and word in text:
            return GuardResult(
                blocked=True,
                reason="sensitive_word",
                triggered_rules=["sensitive_word"],
                refusal=OUTPUT_REFUSAL,
                trigger_word=word,
            )
    return GuardResult(blocked=False)


def mask_pii(text: str) -> str:
    """Replace phone numbers, ID-card numbers and emails with placeholders."""
    for _, pattern, replacement in PII_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_output(text: str, max_length: Optional[int] = None) -> str:
    """Mask PII and truncate overly long output."""
    limit = max_length or MAX_OUTPUT_LENGTH
    text = mask_pii(text)
    if len(text) > limit:
        text = text[:limit] + "..."
    return text
