"""
Preference extraction from conversation turns.

The model path asks for explicit preferences only; when no provider is
configured or the call fails, a small rule table picks up the most common
phrasings instead.
"""

import logging
import re
from typing import Optional

from juchang_ai.llm.base import LLMProvider
from juchang_ai.models.runtime import ChatTurn, ExtractedPreferences, Preference
from juchang_ai.utils.geo import KNOWN_AREAS
from juchang_ai.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

MIN_TEXT_LENGTH = 10
MAX_RULE_PREFERENCES = 5
MAX_RULE_LOCATIONS = 3

CATEGORIES = ("activity_type", "time", "location", "food", "social")
SENTIMENTS = ("like", "dislike")

EXTRACT_SYSTEM_PROMPT = """从用户的对话中提取明确表达的偏好。

规则：
1. 只提取用户明确表达的偏好，不要推测
2. "不吃辣"、"不喜欢"、"讨厌" 是 dislike
3. "喜欢"、"想吃"、"爱"、"想玩" 是 like
4. confidence：非常明确 0.9-1.0，比较明确 0.7-0.9，隐含 0.5-0.7
5. 提取用户提到的重庆地点（如观音桥、解放碑、南坪）
6. 没有偏好时返回空数组

只返回 JSON：{"preferences": [{"category": "...", "value": "...",
"sentiment": "like|dislike", "confidence": 0.0-1.0}], "frequentLocations": []}"""

EXTRACT_SCHEMA = {
    "type": "object",
    "properties": {
        "preferences": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "category": {"type": "string", "enum": list(CATEGORIES)},
                    "value": {"type": "string"},
                    "sentiment": {"type": "string", "enum": list(SENTIMENTS)},
                    "confidence": {"type": "number"},
                },
                "required": ["category", "value", "sentiment", "confidence"],
            },
        },
        "frequentLocations": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["preferences", "frequentLocations"],
}

_VALUE = r"([^，。！？,.!?\s、]{1,%d})"

# Dislikes are checked first; "不喜欢X" must not also count as liking X.
DISLIKE_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile("不吃" + _VALUE % 6), "food"),
    (re.compile("不喜欢" + _VALUE % 10), "activity_type"),
    (re.compile("讨厌" + _VALUE % 6), "activity_type"),
]
LIKE_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile("(?<!不)喜欢" + _VALUE % 10), "activity_type"),
    (re.compile("想吃" + _VALUE % 10), "food"),
    (re.compile("想玩" + _VALUE % 10), "activity_type"),
    (re.compile("(?<![不可])爱" + _VALUE % 6), "activity_type"),
]
DISLIKE_CONFIDENCE = 0.7
LIKE_CONFIDENCE = 0.6


class PreferenceExtractor:
    """Turns recent user turns into preference candidates."""

    def __init__(self, provider: Optional[LLMProvider] = None):
        self.provider = provider

    def extract(self, turns: list[ChatTurn]) -> ExtractedPreferences:
        """
        Extract preferences from the user side of a conversation.

        Returns:
            Possibly empty result; never raises
        """
        text = "\n".join(t.content for t in turns if t.role == "user").strip()
        if len(text) < MIN_TEXT_LENGTH:
            return ExtractedPreferences()

        if self.provider is not None:
            try:
                return self._extract_with_model(text)
            except Exception as e:
                logger.warning(f"Model preference extraction failed, using rules: {e}")

        return extract_with_rules(text)

    def _extract_with_model(self, text: str) -> ExtractedPreferences:
        data = self.provider.generate_structured(
            system_prompt=EXTRACT_SYSTEM_PROMPT,
            user_prompt=f"用户对话：\n{text}",
            json_schema=EXTRACT_SCHEMA,
            max_tokens=500,
            temperature=0.0,
        )
        now = utcnow()
        preferences = []
        for item in data.get("preferences") or []:
            if not isinstance(item, dict):
                continue
            category = item.get("category")
            sentiment = item.get("sentiment")
            value = str(item.get("value") or "").strip()
            if category not in CATEGORIES or sentiment not in SENTIMENTS or not value:
                continue
            try:
                confidence = float(item.get("confidence", 0.5))
            except (TypeError, ValueError):
                confidence = 0.5
            preferences.append(
                Preference(
                    category=category,
                    value=value,
                    sentiment=sentiment,
                    confidence=min(1.0, max(0.0, confidence)),
                    updated_at=now,
                )
            )

        locations = [
            str(loc).strip()
            for loc in data.get("frequentLocations") or []
            if str(loc).strip()
        ]
        return ExtractedPreferences(
            preferences=preferences,
            frequent_locations=list(dict.fromkeys(locations)),
        )


def extract_with_rules(text: str) -> ExtractedPreferences:
    """Keyword fallback: de-duplicated by value, small caps on both lists."""
    now = utcnow()
    found: dict[str, Preference] = {}

    for rules, sentiment, confidence in (
        (DISLIKE_RULES, "dislike", DISLIKE_CONFIDENCE),
        (LIKE_RULES, "like", LIKE_CONFIDENCE),
    ):
        for pattern, category in rules:
            for match in pattern.finditer(text):
                value = match.group(1)
                if value in found:
                    continue
                found[value] = Preference(
                    category=category,
                    value=value,
                    sentiment=sentiment,
                    confidence=confidence,
                    updated_at=now,
                )

    locations = [name for name in KNOWN_AREAS if name in text]
    return ExtractedPreferences(
        preferences=list(found.values())[:MAX_RULE_PREFERENCES],
        frequent_locations=locations[:MAX_RULE_LOCATIONS],
    )
