"""
Referent-resolution enricher.

Replaces demonstratives with the most recent activity title or location
name from history, when the surrounding words say which one is meant.
Unresolvable pronouns are left alone.
"""

import re
from typing import Optional

from juchang_ai.models.runtime import EnricherOutput, EnrichmentContext, HistoryItem

PRONOUNS = [
    "上次那个",
    "刚才那个",
    "那个",
    "这个",
    "它",
    "那边",
    "那里",
    "那儿",
    "这边",
    "这里",
    "这儿",
]

ACTIVITY_CONTEXT_KEYWORDS = ["活动", "局", "报名", "参加", "加入", "取消", "改", "换"]
LOCATION_CONTEXT_KEYWORDS = ["去", "到", "在", "地方", "位置", "那边", "那里"]

_QUOTED_TITLE_RE = re.compile(r"「(.+?)」")


def find_recent_activity(history: list[HistoryItem]) -> Optional[str]:
    """Newest activity title, from explicit metadata or a 「quoted」 title."""
    for item in reversed(history):
        if item.activity_title:
            return item.activity_title
        match = _QUOTED_TITLE_RE.search(item.text or "")
        if match:
            return match.group(1)
    return None


def find_recent_location(history: list[HistoryItem]) -> Optional[str]:
    for item in reversed(history):
        if item.location_name:
            return item.location_name
    return None


def resolve_pronouns(text: str, context: EnrichmentContext) -> EnricherOutput:
    present = [p for p in PRONOUNS if p in text]
    if not present:
        return EnricherOutput(text=text)

    activity = find_recent_activity(context.history)
    location = find_recent_location(context.history)
    activity_context = any(k in text for k in ACTIVITY_CONTEXT_KEYWORDS)
    location_context = any(k in text for k in LOCATION_CONTEXT_KEYWORDS)

    result = text
    applied: list[str] = []
    for pronoun in present:
        # A longer pronoun ("上次那个") may already have consumed this one
        if pronoun not in result:
            continue
        if activity and activity_context:
            result = result.replace(pronoun, f"「{activity}」")
            if "pronoun_activity" not in applied:
                applied.append("pronoun_activity")
        elif location and location_context:
            result = result.replace(pronoun, location)
            if "pronoun_location" not in applied:
                applied.append("pronoun_location")

    return EnricherOutput(text=result, applied=applied)
