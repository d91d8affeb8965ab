"""Conversation memory: threads and messages, working profiles, extraction, recall."""

from juchang_ai.memory.extractor import PreferenceExtractor, extract_with_rules
from juchang_ai.memory.recall import RecalledMessage, recall
from juchang_ai.memory.store import MemoryStore, to_history_item
from juchang_ai.memory.working import (
    WorkingMemory,
    build_profile_prompt,
    merge_locations,
    merge_preferences,
)

__all__ = [
    "MemoryStore",
    "PreferenceExtractor",
    "RecalledMessage",
    "WorkingMemory",
    "build_profile_prompt",
    "extract_with_rules",
    "merge_locations",
    "merge_preferences",
    "recall",
    "to_history_item",
]
