"""Intent classification and tool/agent routing."""

from juchang_ai.intent.classifier import (
    ClassifyContext,
    IntentClassifier,
    classify_rules_only,
)
from juchang_ai.intent.router import route, select_tools

__all__ = [
    "ClassifyContext",
    "IntentClassifier",
    "classify_rules_only",
    "route",
    "select_tools",
]
