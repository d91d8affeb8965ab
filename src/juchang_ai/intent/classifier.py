"""Rule-first intent classifier with a model fallback."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from juchang_ai.intent.definitions import (
    CATEGORY_ORDER,
    DRAFT_MODIFY_RULES,
    DRAFT_RULE_CONFIDENCE,
    FALLBACK_CONFIDENCE,
    INTENT_RULES,
    MODEL_LABELS,
    RULE_CONFIDENCE,
)
from juchang_ai.llm.base import LLMProvider, parse_json_object
from juchang_ai.models.runtime import (
    ChatTurn,
    ClassifyMethod,
    ClassifyResult,
    IntentType,
)

logger = logging.getLogger(__name__)

CLASSIFY_SYSTEM_PROMPT = """你是一个意图分类器。根据对话历史，判断用户当前的意图。

意图类型：
- create: 用户想自己创建/组织/发布活动（如"帮我组一个"、"我来组"、"发布活动"）
- explore: 用户想找活动、探索附近、询问推荐，或只表达想做某事（如"想找人一起"、"附近有什么"、"想吃火锅"）
- partner: 用户想找搭子、等别人组局（如"找搭子"、"谁组我就去"、"等人约"）
- manage: 用户想查看或管理自己的活动（如"我的活动"、"取消活动"）
- chitchat: 与组局无关的闲聊（如"你是谁"、"讲个笑话"）
- idle: 礼貌回复或告别，暂无需求（如"谢谢"、"拜拜"）
- cancel: 放弃当前操作（如"算了"、"不找了"）

只返回 JSON：{"intent": "意图类型", "confidence": 0.0-1.0}"""

CLASSIFY_SCHEMA = {
    "type": "object",
    "properties": {
        "intent": {"type": "string", "enum": [label.value for label in MODEL_LABELS]},
        "confidence": {"type": "number"},
    },
    "required": ["intent", "confidence"],
}


@dataclass
class ClassifyContext:
    """What the classifier may know beyond the message itself."""

    has_draft: bool = False
    history: list[ChatTurn] = field(default_factory=list)


def classify_by_rules(message: str) -> Optional[ClassifyResult]:
    """
    Walk the rule table in category order.

    Returns:
        The first match, or None when no rule applies
    """
    text = message.strip().lower()
    for category in CATEGORY_ORDER:
        for rule in INTENT_RULES[category]:
            if rule.pattern.search(text):
                return ClassifyResult(
                    intent=rule.intent,
                    confidence=RULE_CONFIDENCE,
                    method=ClassifyMethod.RULE,
                    matched_rule=rule.rule_id,
                )
    return None


def classify_draft_modification(message: str) -> Optional[ClassifyResult]:
    """Narrow rule set used only while a draft is open."""
    text = message.strip().lower()
    for rule in DRAFT_MODIFY_RULES:
        if rule.pattern.search(text):
            return ClassifyResult(
                intent=rule.intent,
                confidence=DRAFT_RULE_CONFIDENCE,
                method=ClassifyMethod.RULE,
                matched_rule=rule.rule_id,
            )
    return None


def classify_rules_only(message: str, has_draft: bool = False) -> ClassifyResult:
    """
    Synchronous fast path that never calls the model.

    Unmatched input comes back as ``unknown`` with zero confidence.
    """
    result = classify_by_rules(message)
    if result is None and has_draft:
        result = classify_draft_modification(message)
    if result is None:
        result = ClassifyResult(
            intent=IntentType.UNKNOWN,
            confidence=0.0,
            method=ClassifyMethod.RULE,
        )
    return result


class IntentClassifier:
    """Classifies user messages: rule tables first, then the model."""

    def __init__(self, provider: Optional[LLMProvider] = None, history_turns: int = 6):
        self.provider = provider
        self.history_turns = history_turns

    def classify(self, message: str, context: Optional[ClassifyContext] = None) -> ClassifyResult:
        """
        Classify a message.

        Never raises: any model failure degrades to ``explore`` at
        confidence 0.5.
        """
        context = context or ClassifyContext()

        result = classify_by_rules(message)
        if result is not None:
            logger.debug(f"Intent rule match: {result.intent.value} ({result.matched_rule})")
            return result

        if context.has_draft:
            result = classify_draft_modification(message)
            if result is not None:
                logger.debug(f"Intent draft match: {result.matched_rule}")
                return result

        return self._classify_with_model(message, context)

    def _classify_with_model(self, message: str, context: ClassifyContext) -> ClassifyResult:
        fallback = ClassifyResult(
            intent=IntentType.EXPLORE,
            confidence=FALLBACK_CONFIDENCE,
            method=ClassifyMethod.MODEL,
        )
        if self.provider is None:
            return fallback

        recent = context.history[-self.history_turns:]
        lines = [
            f"{'用户' if turn.role == 'user' else 'AI'}: {turn.content}" for turn in recent
        ]
        if not recent or recent[-1].content != message:
            lines.append(f"用户: {message}")
        draft_hint = "（当前有活动草稿待确认）\n" if context.has_draft else ""
        user_prompt = f"{draft_hint}对话历史：\n" + "\n".join(lines)

        try:
            data = self.provider.generate_structured(
                system_prompt=CLASSIFY_SYSTEM_PROMPT,
                user_prompt=user_prompt,
                json_schema=CLASSIFY_SCHEMA,
                max_tokens=50,
                temperature=0.0,
            )
        except Exception as e:
            logger.warning(f"Model intent classification failed: {e}")
            return fallback

        try:
            intent = IntentType(str(data.get("intent", "")).strip().lower())
        except ValueError:
            logger.warning(f"Model returned unknown intent label: {data.get('intent')!r}")
            return fallback
        if intent not in MODEL_LABELS:
            return fallback

        try:
            confidence = float(data.get("confidence", 0.7))
        except (TypeError, ValueError):
            confidence = 0.7
        confidence = min(1.0, max(0.0, confidence))

        logger.debug(f"Intent model result: {intent.value} ({confidence:.2f})")
        return ClassifyResult(intent=intent, confidence=confidence, method=ClassifyMethod.MODEL)
