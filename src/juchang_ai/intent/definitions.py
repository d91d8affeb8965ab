"""
Intent rule tables.

Categories are checked in ``CATEGORY_ORDER``; within a category the rules
are checked top to bottom. The first match wins, so adding a behaviour
means adding a row here rather than new classifier code.
"""

import random
import re
from dataclasses import dataclass

from juchang_ai.models.runtime import IntentType

RULE_CONFIDENCE = 0.9
DRAFT_RULE_CONFIDENCE = 0.85
FALLBACK_CONFIDENCE = 0.5


@dataclass(frozen=True)
class IntentRule:
    """A single pattern mapping to an intent."""

    rule_id: str
    intent: IntentType
    pattern: re.Pattern


def _rule(rule_id: str, intent: IntentType, pattern: str) -> IntentRule:
    return IntentRule(rule_id=rule_id, intent=intent, pattern=re.compile(pattern))


# Disengagement comes first so "好的谢谢，改天再组" is never read as a new request.
CATEGORY_ORDER: list[IntentType] = [
    IntentType.IDLE,
    IntentType.CANCEL,
    IntentType.CHITCHAT,
    IntentType.MANAGE,
    IntentType.PARTNER,
    IntentType.CREATE,
    IntentType.EXPLORE,
]

INTENT_RULES: dict[IntentType, list[IntentRule]] = {
    IntentType.IDLE: [
        _rule("idle.farewell", IntentType.IDLE, r"拜拜|再见|(?<!\d)88(?!\d)|bye"),
        _rule("idle.thanks", IntentType.IDLE, r"好的.*谢|谢谢.*不|先这样|改天|下次再"),
    ],
    IntentType.CANCEL: [
        _rule("cancel.never_mind", IntentType.CANCEL, r"算了|不用了|不找了|不要了|不约了"),
        _rule("cancel.explicit", IntentType.CANCEL, r"^取消[吧了]?$"),
    ],
    IntentType.CHITCHAT: [
        _rule("chitchat.identity", IntentType.CHITCHAT, r"你是谁|你叫什么|你几岁"),
        _rule("chitchat.smalltalk", IntentType.CHITCHAT, r"讲个笑话|今天天气|天气怎么样"),
        _rule("chitchat.reaction", IntentType.CHITCHAT, r"你好厉害|你真棒|哈哈|嘿嘿|呵呵"),
        _rule("chitchat.company", IntentType.CHITCHAT, r"无聊|聊聊天|陪我聊|说说话"),
    ],
    IntentType.MANAGE: [
        _rule("manage.mine", IntentType.MANAGE, r"我的活动|我发布的|我参与的|我报名的"),
        _rule("manage.history", IntentType.MANAGE, r"历史活动|发过哪些"),
        _rule("manage.cancel_activity", IntentType.MANAGE, r"取消活动|取消报名|不办了"),
    ],
    IntentType.PARTNER: [
        _rule("partner.find_buddy", IntentType.PARTNER, r"找搭子|谁组我就去|懒得组局|等人约"),
        _rule("partner.my_intents", IntentType.PARTNER, r"我的意向|我的搭子|取消意向"),
        _rule("partner.confirm_match", IntentType.PARTNER, r"确认匹配|确认成局"),
    ],
    IntentType.CREATE: [
        _rule(
            "create.organize",
            IntentType.CREATE,
            r"帮我组|帮我创建|自己组|我来组|我要组|我想组|组个|组一个|发起",
        ),
        _rule("create.publish", IntentType.CREATE, r"发布活动|创建活动|发个活动"),
    ],
    IntentType.EXPLORE: [
        _rule("explore.want_find", IntentType.EXPLORE, r"想找|找人|一起|有什么|附近|推荐|看看"),
        # "想吃火锅" and friends: a wish to do something is discovery, not organizing
        _rule("explore.want_verb", IntentType.EXPLORE, r"想.{0,4}(吃|打|玩|喝|唱|看|去)"),
        _rule("explore.catch_all", IntentType.EXPLORE, r"想|约"),
    ],
}

# Only consulted when nothing above matched and a draft is open.
DRAFT_MODIFY_RULES: list[IntentRule] = [
    _rule("draft.modify", IntentType.CREATE, r"改|换|加|减|调"),
    _rule("draft.confirm", IntentType.CREATE, r"发布|没问题|就这样|确认"),
]

# Labels the model fallback may return
MODEL_LABELS: list[IntentType] = [
    IntentType.CREATE,
    IntentType.EXPLORE,
    IntentType.MANAGE,
    IntentType.PARTNER,
    IntentType.CHITCHAT,
    IntentType.IDLE,
    IntentType.CANCEL,
]

INTENT_DISPLAY_NAMES: dict[IntentType, str] = {
    IntentType.CREATE: "创建活动",
    IntentType.EXPLORE: "探索附近",
    IntentType.MANAGE: "管理活动",
    IntentType.PARTNER: "找搭子",
    IntentType.CHITCHAT: "闲聊",
    IntentType.IDLE: "暂停",
    IntentType.CANCEL: "取消",
    IntentType.UNKNOWN: "未知",
}

CHITCHAT_RESPONSES: list[str] = [
    "哈哈，我只会帮你组局约人，闲聊就不太行了～想约点什么？",
    "聊天我不太擅长，但组局我很在行！想找人一起玩点什么？",
    "我是组局小助手，帮你约人才是我的强项～有什么想玩的吗？",
    "这个我不太懂，但如果你想约人吃饭、打球、桌游，随时找我！",
]

IDLE_RESPONSE = "好的，有需要随时找我～"


def random_chitchat_response() -> str:
    """Pick one of the canned chit-chat replies."""
    return random.choice(CHITCHAT_RESPONSES)
