"""
Broker negotiation flow.

States::

    idle -> clarifying -> intent_recorded -> matched -> confirmed | expired
                 \\               \\              \\
                  +---------------+--------------+--> cancelled

A partner request never records an intent straight away: the first turn
asks one structured round of questions (activity, time, place, budget).
Values stated by the user in the current conversation always win; the
working profile only pre-selects default options in those questions.

The flow state is persisted as a ``broker_state`` message in the thread,
so it survives reloads, and lapses after ``broker_state_ttl_minutes``.
"""

import enum
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from juchang_ai.broker.partner import TYPE_NAMES, PartnerService
from juchang_ai.config import settings
from juchang_ai.db.repositories import MessageRepository
from juchang_ai.exceptions import BrokerStateError, ToolError
from juchang_ai.memory.store import MemoryStore
from juchang_ai.models.db import MessageRole
from juchang_ai.models.runtime import (
    ClassifyMethod,
    ClassifyResult,
    GeoLocation,
    IntentType,
    ProfileData,
    RuntimeContext,
)
from juchang_ai.utils.geo import KNOWN_AREAS, POPULAR_AREAS
from juchang_ai.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

STATE_MESSAGE_TYPE = "broker_state"
BROKER_RULES = {"partner.find_buddy"}
CANCEL_WORDS = ["算了", "不找了", "取消", "不要了", "换个"]


class BrokerStatus(str, enum.Enum):
    IDLE = "idle"
    CLARIFYING = "clarifying"
    INTENT_RECORDED = "intent_recorded"
    MATCHED = "matched"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TRANSITIONS: dict[BrokerStatus, set[BrokerStatus]] = {
    BrokerStatus.IDLE: {BrokerStatus.CLARIFYING, BrokerStatus.CANCELLED},
    BrokerStatus.CLARIFYING: {
        BrokerStatus.CLARIFYING,
        BrokerStatus.INTENT_RECORDED,
        BrokerStatus.CANCELLED,
    },
    BrokerStatus.INTENT_RECORDED: {
        BrokerStatus.MATCHED,
        BrokerStatus.EXPIRED,
        BrokerStatus.CANCELLED,
    },
    BrokerStatus.MATCHED: {
        BrokerStatus.CONFIRMED,
        BrokerStatus.EXPIRED,
        BrokerStatus.CANCELLED,
    },
    BrokerStatus.CONFIRMED: set(),
    BrokerStatus.EXPIRED: set(),
    BrokerStatus.CANCELLED: set(),
}


@dataclass(frozen=True)
class Option:
    label: str
    value: str


@dataclass(frozen=True)
class Question:
    field: str
    question: str
    options: tuple[Option, ...]


QUESTIONS: dict[str, Question] = {
    "activity_type": Question(
        "activity_type",
        "想玩点什么呢？🎯",
        (
            Option("🍲 吃饭", "food"),
            Option("🎮 娱乐", "entertainment"),
            Option("⚽ 运动", "sports"),
            Option("🎲 桌游", "boardgame"),
            Option("☕ 喝咖啡", "coffee"),
        ),
    ),
    "time_range": Question(
        "time_range",
        "什么时候方便？⏰",
        (
            Option("今晚", "tonight"),
            Option("明天", "tomorrow"),
            Option("周末", "weekend"),
            Option("下周", "next_week"),
        ),
    ),
    "location": Question(
        "location",
        "想在哪儿玩？🗺️",
        tuple(Option(name, name) for name in POPULAR_AREAS),
    ),
    "budget": Question(
        "budget",
        "怎么买单？💰",
        (Option("AA", "AA"), Option("我请客", "Treat")),
    ),
}
QUESTION_ORDER = ["activity_type", "time_range", "location", "budget"]

TIME_LABELS = {o.value: o.label for o in QUESTIONS["time_range"].options}

# Generic single characters last so "桌游" is not read as "游"-anything.
ACTIVITY_KEYWORDS: list[tuple[str, str]] = [
    ("火锅", "food"),
    ("烧烤", "food"),
    ("吃饭", "food"),
    ("咖啡", "coffee"),
    ("桌游", "boardgame"),
    ("狼人杀", "boardgame"),
    ("剧本杀", "boardgame"),
    ("羽毛球", "sports"),
    ("篮球", "sports"),
    ("打球", "sports"),
    ("运动", "sports"),
    ("唱歌", "entertainment"),
    ("ktv", "entertainment"),
    ("游戏", "entertainment"),
    ("饭", "food"),
    ("吃", "food"),
    ("玩", "entertainment"),
]
TIME_KEYWORDS: list[tuple[str, str]] = [
    ("今晚", "tonight"),
    ("今天", "tonight"),
    ("明晚", "tomorrow"),
    ("明天", "tomorrow"),
    ("周末", "weekend"),
    ("周六", "weekend"),
    ("周日", "weekend"),
    ("下周", "next_week"),
    ("晚上", "tonight"),
]
BUDGET_KEYWORDS: list[tuple[str, str]] = [
    ("aa", "AA"),
    ("请客", "Treat"),
    ("我请", "Treat"),
]
TAG_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"不喝酒|不要酒"), "NoAlcohol"),
    (re.compile(r"(?<!不)喝酒|喝两杯"), "Drinking"),
    (re.compile(r"安静"), "Quiet"),
    (re.compile(r"热闹|嗨"), "Party"),
    (re.compile(r"只要女生|女生局"), "GirlOnly"),
    (re.compile(r"只要男生|男生局"), "BoyOnly"),
]


def _match_keywords(text: str, table: list[tuple[str, str]]) -> Optional[str]:
    for keyword, value in table:
        if keyword in text:
            return value
    return None


def parse_field(text: str, field_name: str) -> Optional[str]:
    """Parse one field from free text or a selected option."""
    lowered = text.lower()
    question = QUESTIONS[field_name]
    for option in question.options:
        if option.value.lower() in lowered or option.label.lower() in lowered:
            return option.value

    if field_name == "activity_type":
        return _match_keywords(lowered, ACTIVITY_KEYWORDS)
    if field_name == "time_range":
        return _match_keywords(lowered, TIME_KEYWORDS)
    if field_name == "location":
        return next((name for name in KNOWN_AREAS if name in text), None)
    if field_name == "budget":
        return _match_keywords(lowered, BUDGET_KEYWORDS)
    return None


def parse_user_answer(text: str, fields: list[str]) -> dict[str, str]:
    """Every listed field the text answers."""
    answers = {}
    for name in fields:
        value = parse_field(text, name)
        if value:
            answers[name] = value
    return answers


def extract_tags(text: str) -> list[str]:
    return [tag for pattern, tag in TAG_PATTERNS if pattern.search(text)]


def is_topic_switch(text: str) -> bool:
    return any(word in text for word in CANCEL_WORDS)


def profile_defaults(profile: ProfileData) -> dict[str, str]:
    """Option values to pre-select, from the user's stored likes."""
    defaults: dict[str, str] = {}
    for pref in profile.preferences:
        if pref.sentiment != "like":
            continue
        if pref.category in ("activity_type", "food") and "activity_type" not in defaults:
            value = parse_field(pref.value, "activity_type")
            if value:
                defaults["activity_type"] = value
        elif pref.category == "time" and "time_range" not in defaults:
            value = parse_field(pref.value, "time_range")
            if value:
                defaults["time_range"] = value
    for name in profile.frequent_locations:
        if name in KNOWN_AREAS:
            defaults.setdefault("location", name)
            break
    return defaults


@dataclass
class BrokerState:
    """Snapshot of one negotiation, as stored in the thread."""

    flow_id: str
    status: BrokerStatus
    collected: dict[str, str] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    defaults: dict[str, str] = field(default_factory=dict)
    raw_input: str = ""
    round: int = 0
    reasks: int = 0
    intent_id: Optional[str] = None
    match_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def transition(self, target: BrokerStatus, now: Optional[datetime] = None) -> None:
        if target not in TRANSITIONS[self.status]:
            raise BrokerStateError(self.status.value, target.value)
        self.status = target
        self.updated_at = now or utcnow()

    def to_dict(self) -> dict:
        return {
            "flowId": self.flow_id,
            "status": self.status.value,
            "collected": dict(self.collected),
            "tags": list(self.tags),
            "pending": list(self.pending),
            "defaults": dict(self.defaults),
            "rawInput": self.raw_input,
            "round": self.round,
            "reasks": self.reasks,
            "intentId": self.intent_id,
            "matchId": self.match_id,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BrokerState":
        return cls(
            flow_id=data["flowId"],
            status=BrokerStatus(data["status"]),
            collected=dict(data.get("collected") or {}),
            tags=list(data.get("tags") or []),
            pending=list(data.get("pending") or []),
            defaults=dict(data.get("defaults") or {}),
            raw_input=data.get("rawInput", ""),
            round=int(data.get("round", 0)),
            reasks=int(data.get("reasks", 0)),
            intent_id=data.get("intentId"),
            match_id=data.get("matchId"),
            created_at=as_utc(datetime.fromisoformat(data["createdAt"])),
            updated_at=as_utc(datetime.fromisoformat(data["updatedAt"])),
        )


@dataclass
class BrokerTurn:
    """What the flow says back for one user message."""

    text: str
    state: Optional[BrokerState]
    message_type: str = "text"
    widget: Optional[dict] = None


def build_questions(state: BrokerState) -> list[dict]:
    questions = []
    for name in state.pending:
        question = QUESTIONS[name]
        default = state.defaults.get(name)
        questions.append(
            {
                "field": name,
                "question": question.question,
                "options": [
                    {"label": o.label, "value": o.value, "default": o.value == default}
                    for o in question.options
                ],
            }
        )
    return questions


class BrokerFlow:
    """Drives the clarify-then-record negotiation for one thread."""

    def __init__(
        self,
        session: Session,
        store: Optional[MemoryStore] = None,
        partners: Optional[PartnerService] = None,
        ttl_minutes: Optional[int] = None,
    ):
        self.session = session
        self.store = store or MemoryStore(session)
        self.partners = partners or PartnerService(session)
        self.messages = MessageRepository(session)
        self.ttl = timedelta(
            minutes=ttl_minutes if ttl_minutes is not None else settings.broker_state_ttl_minutes
        )

    def load_state(
        self, thread_id: uuid.UUID, now: Optional[datetime] = None
    ) -> Optional[BrokerState]:
        """Latest unexpired state of the thread, or None."""
        row = self.messages.get_last_of_type(
            thread_id, STATE_MESSAGE_TYPE, role=MessageRole.ASSISTANT
        )
        if row is None:
            return None
        try:
            state = BrokerState.from_dict(row.content["state"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable broker state in thread {thread_id}: {e}")
            return None

        if (now or utcnow()) - state.updated_at > self.ttl:
            logger.debug(f"Broker flow {state.flow_id} lapsed")
            return None
        return state

    def save_state(
        self, thread_id: uuid.UUID, user_id: uuid.UUID, state: BrokerState
    ) -> None:
        self.store.save_message(
            thread_id=thread_id,
            user_id=user_id,
            role=MessageRole.ASSISTANT,
            content={"type": STATE_MESSAGE_TYPE, "state": state.to_dict()},
            message_type=STATE_MESSAGE_TYPE,
            now=state.updated_at,
        )

    def handle(
        self, message: str, classification: ClassifyResult, ctx: RuntimeContext
    ) -> Optional[BrokerTurn]:
        """
        Route a message through the flow.

        Returns:
            The flow's reply, or None when the message is not the flow's
            business and normal handling should continue
        """
        now = ctx.now or utcnow()
        state = None
        if ctx.thread_id is not None:
            state = self.load_state(ctx.thread_id, now)

        if state is not None and state.status == BrokerStatus.CLARIFYING:
            return self._continue(message, classification, state, ctx, now)

        if (
            state is not None
            and state.status in (BrokerStatus.INTENT_RECORDED, BrokerStatus.MATCHED)
            and classification.intent == IntentType.CANCEL
        ):
            return self._cancel_recorded(state, ctx, now)

        if self.should_start(classification):
            return self.start(message, ctx, now)
        return None

    @staticmethod
    def should_start(classification: ClassifyResult) -> bool:
        if classification.intent != IntentType.PARTNER:
            return False
        return (
            classification.method == ClassifyMethod.MODEL
            or classification.matched_rule in BROKER_RULES
        )

    def start(
        self, message: str, ctx: RuntimeContext, now: Optional[datetime] = None
    ) -> BrokerTurn:
        """Open a negotiation and ask the clarification round."""
        now = now or ctx.now or utcnow()
        if ctx.user_id is None or ctx.thread_id is None:
            return BrokerTurn(
                text="登录后才能帮你找搭子哦～",
                state=None,
                message_type="widget_action",
                widget={"action": "login"},
            )

        state = BrokerState(
            flow_id=str(uuid.uuid4()),
            status=BrokerStatus.IDLE,
            raw_input=message,
            created_at=now,
            updated_at=now,
        )
        # Stated now beats anything remembered
        state.collected = parse_user_answer(message, QUESTION_ORDER)
        state.tags = extract_tags(message)
        state.defaults = {
            k: v
            for k, v in profile_defaults(ctx.profile).items()
            if k not in state.collected
        }
        state.pending = [
            name
            for name in QUESTION_ORDER
            if name not in state.collected
            and not (name == "location" and ctx.location is not None)
        ]
        if not state.pending:
            # Everything was stated up front; still confirm time and budget once.
            state.pending = ["time_range", "budget"]
        state.transition(BrokerStatus.CLARIFYING, now)
        self.save_state(ctx.thread_id, ctx.user_id, state)
        logger.info(f"Broker flow {state.flow_id} started for {ctx.user_id}")

        lines = ["好的，帮你找搭子！先确认几个小问题："]
        lines.extend(f"{i}. {QUESTIONS[n].question}" for i, n in enumerate(state.pending, 1))
        return BrokerTurn(
            text="\n".join(lines),
            state=state,
            message_type="widget_broker",
            widget={
                "flowId": state.flow_id,
                "questions": build_questions(state),
                "collected": dict(state.collected),
            },
        )

    def _continue(
        self,
        message: str,
        classification: ClassifyResult,
        state: BrokerState,
        ctx: RuntimeContext,
        now: datetime,
    ) -> Optional[BrokerTurn]:
        if is_topic_switch(message):
            return self._cancel(state, ctx, now, "好的，不找了～有需要随时叫我")

        answers = parse_user_answer(message, state.pending)
        if not answers:
            switched = (
                classification.method == ClassifyMethod.RULE
                and classification.intent not in (IntentType.PARTNER, IntentType.UNKNOWN)
            )
            if switched:
                self._cancel(state, ctx, now, None)
                return None
            if len(state.pending) == 1 and state.pending[0] in ("time_range", "location"):
                answers = {state.pending[0]: message.strip()}

        state.tags = list(dict.fromkeys(state.tags + extract_tags(message)))
        if not answers:
            if state.reasks < settings.broker_max_reasks:
                return self._reask(state, ctx, now)
            # Out of patience: fall back to what the profile suggested
            for name, value in state.defaults.items():
                state.collected.setdefault(name, value)
        else:
            state.collected.update(answers)
            state.round += 1
        return self._record(state, ctx, now)

    def _reask(self, state: BrokerState, ctx: RuntimeContext, now: datetime) -> BrokerTurn:
        state.reasks += 1
        state.updated_at = now
        self.save_state(ctx.thread_id, ctx.user_id, state)
        logger.debug(f"Broker flow {state.flow_id} re-asking ({state.reasks})")

        lines = ["没太明白～再确认一下："]
        lines.extend(f"{i}. {QUESTIONS[n].question}" for i, n in enumerate(state.pending, 1))
        return BrokerTurn(
            text="\n".join(lines),
            state=state,
            message_type="widget_broker",
            widget={
                "flowId": state.flow_id,
                "questions": build_questions(state),
                "collected": dict(state.collected),
            },
        )

    def _record(self, state: BrokerState, ctx: RuntimeContext, now: datetime) -> BrokerTurn:
        location = self._intent_location(state, ctx)
        if location is None:
            state.pending = ["location"]
            state.transition(BrokerStatus.CLARIFYING, now)
            self.save_state(ctx.thread_id, ctx.user_id, state)
            return BrokerTurn(
                text="还需要知道你想在哪儿玩～",
                state=state,
                message_type="widget_broker",
                widget={"flowId": state.flow_id, "questions": build_questions(state)},
            )

        activity_type = state.collected.get("activity_type", "other")
        time_value = state.collected.get("time_range")
        budget = state.collected.get("budget")
        try:
            outcome = self.partners.create_intent(
                user_id=ctx.user_id,
                location=location,
                activity_type=activity_type,
                raw_input=state.raw_input,
                location_hint=location.name,
                time_preference=TIME_LABELS.get(time_value, time_value),
                tags=state.tags,
                budget_type=budget,
                now=now,
            )
        except ToolError as e:
            return self._cancel(state, ctx, now, e.message)

        state.intent_id = str(outcome.intent.id)
        state.pending = []
        state.transition(BrokerStatus.INTENT_RECORDED, now)
        if outcome.match is not None:
            state.match_id = str(outcome.match.id)
            state.transition(BrokerStatus.MATCHED, now)
        self.save_state(ctx.thread_id, ctx.user_id, state)

        type_name = TYPE_NAMES.get(activity_type, "活动")
        summary = "，".join(
            part
            for part in (type_name, TIME_LABELS.get(time_value, time_value), location.name)
            if part
        )
        if outcome.match is not None:
            text = f"🎉 找到匹配的搭子了！（{summary}）等召集人确认就成局啦"
        else:
            text = f"意向已发布（{summary}），有匹配会第一时间通知你～"
        return BrokerTurn(
            text=text,
            state=state,
            message_type="widget_partner_intent",
            widget={
                "intentId": state.intent_id,
                "matchId": state.match_id,
                "activityType": activity_type,
                "timePreference": TIME_LABELS.get(time_value, time_value),
                "locationHint": location.name,
                "tags": state.tags,
            },
        )

    def _intent_location(
        self, state: BrokerState, ctx: RuntimeContext
    ) -> Optional[GeoLocation]:
        named = state.collected.get("location")
        if named in KNOWN_AREAS:
            lat, lng = KNOWN_AREAS[named]
            return GeoLocation(lat=lat, lng=lng, name=named)
        if ctx.location is not None:
            return GeoLocation(
                lat=ctx.location.lat,
                lng=ctx.location.lng,
                name=named or ctx.location.name,
            )
        return None

    def _cancel(
        self,
        state: BrokerState,
        ctx: RuntimeContext,
        now: datetime,
        text: Optional[str],
    ) -> Optional[BrokerTurn]:
        state.transition(BrokerStatus.CANCELLED, now)
        self.save_state(ctx.thread_id, ctx.user_id, state)
        logger.info(f"Broker flow {state.flow_id} cancelled")
        if text is None:
            return None
        return BrokerTurn(text=text, state=state)

    def _cancel_recorded(
        self, state: BrokerState, ctx: RuntimeContext, now: datetime
    ) -> BrokerTurn:
        if state.intent_id and ctx.user_id is not None:
            try:
                self.partners.cancel_intent(ctx.user_id, uuid.UUID(state.intent_id))
            except ToolError as e:
                logger.info(f"Intent {state.intent_id} not cancellable: {e.message}")
        return self._cancel(state, ctx, now, "好的，已经帮你取消这个搭子意向了")
