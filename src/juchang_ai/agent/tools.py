"""
Tool registry.

Each tool declares a name, a pydantic argument model, the widget kind its
result renders as, and a handler. The router decides which names are
offered to the model; the registry validates arguments, enforces the
identity gate and runs the handler.
"""

import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from juchang_ai.agent.activities import ActivityClient
from juchang_ai.broker.flow import BrokerState
from juchang_ai.broker.partner import PartnerService, intent_to_dict, match_to_dict
from juchang_ai.exceptions import AuthenticationRequiredError, JuchangError, ToolError
from juchang_ai.intent.router import requires_auth
from juchang_ai.models.runtime import DraftContext, GeoLocation
from juchang_ai.utils.geo import POPULAR_AREAS, location_label

logger = logging.getLogger(__name__)


class WidgetKind(str, enum.Enum):
    """Rendering hint attached to a tool result (stored as message_type)."""

    TEXT = "text"
    DRAFT = "widget_draft"
    EXPLORE = "widget_explore"
    DETAIL = "widget_detail"
    SHARE = "widget_share"
    ACTION = "widget_action"
    ASK_PREFERENCE = "widget_ask_preference"
    DASHBOARD = "widget_dashboard"
    LAUNCHER = "widget_launcher"
    ERROR = "widget_error"
    PARTNER_INTENT = "widget_partner_intent"
    BROKER = "widget_broker"


ActivityType = Literal["food", "entertainment", "sports", "boardgame", "coffee", "other"]


@dataclass
class ToolContext:
    """What a handler may use. Built per request."""

    session: Session
    user_id: Optional[uuid.UUID]
    location: Optional[GeoLocation] = None
    draft: Optional[DraftContext] = None
    activities: Optional[ActivityClient] = None
    broker_state: Optional[BrokerState] = None

    @property
    def partners(self) -> PartnerService:
        return PartnerService(self.session)

    def require_activities(self) -> ActivityClient:
        if self.activities is None:
            raise ToolError("活动服务暂未接入")
        return self.activities

    def require_user(self) -> uuid.UUID:
        if self.user_id is None:
            raise AuthenticationRequiredError()
        return self.user_id


@dataclass
class ToolResult:
    name: str
    ok: bool
    widget: WidgetKind
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    code: Optional[str] = None

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"success": self.ok, **self.data}
        if self.error:
            payload["error"] = self.error
        if self.code:
            payload["code"] = self.code
        return payload


Handler = Callable[[Any, ToolContext], dict]


@dataclass
class ToolSpec:
    name: str
    description: str
    args_model: type[BaseModel]
    widget: WidgetKind
    handler: Handler

    @property
    def requires_auth(self) -> bool:
        return requires_auth(self.name)

    def describe(self) -> dict:
        """Provider-neutral tool description."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.args_model.model_json_schema(),
        }


# Argument models


class NoArgs(BaseModel):
    pass


class CreateDraftArgs(BaseModel):
    title: str = Field(description="活动标题")
    type: ActivityType = Field(description="活动类型")
    locationName: str = Field(description="地点名称，如观音桥")
    startAt: str = Field(description="开始时间，ISO 8601")
    maxParticipants: int = Field(default=4, ge=2, le=50)
    summary: Optional[str] = None


class RefineDraftArgs(BaseModel):
    activityId: Optional[str] = Field(default=None, description="草稿 ID，默认当前草稿")
    changes: dict[str, Any] = Field(description="要修改的字段")


class ActivityIdArgs(BaseModel):
    activityId: str


class ExploreArgs(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None
    locationName: Optional[str] = None
    type: Optional[ActivityType] = None
    semanticQuery: Optional[str] = Field(default=None, description="语义搜索关键词")
    radius: float = Field(default=5.0, gt=0, le=20)


class AskPreferenceArgs(BaseModel):
    field: Literal["location", "type", "time"] = "location"
    question: Optional[str] = None


class CreatePartnerIntentArgs(BaseModel):
    rawInput: str = Field(description="用户原始输入")
    activityType: ActivityType
    locationHint: Optional[str] = Field(default=None, description="地点提示: 观音桥/解放碑")
    timePreference: Optional[str] = None
    tags: list[str] = Field(default_factory=list, description='如 ["AA", "NoAlcohol"]')
    budgetType: Optional[Literal["AA", "Treat", "Free"]] = None
    poiPreference: Optional[str] = None


class IntentIdArgs(BaseModel):
    intentId: uuid.UUID


class MatchIdArgs(BaseModel):
    matchId: uuid.UUID


# Handlers


def _create_draft(args: CreateDraftArgs, ctx: ToolContext) -> dict:
    user_id = ctx.require_user()
    draft = ctx.require_activities().create_draft(str(user_id), args.model_dump())
    return {"activityId": draft.get("id"), "draft": draft}


def _refine_draft(args: RefineDraftArgs, ctx: ToolContext) -> dict:
    activity_id = args.activityId or (ctx.draft.activity_id if ctx.draft else None)
    if not activity_id:
        raise ToolError("当前没有可修改的草稿")
    draft = ctx.require_activities().refine_draft(activity_id, args.changes)
    return {"activityId": activity_id, "draft": draft}


def _publish(args: ActivityIdArgs, ctx: ToolContext) -> dict:
    user_id = ctx.require_user()
    return {"activity": ctx.require_activities().publish(str(user_id), args.activityId)}


def _explore(args: ExploreArgs, ctx: ToolContext) -> dict:
    if args.lat is not None and args.lng is not None:
        lat, lng, name = args.lat, args.lng, args.locationName
    elif ctx.location is not None:
        lat, lng, name = ctx.location.lat, ctx.location.lng, ctx.location.name
    else:
        raise ToolError("需要先知道你在哪儿")
    found = ctx.require_activities().search_nearby(
        lat, lng, activity_type=args.type, query=args.semanticQuery, radius_km=args.radius
    )
    return {
        "activities": found,
        "center": {"lat": lat, "lng": lng, "name": location_label(lat, lng, name)},
        "radius": args.radius,
        "total": len(found),
    }


def _detail(args: ActivityIdArgs, ctx: ToolContext) -> dict:
    return {"activity": ctx.require_activities().get_detail(args.activityId)}


def _join(args: ActivityIdArgs, ctx: ToolContext) -> dict:
    user_id = ctx.require_user()
    return {"activity": ctx.require_activities().join(str(user_id), args.activityId)}


def _my_activities(args: NoArgs, ctx: ToolContext) -> dict:
    user_id = ctx.require_user()
    return {"activities": ctx.require_activities().list_mine(str(user_id))}


def _cancel_activity(args: ActivityIdArgs, ctx: ToolContext) -> dict:
    user_id = ctx.require_user()
    return {"activity": ctx.require_activities().cancel(str(user_id), args.activityId)}


PREFERENCE_OPTIONS = {
    "location": ("你在哪儿附近呀？📍", [{"label": n, "value": n} for n in POPULAR_AREAS]),
    "type": (
        "想玩点什么呢？🎯",
        [
            {"label": "🍲 吃饭", "value": "food"},
            {"label": "🎮 娱乐", "value": "entertainment"},
            {"label": "⚽ 运动", "value": "sports"},
            {"label": "🎲 桌游", "value": "boardgame"},
        ],
    ),
    "time": (
        "什么时候方便？⏰",
        [
            {"label": "今晚", "value": "tonight"},
            {"label": "明天", "value": "tomorrow"},
            {"label": "周末", "value": "weekend"},
        ],
    ),
}


def _ask_preference(args: AskPreferenceArgs, ctx: ToolContext) -> dict:
    question, options = PREFERENCE_OPTIONS[args.field]
    return {"field": args.field, "question": args.question or question, "options": options}


def _create_partner_intent(args: CreatePartnerIntentArgs, ctx: ToolContext) -> dict:
    user_id = ctx.require_user()
    # Recording is only allowed once the clarification round has been answered.
    if ctx.broker_state is None or ctx.broker_state.round < 1:
        raise ToolError("还需要先确认时间、地点和预算哦")
    outcome = ctx.partners.create_intent(
        user_id=user_id,
        location=ctx.location,
        activity_type=args.activityType,
        raw_input=args.rawInput,
        location_hint=args.locationHint,
        time_preference=args.timePreference,
        tags=args.tags,
        budget_type=args.budgetType,
        poi_preference=args.poiPreference,
    )
    result = {"intent": intent_to_dict(outcome.intent), "matchFound": outcome.matched}
    if outcome.match is not None:
        result["match"] = match_to_dict(outcome.match, user_id)
    return result


def _my_intents(args: NoArgs, ctx: ToolContext) -> dict:
    return ctx.partners.list_my_intents(ctx.require_user())


def _cancel_intent(args: IntentIdArgs, ctx: ToolContext) -> dict:
    intent = ctx.partners.cancel_intent(ctx.require_user(), args.intentId)
    return {"intent": intent_to_dict(intent)}


def _confirm_match(args: MatchIdArgs, ctx: ToolContext) -> dict:
    user_id = ctx.require_user()
    match = ctx.partners.confirm_match(args.matchId, user_id)
    return {"match": match_to_dict(match, user_id)}


DEFAULT_TOOLS: list[ToolSpec] = [
    ToolSpec(
        "createActivityDraft",
        "创建活动草稿。用户想自己组局时使用。",
        CreateDraftArgs,
        WidgetKind.DRAFT,
        _create_draft,
    ),
    ToolSpec(
        "refineDraft",
        "修改当前活动草稿的时间、地点、人数等。",
        RefineDraftArgs,
        WidgetKind.DRAFT,
        _refine_draft,
    ),
    ToolSpec(
        "publishActivity",
        "发布已确认的活动草稿。",
        ActivityIdArgs,
        WidgetKind.SHARE,
        _publish,
    ),
    ToolSpec(
        "exploreNearby",
        "探索附近的活动。用户想找活动、问附近有什么时使用。",
        ExploreArgs,
        WidgetKind.EXPLORE,
        _explore,
    ),
    ToolSpec(
        "getActivityDetail",
        "查看活动详情。",
        ActivityIdArgs,
        WidgetKind.DETAIL,
        _detail,
    ),
    ToolSpec(
        "joinActivity",
        "报名参加活动。",
        ActivityIdArgs,
        WidgetKind.ACTION,
        _join,
    ),
    ToolSpec(
        "getMyActivities",
        "查看我发布和参与的活动。",
        NoArgs,
        WidgetKind.DASHBOARD,
        _my_activities,
    ),
    ToolSpec(
        "cancelActivity",
        "取消我发布的活动或报名。",
        ActivityIdArgs,
        WidgetKind.ACTION,
        _cancel_activity,
    ),
    ToolSpec(
        "askPreference",
        "信息不足时询问用户的位置、类型或时间偏好。",
        AskPreferenceArgs,
        WidgetKind.ASK_PREFERENCE,
        _ask_preference,
    ),
    ToolSpec(
        "createPartnerIntent",
        "创建搭子意向。只能在用户回答完追问后使用。",
        CreatePartnerIntentArgs,
        WidgetKind.PARTNER_INTENT,
        _create_partner_intent,
    ),
    ToolSpec(
        "getMyIntents",
        "查询用户的搭子意向和待确认的匹配。",
        NoArgs,
        WidgetKind.PARTNER_INTENT,
        _my_intents,
    ),
    ToolSpec(
        "cancelIntent",
        "取消搭子意向。",
        IntentIdArgs,
        WidgetKind.ACTION,
        _cancel_intent,
    ),
    ToolSpec(
        "confirmMatch",
        "临时召集人确认匹配成局。",
        MatchIdArgs,
        WidgetKind.ACTION,
        _confirm_match,
    ),
]


class ToolRegistry:
    """Name-indexed tool specs."""

    def __init__(self, tools: Optional[list[ToolSpec]] = None):
        self._tools: dict[str, ToolSpec] = {}
        for spec in tools if tools is not None else DEFAULT_TOOLS:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        self._tools[spec.name] = spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def describe(self, names: list[str]) -> list[dict]:
        """Descriptions for the given names, in order, skipping unknown ones."""
        return [self._tools[n].describe() for n in names if n in self._tools]

    def execute(self, name: str, arguments: dict, ctx: ToolContext) -> ToolResult:
        """
        Validate and run a tool.

        Failures come back as an error result for the model to relay;
        they never abort the conversation turn.
        """
        spec = self._tools.get(name)
        if spec is None:
            return ToolResult(name, False, WidgetKind.ERROR, error=f"未知工具: {name}")

        if spec.requires_auth and ctx.user_id is None:
            err = AuthenticationRequiredError(name)
            return ToolResult(name, False, WidgetKind.ACTION, error=err.message, code=err.code)

        try:
            args = spec.args_model.model_validate(arguments or {})
        except ValidationError as e:
            logger.info(f"Invalid arguments for {name}: {e.error_count()} errors")
            return ToolResult(name, False, WidgetKind.ERROR, error=f"参数错误: {e}")

        try:
            data = spec.handler(args, ctx)
        except JuchangError as e:
            logger.info(f"Tool {name} rejected: {e.message}")
            return ToolResult(name, False, WidgetKind.ERROR, error=e.message, code=e.code)
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}", exc_info=True)
            return ToolResult(name, False, WidgetKind.ERROR, error="操作失败，请再试一次")

        logger.debug(f"Tool {name} succeeded")
        return ToolResult(name, True, spec.widget, data=data)
