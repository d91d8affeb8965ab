"""
Tool and agent routing.

Maps a classified intent plus runtime flags to an agent persona and an
ordered list of candidate tools. The router never invokes tools; the agent
passes the list to the model as the tools it may call.
"""

from juchang_ai.models.runtime import IntentType, RouteDecision, RouteFlags

ASK_PREFERENCE = "askPreference"
EXPLORE_NEARBY = "exploreNearby"
REFINE_DRAFT = "refineDraft"
PUBLISH_ACTIVITY = "publishActivity"

TOOLS_BY_INTENT: dict[IntentType, list[str]] = {
    IntentType.CREATE: ["createActivityDraft"],
    IntentType.EXPLORE: [EXPLORE_NEARBY, "getActivityDetail", "joinActivity"],
    IntentType.MANAGE: ["getMyActivities", "cancelActivity"],
    IntentType.PARTNER: [
        "createPartnerIntent",
        "getMyIntents",
        "confirmMatch",
        "cancelIntent",
    ],
    IntentType.CHITCHAT: [],
    IntentType.IDLE: [ASK_PREFERENCE],
    IntentType.CANCEL: [],
    IntentType.UNKNOWN: [ASK_PREFERENCE, EXPLORE_NEARBY],
}

# Everything else needs a signed-in caller.
ANONYMOUS_TOOLS: frozenset[str] = frozenset(
    {EXPLORE_NEARBY, "getActivityDetail", REFINE_DRAFT, ASK_PREFERENCE}
)

AGENT_BY_INTENT: dict[IntentType, str] = {
    IntentType.EXPLORE: "explorer",
    IntentType.CREATE: "creator",
    IntentType.PARTNER: "partner",
    IntentType.MANAGE: "manager",
    IntentType.CHITCHAT: "chat",
    IntentType.IDLE: "chat",
    IntentType.CANCEL: "chat",
    IntentType.UNKNOWN: "chat",
}


def requires_auth(tool_name: str) -> bool:
    return tool_name not in ANONYMOUS_TOOLS


def select_tools(intent: IntentType, flags: RouteFlags) -> list[str]:
    """
    Ordered candidate tools for an intent.

    Adjustments are applied in order: missing location, open draft,
    then the identity filter last so nothing re-adds a gated tool.
    """
    tools = list(TOOLS_BY_INTENT.get(intent, TOOLS_BY_INTENT[IntentType.UNKNOWN]))

    if intent == IntentType.EXPLORE and not flags.has_location:
        if ASK_PREFERENCE in tools:
            tools.remove(ASK_PREFERENCE)
        tools.insert(0, ASK_PREFERENCE)

    if intent == IntentType.CREATE and flags.has_draft:
        for tool in (REFINE_DRAFT, PUBLISH_ACTIVITY):
            if tool not in tools:
                tools.append(tool)

    if not flags.is_authenticated:
        tools = [t for t in tools if not requires_auth(t)]

    return tools


def route(intent: IntentType, flags: RouteFlags) -> RouteDecision:
    """Pick the agent persona and candidate tools for an intent."""
    return RouteDecision(
        agent=AGENT_BY_INTENT.get(intent, "chat"),
        tools=select_tools(intent, flags),
    )
