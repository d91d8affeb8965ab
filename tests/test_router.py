"""Tests for tool and agent routing."""

from juchang_ai.intent.router import ANONYMOUS_TOOLS, requires_auth, route, select_tools
from juchang_ai.models.runtime import IntentType, RouteFlags


class TestSelectTools:
    def test_explore_with_location(self):
        flags = RouteFlags(has_location=True, is_authenticated=True)
        assert select_tools(IntentType.EXPLORE, flags) == [
            "exploreNearby",
            "getActivityDetail",
            "joinActivity",
        ]

    def test_explore_without_location_asks_first(self):
        flags = RouteFlags(has_location=False, is_authenticated=True)
        tools = select_tools(IntentType.EXPLORE, flags)
        assert tools[0] == "askPreference"
        assert tools.count("askPreference") == 1

    def test_anonymous_caller_loses_gated_tools(self):
        flags = RouteFlags(has_location=True, is_authenticated=False)
        assert select_tools(IntentType.EXPLORE, flags) == [
            "exploreNearby",
            "getActivityDetail",
        ]

    def test_anonymous_partner_gets_nothing(self):
        assert select_tools(IntentType.PARTNER, RouteFlags()) == []

    def test_create_with_draft_keeps_refine_and_publish(self):
        flags = RouteFlags(is_authenticated=True, has_draft=True)
        tools = select_tools(IntentType.CREATE, flags)
        assert "refineDraft" in tools
        assert "publishActivity" in tools
        assert len(tools) == len(set(tools))

    def test_create_without_draft_offers_only_drafting(self):
        flags = RouteFlags(is_authenticated=True, has_draft=False)
        assert select_tools(IntentType.CREATE, flags) == ["createActivityDraft"]

    def test_anonymous_draft_keeps_only_refine(self):
        flags = RouteFlags(is_authenticated=False, has_draft=True)
        assert select_tools(IntentType.CREATE, flags) == ["refineDraft"]

    def test_unknown_offers_preference_and_explore(self):
        flags = RouteFlags(has_location=True, is_authenticated=True)
        assert select_tools(IntentType.UNKNOWN, flags) == ["askPreference", "exploreNearby"]

    def test_result_is_a_copy(self):
        flags = RouteFlags(is_authenticated=True)
        select_tools(IntentType.MANAGE, flags).append("x")
        assert "x" not in select_tools(IntentType.MANAGE, flags)


class TestRoute:
    def test_agents_by_intent(self):
        flags = RouteFlags(is_authenticated=True)
        assert route(IntentType.EXPLORE, flags).agent == "explorer"
        assert route(IntentType.CREATE, flags).agent == "creator"
        assert route(IntentType.PARTNER, flags).agent == "partner"
        assert route(IntentType.MANAGE, flags).agent == "manager"
        assert route(IntentType.CHITCHAT, flags).agent == "chat"

    def test_chitchat_has_no_tools(self):
        assert route(IntentType.CHITCHAT, RouteFlags(is_authenticated=True)).tools == []

    def test_requires_auth(self):
        for name in ANONYMOUS_TOOLS:
            assert not requires_auth(name)
        assert requires_auth("joinActivity")
        assert requires_auth("createPartnerIntent")
