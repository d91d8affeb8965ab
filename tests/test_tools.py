"""Tests for the tool registry and the activity service client."""

import json
from unittest.mock import Mock, patch

import httpx
import pytest

from juchang_ai.agent.activities import ActivityClient, ActivityClientConfig
from juchang_ai.agent.tools import ToolContext, ToolRegistry, ToolResult, WidgetKind
from juchang_ai.broker.flow import BrokerState, BrokerStatus
from juchang_ai.exceptions import ToolError
from juchang_ai.models.db import PartnerIntent
from juchang_ai.models.runtime import DraftContext, GeoLocation

GUANYINQIAO = GeoLocation(lat=29.5630, lng=106.5516, name="观音桥")


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry()


def _answered_round(now) -> BrokerState:
    return BrokerState(
        flow_id="f1",
        status=BrokerStatus.CLARIFYING,
        round=1,
        created_at=now,
        updated_at=now,
    )


class TestToolResult:
    def test_to_dict(self):
        result = ToolResult(
            "x", False, WidgetKind.ERROR, data={"a": 1}, error="bad", code="C"
        )
        assert result.to_dict() == {
            "success": False,
            "a": 1,
            "error": "bad",
            "code": "C",
        }

    def test_success_omits_error(self):
        assert ToolResult("x", True, WidgetKind.TEXT).to_dict() == {"success": True}


class TestRegistry:
    def test_describe_skips_unknown(self, registry):
        described = registry.describe(["askPreference", "nope"])
        assert [d["name"] for d in described] == ["askPreference"]
        assert described[0]["parameters"]["type"] == "object"

    def test_unknown_tool(self, registry, db_session):
        result = registry.execute("fly", {}, ToolContext(db_session, None))
        assert not result.ok
        assert result.widget == WidgetKind.ERROR

    def test_anonymous_blocked_from_member_tools(self, registry, db_session):
        result = registry.execute("getMyIntents", {}, ToolContext(db_session, None))
        assert not result.ok
        assert result.widget == WidgetKind.ACTION
        assert result.code == "AUTH_REQUIRED"

    def test_anonymous_may_ask_preference(self, registry, db_session):
        result = registry.execute(
            "askPreference", {"field": "time"}, ToolContext(db_session, None)
        )
        assert result.ok
        assert result.widget == WidgetKind.ASK_PREFERENCE
        assert [o["value"] for o in result.data["options"]] == [
            "tonight",
            "tomorrow",
            "weekend",
        ]

    def test_invalid_arguments(self, registry, db_session, user):
        result = registry.execute(
            "createPartnerIntent",
            {"rawInput": "找搭子", "activityType": "skydiving"},
            ToolContext(db_session, user.id),
        )
        assert not result.ok
        assert result.error.startswith("参数错误")

    def test_unexpected_failure_is_contained(self, registry, db_session):
        activities = Mock(spec=ActivityClient)
        activities.get_detail.side_effect = RuntimeError("boom")
        result = registry.execute(
            "getActivityDetail",
            {"activityId": "a1"},
            ToolContext(db_session, None, activities=activities),
        )
        assert not result.ok
        assert result.code is None


class TestPartnerTools:
    def test_intent_refused_before_clarification(self, registry, db_session, user):
        ctx = ToolContext(db_session, user.id, location=GUANYINQIAO)
        result = registry.execute(
            "createPartnerIntent", {"rawInput": "找搭子", "activityType": "food"}, ctx
        )
        assert not result.ok
        assert result.code == "TOOL_ERROR"
        assert db_session.query(PartnerIntent).count() == 0

    def test_intent_recorded_after_round(self, registry, db_session, user, now):
        ctx = ToolContext(
            db_session, user.id, location=GUANYINQIAO, broker_state=_answered_round(now)
        )
        result = registry.execute(
            "createPartnerIntent",
            {"rawInput": "找搭子吃火锅", "activityType": "food", "budgetType": "AA"},
            ctx,
        )
        assert result.ok
        assert result.widget == WidgetKind.PARTNER_INTENT
        assert result.data["matchFound"] is False
        assert result.data["intent"]["tags"] == ["AA"]

    def test_intent_needs_location(self, registry, db_session, user, now):
        ctx = ToolContext(db_session, user.id, broker_state=_answered_round(now))
        result = registry.execute(
            "createPartnerIntent", {"rawInput": "找搭子", "activityType": "food"}, ctx
        )
        assert not result.ok
        assert "位置" in result.error

    def test_list_and_cancel(self, registry, db_session, user, now):
        ctx = ToolContext(
            db_session, user.id, location=GUANYINQIAO, broker_state=_answered_round(now)
        )
        created = registry.execute(
            "createPartnerIntent", {"rawInput": "打球", "activityType": "sports"}, ctx
        )
        intent_id = created.data["intent"]["id"]

        listed = registry.execute("getMyIntents", {}, ctx)
        assert [i["id"] for i in listed.data["intents"]] == [intent_id]

        cancelled = registry.execute("cancelIntent", {"intentId": intent_id}, ctx)
        assert cancelled.data["intent"]["status"] == "cancelled"

    def test_confirm_unknown_match(self, registry, db_session, user):
        result = registry.execute(
            "confirmMatch",
            {"matchId": "00000000-0000-0000-0000-000000000001"},
            ToolContext(db_session, user.id),
        )
        assert not result.ok
        assert result.code == "MATCH_CONFIRMATION_FAILED"


class TestActivityTools:
    def test_no_activity_service(self, registry, db_session, user):
        result = registry.execute(
            "exploreNearby", {}, ToolContext(db_session, user.id, location=GUANYINQIAO)
        )
        assert not result.ok
        assert result.error == "活动服务暂未接入"
        assert result.code == "TOOL_ERROR"

    def test_explore_uses_caller_location(self, registry, db_session):
        activities = Mock(spec=ActivityClient)
        activities.search_nearby.return_value = [{"id": "a1", "title": "桌游局"}]

        result = registry.execute(
            "exploreNearby",
            {"type": "boardgame"},
            ToolContext(db_session, None, location=GUANYINQIAO, activities=activities),
        )

        assert result.ok
        assert result.data["total"] == 1
        assert result.data["center"]["name"] == "观音桥"
        activities.search_nearby.assert_called_once_with(
            29.5630, 106.5516, activity_type="boardgame", query=None, radius_km=5.0
        )

    def test_explore_without_location(self, registry, db_session):
        activities = Mock(spec=ActivityClient)
        result = registry.execute(
            "exploreNearby", {}, ToolContext(db_session, None, activities=activities)
        )
        assert not result.ok
        activities.search_nearby.assert_not_called()

    def test_refine_uses_current_draft(self, registry, db_session):
        activities = Mock(spec=ActivityClient)
        activities.refine_draft.return_value = {"id": "d1", "maxParticipants": 6}
        ctx = ToolContext(
            db_session,
            None,
            draft=DraftContext(activity_id="d1"),
            activities=activities,
        )

        result = registry.execute("refineDraft", {"changes": {"maxParticipants": 6}}, ctx)

        assert result.ok
        activities.refine_draft.assert_called_once_with("d1", {"maxParticipants": 6})


class TestActivityClient:
    def _client(self, handler) -> ActivityClient:
        return ActivityClient(
            ActivityClientConfig(base_url="http://activities.test", api_key="k"),
            transport=httpx.MockTransport(handler),
        )

    def test_search_nearby(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"activities": [{"id": "a1"}]})

        with self._client(handler) as client:
            assert client.search_nearby(29.5, 106.5, activity_type="food") == [
                {"id": "a1"}
            ]
        assert seen["url"].path == "/activities/nearby"
        assert seen["url"].params["type"] == "food"
        assert seen["auth"] == "Bearer k"

    def test_client_error_becomes_tool_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(409, json={"message": "活动已满员"})

        with self._client(handler) as client:
            with pytest.raises(ToolError, match="活动已满员"):
                client.join("u1", "a1")

    @patch("juchang_ai.agent.activities.time.sleep")
    def test_server_errors_retried(self, mock_sleep):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, content=json.dumps({"id": "a1"}).encode())

        with self._client(handler) as client:
            assert client.get_detail("a1") == {"id": "a1"}
        assert len(calls) == 3
        assert mock_sleep.call_count == 2

    @patch("juchang_ai.agent.activities.time.sleep")
    def test_gives_up_after_retries(self, mock_sleep):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with self._client(handler) as client:
            with pytest.raises(ToolError, match="暂时不可用"):
                client.list_mine("u1")
