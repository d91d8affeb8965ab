"""
Tests for the FastAPI application.
"""

import json
import uuid
from datetime import timedelta
from unittest.mock import patch

from conftest import make_user

from juchang_ai.api.routes.chat import TRAILER_SEPARATOR
from juchang_ai.broker.partner import PartnerService
from juchang_ai.guardrails import SlidingWindowRateLimiter
from juchang_ai.models.runtime import GeoLocation
from juchang_ai.quota import local_today
from juchang_ai.utils.timeutils import utcnow


def _split(body: str) -> tuple[str, dict]:
    text, _, trailer = body.rpartition(TRAILER_SEPARATOR)
    return text, json.loads(trailer)


def _headers(user) -> dict:
    return {"X-User-Id": str(user.id)}


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_when_database_connected(self, api_client):
        with patch("juchang_ai.db.connection.check_connection", return_value=True):
            response = api_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["worker"] == {"running": False}

    def test_health_when_database_disconnected(self, api_client):
        with patch("juchang_ai.db.connection.check_connection", return_value=False):
            data = api_client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["database"] == "unhealthy"


class TestChatEndpoint:
    """Tests for POST /ai/chat."""

    def test_streams_text_then_trailer(self, api_client, user):
        response = api_client.post(
            "/ai/chat",
            json={
                "messages": [{"role": "user", "content": "你是谁"}],
                "location": {"lat": 29.563, "lng": 106.5516},
            },
            headers=_headers(user),
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        text, trailer = _split(response.text)
        assert text
        assert trailer["threadId"]
        assert trailer["intent"]["intent"] == "chitchat"
        assert trailer["blocked"] is False

    def test_trace_requested(self, api_client):
        response = api_client.post(
            "/ai/chat",
            json={"messages": [{"role": "user", "content": "你是谁"}], "trace": True},
        )
        _, trailer = _split(response.text)
        assert "trace" in trailer
        assert trailer["threadId"] is None

    def test_empty_messages_rejected(self, api_client):
        response = api_client.post("/ai/chat", json={"messages": []})
        assert response.status_code == 422

    def test_blank_message_rejected(self, api_client):
        response = api_client.post(
            "/ai/chat", json={"messages": [{"role": "user", "content": "   "}]}
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_REQUEST"

    def test_quota_exceeded(self, api_client, db_session):
        user = make_user(db_session, quota=0, ai_quota_reset_on=local_today())
        response = api_client.post(
            "/ai/chat",
            json={"messages": [{"role": "user", "content": "你是谁"}]},
            headers=_headers(user),
        )
        assert response.status_code == 402
        assert response.json()["code"] == "QUOTA_EXCEEDED"

    def test_rate_limited(self, api_client):
        api_client.chat_service.rate_limiter = SlidingWindowRateLimiter(1, 60)
        body = {"messages": [{"role": "user", "content": "你是谁"}]}

        assert api_client.post("/ai/chat", json=body).status_code == 200
        response = api_client.post("/ai/chat", json=body)

        assert response.status_code == 429
        assert response.json()["code"] == "RATE_LIMITED"
        assert int(response.headers["Retry-After"]) >= 1

    def test_invalid_user_header(self, api_client):
        response = api_client.post(
            "/ai/chat",
            json={"messages": [{"role": "user", "content": "你是谁"}]},
            headers={"X-User-Id": "not-a-uuid"},
        )
        assert response.status_code == 400


class TestThreadEndpoints:
    """Tests for thread management."""

    def _chat(self, api_client, user, content="想找搭子吃火锅") -> str:
        response = api_client.post(
            "/ai/chat",
            json={
                "messages": [{"role": "user", "content": content}],
                "location": {"lat": 29.563, "lng": 106.5516, "name": "观音桥"},
            },
            headers=_headers(user),
        )
        return _split(response.text)[1]["threadId"]

    def test_anonymous_rejected(self, api_client):
        response = api_client.get("/ai/threads")
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_REQUIRED"

    def test_list_and_detail(self, api_client, user):
        thread_id = self._chat(api_client, user)

        listing = api_client.get("/ai/threads", headers=_headers(user)).json()
        assert listing["total"] == 1
        assert listing["items"][0]["id"] == thread_id
        assert listing["items"][0]["title"] == "想找搭子吃火锅"

        detail = api_client.get(f"/ai/threads/{thread_id}", headers=_headers(user))
        assert detail.status_code == 200
        types = [m["message_type"] for m in detail.json()["messages"]]
        # Broker bookkeeping stays out of the visible transcript
        assert types == ["text", "widget_broker"]

    def test_other_users_thread_hidden(self, api_client, user, other_user):
        thread_id = self._chat(api_client, user)
        response = api_client.get(f"/ai/threads/{thread_id}", headers=_headers(other_user))
        assert response.status_code == 404

    def test_delete_thread(self, api_client, user):
        thread_id = self._chat(api_client, user)

        response = api_client.delete(f"/ai/threads/{thread_id}", headers=_headers(user))
        assert response.status_code == 204
        missing = api_client.get(f"/ai/threads/{thread_id}", headers=_headers(user))
        assert missing.status_code == 404
        again = api_client.delete(f"/ai/threads/{thread_id}", headers=_headers(user))
        assert again.status_code == 404

    def test_clear_threads(self, api_client, user):
        self._chat(api_client, user)
        response = api_client.delete("/ai/threads", headers=_headers(user))
        assert response.json() == {"deleted": 1}


class TestQuotaEndpoint:
    def test_quota_after_chat(self, api_client, user):
        api_client.post(
            "/ai/chat",
            json={"messages": [{"role": "user", "content": "你是谁"}]},
            headers=_headers(user),
        )
        data = api_client.get("/ai/quota", headers=_headers(user)).json()
        assert data == {"remaining": 49, "limit": 50}


class TestMatchEndpoint:
    def _pending_match(self, db_session, user, other_user):
        service = PartnerService(db_session)
        place = GeoLocation(lat=29.5630, lng=106.5516, name="观音桥")
        earlier = utcnow() - timedelta(minutes=1)
        service.create_intent(other_user.id, place, "coffee", "喝咖啡", now=earlier)
        return service.create_intent(user.id, place, "coffee", "喝咖啡").match

    def test_organizer_confirms(self, api_client, db_session, user, other_user):
        match = self._pending_match(db_session, user, other_user)
        response = api_client.post(
            f"/ai/matches/{match.id}/confirm", headers=_headers(other_user)
        )
        assert response.status_code == 200
        data = response.json()["match"]
        assert data["outcome"] == "confirmed"
        assert data["isTempOrganizer"] is True

    def test_member_cannot_confirm(self, api_client, db_session, user, other_user):
        match = self._pending_match(db_session, user, other_user)
        response = api_client.post(f"/ai/matches/{match.id}/confirm", headers=_headers(user))
        assert response.status_code == 409
        assert response.json()["code"] == "MATCH_CONFIRMATION_FAILED"

    def test_unknown_match(self, api_client, user):
        response = api_client.post(
            f"/ai/matches/{uuid.uuid4()}/confirm", headers=_headers(user)
        )
        assert response.status_code == 409
