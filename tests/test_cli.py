"""
Tests for CLI commands.
"""

from datetime import timedelta
from unittest.mock import patch

from typer.testing import CliRunner

from juchang_ai.broker.partner import PartnerService
from juchang_ai.cli import app
from juchang_ai.models.runtime import GeoLocation

# Disable Rich formatting in tests using NO_COLOR environment variable
runner = CliRunner(env={"NO_COLOR": "1", "TERM": "dumb"})


class TestClassifyCommand:
    """Tests for classify command."""

    def test_rules_only(self):
        result = runner.invoke(app, ["classify", "想吃火锅"])

        assert result.exit_code == 0
        assert "explore" in result.stdout
        assert "explore.want_verb" in result.stdout
        assert "0.90" in result.stdout

    def test_draft_flag(self):
        result = runner.invoke(app, ["classify", "人数改成6个", "--draft"])

        assert result.exit_code == 0
        assert "draft.modify" in result.stdout
        assert "refineDraft" in result.stdout

    def test_model_without_key_fails(self):
        with patch("juchang_ai.llm.get_default_provider", return_value=None):
            result = runner.invoke(app, ["classify", "随便说点什么", "--model"])

        assert result.exit_code == 1
        assert "No model API key" in result.stdout

    def test_requires_message(self):
        result = runner.invoke(app, ["classify"])
        assert result.exit_code != 0


class TestChatCommand:
    """Tests for chat command."""

    def test_chat_prints_reply(self, chat_service_factory):
        service = chat_service_factory()
        with patch("juchang_ai.agent.chat.ChatService", return_value=service), patch(
            "juchang_ai.cli.setup_logging"
        ):
            result = runner.invoke(app, ["chat", "找搭子"])

        assert result.exit_code == 0
        assert "登录" in result.stdout
        assert "widget_action" in result.stdout

    def test_chat_rejects_bad_uuid(self):
        with patch("juchang_ai.cli.setup_logging"):
            result = runner.invoke(app, ["chat", "你好", "--user", "nope"])

        assert result.exit_code == 1
        assert "Invalid UUID" in result.stdout

    def test_chat_reports_rejection(self, chat_service_factory):
        service = chat_service_factory()
        with patch("juchang_ai.agent.chat.ChatService", return_value=service), patch(
            "juchang_ai.cli.setup_logging"
        ):
            result = runner.invoke(app, ["chat", "   "])

        assert result.exit_code == 1
        assert "INVALID_REQUEST" in result.stdout


class TestExpireCommand:
    def test_expire(self, session_factory, db_session, user, now):
        place = GeoLocation(lat=29.5630, lng=106.5516, name="观音桥")
        PartnerService(db_session).create_intent(
            user.id, place, "food", "火锅", now=now - timedelta(days=3)
        )

        with patch("juchang_ai.db.connection.db_session", session_factory):
            result = runner.invoke(app, ["expire"])

        assert result.exit_code == 0
        assert "Expired intents: 1" in result.stdout
        assert "Expired matches: 0" in result.stdout


class TestInitDbCommand:
    def test_init_db(self):
        with patch("juchang_ai.db.connection.init_db") as mock_init:
            result = runner.invoke(app, ["init-db"])

        assert result.exit_code == 0
        mock_init.assert_called_once()
