"""Tests for per-request context assembly and memory recall injection."""

import threading
import time
from datetime import timedelta
from unittest.mock import Mock, patch

from conftest import make_user

from juchang_ai.agent.context import ContextBuilder
from juchang_ai.agent.processors import InputState, ProcessorChain, make_memory_recall
from juchang_ai.exceptions import EmbeddingError
from juchang_ai.llm.base import LLMProvider
from juchang_ai.memory.store import MemoryStore
from juchang_ai.models.db import MessageRole
from juchang_ai.models.runtime import ChatTurn, Preference, ProfileData, RuntimeContext

SYSTEM_PROMPT = "你是小聚。\n\n# Context\n当前城市：重庆"


def _seed_user(factory):
    with factory() as session:
        user = make_user(session)
        return user.id


class TestContextBuilder:
    def test_anonymous_context_is_empty(self, db_session, now):
        ctx = ContextBuilder(db_session).build(None, now=now)
        assert ctx.thread_id is None
        assert ctx.history == []
        assert ctx.profile.is_empty

    def test_parallel_fetch_loads_history(self, file_session_factory, now):
        user_id = _seed_user(file_session_factory)
        with file_session_factory() as session:
            store = MemoryStore(session)
            thread, _ = store.get_or_create_thread(user_id, now=now)
            thread_id = thread.id
            store.save_message(
                thread.id, user_id, MessageRole.USER, {"text": "周末想打羽毛球"}, now=now
            )

        with file_session_factory() as session:
            builder = ContextBuilder(session, session_factory=file_session_factory)
            ctx = builder.build(user_id, now=now + timedelta(minutes=5))

        assert ctx.thread_id == thread_id
        assert [h.text for h in ctx.history] == ["周末想打羽毛球"]

    def test_slow_profile_read_times_out(self, file_session_factory, now):
        user_id = _seed_user(file_session_factory)
        release = threading.Event()

        def stuck_profile(session, user_id):
            release.wait(timeout=5)
            return ProfileData(
                preferences=[Preference("food", "火锅", "like", 0.9, now)]
            )

        try:
            with patch("juchang_ai.agent.context._load_profile", side_effect=stuck_profile):
                with file_session_factory() as session:
                    builder = ContextBuilder(
                        session, session_factory=file_session_factory, fetch_timeout_ms=200
                    )
                    started = time.monotonic()
                    ctx = builder.build(user_id, now=now)
                    elapsed = time.monotonic() - started
        finally:
            release.set()

        assert elapsed < 1.0
        assert ctx.profile.is_empty
        assert ctx.thread_id is not None

    def test_failed_history_read_degrades(self, file_session_factory, now):
        user_id = _seed_user(file_session_factory)
        with patch.object(
            MemoryStore, "get_history_items", side_effect=RuntimeError("db gone")
        ):
            with file_session_factory() as session:
                builder = ContextBuilder(session, session_factory=file_session_factory)
                ctx = builder.build(user_id, now=now)

        assert ctx.history == []

    def test_failed_history_read_degrades_without_factory(self, db_session, user, now):
        with patch.object(
            MemoryStore, "get_history_items", side_effect=RuntimeError("db gone")
        ):
            ctx = ContextBuilder(db_session).build(user.id, now=now)
        assert ctx.history == []


class TestMemoryRecall:
    """Injection of related messages from earlier threads."""

    def _state(self, session, user_id, thread_id) -> InputState:
        ctx = RuntimeContext(
            user_id=user_id, thread_id=thread_id, profile=ProfileData(), history=[]
        )
        return InputState(
            session=session,
            ctx=ctx,
            messages=[ChatTurn("system", SYSTEM_PROMPT), ChatTurn("user", "想吃火锅")],
        )

    def _provider(self, vector=None) -> Mock:
        provider = Mock(spec=LLMProvider)
        provider.embed.return_value = vector or [1.0, 0.0, 0.0]
        return provider

    def _old_thread_message(self, db_session, user, now, text, vector):
        store = MemoryStore(db_session)
        earlier = now - timedelta(days=3)
        old, _ = store.get_or_create_thread(user.id, now=earlier)
        message = store.save_message(
            old.id, user.id, MessageRole.USER, {"text": text}, now=earlier
        )
        store.messages.set_embedding(message.id, vector)
        current, _ = store.get_or_create_thread(user.id, now=now)
        return current

    def test_related_messages_injected(self, db_session, user, now):
        current = self._old_thread_message(
            db_session, user, now, "上次那家老火锅很好吃", [1.0, 0.0, 0.0]
        )
        state = make_memory_recall(self._provider())(
            self._state(db_session, user.id, current.id)
        )

        system = state.messages[0].content
        assert "<related_memories>" in system
        assert "上次那家老火锅很好吃" in system
        assert system.startswith("你是小聚。")

    def test_unrelated_messages_not_injected(self, db_session, user, now):
        current = self._old_thread_message(
            db_session, user, now, "羽毛球约吗", [0.0, 1.0, 0.0]
        )
        state = make_memory_recall(self._provider())(
            self._state(db_session, user.id, current.id)
        )
        assert state.messages[0].content == SYSTEM_PROMPT

    def test_embedding_failure_leaves_prompt(self, db_session, user):
        provider = self._provider()
        provider.embed.side_effect = EmbeddingError("mock", "timeout")
        state = make_memory_recall(provider)(self._state(db_session, user.id, None))
        assert state.messages[0].content == SYSTEM_PROMPT

    def test_anonymous_skipped(self, db_session):
        provider = self._provider()
        make_memory_recall(provider)(self._state(db_session, None, None))
        provider.embed.assert_not_called()

    def test_chain_includes_recall_only_with_provider(self):
        names = [name for name, _ in ProcessorChain().input_processors]
        assert "memory_recall" not in names

        chain = ProcessorChain(provider=self._provider())
        names = [name for name, _ in chain.input_processors]
        assert names == [
            "input_guard",
            "profile_injection",
            "memory_recall",
            "context_limiter",
        ]
