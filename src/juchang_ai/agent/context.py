"""
Per-request context assembly.

Resolves the caller's thread, then loads the working profile and recent
history. With a session factory the two reads run concurrently, each in
its own session; otherwise they run one after the other on the request
session.
"""

import logging
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from juchang_ai.config import settings
from juchang_ai.memory.store import STATE_MESSAGE_TYPES, MemoryStore
from juchang_ai.memory.working import WorkingMemory
from juchang_ai.models.runtime import (
    DraftContext,
    GeoLocation,
    HistoryItem,
    ProfileData,
    RuntimeContext,
)
from juchang_ai.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]

# Shared across requests; reads that outlive their deadline finish here
_FETCH_POOL = ThreadPoolExecutor(max_workers=8, thread_name_prefix="context")


class ContextBuilder:
    def __init__(
        self,
        session: Session,
        session_factory: Optional[SessionFactory] = None,
        history_limit: Optional[int] = None,
        fetch_timeout_ms: Optional[int] = None,
    ):
        self.session = session
        self.session_factory = session_factory
        self.history_limit = history_limit or settings.history_limit
        self.fetch_timeout = (
            fetch_timeout_ms
            if fetch_timeout_ms is not None
            else settings.context_fetch_timeout_ms
        ) / 1000
        self.store = MemoryStore(session)

    def build(
        self,
        user_id: Optional[uuid.UUID],
        location: Optional[GeoLocation] = None,
        thread_id: Optional[uuid.UUID] = None,
        draft: Optional[DraftContext] = None,
        now: Optional[datetime] = None,
    ) -> RuntimeContext:
        """
        Build the runtime context for one request.

        Anonymous callers get no thread, no history and an empty profile.
        """
        now = now or utcnow()
        if user_id is None:
            return RuntimeContext(
                user_id=None,
                thread_id=None,
                profile=ProfileData(),
                history=[],
                location=location,
                draft=draft,
                now=now,
            )

        thread = self.store.resolve_thread(user_id, thread_id, now=now)
        # The fetch workers read committed state only
        if self.session_factory is not None:
            self.session.commit()
            profile, history = self._fetch_concurrently(user_id, thread.id)
        else:
            profile = _load_profile(self.session, user_id)
            history = _load_history(self.session, thread.id, self.history_limit)

        return RuntimeContext(
            user_id=user_id,
            thread_id=thread.id,
            profile=profile,
            history=history,
            location=location,
            draft=draft,
            now=now,
        )

    def _fetch_concurrently(
        self, user_id: uuid.UUID, thread_id: uuid.UUID
    ) -> tuple[ProfileData, list[HistoryItem]]:
        factory = self.session_factory
        assert factory is not None
        limit = self.history_limit

        def profile_task() -> ProfileData:
            with factory() as s:
                return _load_profile(s, user_id)

        def history_task() -> list[HistoryItem]:
            with factory() as s:
                return _load_history(s, thread_id, limit)

        profile_future = _FETCH_POOL.submit(profile_task)
        history_future = _FETCH_POOL.submit(history_task)
        # One deadline for both reads; a late read is abandoned, not awaited
        deadline = time.monotonic() + self.fetch_timeout
        profile = _result_or(profile_future, deadline, ProfileData(), "profile")
        history = _result_or(history_future, deadline, [], "history")
        return profile, history


def _result_or(future: Future, deadline: float, default, what: str):
    try:
        return future.result(timeout=max(0.0, deadline - time.monotonic()))
    except FutureTimeoutError:
        future.cancel()
        logger.warning(f"Context {what} fetch timed out, continuing without it")
    except Exception as e:
        logger.warning(f"Context {what} fetch failed, continuing without it: {e}")
    return default


def _load_profile(session: Session, user_id: uuid.UUID) -> ProfileData:
    try:
        return WorkingMemory(session).get_profile(user_id)
    except Exception as e:
        logger.warning(f"Profile load failed for {user_id}, using empty profile: {e}")
        return ProfileData()


def _load_history(
    session: Session, thread_id: uuid.UUID, limit: int
) -> list[HistoryItem]:
    try:
        # Over-fetch so persisted flow state does not eat into the window
        items = MemoryStore(session).get_history_items(thread_id, limit=limit * 2)
    except Exception as e:
        logger.warning(f"History load failed for {thread_id}, using empty history: {e}")
        return []
    visible = [item for item in items if item.message_type not in STATE_MESSAGE_TYPES]
    return visible[-limit:]
