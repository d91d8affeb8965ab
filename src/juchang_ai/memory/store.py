"""
Conversation memory store.

Thread resolution inside the session window, message persistence and the
thread-management operations used by the API. Embeddings are never
computed here: saving a text message only enqueues a background job.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from juchang_ai.config import settings
from juchang_ai.db.repositories import ConversationRepository, MessageRepository
from juchang_ai.jobs.queue import JobQueue
from juchang_ai.models.db import (
    Conversation,
    ConversationMessage,
    JobType,
    MessageRole,
)
from juchang_ai.models.runtime import HistoryItem
from juchang_ai.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50

# Internal bookkeeping rows that never reach prompts or enrichers
STATE_MESSAGE_TYPES = frozenset({"broker_state"})


class MemoryStore:
    """Thread and message persistence for one database session."""

    def __init__(
        self,
        session: Session,
        window_hours: Optional[int] = None,
        job_queue: Optional[JobQueue] = None,
    ):
        self.session = session
        self.threads = ConversationRepository(session)
        self.messages = MessageRepository(session)
        self.jobs = job_queue or JobQueue(session)
        self.window = timedelta(
            hours=window_hours if window_hours is not None else settings.session_window_hours
        )

    def get_or_create_thread(
        self, user_id: uuid.UUID, now: Optional[datetime] = None
    ) -> tuple[Conversation, bool]:
        """
        Reuse the user's thread if it was active inside the session window.

        Concurrent first requests may each create a thread; the duplicate is
        accepted rather than serialized.

        Returns:
            (thread, created)
        """
        now = now or utcnow()
        recent = self.threads.get_latest_active(user_id, since=now - self.window)
        if recent is not None:
            return recent, False

        thread = self.threads.create(
            user_id=user_id,
            message_count=0,
            last_message_at=now,
            created_at=now,
        )
        logger.debug(f"Created thread {thread.id} for user {user_id}")
        return thread, True

    def resolve_thread(
        self,
        user_id: uuid.UUID,
        thread_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> Conversation:
        """An explicitly requested thread if the user owns it, else the window rule."""
        if thread_id is not None:
            thread = self.threads.get_for_user(thread_id, user_id)
            if thread is not None:
                return thread
            logger.info(f"Thread {thread_id} not found for user {user_id}, using window")
        thread, _ = self.get_or_create_thread(user_id, now=now)
        return thread

    def get_messages(
        self, thread_id: uuid.UUID, limit: int = 20
    ) -> list[ConversationMessage]:
        """Last ``limit`` messages, oldest first."""
        return self.messages.get_recent(thread_id, limit=limit)

    def get_history_items(
        self, thread_id: uuid.UUID, limit: Optional[int] = None
    ) -> list[HistoryItem]:
        """Recent messages reduced to what enrichers and prompts read."""
        rows = self.get_messages(thread_id, limit=limit or settings.history_limit)
        return [to_history_item(row) for row in rows]

    def save_message(
        self,
        thread_id: uuid.UUID,
        user_id: uuid.UUID,
        role: MessageRole,
        content: dict[str, Any],
        message_type: str = "text",
        activity_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> ConversationMessage:
        """
        Append a message and bump the thread counters.

        The first user message gives the thread its title. Text messages
        get an embedding job; if enqueueing fails the message is kept.
        """
        now = now or utcnow()
        message = self.messages.create(
            conversation_id=thread_id,
            user_id=user_id,
            role=role,
            message_type=message_type,
            content=content,
            activity_id=activity_id,
            created_at=now,
        )

        text = message.text
        title = text[:TITLE_MAX_CHARS] if role == MessageRole.USER and text else None
        self.threads.record_message(thread_id, at=now, title=title)

        if message_type == "text" and 0 < len(text) < settings.embedding_max_chars:
            try:
                self.jobs.enqueue(JobType.EMBED_MESSAGE, {"message_id": str(message.id)})
            except Exception as e:
                logger.error(f"Failed to schedule embedding for message {message.id}: {e}")

        return message

    def list_threads(self, user_id: uuid.UUID, limit: int = 20) -> list[Conversation]:
        return self.threads.list_for_user(user_id, limit=limit)

    def get_thread(
        self, thread_id: uuid.UUID, user_id: uuid.UUID
    ) -> Optional[Conversation]:
        """Thread with messages loaded, only if owned by the user."""
        return self.threads.get_with_messages(thread_id, user_id)

    def delete_thread(self, thread_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        thread = self.threads.get_for_user(thread_id, user_id)
        if thread is None:
            return False
        self.session.delete(thread)
        self.session.flush()
        return True

    def clear_threads(self, user_id: uuid.UUID) -> int:
        count = self.threads.delete_for_user(user_id)
        logger.info(f"Cleared {count} threads for user {user_id}")
        return count

    def messages_by_activity(self, activity_id: uuid.UUID) -> list[ConversationMessage]:
        return self.messages.get_by_activity(activity_id)

    def get_last_assistant_widget(
        self, thread_id: uuid.UUID
    ) -> Optional[ConversationMessage]:
        return self.messages.get_last_assistant_widget(thread_id)


def to_history_item(message: ConversationMessage) -> HistoryItem:
    """Flatten a stored message into a HistoryItem."""
    content = message.content if isinstance(message.content, dict) else {}
    activity_title = content.get("activityTitle") or content.get("title")
    location_name = content.get("locationName")
    role = message.role.value if isinstance(message.role, MessageRole) else str(message.role)
    return HistoryItem(
        role=role,
        text=message.text,
        message_type=message.message_type,
        activity_title=activity_title if isinstance(activity_title, str) else None,
        location_name=location_name if isinstance(location_name, str) else None,
        created_at=message.created_at,
    )
