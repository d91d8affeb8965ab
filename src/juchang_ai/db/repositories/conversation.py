"""
Conversation (thread) repository.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, selectinload

from juchang_ai.db.repositories.base import BaseRepository
from juchang_ai.models.db import Conversation


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for Conversation model."""

    def __init__(self, session: Session):
        super().__init__(Conversation, session)

    def get_for_user(
        self, id: uuid.UUID, user_id: uuid.UUID
    ) -> Optional[Conversation]:
        """Get a thread only if it belongs to the given user."""
        return (
            self.session.query(Conversation)
            .filter(Conversation.id == id, Conversation.user_id == user_id)
            .first()
        )

    def get_with_messages(
        self, id: uuid.UUID, user_id: uuid.UUID
    ) -> Optional[Conversation]:
        """Get a user's thread with its messages eagerly loaded."""
        return (
            self.session.query(Conversation)
            .options(selectinload(Conversation.messages))
            .filter(Conversation.id == id, Conversation.user_id == user_id)
            .first()
        )

    def get_latest_active(
        self, user_id: uuid.UUID, since: datetime
    ) -> Optional[Conversation]:
        """
        Get the user's most recent thread with activity at or after ``since``.

        Args:
            user_id: Owner of the thread
            since: Start of the session window

        Returns:
            Most recently active thread inside the window, or None
        """
        return (
            self.session.query(Conversation)
            .filter(
                Conversation.user_id == user_id,
                Conversation.last_message_at >= since,
            )
            .order_by(Conversation.last_message_at.desc())
            .first()
        )

    def list_for_user(
        self, user_id: uuid.UUID, limit: int = 20, offset: int = 0
    ) -> list[Conversation]:
        """List a user's threads, most recently active first."""
        return (
            self.session.query(Conversation)
            .filter(Conversation.user_id == user_id)
            .order_by(Conversation.last_message_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def record_message(
        self,
        id: uuid.UUID,
        at: datetime,
        title: Optional[str] = None,
    ) -> None:
        """
        Bump message_count and last_message_at in one statement.

        The title is only written while the thread has none.
        """
        self.session.execute(
            update(Conversation)
            .where(Conversation.id == id)
            .values(
                message_count=Conversation.message_count + 1,
                last_message_at=at,
            )
        )
        if title:
            self.session.execute(
                update(Conversation)
                .where(Conversation.id == id, Conversation.title.is_(None))
                .values(title=title)
            )
        self.session.flush()

    def delete_for_user(self, user_id: uuid.UUID) -> int:
        """Delete all of a user's threads. Returns the number deleted."""
        threads = (
            self.session.query(Conversation)
            .filter(Conversation.user_id == user_id)
            .all()
        )
        for thread in threads:
            self.session.delete(thread)
        self.session.flush()
        return len(threads)
