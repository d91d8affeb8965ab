"""
Conversation message repository.
"""

import uuid
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from juchang_ai.db.repositories.base import BaseRepository
from juchang_ai.models.db import ConversationMessage, MessageRole


class MessageRepository(BaseRepository[ConversationMessage]):
    """Repository for ConversationMessage model."""

    def __init__(self, session: Session):
        super().__init__(ConversationMessage, session)

    def get_recent(
        self, conversation_id: uuid.UUID, limit: int = 20
    ) -> list[ConversationMessage]:
        """
        Get the last ``limit`` messages of a thread in chronological order.
        """
        rows = (
            self.session.query(ConversationMessage)
            .filter(ConversationMessage.conversation_id == conversation_id)
            .order_by(ConversationMessage.created_at.desc())
            .limit(limit)
            .all()
        )
        rows.reverse()
        return rows

    def get_by_activity(
        self, activity_id: uuid.UUID, limit: int = 50
    ) -> list[ConversationMessage]:
        """Get messages linked to an activity, oldest first."""
        return (
            self.session.query(ConversationMessage)
            .filter(ConversationMessage.activity_id == activity_id)
            .order_by(ConversationMessage.created_at)
            .limit(limit)
            .all()
        )

    def get_last_of_type(
        self,
        conversation_id: uuid.UUID,
        message_type: str,
        role: Optional[MessageRole] = None,
    ) -> Optional[ConversationMessage]:
        """Get the newest message of a given type in a thread."""
        query = self.session.query(ConversationMessage).filter(
            ConversationMessage.conversation_id == conversation_id,
            ConversationMessage.message_type == message_type,
        )
        if role is not None:
            query = query.filter(ConversationMessage.role == role)
        return query.order_by(ConversationMessage.created_at.desc()).first()

    def get_last_assistant_widget(
        self, conversation_id: uuid.UUID
    ) -> Optional[ConversationMessage]:
        """Get the newest assistant message carrying a widget payload."""
        return (
            self.session.query(ConversationMessage)
            .filter(
                ConversationMessage.conversation_id == conversation_id,
                ConversationMessage.role == MessageRole.ASSISTANT,
                ConversationMessage.message_type.like("widget_%"),
            )
            .order_by(ConversationMessage.created_at.desc())
            .first()
        )

    def set_embedding(self, id: uuid.UUID, embedding: list[float]) -> bool:
        """Back-fill the embedding vector of a message."""
        message = self.get(id)
        if message is None:
            return False
        message.embedding = embedding
        self.session.flush()
        return True

    def nearest_for_user(
        self,
        user_id: uuid.UUID,
        vector: Sequence[float],
        limit: int,
        max_distance: float,
        exclude_conversation_id: Optional[uuid.UUID] = None,
    ) -> list[tuple[ConversationMessage, float]]:
        """
        A user's messages closest to ``vector`` by cosine distance.

        Returns (message, distance) pairs, nearest first. Ordering and the
        limit are applied by the database (pgvector ``<=>``).
        """
        distance = ConversationMessage.embedding.cosine_distance(list(vector))
        query = self.session.query(ConversationMessage, distance).filter(
            ConversationMessage.user_id == user_id,
            ConversationMessage.embedding.is_not(None),
            distance <= max_distance,
        )
        if exclude_conversation_id is not None:
            query = query.filter(
                ConversationMessage.conversation_id != exclude_conversation_id
            )
        rows = query.order_by(distance).limit(limit).all()
        return [(message, float(d)) for message, d in rows]
