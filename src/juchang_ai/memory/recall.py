"""Semantic recall over stored message embeddings."""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from juchang_ai.config import settings
from juchang_ai.db.repositories import MessageRepository
from juchang_ai.models.db import ConversationMessage

logger = logging.getLogger(__name__)


@dataclass
class RecalledMessage:
    message: ConversationMessage
    similarity: float


def recall(
    session: Session,
    query_vector: Sequence[float],
    user_id: uuid.UUID,
    limit: Optional[int] = None,
    threshold: Optional[float] = None,
    exclude_thread_id: Optional[uuid.UUID] = None,
) -> list[RecalledMessage]:
    """
    Most similar messages of a user, best first.

    ``threshold`` is a minimum cosine similarity; the database filters on
    the equivalent cosine distance (``1 - threshold``).
    """
    limit = limit if limit is not None else settings.recall_limit
    threshold = threshold if threshold is not None else settings.recall_threshold

    rows = MessageRepository(session).nearest_for_user(
        user_id,
        query_vector,
        limit=limit,
        max_distance=1.0 - threshold,
        exclude_conversation_id=exclude_thread_id,
    )
    logger.debug(f"Recall for {user_id}: {len(rows)} messages above {threshold}")
    return [
        RecalledMessage(message=message, similarity=1.0 - distance)
        for message, distance in rows
    ]
