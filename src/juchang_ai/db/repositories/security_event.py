"""
Security event repository.
"""

import uuid
from typing import Optional

from sqlalchemy.orm import Session

from juchang_ai.db.repositories.base import BaseRepository
from juchang_ai.models.db import SecurityEvent


class SecurityEventRepository(BaseRepository[SecurityEvent]):
    """Repository for SecurityEvent model."""

    def __init__(self, session: Session):
        super().__init__(SecurityEvent, session)

    def record(
        self,
        event_type: str,
        reason: str,
        user_id: Optional[uuid.UUID] = None,
        content: Optional[str] = None,
        extra_data: Optional[dict] = None,
    ) -> SecurityEvent:
        """Record an event; content is truncated to a short preview."""
        return self.create(
            event_type=event_type,
            reason=reason,
            user_id=user_id,
            content_preview=content[:200] if content else None,
            extra_data=extra_data or {},
        )

    def list_for_user(self, user_id: uuid.UUID, limit: int = 50) -> list[SecurityEvent]:
        return (
            self.session.query(SecurityEvent)
            .filter(SecurityEvent.user_id == user_id)
            .order_by(SecurityEvent.created_at.desc())
            .limit(limit)
            .all()
        )
