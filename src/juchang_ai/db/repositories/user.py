"""
User repository, including the atomic daily-quota statements.
"""

import uuid
from datetime import date
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from juchang_ai.db.repositories.base import BaseRepository
from juchang_ai.models.db import User


class UserRepository(BaseRepository[User]):
    """Repository for User model."""

    def __init__(self, session: Session):
        super().__init__(User, session)

    def reset_quota_if_stale(
        self, user_id: uuid.UUID, today: date, daily_limit: int
    ) -> bool:
        """
        Refill the quota when it was last reset before ``today``.

        The date check is part of the UPDATE, so concurrent callers refill
        at most once per day.

        Returns:
            True if this call performed the reset
        """
        result = self.session.execute(
            update(User)
            .where(
                User.id == user_id,
                or_(User.ai_quota_reset_on.is_(None), User.ai_quota_reset_on < today),
            )
            .values(ai_quota_remaining=daily_limit, ai_quota_reset_on=today)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def decrement_quota(self, user_id: uuid.UUID) -> bool:
        """
        Atomically take one unit of quota.

        Returns:
            True if a unit was taken, False if none was left
        """
        result = self.session.execute(
            update(User)
            .where(User.id == user_id, User.ai_quota_remaining > 0)
            .values(ai_quota_remaining=User.ai_quota_remaining - 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def get_quota_state(
        self, user_id: uuid.UUID
    ) -> Optional[tuple[int, Optional[date]]]:
        """
        Read (remaining, reset_on) straight from the table.

        Column queries bypass the identity map, so values written by the
        UPDATEs above are visible without a refresh.
        """
        row = (
            self.session.query(User.ai_quota_remaining, User.ai_quota_reset_on)
            .filter(User.id == user_id)
            .first()
        )
        return (row[0], row[1]) if row else None
