"""
Daily AI quota.

Every metered request takes one unit with a single conditional UPDATE, so
two concurrent requests can never both spend the last unit. The daily
refill is also a conditional UPDATE and happens lazily on first use.
"""

import logging
import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Session

from juchang_ai.config import settings
from juchang_ai.db.repositories import UserRepository
from juchang_ai.exceptions import AuthenticationRequiredError, QuotaExceededError
from juchang_ai.utils.timeutils import LOCAL_TZ, utcnow

logger = logging.getLogger(__name__)


def local_today(now: Optional[datetime] = None) -> date:
    """The platform's calendar date for ``now``."""
    return (now or utcnow()).astimezone(LOCAL_TZ).date()


class QuotaService:
    """Check-and-decrement of the per-user daily AI quota."""

    def __init__(self, session: Session, daily_limit: Optional[int] = None):
        self.session = session
        self.users = UserRepository(session)
        self.daily_limit = (
            daily_limit if daily_limit is not None else settings.daily_ai_quota
        )

    def consume(self, user_id: uuid.UUID, today: Optional[date] = None) -> None:
        """
        Spend one unit of today's quota.

        Raises:
            QuotaExceededError: No units left
            AuthenticationRequiredError: Unknown user
        """
        today = today or local_today()
        if self.users.reset_quota_if_stale(user_id, today, self.daily_limit):
            logger.info(f"Refilled daily AI quota for user {user_id}")

        if self.users.decrement_quota(user_id):
            return

        if self.users.get(user_id) is None:
            raise AuthenticationRequiredError("unknown user")
        logger.info(f"AI quota exhausted for user {user_id}")
        raise QuotaExceededError(str(user_id))

    def get_remaining(self, user_id: uuid.UUID, today: Optional[date] = None) -> int:
        """Units left today, counting a pending refill."""
        row = self.users.get_quota_state(user_id)
        if row is None:
            return 0
        remaining, reset_on = row
        today = today or local_today()
        if reset_on is None or reset_on < today:
            return self.daily_limit
        return remaining
