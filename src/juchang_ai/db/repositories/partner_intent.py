"""
Partner intent and intent match repositories.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from juchang_ai.db.repositories.base import BaseRepository
from juchang_ai.models.db import (
    IntentMatch,
    MatchOutcome,
    PartnerIntent,
    PartnerIntentStatus,
)


class PartnerIntentRepository(BaseRepository[PartnerIntent]):
    """Repository for PartnerIntent model."""

    def __init__(self, session: Session):
        super().__init__(PartnerIntent, session)

    def get_active_by_type(
        self, user_id: uuid.UUID, activity_type: str
    ) -> Optional[PartnerIntent]:
        """Get the user's active intent for an activity type, if any."""
        return (
            self.session.query(PartnerIntent)
            .filter(
                PartnerIntent.user_id == user_id,
                PartnerIntent.activity_type == activity_type,
                PartnerIntent.status == PartnerIntentStatus.ACTIVE,
            )
            .first()
        )

    def list_for_user(
        self,
        user_id: uuid.UUID,
        status: Optional[PartnerIntentStatus] = None,
        limit: int = 20,
    ) -> list[PartnerIntent]:
        """List a user's intents, newest first."""
        query = self.session.query(PartnerIntent).filter(
            PartnerIntent.user_id == user_id
        )
        if status is not None:
            query = query.filter(PartnerIntent.status == status)
        return query.order_by(PartnerIntent.created_at.desc()).limit(limit).all()

    def find_candidates(
        self, activity_type: str, exclude_user_id: uuid.UUID, now: datetime
    ) -> list[PartnerIntent]:
        """Active, unexpired intents of the same type owned by other users."""
        return (
            self.session.query(PartnerIntent)
            .filter(
                PartnerIntent.activity_type == activity_type,
                PartnerIntent.status == PartnerIntentStatus.ACTIVE,
                PartnerIntent.user_id != exclude_user_id,
                PartnerIntent.expires_at > now,
            )
            .order_by(PartnerIntent.created_at)
            .all()
        )

    def most_frequent_activity_type(self, user_id: uuid.UUID) -> Optional[str]:
        """The activity type the user has asked for most often."""
        row = (
            self.session.query(
                PartnerIntent.activity_type, func.count(PartnerIntent.id).label("n")
            )
            .filter(PartnerIntent.user_id == user_id)
            .group_by(PartnerIntent.activity_type)
            .order_by(func.count(PartnerIntent.id).desc())
            .first()
        )
        return row[0] if row else None

    def mark_matched(self, intent_ids: list[uuid.UUID]) -> int:
        """Move active intents to matched. Returns the number updated."""
        result = self.session.execute(
            update(PartnerIntent)
            .where(
                PartnerIntent.id.in_(intent_ids),
                PartnerIntent.status == PartnerIntentStatus.ACTIVE,
            )
            .values(status=PartnerIntentStatus.MATCHED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def expire_stale(self, now: datetime) -> int:
        """Expire active intents whose expiry has passed."""
        result = self.session.execute(
            update(PartnerIntent)
            .where(
                PartnerIntent.status == PartnerIntentStatus.ACTIVE,
                PartnerIntent.expires_at <= now,
            )
            .values(status=PartnerIntentStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class IntentMatchRepository(BaseRepository[IntentMatch]):
    """Repository for IntentMatch model."""

    def __init__(self, session: Session):
        super().__init__(IntentMatch, session)

    def list_pending_for_user(self, user_id: uuid.UUID) -> list[IntentMatch]:
        """
        Pending matches that include the user.

        Membership lives in a JSON list, so the filter runs in Python.
        """
        pending = (
            self.session.query(IntentMatch)
            .filter(IntentMatch.outcome == MatchOutcome.PENDING)
            .order_by(IntentMatch.created_at.desc())
            .all()
        )
        key = str(user_id)
        return [m for m in pending if key in (m.user_ids or [])]

    def expire_overdue(self, now: datetime) -> list[IntentMatch]:
        """Expire pending matches past their confirmation deadline."""
        overdue = (
            self.session.query(IntentMatch)
            .filter(
                IntentMatch.outcome == MatchOutcome.PENDING,
                IntentMatch.confirm_deadline <= now,
            )
            .all()
        )
        for match in overdue:
            match.outcome = MatchOutcome.EXPIRED
        self.session.flush()
        return overdue
