"""
Working profile repository.
"""

import uuid
from typing import Optional

from sqlalchemy.orm import Session

from juchang_ai.db.repositories.base import BaseRepository
from juchang_ai.models.db import WorkingProfile


class WorkingProfileRepository(BaseRepository[WorkingProfile]):
    """Repository for WorkingProfile model (keyed by user id)."""

    def __init__(self, session: Session):
        super().__init__(WorkingProfile, session)

    def get_by_user(self, user_id: uuid.UUID) -> Optional[WorkingProfile]:
        return self.session.get(WorkingProfile, user_id)

    def upsert(
        self,
        user_id: uuid.UUID,
        preferences: list[dict],
        frequent_locations: list[str],
        interest_vectors: Optional[list[list[float]]] = None,
    ) -> WorkingProfile:
        """
        Write the full profile for a user, creating the row if missing.

        JSON columns are reassigned (not mutated in place) so the change is
        always detected by the unit of work.
        """
        profile = self.get_by_user(user_id)
        if profile is None:
            profile = WorkingProfile(
                user_id=user_id,
                preferences=list(preferences),
                frequent_locations=list(frequent_locations),
                interest_vectors=list(interest_vectors or []),
            )
            self.session.add(profile)
        else:
            profile.preferences = list(preferences)
            profile.frequent_locations = list(frequent_locations)
            if interest_vectors is not None:
                profile.interest_vectors = list(interest_vectors)
        self.session.flush()
        return profile
