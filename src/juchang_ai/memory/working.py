"""
Working memory: the assistant's structured profile of a user.

Merging is keyed by ``category:value`` (case-insensitive), so repeated
extractions refresh existing entries instead of piling up duplicates.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from juchang_ai.db.repositories.working_profile import WorkingProfileRepository
from juchang_ai.models.runtime import ExtractedPreferences, Preference, ProfileData
from juchang_ai.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

MAX_PREFERENCES = 20
MAX_LOCATIONS = 5
MAX_INTEREST_VECTORS = 3
STALE_AFTER = timedelta(days=7)

CATEGORY_LABELS = {
    "activity_type": "活动",
    "time": "时间",
    "location": "地点",
    "food": "饮食",
    "social": "社交",
}


def merge_preferences(
    existing: list[Preference], incoming: list[Preference]
) -> list[Preference]:
    """
    Merge new preferences into existing ones.

    For a known key the entry is updated in place: sentiment and timestamp
    always follow the newest statement; confidence takes the higher value,
    unless the old entry is stale (older than 7 days), in which case the
    new confidence replaces it.

    Returns:
        Newest first, capped at MAX_PREFERENCES
    """
    merged: dict[str, Preference] = {p.key: p for p in existing}

    for pref in incoming:
        current = merged.get(pref.key)
        if current is None:
            merged[pref.key] = pref
            continue

        stale = as_utc(pref.updated_at) - as_utc(current.updated_at) > STALE_AFTER
        confidence = pref.confidence if stale else max(current.confidence, pref.confidence)
        merged[pref.key] = Preference(
            category=current.category,
            value=current.value,
            sentiment=pref.sentiment,
            confidence=confidence,
            updated_at=max(as_utc(current.updated_at), as_utc(pref.updated_at)),
        )

    ordered = sorted(merged.values(), key=lambda p: as_utc(p.updated_at), reverse=True)
    return ordered[:MAX_PREFERENCES]


def merge_locations(existing: list[str], incoming: list[str]) -> list[str]:
    """Newly mentioned locations first, then older ones, unique, capped."""
    merged = list(dict.fromkeys([*incoming, *existing]))
    return merged[:MAX_LOCATIONS]


def build_profile_prompt(profile: ProfileData) -> str:
    """
    Render the profile as a short prompt section.

    Returns:
        Empty string for an empty profile
    """
    if profile.is_empty:
        return ""

    likes = [p for p in profile.preferences if p.sentiment == "like"][:5]
    dislikes = [p for p in profile.preferences if p.sentiment == "dislike"][:5]
    lines = ["<user_profile>"]
    if likes:
        lines.append("  喜欢：" + "、".join(_label(p) for p in likes))
    if dislikes:
        lines.append("  不喜欢：" + "、".join(_label(p) for p in dislikes))
    if profile.frequent_locations:
        lines.append("  常去：" + "、".join(profile.frequent_locations[:3]))
    lines.append("</user_profile>")
    return "\n".join(lines)


def _label(pref: Preference) -> str:
    category = CATEGORY_LABELS.get(pref.category)
    return f"{pref.value}（{category}）" if category else pref.value


class WorkingMemory:
    """Reads and merge-writes working profiles."""

    def __init__(self, session: Session):
        self.session = session
        self.repo = WorkingProfileRepository(session)

    def get_profile(self, user_id: uuid.UUID) -> ProfileData:
        """Load a profile; a missing row is an empty profile."""
        row = self.repo.get_by_user(user_id)
        if row is None:
            return ProfileData()

        preferences = []
        for raw in row.preferences or []:
            try:
                preferences.append(Preference.from_dict(raw))
            except (KeyError, ValueError) as e:
                logger.warning(f"Dropping malformed preference for user {user_id}: {e}")
        return ProfileData(
            preferences=preferences,
            frequent_locations=list(row.frequent_locations or []),
            interest_vectors=list(row.interest_vectors or []),
        )

    def update_profile(
        self,
        user_id: uuid.UUID,
        extracted: ExtractedPreferences,
        now: Optional[datetime] = None,
    ) -> ProfileData:
        """
        Merge an extraction result into the stored profile.

        Incoming preferences without a timestamp are stamped with ``now``.
        """
        now = now or utcnow()
        profile = self.get_profile(user_id)
        incoming = [
            Preference(
                category=p.category,
                value=p.value,
                sentiment=p.sentiment,
                confidence=p.confidence,
                updated_at=p.updated_at or now,
            )
            for p in extracted.preferences
        ]

        profile.preferences = merge_preferences(profile.preferences, incoming)
        profile.frequent_locations = merge_locations(
            profile.frequent_locations, extracted.frequent_locations
        )
        self._save(user_id, profile)
        logger.debug(
            f"Updated working profile for {user_id}: "
            f"{len(profile.preferences)} preferences, "
            f"{len(profile.frequent_locations)} locations"
        )
        return profile

    def add_interest_vector(self, user_id: uuid.UUID, vector: list[float]) -> None:
        """Keep the most recent interest vectors, newest first."""
        profile = self.get_profile(user_id)
        profile.interest_vectors = [vector, *profile.interest_vectors][:MAX_INTEREST_VECTORS]
        self._save(user_id, profile)

    def clear(self, user_id: uuid.UUID) -> None:
        self._save(user_id, ProfileData())

    def _save(self, user_id: uuid.UUID, profile: ProfileData) -> None:
        self.repo.upsert(
            user_id=user_id,
            preferences=[p.to_dict() for p in profile.preferences],
            frequent_locations=profile.frequent_locations,
            interest_vectors=profile.interest_vectors,
        )
