"""
Partner intent matching.

An intent is matched against active intents of the same activity type
from other users within the match radius. Candidates whose tags conflict
are dropped; the rest are scored by tag overlap, and a group at or above
the threshold becomes an ``IntentMatch`` awaiting the organizer's
confirmation.
"""

import logging
import uuid
from collections import Counter
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from juchang_ai.config import settings
from juchang_ai.db.repositories import IntentMatchRepository, PartnerIntentRepository
from juchang_ai.exceptions import MatchConfirmationError
from juchang_ai.models.db import (
    IntentMatch,
    MatchOutcome,
    PartnerIntent,
    PartnerIntentStatus,
)
from juchang_ai.utils.geo import haversine_km
from juchang_ai.utils.timeutils import LOCAL_TZ, as_utc, utcnow

logger = logging.getLogger(__name__)

CONFLICTING_TAGS: list[tuple[str, str]] = [
    ("NoAlcohol", "Drinking"),
    ("Quiet", "Party"),
    ("GirlOnly", "BoyOnly"),
    ("AA", "Treat"),
]


def has_tag_conflict(tags_a: list[str], tags_b: list[str]) -> bool:
    for first, second in CONFLICTING_TAGS:
        if (first in tags_a and second in tags_b) or (
            second in tags_a and first in tags_b
        ):
            return True
    return False


def common_tags(tag_lists: list[list[str]]) -> list[str]:
    """Tags carried by at least two intents, in first-seen order."""
    counts = Counter(tag for tags in tag_lists for tag in dict.fromkeys(tags))
    return [tag for tag, count in counts.items() if count >= 2]


def match_score(tag_lists: list[list[str]]) -> int:
    """
    Overlap score in [0, 100].

    Without any tags the shared activity type alone is a full match.
    Otherwise: common tags relative to the average tag count per intent.
    """
    total = sum(len(tags) for tags in tag_lists)
    if total == 0:
        return 100
    average = total / len(tag_lists)
    score = round(len(common_tags(tag_lists)) / max(average, 1) * 100)
    return min(100, score)


def confirm_deadline(now: datetime, window_hours: Optional[float] = None) -> datetime:
    """The earlier of ``now + window`` and the end of the local day."""
    window = timedelta(
        hours=window_hours
        if window_hours is not None
        else settings.match_confirm_window_hours
    )
    local = now.astimezone(LOCAL_TZ)
    end_of_day = datetime.combine(local.date(), time(23, 59, 59), tzinfo=LOCAL_TZ)
    return min(now + window, end_of_day).astimezone(timezone.utc)


class PartnerMatcher:
    """Finds, confirms and expires intent matches."""

    def __init__(
        self,
        session: Session,
        threshold: Optional[int] = None,
        radius_km: Optional[float] = None,
    ):
        self.session = session
        self.intents = PartnerIntentRepository(session)
        self.matches = IntentMatchRepository(session)
        self.threshold = (
            threshold if threshold is not None else settings.match_score_threshold
        )
        self.radius_km = (
            radius_km if radius_km is not None else settings.match_radius_km
        )

    def find_match(
        self, intent: PartnerIntent, now: Optional[datetime] = None
    ) -> Optional[IntentMatch]:
        """
        Try to group ``intent`` with compatible candidates.

        Returns:
            The created match, or None when no group scores high enough
        """
        now = now or utcnow()
        if intent.status != PartnerIntentStatus.ACTIVE:
            return None

        candidates = [
            c
            for c in self.intents.find_candidates(
                intent.activity_type, intent.user_id, now
            )
            if c.id != intent.id
            and haversine_km(intent.lat, intent.lng, c.lat, c.lng) <= self.radius_km
            and not has_tag_conflict(intent.tags or [], c.tags or [])
        ]
        # One intent per other user: their earliest
        by_user: dict[uuid.UUID, PartnerIntent] = {}
        for candidate in candidates:
            by_user.setdefault(candidate.user_id, candidate)
        if not by_user:
            return None

        group = [intent, *by_user.values()]
        tag_lists = [list(i.tags or []) for i in group]
        score = match_score(tag_lists)
        if score < self.threshold:
            logger.debug(
                f"Intent {intent.id}: best group scored {score} < {self.threshold}"
            )
            return None

        return self._create_match(group, score, common_tags(tag_lists), now)

    def _create_match(
        self,
        group: list[PartnerIntent],
        score: int,
        shared_tags: list[str],
        now: datetime,
    ) -> IntentMatch:
        organizer = min(group, key=lambda i: as_utc(i.created_at))
        anchor = group[0]
        match = self.matches.create(
            activity_type=anchor.activity_type,
            intent_ids=[str(i.id) for i in group],
            user_ids=[str(i.user_id) for i in group],
            match_score=score,
            common_tags=shared_tags,
            center_location_hint=anchor.location_hint,
            center_lat=anchor.lat,
            center_lng=anchor.lng,
            temp_organizer_id=organizer.user_id,
            confirm_deadline=confirm_deadline(now),
            outcome=MatchOutcome.PENDING,
            created_at=now,
        )
        for member in group:
            member.status = PartnerIntentStatus.MATCHED
        self.session.flush()

        logger.info(
            f"Created match {match.id} for {len(group)} intents "
            f"(type={match.activity_type}, score={score})"
        )
        return match

    def confirm(
        self, match_id: uuid.UUID, user_id: uuid.UUID, now: Optional[datetime] = None
    ) -> IntentMatch:
        """
        Confirm a pending match as its temporary organizer.

        Raises:
            MatchConfirmationError: Unknown match, wrong user, already
                handled, or past the deadline
        """
        now = now or utcnow()
        match = self.matches.get(match_id)
        if match is None:
            raise MatchConfirmationError("找不到这个匹配")
        if match.temp_organizer_id != user_id:
            raise MatchConfirmationError("只有临时召集人才能确认")
        if match.outcome != MatchOutcome.PENDING:
            raise MatchConfirmationError("这个匹配已经处理过了")
        if as_utc(match.confirm_deadline) < now:
            self._expire(match)
            raise MatchConfirmationError("匹配已过期，请重新发布意向")

        match.outcome = MatchOutcome.CONFIRMED
        match.confirmed_at = now
        self.session.flush()
        logger.info(f"Match {match.id} confirmed by {user_id}")
        return match

    def cancel_for_intent(self, intent: PartnerIntent) -> Optional[IntentMatch]:
        """
        Cancel the pending match containing ``intent``.

        The other members' intents go back to active so they can match again.
        """
        key = str(intent.id)
        for match in self.matches.list_pending_for_user(intent.user_id):
            if key not in (match.intent_ids or []):
                continue
            match.outcome = MatchOutcome.CANCELLED
            for other_id in match.intent_ids:
                if other_id == key:
                    continue
                other = self.intents.get(uuid.UUID(other_id))
                if other is not None and other.status == PartnerIntentStatus.MATCHED:
                    other.status = PartnerIntentStatus.ACTIVE
            self.session.flush()
            logger.info(f"Match {match.id} cancelled with intent {intent.id}")
            return match
        return None

    def expire_stale(self, now: Optional[datetime] = None) -> tuple[int, int]:
        """
        Expire overdue matches (and their intents) and intents past expiry.

        Returns:
            (intents expired, matches expired)
        """
        now = now or utcnow()
        overdue = self.matches.expire_overdue(now)
        for match in overdue:
            self._expire_members(match)
        intents_expired = self.intents.expire_stale(now)
        self.session.flush()
        if overdue or intents_expired:
            logger.info(
                f"Expired {len(overdue)} matches and {intents_expired} partner intents"
            )
        return intents_expired, len(overdue)

    def _expire(self, match: IntentMatch) -> None:
        match.outcome = MatchOutcome.EXPIRED
        self._expire_members(match)
        self.session.flush()

    def _expire_members(self, match: IntentMatch) -> None:
        for intent_id in match.intent_ids or []:
            intent = self.intents.get(uuid.UUID(intent_id))
            if intent is not None and intent.status == PartnerIntentStatus.MATCHED:
                intent.status = PartnerIntentStatus.EXPIRED
