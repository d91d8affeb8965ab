"""
Partner intent operations.

Backs the partner tools and the broker flow: recording an intent (which
immediately tries to match it), listing, cancelling and confirming.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from juchang_ai.broker.matcher import PartnerMatcher
from juchang_ai.config import settings
from juchang_ai.db.repositories import IntentMatchRepository, PartnerIntentRepository
from juchang_ai.exceptions import AuthenticationRequiredError, ToolError
from juchang_ai.models.db import IntentMatch, PartnerIntent, PartnerIntentStatus
from juchang_ai.models.runtime import GeoLocation
from juchang_ai.utils.geo import location_label
from juchang_ai.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

ACTIVITY_TYPES = ("food", "entertainment", "sports", "boardgame", "coffee", "other")

TYPE_NAMES = {
    "food": "美食",
    "entertainment": "娱乐",
    "sports": "运动",
    "boardgame": "桌游",
    "coffee": "咖啡",
    "other": "其他",
}


@dataclass
class IntentOutcome:
    """A recorded intent and the match it produced, if any."""

    intent: PartnerIntent
    match: Optional[IntentMatch] = None

    @property
    def matched(self) -> bool:
        return self.match is not None


class PartnerService:
    """Partner intents and matches for one database session."""

    def __init__(self, session: Session, matcher: Optional[PartnerMatcher] = None):
        self.session = session
        self.intents = PartnerIntentRepository(session)
        self.matches = IntentMatchRepository(session)
        self.matcher = matcher or PartnerMatcher(session)

    def create_intent(
        self,
        user_id: Optional[uuid.UUID],
        location: Optional[GeoLocation],
        activity_type: str,
        raw_input: str,
        location_hint: Optional[str] = None,
        time_preference: Optional[str] = None,
        tags: Optional[list[str]] = None,
        budget_type: Optional[str] = None,
        poi_preference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> IntentOutcome:
        """
        Record a partner intent and try to match it right away.

        Raises:
            AuthenticationRequiredError: Anonymous caller
            ToolError: No location, unknown type, or an active intent of
                the same type already exists
        """
        if user_id is None:
            raise AuthenticationRequiredError("发布搭子意向")
        if location is None:
            raise ToolError("需要获取你的位置才能匹配附近的搭子")
        if activity_type not in ACTIVITY_TYPES:
            raise ToolError(f"未知的活动类型: {activity_type}")
        if self.intents.get_active_by_type(user_id, activity_type) is not None:
            raise ToolError(f"你已经有一个[{TYPE_NAMES[activity_type]}]意向在等待匹配了")

        now = now or utcnow()
        tags = list(dict.fromkeys(tags or []))
        if budget_type and budget_type not in tags:
            tags.append(budget_type)

        intent = self.intents.create(
            user_id=user_id,
            activity_type=activity_type,
            location_hint=location_hint
            or location_label(location.lat, location.lng, location.name),
            lat=location.lat,
            lng=location.lng,
            time_preference=time_preference,
            tags=tags,
            raw_input=raw_input,
            budget_type=budget_type,
            poi_preference=poi_preference,
            status=PartnerIntentStatus.ACTIVE,
            expires_at=now + timedelta(hours=settings.partner_intent_ttl_hours),
            created_at=now,
            updated_at=now,
        )
        logger.info(f"Recorded partner intent {intent.id} ({activity_type}) for {user_id}")

        match = self.matcher.find_match(intent, now=now)
        return IntentOutcome(intent=intent, match=match)

    def list_my_intents(self, user_id: uuid.UUID) -> dict:
        """Active intents plus pending matches, shaped for a widget."""
        intents = self.intents.list_for_user(user_id, status=PartnerIntentStatus.ACTIVE)
        pending = self.matches.list_pending_for_user(user_id)
        if intents or pending:
            summary = f"你有 {len(intents)} 个活跃意向，{len(pending)} 个待确认匹配"
        else:
            summary = "你还没有发布搭子意向"
        return {
            "intents": [intent_to_dict(i) for i in intents],
            "pendingMatches": [match_to_dict(m, user_id) for m in pending],
            "summary": summary,
        }

    def cancel_intent(self, user_id: uuid.UUID, intent_id: uuid.UUID) -> PartnerIntent:
        """
        Cancel one of the user's intents.

        An intent in a pending match cancels that match too.
        """
        intent = self.intents.get(intent_id)
        if intent is None or intent.user_id != user_id:
            raise ToolError("找不到这个意向")
        if intent.status == PartnerIntentStatus.MATCHED:
            self.matcher.cancel_for_intent(intent)
        elif intent.status != PartnerIntentStatus.ACTIVE:
            raise ToolError("这个意向已经不能取消了")

        intent.status = PartnerIntentStatus.CANCELLED
        self.session.flush()
        logger.info(f"Partner intent {intent.id} cancelled by {user_id}")
        return intent

    def confirm_match(
        self, match_id: uuid.UUID, user_id: uuid.UUID, now: Optional[datetime] = None
    ) -> IntentMatch:
        return self.matcher.confirm(match_id, user_id, now=now)

    def expire_stale(self, now: Optional[datetime] = None) -> tuple[int, int]:
        return self.matcher.expire_stale(now=now)


def intent_to_dict(intent: PartnerIntent) -> dict:
    return {
        "id": str(intent.id),
        "type": intent.activity_type,
        "typeName": TYPE_NAMES.get(intent.activity_type, intent.activity_type),
        "locationHint": intent.location_hint,
        "timePreference": intent.time_preference,
        "tags": list(intent.tags or []),
        "status": intent.status.value,
        "expiresAt": intent.expires_at.isoformat() if intent.expires_at else None,
    }


def match_to_dict(match: IntentMatch, user_id: Optional[uuid.UUID] = None) -> dict:
    return {
        "id": str(match.id),
        "type": match.activity_type,
        "typeName": TYPE_NAMES.get(match.activity_type, match.activity_type),
        "matchScore": match.match_score,
        "commonTags": list(match.common_tags or []),
        "locationHint": match.center_location_hint,
        "confirmDeadline": match.confirm_deadline.isoformat(),
        "outcome": match.outcome.value,
        "isTempOrganizer": user_id is not None and match.temp_organizer_id == user_id,
    }
