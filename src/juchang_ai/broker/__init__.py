"""Partner brokering: the clarify-then-record flow, intents and matching."""

from juchang_ai.broker.flow import (
    BrokerFlow,
    BrokerState,
    BrokerStatus,
    BrokerTurn,
    parse_user_answer,
)
from juchang_ai.broker.matcher import PartnerMatcher, confirm_deadline, match_score
from juchang_ai.broker.partner import IntentOutcome, PartnerService

__all__ = [
    "BrokerFlow",
    "BrokerState",
    "BrokerStatus",
    "BrokerTurn",
    "IntentOutcome",
    "PartnerMatcher",
    "PartnerService",
    "confirm_deadline",
    "match_score",
    "parse_user_answer",
]
