"""
Repository layer for database operations.

Provides a clean API for CRUD operations on database models.
"""

from juchang_ai.db.repositories.base import BaseRepository
from juchang_ai.db.repositories.conversation import ConversationRepository
from juchang_ai.db.repositories.message import MessageRepository
from juchang_ai.db.repositories.partner_intent import (
    IntentMatchRepository,
    PartnerIntentRepository,
)
from juchang_ai.db.repositories.security_event import SecurityEventRepository
from juchang_ai.db.repositories.user import UserRepository
from juchang_ai.db.repositories.working_profile import WorkingProfileRepository

__all__ = [
    "BaseRepository",
    "ConversationRepository",
    "IntentMatchRepository",
    "MessageRepository",
    "PartnerIntentRepository",
    "SecurityEventRepository",
    "UserRepository",
    "WorkingProfileRepository",
]
