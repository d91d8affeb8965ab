"""
Runtime data models.

Transient dataclasses passed between the classifier, enrichment pipeline,
router and chat entry point. None of these are persisted directly.
"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional


class IntentType(str, enum.Enum):
    """Labels produced by the intent classifier."""

    CREATE = "create"
    EXPLORE = "explore"
    MANAGE = "manage"
    PARTNER = "partner"
    CHITCHAT = "chitchat"
    IDLE = "idle"
    CANCEL = "cancel"
    UNKNOWN = "unknown"


class ClassifyMethod(str, enum.Enum):
    """How a classification was reached."""

    RULE = "rule"
    MODEL = "model"


@dataclass
class ClassifyResult:
    """Outcome of intent classification."""

    intent: IntentType
    confidence: float
    method: ClassifyMethod
    matched_rule: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "intent": self.intent.value,
            "confidence": self.confidence,
            "method": self.method.value,
            "matched_rule": self.matched_rule,
        }


@dataclass
class ChatTurn:
    """A message as sent by the client."""

    role: str  # 'user', 'assistant' or 'system'
    content: str


@dataclass
class GeoLocation:
    """Caller coordinates with an optional human-readable name."""

    lat: float
    lng: float
    name: Optional[str] = None


@dataclass
class DraftContext:
    """The event draft currently open in the client, if any."""

    activity_id: Optional[str]
    current_draft: dict[str, Any] = field(default_factory=dict)


@dataclass
class HistoryItem:
    """A prior message reduced to what enrichers and the model need."""

    role: str
    text: str
    message_type: str = "text"
    activity_title: Optional[str] = None
    location_name: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Preference:
    """A single working-memory preference entry."""

    category: str  # activity_type, time, location, food, social
    value: str
    sentiment: str  # like, dislike
    confidence: float
    updated_at: datetime

    @property
    def key(self) -> str:
        return f"{self.category}:{self.value.lower()}"

    def to_dict(self) -> dict:
        """Convert to dictionary for JSONB storage."""
        return {
            "category": self.category,
            "value": self.value,
            "sentiment": self.sentiment,
            "confidence": self.confidence,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Preference":
        return cls(
            category=data["category"],
            value=data["value"],
            sentiment=data.get("sentiment", "like"),
            confidence=float(data.get("confidence", 0.5)),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass
class ProfileData:
    """In-memory view of a user's working profile."""

    preferences: list[Preference] = field(default_factory=list)
    frequent_locations: list[str] = field(default_factory=list)
    interest_vectors: list[list[float]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.preferences and not self.frequent_locations


@dataclass
class ExtractedPreferences:
    """Output of the preference extractor."""

    preferences: list[Preference] = field(default_factory=list)
    frequent_locations: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.preferences and not self.frequent_locations


@dataclass
class EnrichmentContext:
    """Everything an enricher may read. Built once per request."""

    user_id: Optional[uuid.UUID]
    now: datetime
    location: Optional[GeoLocation] = None
    draft: Optional[DraftContext] = None
    history: list[HistoryItem] = field(default_factory=list)
    # Returns the user's most frequent activity category, or None
    preference_lookup: Optional[Callable[[uuid.UUID], Optional[str]]] = None


@dataclass
class EnricherOutput:
    """Result of a single enricher step."""

    text: str
    applied: list[str] = field(default_factory=list)
    injection: Optional[str] = None


@dataclass
class EnrichmentTrace:
    """Record of one user message that at least one enricher touched."""

    original: str
    enriched: str
    applied: list[str]


@dataclass
class EnrichmentResult:
    """Output of the whole pipeline."""

    messages: list[ChatTurn]
    context_block: str
    trace: list[EnrichmentTrace] = field(default_factory=list)


@dataclass
class RouteFlags:
    """Runtime facts the router adjusts candidates by."""

    has_location: bool = False
    is_authenticated: bool = False
    has_draft: bool = False


@dataclass
class RouteDecision:
    """Agent persona plus ordered tool candidates."""

    agent: str
    tools: list[str]


@dataclass
class RuntimeContext:
    """Per-request context produced by the context builder."""

    user_id: Optional[uuid.UUID]
    thread_id: Optional[uuid.UUID]
    profile: ProfileData
    history: list[HistoryItem]
    location: Optional[GeoLocation] = None
    draft: Optional[DraftContext] = None
    now: Optional[datetime] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None
