"""
SQLAlchemy database models for Juchang AI.

These models hold conversation threads, messages, working memory,
partner intents and matches, plus the bookkeeping tables used by the
quota, guardrails and background worker.
"""

import enum
import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from juchang_ai.config import settings
from juchang_ai.utils.timeutils import utcnow


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        values_callable=lambda x: [e.value for e in x],
    )


class MessageRole(str, enum.Enum):
    """Author of a conversation message."""

    USER = "user"
    ASSISTANT = "assistant"


class PartnerIntentStatus(str, enum.Enum):
    """Lifecycle of a recorded partner intent."""

    ACTIVE = "active"
    MATCHED = "matched"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class MatchOutcome(str, enum.Enum):
    """Lifecycle of an intent match."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class JobStatus(str, enum.Enum):
    """Status of a background job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, enum.Enum):
    """Kinds of work handled by the background worker."""

    EMBED_MESSAGE = "embed_message"
    EXTRACT_PREFERENCES = "extract_preferences"
    EXPIRE_MATCHES = "expire_matches"


class User(Base):
    """Platform user, reduced to what the assistant needs (identity and quota)."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    nickname: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    ai_quota_remaining: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="0"
    )
    ai_quota_reset_on: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, quota={self.ai_quota_remaining})>"


class Conversation(Base):
    """A thread of messages between one user and the assistant."""

    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    message_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="0"
    )
    last_message_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    messages: Mapped[list["ConversationMessage"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationMessage.created_at",
    )

    __table_args__ = (
        Index("ix_conversations_user_last_message", "user_id", "last_message_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Conversation(id={self.id}, user_id={self.user_id}, "
            f"messages={self.message_count})>"
        )


class ConversationMessage(Base):
    """Single message within a conversation thread."""

    __tablename__ = "conversation_messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    role: Mapped[MessageRole] = mapped_column(
        _enum_column(MessageRole), nullable=False
    )
    message_type: Mapped[str] = mapped_column(
        String(50), nullable=False, server_default="text"
    )  # 'text', 'broker_state' or a widget kind
    content: Mapped[dict] = mapped_column(JSONB, nullable=False)
    activity_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True
    )
    # Cosine nearest-neighbour search runs in PostgreSQL via pgvector
    embedding: Mapped[Optional[list]] = mapped_column(
        Vector(settings.embedding_dimensions), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")

    @property
    def text(self) -> str:
        """Plain text of the message, empty for structured payloads without text."""
        if isinstance(self.content, dict):
            return str(self.content.get("text", ""))
        return str(self.content or "")

    def __repr__(self) -> str:
        return (
            f"<ConversationMessage(id={self.id}, role={self.role!r}, "
            f"type={self.message_type!r})>"
        )


class WorkingProfile(Base):
    """Structured working memory of a user's durable preferences."""

    __tablename__ = "working_profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    preferences: Mapped[list] = mapped_column(
        JSONB, nullable=False, server_default="[]"
    )
    frequent_locations: Mapped[list] = mapped_column(
        JSONB, nullable=False, server_default="[]"
    )
    interest_vectors: Mapped[list] = mapped_column(
        JSONB, nullable=False, server_default="[]"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<WorkingProfile(user_id={self.user_id}, "
            f"preferences={len(self.preferences or [])})>"
        )


class PartnerIntent(Base):
    """A structured 'find me partners' request recorded by the broker flow."""

    __tablename__ = "partner_intents"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    activity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    location_hint: Mapped[str] = mapped_column(String(100), nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    time_preference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tags: Mapped[list] = mapped_column(JSONB, nullable=False, server_default="[]")
    raw_input: Mapped[str] = mapped_column(Text, nullable=False, server_default="")
    budget_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    poi_preference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    status: Mapped[PartnerIntentStatus] = mapped_column(
        _enum_column(PartnerIntentStatus),
        nullable=False,
        server_default=PartnerIntentStatus.ACTIVE.value,
        index=True,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<PartnerIntent(id={self.id}, type={self.activity_type!r}, "
            f"status={self.status!r})>"
        )


class IntentMatch(Base):
    """A group of partner intents matched together, awaiting confirmation."""

    __tablename__ = "intent_matches"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    activity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    intent_ids: Mapped[list] = mapped_column(JSONB, nullable=False)  # list[str]
    user_ids: Mapped[list] = mapped_column(JSONB, nullable=False)  # list[str]
    match_score: Mapped[int] = mapped_column(Integer, nullable=False)
    common_tags: Mapped[list] = mapped_column(
        JSONB, nullable=False, server_default="[]"
    )
    center_location_hint: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True
    )
    center_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    center_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    temp_organizer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    confirm_deadline: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    outcome: Mapped[MatchOutcome] = mapped_column(
        _enum_column(MatchOutcome),
        nullable=False,
        server_default=MatchOutcome.PENDING.value,
        index=True,
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<IntentMatch(id={self.id}, score={self.match_score}, "
            f"outcome={self.outcome!r})>"
        )


class SecurityEvent(Base):
    """Audit record for guardrail blocks and other security-relevant events."""

    __tablename__ = "security_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True
    )
    event_type: Mapped[str] = mapped_column(
        String(50), nullable=False, index=True
    )  # 'input_blocked', 'output_blocked', 'rate_limited'
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    content_preview: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extra_data: Mapped[dict] = mapped_column(
        "metadata", JSONB, nullable=False, server_default="{}"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<SecurityEvent(type={self.event_type!r}, reason={self.reason!r})>"


class BackgroundJob(Base):
    """Queued fire-and-forget work (embeddings, extraction, expiry sweeps)."""

    __tablename__ = "background_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    job_type: Mapped[JobType] = mapped_column(
        _enum_column(JobType), nullable=False, index=True
    )
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default="{}")
    status: Mapped[JobStatus] = mapped_column(
        _enum_column(JobStatus),
        nullable=False,
        server_default=JobStatus.PENDING.value,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    run_after: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<BackgroundJob(id={self.id}, type={self.job_type!r}, "
            f"status={self.status!r}, attempts={self.attempts})>"
        )
