"""
API schemas for Juchang AI.

Pydantic models for request/response validation. Field names follow the
client's camelCase wire format.
"""

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from juchang_ai.agent.chat import ChatRequest
from juchang_ai.models.runtime import ChatTurn, DraftContext, GeoLocation

# ===== Chat =====


class ChatMessageIn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class LocationIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    name: Optional[str] = None


class DraftContextIn(BaseModel):
    activityId: Optional[str] = None
    currentDraft: dict[str, Any] = Field(default_factory=dict)


class ChatRequestIn(BaseModel):
    """Body of ``POST /ai/chat``."""

    messages: list[ChatMessageIn] = Field(min_length=1)
    location: Optional[LocationIn] = None
    threadId: Optional[UUID] = None
    draftContext: Optional[DraftContextIn] = None
    trace: bool = False

    def to_request(self) -> ChatRequest:
        return ChatRequest(
            messages=[ChatTurn(role=m.role, content=m.content) for m in self.messages],
            location=(
                GeoLocation(lat=self.location.lat, lng=self.location.lng, name=self.location.name)
                if self.location
                else None
            ),
            thread_id=self.threadId,
            draft=(
                DraftContext(
                    activity_id=self.draftContext.activityId,
                    current_draft=self.draftContext.currentDraft,
                )
                if self.draftContext
                else None
            ),
            trace=self.trace,
        )


# ===== Threads =====


class ThreadSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: Optional[str] = None
    message_count: int
    last_message_at: datetime
    created_at: datetime


class ThreadMessage(BaseModel):
    id: UUID
    role: str
    message_type: str
    content: dict[str, Any]
    activity_id: Optional[UUID] = None
    created_at: datetime


class ThreadDetail(ThreadSummary):
    messages: list[ThreadMessage] = Field(default_factory=list)


class ThreadListResponse(BaseModel):
    items: list[ThreadSummary]
    total: int


# ===== Quota / matches =====


class QuotaResponse(BaseModel):
    remaining: int
    limit: int


class MatchResponse(BaseModel):
    match: dict[str, Any]


class ErrorResponse(BaseModel):
    code: str
    message: str
