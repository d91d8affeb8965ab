"""
Thread, quota and match API routes.

All endpoints here need a signed-in caller.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from juchang_ai.api.auth import Caller, get_caller
from juchang_ai.api.schemas import (
    MatchResponse,
    QuotaResponse,
    ThreadDetail,
    ThreadListResponse,
    ThreadMessage,
    ThreadSummary,
)
from juchang_ai.broker.partner import PartnerService, match_to_dict
from juchang_ai.config import settings
from juchang_ai.db.connection import get_db
from juchang_ai.memory.store import STATE_MESSAGE_TYPES, MemoryStore
from juchang_ai.quota import QuotaService

router = APIRouter()


@router.get("/threads", response_model=ThreadListResponse)
def list_threads(
    limit: int = Query(20, ge=1, le=100),
    caller: Caller = Depends(get_caller),
    session: Session = Depends(get_db),
) -> ThreadListResponse:
    threads = MemoryStore(session).list_threads(caller.require_user(), limit=limit)
    items = [ThreadSummary.model_validate(t) for t in threads]
    return ThreadListResponse(items=items, total=len(items))


@router.get("/threads/{thread_id}", response_model=ThreadDetail)
def get_thread(
    thread_id: UUID,
    caller: Caller = Depends(get_caller),
    session: Session = Depends(get_db),
) -> ThreadDetail:
    """Get a thread with its visible messages, oldest first."""
    thread = MemoryStore(session).get_thread(thread_id, caller.require_user())
    if thread is None:
        raise HTTPException(status_code=404, detail="Thread not found")

    messages = [
        ThreadMessage(
            id=m.id,
            role=m.role.value,
            message_type=m.message_type,
            content=m.content or {},
            activity_id=m.activity_id,
            created_at=m.created_at,
        )
        for m in sorted(thread.messages, key=lambda m: m.created_at)
        if m.message_type not in STATE_MESSAGE_TYPES
    ]
    summary = ThreadSummary.model_validate(thread)
    return ThreadDetail(**summary.model_dump(), messages=messages)


@router.delete("/threads/{thread_id}", status_code=204)
def delete_thread(
    thread_id: UUID,
    caller: Caller = Depends(get_caller),
    session: Session = Depends(get_db),
) -> None:
    if not MemoryStore(session).delete_thread(thread_id, caller.require_user()):
        raise HTTPException(status_code=404, detail="Thread not found")


@router.delete("/threads", status_code=200)
def clear_threads(
    caller: Caller = Depends(get_caller),
    session: Session = Depends(get_db),
) -> dict[str, int]:
    return {"deleted": MemoryStore(session).clear_threads(caller.require_user())}


@router.get("/quota", response_model=QuotaResponse)
def get_quota(
    caller: Caller = Depends(get_caller),
    session: Session = Depends(get_db),
) -> QuotaResponse:
    remaining = QuotaService(session).get_remaining(caller.require_user())
    return QuotaResponse(remaining=remaining, limit=settings.daily_ai_quota)


@router.post("/matches/{match_id}/confirm", response_model=MatchResponse)
def confirm_match(
    match_id: UUID,
    caller: Caller = Depends(get_caller),
    session: Session = Depends(get_db),
) -> MatchResponse:
    """Confirm a pending match; only its temporary organizer may do this."""
    user_id = caller.require_user()
    match = PartnerService(session).confirm_match(match_id, user_id)
    return MatchResponse(match=match_to_dict(match, user_id))
