"""
Chat API routes.

``POST /ai/chat`` streams the reply as plain text. The summary (thread id,
widgets, optional trace) follows as one JSON line after a blank line.
"""

import json
import logging
from typing import Iterator, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from juchang_ai.agent.chat import ChatService, ChatStream
from juchang_ai.api.auth import Caller, get_caller
from juchang_ai.api.schemas import ChatRequestIn

logger = logging.getLogger(__name__)

router = APIRouter()

TRAILER_SEPARATOR = "\n\n"

_service: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    """Process-wide chat service, created on first use."""
    global _service
    if _service is None:
        _service = ChatService()
    return _service


def _body(stream: ChatStream) -> Iterator[str]:
    try:
        yield from stream
        yield TRAILER_SEPARATOR + json.dumps(stream.trailer(), ensure_ascii=False)
    finally:
        stream.close()


@router.post("/chat")
def chat(
    body: ChatRequestIn,
    caller: Caller = Depends(get_caller),
    service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    """
    Answer a chat message.

    Rejections (rate limit, quota, empty input) are raised before any byte
    is streamed so they map to proper status codes.
    """
    stream = service.stream_chat(
        body.to_request(), user_id=caller.user_id, client_key=caller.client_key
    )
    return StreamingResponse(_body(stream), media_type="text/plain; charset=utf-8")
