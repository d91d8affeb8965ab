"""
Chat entry point.

``ChatService.stream_chat`` runs everything that can reject a request
(rate limit, guardrails, quota) and everything that must be persisted
before a reply starts (the user's message), then hands back a
``ChatStream``. Model calls, tool execution and reply persistence happen
while the stream is consumed. Closing the stream early stops token
consumption; what was already stored stays stored.
"""

import json
import logging
import re
import time
import uuid
from contextlib import AbstractContextManager, ExitStack
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from sqlalchemy.orm import Session

from juchang_ai.agent.activities import ActivityClient, get_activity_client
from juchang_ai.agent.context import ContextBuilder
from juchang_ai.agent.processors import InputState, OutputState, ProcessorChain
from juchang_ai.agent.prompt import build_system_prompt
from juchang_ai.agent.tools import ToolContext, ToolRegistry, ToolResult
from juchang_ai.broker.flow import BrokerFlow, BrokerTurn
from juchang_ai.config import settings
from juchang_ai.db.connection import db_session
from juchang_ai.db.repositories import PartnerIntentRepository
from juchang_ai.enrichment.pipeline import EnrichmentPipeline, inject_context
from juchang_ai.exceptions import InvalidRequestError, RateLimitedError
from juchang_ai.guardrails import (
    SlidingWindowRateLimiter,
    check_input,
    check_output,
    mask_pii,
    record_block,
    sanitize_input,
)
from juchang_ai.guardrails.output_guard import OUTPUT_REFUSAL
from juchang_ai.intent.classifier import ClassifyContext, IntentClassifier
from juchang_ai.intent.definitions import IDLE_RESPONSE, random_chitchat_response
from juchang_ai.intent.router import EXPLORE_NEARBY, route
from juchang_ai.llm import LLMProvider, get_default_provider
from juchang_ai.llm.base import LLMResponse
from juchang_ai.memory.store import MemoryStore
from juchang_ai.models.db import MessageRole
from juchang_ai.models.runtime import (
    ChatTurn,
    ClassifyResult,
    DraftContext,
    EnrichmentContext,
    GeoLocation,
    IntentType,
    RouteFlags,
    RuntimeContext,
)
from juchang_ai.observability import MetricsBuffer, Trace
from juchang_ai.quota import QuotaService
from juchang_ai.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]

CANCEL_REPLY = "好的，有需要随时叫我～"
UNAVAILABLE_REPLY = "我这会儿有点忙不过来，稍后再试试吧 🙏"
ERROR_REPLY = "抱歉，我这边出了点问题，请稍后再试"
EMPTY_EXPLORE_PREFIX = "附近暂时没有合适的活动。"

# Streamed text is released at sentence boundaries so PII never splits across chunks.
_SENTENCE_END = re.compile(r"[。！？!?\n]")

MAX_TOOL_CALLS = 3


@dataclass
class ChatRequest:
    messages: list[ChatTurn]
    location: Optional[GeoLocation] = None
    thread_id: Optional[uuid.UUID] = None
    draft: Optional[DraftContext] = None
    trace: bool = False


@dataclass
class ChatReply:
    """Everything known about the reply besides its streamed text."""

    text: str = ""
    message_type: str = "text"
    widgets: list[dict] = field(default_factory=list)
    thread_id: Optional[uuid.UUID] = None
    intent: Optional[ClassifyResult] = None
    agent: Optional[str] = None
    blocked: bool = False
    enrichment: list[dict] = field(default_factory=list)


@dataclass
class PreparedTurn:
    """Result of the pre-stream phase."""

    reply: ChatReply
    ctx: Optional[RuntimeContext] = None
    canned: Optional[str] = None
    broker_turn: Optional[BrokerTurn] = None
    model_messages: list[ChatTurn] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    user_text: str = ""
    started: float = field(default_factory=time.perf_counter)


class ChatStream:
    """
    Iterator over reply text chunks.

    ``reply`` and ``trace`` are complete once the iterator is exhausted;
    ``trailer()`` gives the JSON-able summary sent after the text.
    """

    def __init__(
        self,
        chunks: Iterator[str],
        reply: ChatReply,
        trace: Trace,
        include_trace: bool,
        cleanup: Optional[ExitStack] = None,
    ):
        self._chunks = chunks
        self.reply = reply
        self.trace = trace
        self.include_trace = include_trace
        self._cleanup = cleanup

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        return next(self._chunks)

    def close(self) -> None:
        close = getattr(self._chunks, "close", None)
        if close is not None:
            close()
        if self._cleanup is not None:
            self._cleanup.close()

    def text(self) -> str:
        """Consume the whole stream and return the text."""
        return "".join(self)

    def trailer(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "threadId": str(self.reply.thread_id) if self.reply.thread_id else None,
            "messageType": self.reply.message_type,
            "widgets": self.reply.widgets,
            "blocked": self.reply.blocked,
        }
        if self.reply.intent is not None:
            data["intent"] = self.reply.intent.to_dict()
        if self.include_trace:
            data["trace"] = self.trace.to_dict()
            data["enrichment"] = self.reply.enrichment
        return data


class ChatService:
    """Conversation orchestration for the chat endpoint."""

    def __init__(
        self,
        session_factory: SessionFactory = db_session,
        provider: Optional[LLMProvider] = None,
        registry: Optional[ToolRegistry] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        metrics: Optional[MetricsBuffer] = None,
        pipeline: Optional[EnrichmentPipeline] = None,
        processors: Optional[ProcessorChain] = None,
        activities: Optional[ActivityClient] = None,
        parallel_fetch: bool = True,
        use_default_provider: bool = True,
    ):
        self.session_factory = session_factory
        self.provider = provider
        if provider is None and use_default_provider:
            self.provider = get_default_provider()
        self.classifier = IntentClassifier(self.provider)
        self.registry = registry or ToolRegistry()
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            settings.rate_limit_max_requests, settings.rate_limit_window_seconds
        )
        self.metrics = metrics or MetricsBuffer(settings.metrics_buffer_size)
        self.pipeline = pipeline or EnrichmentPipeline()
        self.processors = processors or ProcessorChain(provider=self.provider)
        self.activities = activities if activities is not None else get_activity_client()
        self.parallel_fetch = parallel_fetch

    def stream_chat(
        self,
        request: ChatRequest,
        user_id: Optional[uuid.UUID] = None,
        client_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ChatStream:
        """
        Start answering a chat request.

        Raises:
            RateLimitedError: Too many requests in the window
            QuotaExceededError: No AI calls left today
            InvalidRequestError: No user message to answer
        """
        trace = Trace()
        with ExitStack() as stack:
            session = stack.enter_context(self.session_factory())
            prepared = self._prepare(session, request, user_id, client_key, trace, now)
            cleanup = stack.pop_all()

        chunks = self._run(session, prepared, trace, cleanup)
        return ChatStream(chunks, prepared.reply, trace, request.trace, cleanup)

    # Pre-stream phase

    def _prepare(
        self,
        session: Session,
        request: ChatRequest,
        user_id: Optional[uuid.UUID],
        client_key: Optional[str],
        trace: Trace,
        now: Optional[datetime],
    ) -> PreparedTurn:
        now = now or utcnow()
        reply = ChatReply()

        with trace.span("rate_limit"):
            key = str(user_id) if user_id is not None else (client_key or "anonymous")
            limit = self.rate_limiter.check(key)
            if not limit.allowed:
                self.metrics.increment("chat_rejected", reason="rate_limited")
                raise RateLimitedError(limit.retry_after)

        messages = [ChatTurn(m.role, m.content) for m in request.messages]
        user_index = next(
            (i for i in range(len(messages) - 1, -1, -1) if messages[i].role == "user"),
            None,
        )
        if user_index is None:
            raise InvalidRequestError("消息不能为空")
        text = sanitize_input(messages[user_index].content)
        if not text:
            raise InvalidRequestError("消息不能为空")
        messages[user_index] = ChatTurn("user", text)

        with trace.span("input_guard") as span:
            guard = check_input(text)
            span.attributes["blocked"] = guard.blocked
        if guard.blocked:
            record_block(session, guard, text, user_id)
            self.metrics.increment("chat_rejected", reason=guard.reason or "blocked")
            reply.blocked = True
            return PreparedTurn(reply=reply, canned=guard.refusal, user_text=text)

        if user_id is not None:
            with trace.span("quota"):
                QuotaService(session).consume(user_id)

        with trace.span("context"):
            ctx = ContextBuilder(
                session,
                session_factory=self.session_factory if self.parallel_fetch else None,
            ).build(
                user_id,
                location=request.location,
                thread_id=request.thread_id,
                draft=request.draft,
                now=now,
            )
        reply.thread_id = ctx.thread_id

        if ctx.user_id is not None and ctx.thread_id is not None:
            MemoryStore(session).save_message(
                ctx.thread_id, ctx.user_id, MessageRole.USER, {"text": text}, now=now
            )
            session.commit()

        with trace.span("enrichment") as span:
            enriched = self.pipeline.enrich(messages, self._enrichment_context(session, ctx))
            span.attributes["applied"] = sorted(
                {name for t in enriched.trace for name in t.applied}
            )
        reply.enrichment = [
            {"original": t.original, "enriched": t.enriched, "applied": t.applied}
            for t in enriched.trace
        ]

        with trace.span("classify") as span:
            classification = self.classifier.classify(
                text,
                ClassifyContext(
                    has_draft=ctx.draft is not None,
                    history=[ChatTurn(h.role, h.text) for h in ctx.history],
                ),
            )
            span.attributes.update(classification.to_dict())
        reply.intent = classification
        self.metrics.increment("chat_requests", intent=classification.intent.value)

        prepared = PreparedTurn(reply=reply, ctx=ctx, user_text=text)

        with trace.span("broker"):
            turn = BrokerFlow(session).handle(text, classification, ctx)
        if turn is not None:
            prepared.broker_turn = turn
            return prepared

        canned = self._canned_reply(classification.intent)
        if canned is not None:
            prepared.canned = canned
            return prepared

        decision = route(
            classification.intent,
            RouteFlags(
                has_location=ctx.location is not None,
                is_authenticated=ctx.is_authenticated,
                has_draft=ctx.draft is not None,
            ),
        )
        reply.agent = decision.agent
        prepared.tools = decision.tools
        trace.record("route", agent=decision.agent, tools=",".join(decision.tools))

        system = inject_context(
            build_system_prompt(ctx, decision.agent), enriched.context_block
        )
        conversation = [m for m in enriched.messages if m.role != "system"]
        if len(conversation) == 1 and ctx.history:
            earlier = [ChatTurn(h.role, h.text) for h in ctx.history if h.text]
            # The stored copy of this message is the last history entry
            if earlier and earlier[-1].role == "user" and earlier[-1].content == text:
                earlier = earlier[:-1]
            conversation = earlier + conversation

        with trace.span("input_processors"):
            state = self.processors.run_input(
                InputState(
                    session=session,
                    ctx=ctx,
                    messages=[ChatTurn("system", system), *conversation],
                )
            )
        prepared.model_messages = state.messages
        return prepared

    def _enrichment_context(
        self, session: Session, ctx: RuntimeContext
    ) -> EnrichmentContext:
        factory = self.session_factory if self.parallel_fetch else None

        def lookup(user_id: uuid.UUID) -> Optional[str]:
            if factory is None:
                return PartnerIntentRepository(session).most_frequent_activity_type(user_id)
            with factory() as s:
                return PartnerIntentRepository(s).most_frequent_activity_type(user_id)

        return EnrichmentContext(
            user_id=ctx.user_id,
            now=ctx.now or utcnow(),
            location=ctx.location,
            draft=ctx.draft,
            history=ctx.history,
            preference_lookup=lookup if ctx.user_id is not None else None,
        )

    @staticmethod
    def _canned_reply(intent: IntentType) -> Optional[str]:
        if intent == IntentType.CHITCHAT:
            return random_chitchat_response()
        if intent == IntentType.IDLE:
            return IDLE_RESPONSE
        if intent == IntentType.CANCEL:
            return CANCEL_REPLY
        return None

    # Streaming phase

    def _run(
        self, session: Session, prepared: PreparedTurn, trace: Trace, cleanup: ExitStack
    ) -> Iterator[str]:
        reply = prepared.reply
        streamed: list[str] = []
        with cleanup:
            try:
                for chunk in self._generate(session, prepared, trace):
                    streamed.append(chunk)
                    yield chunk
            finally:
                reply.text = "".join(streamed)
                self._finish(session, prepared, trace)

    def _generate(
        self, session: Session, prepared: PreparedTurn, trace: Trace
    ) -> Iterator[str]:
        reply = prepared.reply
        if prepared.canned is not None:
            yield prepared.canned
            return

        if prepared.broker_turn is not None:
            yield from self._broker_reply(prepared.broker_turn, reply)
            return

        if self.provider is None:
            yield UNAVAILABLE_REPLY
            return

        ctx = prepared.ctx
        assert ctx is not None
        tool_ctx = ToolContext(
            session=session,
            user_id=ctx.user_id,
            location=ctx.location,
            draft=ctx.draft,
            activities=self.activities,
            broker_state=(
                BrokerFlow(session).load_state(ctx.thread_id, ctx.now)
                if ctx.thread_id is not None
                else None
            ),
        )
        messages = [{"role": m.role, "content": m.content} for m in prepared.model_messages]

        try:
            with trace.span("llm.generate") as span:
                response = self.provider.generate_text(
                    messages=messages,
                    tools=self.registry.describe(prepared.tools) or None,
                    temperature=settings.llm_temperature,
                    max_tokens=settings.llm_max_tokens,
                )
                span.attributes["tool_calls"] = len(response.tool_calls)
            self._observe_usage(response)

            if not response.tool_calls:
                yield from self._guarded(iter([response.content]))
                return

            results = self._execute_tools(response, tool_ctx, trace, reply)
            if self._explore_came_back_empty(results) and ctx.is_authenticated:
                turn = BrokerFlow(session).start(prepared.user_text, ctx)
                yield EMPTY_EXPLORE_PREFIX
                yield from self._broker_reply(turn, reply)
                return

            messages.append({"role": "assistant", "content": response.content or ""})
            for result in results:
                messages.append(
                    {
                        "role": "system",
                        "content": f'<tool_result name="{result.name}">'
                        + json.dumps(result.to_dict(), ensure_ascii=False, default=str)
                        + "</tool_result>",
                    }
                )
            with trace.span("llm.stream"):
                yield from self._guarded(
                    self.provider.stream_text(
                        messages=messages,
                        temperature=settings.llm_temperature,
                        max_tokens=settings.llm_max_tokens,
                    ),
                )
        except Exception as e:
            logger.error(f"Model call failed: {e}", exc_info=True)
            self.metrics.increment("chat_errors", stage="llm")
            yield ERROR_REPLY

    def _execute_tools(
        self,
        response: LLMResponse,
        tool_ctx: ToolContext,
        trace: Trace,
        reply: ChatReply,
    ) -> list[ToolResult]:
        results = []
        for call in response.tool_calls[:MAX_TOOL_CALLS]:
            with trace.span(f"tool.{call.name}") as span:
                result = self.registry.execute(call.name, call.arguments, tool_ctx)
                span.status = "ok" if result.ok else "error"
            self.metrics.increment("tool_calls", tool=call.name, ok=str(result.ok).lower())
            reply.widgets.append(
                {"type": result.widget.value, "tool": result.name, "data": result.to_dict()}
            )
            reply.message_type = result.widget.value
            results.append(result)
        return results

    @staticmethod
    def _explore_came_back_empty(results: list[ToolResult]) -> bool:
        return any(
            r.name == EXPLORE_NEARBY and r.ok and r.data.get("total") == 0 for r in results
        )

    def _broker_reply(self, turn: BrokerTurn, reply: ChatReply) -> Iterator[str]:
        reply.message_type = turn.message_type
        if turn.widget is not None:
            reply.widgets.append({"type": turn.message_type, "data": turn.widget})
        yield turn.text

    def _guarded(self, chunks: Iterator[str]) -> Iterator[str]:
        """Release model text sentence by sentence, masked and checked."""
        buffer = ""
        released = ""
        for chunk in chunks:
            buffer += chunk
            cut = _last_boundary(buffer)
            if cut == 0:
                continue
            segment, buffer = buffer[:cut], buffer[cut:]
            if check_output(released + segment).blocked:
                yield OUTPUT_REFUSAL
                return
            released += segment
            yield mask_pii(segment)
        if buffer:
            if check_output(released + buffer).blocked:
                yield OUTPUT_REFUSAL
                return
            yield mask_pii(buffer)

    def _observe_usage(self, response: LLMResponse) -> None:
        self.metrics.observe("llm_latency_ms", response.duration_ms, model=response.model)
        self.metrics.observe("llm_tokens", float(response.total_tokens), model=response.model)

    def _finish(self, session: Session, prepared: PreparedTurn, trace: Trace) -> None:
        reply = prepared.reply
        elapsed = (time.perf_counter() - prepared.started) * 1000
        intent = reply.intent.intent.value if reply.intent else "blocked"
        self.metrics.observe("chat_latency_ms", elapsed, intent=intent)

        if prepared.ctx is None:
            return
        with trace.span("output_processors"):
            state = self.processors.run_output(
                OutputState(
                    session=session,
                    ctx=prepared.ctx,
                    text=reply.text,
                    message_type=reply.message_type,
                    data={"widgets": reply.widgets} if reply.widgets else {},
                )
            )
        reply.blocked = reply.blocked or state.blocked
        session.commit()


def _last_boundary(text: str) -> int:
    """Index just past the last sentence end in ``text``, or 0."""
    cut = 0
    for match in _SENTENCE_END.finditer(text):
        cut = match.end()
    return cut
