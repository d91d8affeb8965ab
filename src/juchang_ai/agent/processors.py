"""
Input and output processor chains.

Input processors run before the model sees the conversation, in order:
guard, profile injection, memory recall (when a provider is set),
context-size limiter. Any failure aborts the request. Output
processors run after the reply is complete, in order: guard, persistence,
preference-extraction scheduling. A failing output processor is logged
and the rest still run.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.orm import Session

from juchang_ai.config import settings
from juchang_ai.enrichment.pipeline import inject_context
from juchang_ai.exceptions import GuardrailViolationError
from juchang_ai.guardrails import check_input, check_output, record_block, sanitize_output
from juchang_ai.jobs.queue import JobQueue
from juchang_ai.llm.base import LLMProvider
from juchang_ai.memory.recall import recall
from juchang_ai.memory.store import MemoryStore
from juchang_ai.memory.working import build_profile_prompt
from juchang_ai.models.db import JobType, MessageRole
from juchang_ai.models.runtime import ChatTurn, RuntimeContext

logger = logging.getLogger(__name__)


@dataclass
class InputState:
    """Messages on their way to the model. The first one is the system prompt."""

    session: Session
    ctx: RuntimeContext
    messages: list[ChatTurn]


@dataclass
class OutputState:
    """A finished assistant reply on its way to storage."""

    session: Session
    ctx: RuntimeContext
    text: str
    message_type: str = "text"
    data: dict = field(default_factory=dict)
    blocked: bool = False
    message_id: Optional[str] = None


InputProcessor = Callable[[InputState], InputState]
OutputProcessor = Callable[[OutputState], OutputState]


def guard_input(state: InputState) -> InputState:
    """Reject the request if the latest user message trips a guard."""
    latest = next((m for m in reversed(state.messages) if m.role == "user"), None)
    if latest is None:
        return state
    result = check_input(latest.content)
    if result.blocked:
        record_block(state.session, result, latest.content, state.ctx.user_id)
        raise GuardrailViolationError(result.reason or "blocked", result.refusal or "")
    return state


def inject_profile(state: InputState) -> InputState:
    """Add the user's working profile to the system prompt's context section."""
    block = build_profile_prompt(state.ctx.profile)
    if not block or not state.messages or state.messages[0].role != "system":
        return state
    system = state.messages[0]
    state.messages[0] = ChatTurn(role="system", content=inject_context(system.content, block))
    return state


RECALL_SNIPPET_CHARS = 80


def make_memory_recall(provider: LLMProvider) -> InputProcessor:
    """
    Add the user's most similar past messages from other threads.

    Recall is best effort: a failed embedding or query leaves the prompt
    as it was.
    """

    def recall_memories(state: InputState) -> InputState:
        ctx = state.ctx
        latest = next((m for m in reversed(state.messages) if m.role == "user"), None)
        if ctx.user_id is None or latest is None or state.messages[0].role != "system":
            return state
        try:
            vector = provider.embed(latest.content)
            # A failed query must not poison the request transaction
            with state.session.begin_nested():
                recalled = recall(
                    state.session, vector, ctx.user_id, exclude_thread_id=ctx.thread_id
                )
        except Exception as e:
            logger.warning(f"Memory recall skipped for {ctx.user_id}: {e}")
            return state
        if not recalled:
            return state

        lines = ["<related_memories>"]
        for item in recalled:
            lines.append(f"  - {item.message.text[:RECALL_SNIPPET_CHARS]}")
        lines.append("</related_memories>")
        system = state.messages[0]
        state.messages[0] = ChatTurn(
            role="system", content=inject_context(system.content, "\n".join(lines))
        )
        return state

    return recall_memories


def make_context_limiter(char_limit: Optional[int] = None) -> InputProcessor:
    """
    Keep every system message and as many of the newest other messages as
    fit in ``char_limit`` characters. The latest message is always kept.
    """
    limit = char_limit or settings.context_char_limit

    def limit_context(state: InputState) -> InputState:
        system = [m for m in state.messages if m.role == "system"]
        others = [m for m in state.messages if m.role != "system"]
        budget = limit - sum(len(m.content) for m in system)

        kept: list[ChatTurn] = []
        for message in reversed(others):
            if kept and len(message.content) > budget:
                break
            kept.append(message)
            budget -= len(message.content)

        dropped = len(others) - len(kept)
        if dropped:
            logger.info(f"Context limiter dropped {dropped} old messages")
        state.messages = system + list(reversed(kept))
        return state

    return limit_context


def guard_output(state: OutputState) -> OutputState:
    """Replace blocked replies with a refusal; mask PII in the rest."""
    result = check_output(state.text)
    if result.blocked:
        record_block(
            state.session, result, state.text, state.ctx.user_id, event_type="output_blocked"
        )
        state.text = result.refusal or ""
        state.blocked = True
        return state
    state.text = sanitize_output(state.text)
    return state


def persist_reply(state: OutputState) -> OutputState:
    ctx = state.ctx
    if ctx.user_id is None or ctx.thread_id is None:
        return state
    content = {"text": state.text, **state.data}
    message = MemoryStore(state.session).save_message(
        thread_id=ctx.thread_id,
        user_id=ctx.user_id,
        role=MessageRole.ASSISTANT,
        content=content,
        message_type=state.message_type,
    )
    state.message_id = str(message.id)
    return state


def schedule_extraction(state: OutputState) -> OutputState:
    ctx = state.ctx
    if ctx.user_id is None or ctx.thread_id is None or state.blocked:
        return state
    JobQueue(state.session).enqueue(
        JobType.EXTRACT_PREFERENCES,
        {"user_id": str(ctx.user_id), "thread_id": str(ctx.thread_id)},
    )
    return state


class ProcessorChain:
    def __init__(
        self,
        input_processors: Optional[list[tuple[str, InputProcessor]]] = None,
        output_processors: Optional[list[tuple[str, OutputProcessor]]] = None,
        provider: Optional[LLMProvider] = None,
    ):
        if input_processors is None:
            input_processors = [
                ("input_guard", guard_input),
                ("profile_injection", inject_profile),
            ]
            if provider is not None:
                input_processors.append(("memory_recall", make_memory_recall(provider)))
            input_processors.append(("context_limiter", make_context_limiter()))
        self.input_processors = input_processors
        self.output_processors = (
            output_processors
            if output_processors is not None
            else [
                ("output_guard", guard_output),
                ("persist", persist_reply),
                ("schedule_extraction", schedule_extraction),
            ]
        )

    def run_input(self, state: InputState) -> InputState:
        for name, processor in self.input_processors:
            try:
                state = processor(state)
            except Exception:
                logger.info(f"Input processor {name} aborted the request")
                raise
        return state

    def run_output(self, state: OutputState) -> OutputState:
        for name, processor in self.output_processors:
            try:
                state = processor(state)
            except Exception as e:
                logger.error(f"Output processor {name} failed: {e}", exc_info=True)
        return state
