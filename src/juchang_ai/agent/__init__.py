"""Conversation agent: context assembly, tools and the chat entry point."""

from juchang_ai.agent.chat import ChatReply, ChatRequest, ChatService, ChatStream
from juchang_ai.agent.context import ContextBuilder
from juchang_ai.agent.tools import ToolContext, ToolRegistry, ToolResult, WidgetKind

__all__ = [
    "ChatReply",
    "ChatRequest",
    "ChatService",
    "ChatStream",
    "ContextBuilder",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "WidgetKind",
]
