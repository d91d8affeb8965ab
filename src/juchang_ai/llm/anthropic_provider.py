"""Anthropic LLM provider implementation."""

import logging
import time
from typing import Any, Iterator

from anthropic import Anthropic

from juchang_ai.exceptions import EmbeddingError
from juchang_ai.llm.base import LLMProvider, LLMResponse, ToolCall

logger = logging.getLogger(__name__)


# Pricing per 1M tokens
ANTHROPIC_PRICING = {
    "claude-sonnet-4-5": {"input": 3.00, "output": 15.00},
    "claude-3-5-haiku-20241022": {"input": 0.80, "output": 4.00},
    "default": {"input": 3.00, "output": 15.00},
}

JSON_INSTRUCTION = (
    "\n\nIMPORTANT: You must respond with valid JSON only. "
    "No markdown code blocks, no explanations, no additional text. "
    "Return ONLY the raw JSON object."
)


class AnthropicProvider(LLMProvider):
    """Anthropic LLM provider using the Anthropic Python SDK.

    Anthropic has no embeddings endpoint, so ``embed`` always raises
    EmbeddingError and semantic recall stays empty with this provider.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-5",
    ):
        if not api_key:
            raise ValueError("Anthropic API key is required")

        self.client = Anthropic(api_key=api_key)
        self._model = model
        logger.info(f"Initialized Anthropic provider with model: {model}")

    @property
    def provider_name(self) -> str:
        return "anthropic"

    @property
    def model_name(self) -> str:
        return self._model

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 500,
        temperature: float = 0.3,
        json_schema: dict[str, Any] | None = None,
    ) -> LLMResponse:
        """Single-turn completion. JSON is requested through the system prompt."""
        start_time = time.time()
        system = system_prompt + JSON_INSTRUCTION if json_schema else system_prompt

        response = self.client.messages.create(
            model=self._model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=[{"role": "user", "content": user_prompt}],
        )
        return self._build_response(response, (time.time() - start_time) * 1000)

    def generate_text(
        self,
        messages: list[dict[str, str]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1500,
    ) -> LLMResponse:
        start_time = time.time()
        system, chat_messages = _split_system(messages)

        request_params: dict[str, Any] = {
            "model": self._model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system,
            "messages": chat_messages,
        }
        if tools:
            request_params["tools"] = [
                {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "input_schema": tool.get("parameters", {"type": "object"}),
                }
                for tool in tools
            ]

        response = self.client.messages.create(**request_params)
        return self._build_response(response, (time.time() - start_time) * 1000)

    def stream_text(
        self,
        messages: list[dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 1500,
    ) -> Iterator[str]:
        system, chat_messages = _split_system(messages)
        with self.client.messages.stream(
            model=self._model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=chat_messages,
        ) as stream:
            for text in stream.text_stream:
                yield text

    def embed(self, text: str) -> list[float]:
        raise EmbeddingError(self.provider_name, "embeddings are not supported")

    def calculate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        pricing = ANTHROPIC_PRICING.get(self._model, ANTHROPIC_PRICING["default"])
        input_cost = prompt_tokens * (pricing["input"] / 1_000_000)
        output_cost = completion_tokens * (pricing["output"] / 1_000_000)
        return input_cost + output_cost

    def _build_response(self, response: Any, duration_ms: float) -> LLMResponse:
        content = ""
        tool_calls = []
        for block in response.content:
            block_type = getattr(block, "type", "text")
            if block_type == "tool_use":
                tool_calls.append(
                    ToolCall(id=block.id, name=block.name, arguments=dict(block.input))
                )
            elif hasattr(block, "text"):
                content += block.text

        usage = response.usage
        prompt_tokens = usage.input_tokens if usage else 0
        completion_tokens = usage.output_tokens if usage else 0

        return LLMResponse(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            finish_reason=response.stop_reason or "unknown",
            model=response.model,
            duration_ms=duration_ms,
            tool_calls=tool_calls,
            raw_response=response,
        )


def _split_system(
    messages: list[dict[str, str]],
) -> tuple[str, list[dict[str, str]]]:
    """Anthropic takes the system prompt separately from the turns."""
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    turns = [m for m in messages if m["role"] != "system"]
    return "\n\n".join(system_parts), turns
