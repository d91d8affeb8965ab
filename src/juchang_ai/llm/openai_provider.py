"""OpenAI LLM provider implementation."""

import json
import logging
import time
from typing import Any, Iterator

from openai import OpenAI

from juchang_ai.exceptions import EmbeddingError
from juchang_ai.llm.base import LLMProvider, LLMResponse, ToolCall

logger = logging.getLogger(__name__)


# Pricing per 1M tokens
OPENAI_PRICING = {
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "default": {"input": 0.15, "output": 0.60},
}


class OpenAIProvider(LLMProvider):
    """OpenAI LLM provider using the OpenAI Python SDK.

    Supports JSON mode, function tools, streaming and embeddings.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        embedding_model: str = "text-embedding-3-small",
    ):
        """Initialize the OpenAI provider.

        Args:
            api_key: OpenAI API key
            model: Chat model to use
            embedding_model: Embedding model to use
        """
        if not api_key:
            raise ValueError("OpenAI API key is required")

        self.client = OpenAI(api_key=api_key)
        self._model = model
        self._embedding_model = embedding_model
        logger.info(f"Initialized OpenAI provider with model: {model}")

    @property
    def provider_name(self) -> str:
        return "openai"

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
        """Generate a single-turn completion, in JSON mode when a schema is given."""
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        extra = {"response_format": {"type": "json_object"}} if json_schema else {}
        return self._create(messages, max_tokens, temperature, **extra)

    def generate_text(
        self,
        messages: list[dict[str, str]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1500,
    ) -> LLMResponse:
        """Generate a reply for a conversation, allowing function tool calls."""
        extra = {}
        if tools:
            extra["tools"] = [{"type": "function", "function": t} for t in tools]
        return self._create(messages, max_tokens, temperature, **extra)

    def _create(
        self,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
        **extra: Any,
    ) -> LLMResponse:
        started = time.perf_counter()
        response = self.client.chat.completions.create(
            model=self._model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            **extra,
        )
        return self._build_response(response, (time.perf_counter() - started) * 1000)

    def stream_text(
        self,
        messages: list[dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 1500,
    ) -> Iterator[str]:
        """Yield text deltas as they arrive."""
        stream = self.client.chat.completions.create(
            model=self._model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            stream=True,
        )
        try:
            for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        finally:
            # Stop reading from the HTTP response when the consumer goes away
            stream.close()

    def embed(self, text: str) -> list[float]:
        try:
            response = self.client.embeddings.create(
                model=self._embedding_model, input=text
            )
        except Exception as e:
            raise EmbeddingError(self.provider_name, str(e)) from e
        return list(response.data[0].embedding)

    def calculate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        pricing = OPENAI_PRICING.get(self._model, OPENAI_PRICING["default"])
        input_cost = prompt_tokens * (pricing["input"] / 1_000_000)
        output_cost = completion_tokens * (pricing["output"] / 1_000_000)
        return input_cost + output_cost

    def _build_response(self, response: Any, duration_ms: float) -> LLMResponse:
        choice = response.choices[0]
        message = choice.message

        tool_calls = []
        for call in message.tool_calls or []:
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                logger.warning(
                    f"Unparseable arguments for tool {call.function.name}: "
                    f"{call.function.arguments!r}"
                )
                arguments = {}
            tool_calls.append(
                ToolCall(id=call.id, name=call.function.name, arguments=arguments)
            )

        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0
        total_tokens = usage.total_tokens if usage else 0

        logger.debug(
            f"OpenAI call: model={response.model}, tokens={total_tokens}, "
            f"duration={duration_ms:.0f}ms"
        )

        return LLMResponse(
            content=message.content or "",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            finish_reason=choice.finish_reason or "unknown",
            model=response.model,
            duration_ms=duration_ms,
            tool_calls=tool_calls,
            raw_response=response,
        )
