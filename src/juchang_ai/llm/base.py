"""Base protocol and types for LLM providers."""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterator

logger = logging.getLogger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMResponse:
    """Standardized response from LLM providers.

    Attributes:
        content: The generated text content
        prompt_tokens: Number of tokens in the prompt
        completion_tokens: Number of tokens in the completion
        total_tokens: Total tokens used
        finish_reason: Why generation stopped (stop, length, tool_calls, etc.)
        model: The actual model used (may differ from requested)
        duration_ms: Time taken for the API call in milliseconds
        tool_calls: Tools the model asked to call, in order
        raw_response: Provider-specific raw response for debugging
    """

    content: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    finish_reason: str
    model: str
    duration_ms: float
    tool_calls: list[ToolCall] = field(default_factory=list)
    raw_response: Any = None


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    Messages use the OpenAI shape ``{"role": ..., "content": ...}``;
    tools are described as ``{"name", "description", "parameters"}``
    with ``parameters`` a JSON schema. Providers translate both.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider identifier (e.g., 'openai', 'anthropic')."""
        ...

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model identifier being used."""
        ...

    @abstractmethod
    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 500,
        temperature: float = 0.3,
        json_schema: dict[str, Any] | None = None,
    ) -> LLMResponse:
        """Single-turn completion, optionally constrained to JSON output."""
        ...

    @abstractmethod
    def generate_text(
        self,
        messages: list[dict[str, str]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1500,
    ) -> LLMResponse:
        """Multi-turn generation with optional tool calling.

        Args:
            messages: Conversation including the system message first
            tools: Tool descriptions the model may call
            temperature: Sampling temperature
            max_tokens: Maximum tokens in the response

        Returns:
            LLMResponse carrying text and any requested tool calls
        """
        ...

    @abstractmethod
    def stream_text(
        self,
        messages: list[dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 1500,
    ) -> Iterator[str]:
        """Stream generated text chunks. Closing the iterator stops the call."""
        ...

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Return an embedding vector for the text.

        Raises:
            EmbeddingError: If the provider cannot embed
        """
        ...

    @abstractmethod
    def calculate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Calculate the cost in USD for the given token usage."""
        ...

    def generate_structured(
        self,
        system_prompt: str,
        user_prompt: str,
        json_schema: dict[str, Any],
        max_tokens: int = 500,
        temperature: float = 0.0,
    ) -> dict[str, Any]:
        """Generate a JSON object matching the schema.

        Returns:
            Parsed JSON object

        Raises:
            ValueError: If the response contains no parseable JSON object
        """
        response = self.complete(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            json_schema=json_schema,
        )
        return parse_json_object(response.content)


def parse_json_object(text: str) -> dict[str, Any]:
    """Extract the first JSON object from model output.

    Handles models that wrap JSON in prose or markdown fences.

    Raises:
        ValueError: If no JSON object can be parsed
    """
    text = (text or "").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_RE.search(text)
        if not match:
            raise ValueError(f"No JSON object in model output: {text[:100]!r}")
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in model output: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Model output is JSON but not an object")
    return data
