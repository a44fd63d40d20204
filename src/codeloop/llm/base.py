"""
Base classes for LLM providers.

A provider is the transport client of the agent loop: it takes the ordered
prompt and yields output fragments lazily until the model stops, the caller
sets the cancel event, or the provider fails with a TransportError.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Union

from ..messages import Message, ToolCall


@dataclass
class ToolDefinition:
    """Definition of a tool that the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass(frozen=True)
class TextFragment:
    """A piece of streamed plain output."""

    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool invocation requested by the model.

    ``arguments`` is None when the provider could not decode the payload;
    ``error`` then says why.
    """

    id: str
    name: str
    arguments: Any
    error: str | None = None

    def to_tool_call(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.name, arguments=dict(self.arguments or {}))


Fragment = Union[TextFragment, ToolCallRequest]


class BaseLLM(ABC):
    """Base class for LLM providers."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature

    @abstractmethod
    def send(
        self,
        messages: list[Message],
        cancel: asyncio.Event,
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[Fragment]:
        """Stream fragments for the given prompt.

        Implementations stop producing as soon as ``cancel`` is set and raise
        TransportError for any network or provider failure.
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
