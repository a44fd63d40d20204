"""
Anthropic Claude LLM provider.
"""

import asyncio
from typing import Any, AsyncIterator

import anthropic
import structlog

from ..errors import TransportError
from ..messages import Message, MessageRole
from .base import BaseLLM, Fragment, TextFragment, ToolCallRequest, ToolDefinition

logger = structlog.get_logger()


class AnthropicLLM(BaseLLM):
    """Anthropic Claude LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert session messages to Anthropic format.

        Consecutive tool results are folded into a single user turn, as the
        API expects all results for one assistant turn together.
        """
        converted: list[dict[str, Any]] = []

        for msg in messages:
            if msg.role == MessageRole.TOOL_RESULT:
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content,
                    "is_error": msg.is_error,
                }
                previous = converted[-1] if converted else None
                if (
                    previous
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                    and previous["content"]
                    and previous["content"][-1].get("type") == "tool_result"
                ):
                    previous["content"].append(block)
                else:
                    converted.append({"role": "user", "content": [block]})
            elif msg.role == MessageRole.ASSISTANT:
                if not msg.tool_calls:
                    if msg.content:
                        converted.append({"role": "assistant", "content": msg.content})
                    continue
                content: list[dict[str, Any]] = []
                if msg.content:
                    content.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    content.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.arguments,
                    })
                converted.append({"role": "assistant", "content": content})
            else:
                # Users and summaries both speak as the user
                converted.append({"role": "user", "content": msg.content})

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Anthropic format."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters,
            }
            for tool in tools
        ]

    async def send(
        self,
        messages: list[Message],
        cancel: asyncio.Event,
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[Fragment]:
        """Stream a response from Claude."""
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": self._convert_messages(messages),
        }

        if system_prompt:
            kwargs["system"] = system_prompt

        if tools:
            kwargs["tools"] = self._convert_tools(tools)

        try:
            async with self.client.messages.stream(**kwargs) as stream:
                async for event in stream:
                    if cancel.is_set():
                        logger.info("Anthropic stream cancelled", model=self.model)
                        return
                    if event.type == "text":
                        yield TextFragment(event.text)
                final = await stream.get_final_message()

        except anthropic.APIError as e:
            logger.error("Anthropic streaming error", error=str(e))
            raise TransportError(str(e), provider=self.provider_name, cause=e) from e

        for block in final.content:
            if block.type != "tool_use":
                continue
            if isinstance(block.input, dict):
                yield ToolCallRequest(id=block.id, name=block.name, arguments=dict(block.input))
            else:
                yield ToolCallRequest(
                    id=block.id,
                    name=block.name,
                    arguments=None,
                    error="tool input is not a JSON object",
                )
