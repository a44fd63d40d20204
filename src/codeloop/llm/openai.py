"""
OpenAI GPT LLM provider (also works with OpenRouter and compatible APIs).
"""

import asyncio
import json
from typing import Any, AsyncIterator

import openai
import structlog

from ..errors import TransportError
from ..messages import Message, MessageRole
from .base import BaseLLM, Fragment, TextFragment, ToolCallRequest, ToolDefinition

logger = structlog.get_logger()


class _ToolCallBuffer:
    """Reassembles a tool call streamed as partial deltas."""

    def __init__(self) -> None:
        self.id = ""
        self.name = ""
        self.arguments = ""

    def feed(self, delta: Any) -> None:
        if delta.id:
            self.id = delta.id
        function = delta.function
        if function is not None:
            if function.name:
                self.name += function.name
            if function.arguments:
                self.arguments += function.arguments

    def to_request(self) -> ToolCallRequest:
        if not self.arguments.strip():
            return ToolCallRequest(id=self.id, name=self.name, arguments={})
        try:
            arguments = json.loads(self.arguments)
        except json.JSONDecodeError as e:
            return ToolCallRequest(
                id=self.id,
                name=self.name,
                arguments=None,
                error=f"arguments are not valid JSON: {e}",
            )
        return ToolCallRequest(id=self.id, name=self.name, arguments=arguments)


class OpenAILLM(BaseLLM):
    """OpenAI GPT LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "openai"

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert session messages to OpenAI format."""
        converted = []

        for msg in messages:
            if msg.role == MessageRole.TOOL_RESULT:
                converted.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content,
                })
            elif msg.role == MessageRole.ASSISTANT and msg.tool_calls:
                tool_calls = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments),
                        },
                    }
                    for tc in msg.tool_calls
                ]
                converted.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": tool_calls,
                })
            elif msg.role == MessageRole.ASSISTANT:
                converted.append({"role": "assistant", "content": msg.content})
            else:
                converted.append({"role": "user", "content": msg.content})

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to OpenAI format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
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
        """Stream a response from GPT."""
        converted_messages = self._convert_messages(messages)

        if system_prompt:
            converted_messages.insert(0, {"role": "system", "content": system_prompt})

        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": converted_messages,
            "stream": True,
        }

        if tools:
            kwargs["tools"] = self._convert_tools(tools)

        buffers: dict[int, _ToolCallBuffer] = {}

        try:
            stream = await self.client.chat.completions.create(**kwargs)

            async for chunk in stream:  # type: ignore
                if cancel.is_set():
                    logger.info("OpenAI stream cancelled", model=self.model)
                    await stream.close()
                    return
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    yield TextFragment(delta.content)
                for tc in delta.tool_calls or []:
                    buffers.setdefault(tc.index, _ToolCallBuffer()).feed(tc)

        except openai.APIError as e:
            logger.error("OpenAI streaming error", error=str(e))
            raise TransportError(str(e), provider=self.provider_name, cause=e) from e

        for index in sorted(buffers):
            yield buffers[index].to_request()
