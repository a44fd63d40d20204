"""
Shared fixtures: a scripted in-memory transport and small sessions.
"""

import asyncio
from typing import Any

import pytest

from codeloop.agent.compaction import ContextConfig
from codeloop.agent.context import ContextManager
from codeloop.agent.core import Session
from codeloop.agent.steering import SteeringController
from codeloop.llm.base import BaseLLM, TextFragment, ToolCallRequest, ToolDefinition
from codeloop.messages import Message
from codeloop.tools.base import Tool, ToolParameter, ToolResult
from codeloop.tools.registry import ToolRegistry


def text(value: str) -> TextFragment:
    return TextFragment(value)


def tool_call(call_id: str, name: str, **arguments: Any) -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name=name, arguments=arguments)


class ScriptedLLM(BaseLLM):
    """Transport that replays one script per call.

    A script item is a fragment to yield, an exception to raise, or a
    zero-argument callable run at that point (used to post steering events
    at exact moments of a stream).
    """

    def __init__(self, scripts: list[list[Any]]):
        super().__init__(api_key="test", model="scripted")
        self.scripts = list(scripts)
        self.prompts: list[list[Message]] = []
        self.cancel_events: list[asyncio.Event] = []
        self.tools_seen: list[list[ToolDefinition] | None] = []
        self.closed_streams = 0

    @property
    def provider_name(self) -> str:
        return "scripted"

    async def send(self, messages, cancel, tools=None, system_prompt=None):
        self.prompts.append(list(messages))
        self.cancel_events.append(cancel)
        self.tools_seen.append(tools)
        script = self.scripts.pop(0)
        try:
            for item in script:
                if isinstance(item, Exception):
                    raise item
                if callable(item):
                    item()
                    continue
                if cancel.is_set():
                    return
                yield item
                await asyncio.sleep(0)
        finally:
            self.closed_streams += 1


def make_echo_registry(calls: list[tuple[str, dict]] | None = None) -> ToolRegistry:
    """Registry with an ``echo`` tool and an always-failing ``broken`` tool."""
    registry = ToolRegistry()

    async def echo(message: str = "") -> ToolResult:
        if calls is not None:
            calls.append(("echo", {"message": message}))
        return ToolResult(success=True, output=f"echo: {message}")

    async def broken() -> ToolResult:
        if calls is not None:
            calls.append(("broken", {}))
        raise RuntimeError("disk on fire")

    registry.register(Tool(
        name="echo",
        description="Echo the message back.",
        parameters=[ToolParameter(name="message", param_type="string", description="Text", required=False)],
        handler=echo,
    ))
    registry.register(Tool(
        name="broken",
        description="Always fails.",
        parameters=[],
        handler=broken,
    ))
    return registry


def make_session(max_context_tokens: int = 100_000, keep_recent_messages: int = 10, **kwargs) -> Session:
    config = ContextConfig(max_context_tokens=max_context_tokens, keep_recent_messages=keep_recent_messages, **kwargs)
    return Session(context=ContextManager(config), steering=SteeringController())


@pytest.fixture
def session() -> Session:
    return make_session()


@pytest.fixture
def tool_calls_made() -> list:
    return []


@pytest.fixture
def registry(tool_calls_made) -> ToolRegistry:
    return make_echo_registry(tool_calls_made)
