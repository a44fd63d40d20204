"""
Tool registry: the capability boundary the agent loop dispatches through.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union

import structlog

from ..llm.base import ToolDefinition
from .base import BaseTool, Tool, ToolResult

if TYPE_CHECKING:
    from ..config import Settings

logger = structlog.get_logger()


@dataclass
class ToolUsageStats:
    """Invocation counters for one tool."""

    calls: int = 0
    failures: int = 0


class ToolRegistry:
    """Registry for managing tools."""

    def __init__(self):
        self._tools: dict[str, Union[BaseTool, Tool]] = {}
        self._stats: dict[str, ToolUsageStats] = {}

    def register(self, tool: Union[BaseTool, Tool]) -> None:
        """Register a tool."""
        self._tools[tool.name] = tool
        logger.info("Tool registered", tool_name=tool.name)

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            logger.info("Tool unregistered", tool_name=name)

    def get(self, name: str) -> Union[BaseTool, Tool, None]:
        """Get a tool by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for the model."""
        definitions = []
        for tool in self._tools.values():
            if isinstance(tool, Tool):
                parameters = tool.get_parameters_schema()
            else:
                parameters = tool.parameters
            definitions.append(ToolDefinition(
                name=tool.name,
                description=tool.description,
                parameters=parameters,
            ))
        return definitions

    def get_stats(self, name: str) -> ToolUsageStats | None:
        return self._stats.get(name)

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Invoke a tool by name. Failures are returned, never raised."""
        stats = self._stats.setdefault(name, ToolUsageStats())
        stats.calls += 1

        tool = self.get(name)
        if tool is None:
            stats.failures += 1
            return ToolResult.failure(f"Tool '{name}' not found")

        try:
            logger.info("Executing tool", tool_name=name, arguments=arguments)
            result = await tool.execute(**arguments)
        except TypeError as e:
            logger.warning("Tool called with bad arguments", tool_name=name, error=str(e))
            result = ToolResult.failure(f"Invalid arguments for '{name}': {e}")
        except Exception as e:
            logger.error("Tool execution error", tool_name=name, error=str(e))
            result = ToolResult.failure(str(e))

        if not result.success:
            stats.failures += 1
        logger.info("Tool executed", tool_name=name, success=result.success)
        return result


def create_tool_registry(settings: "Settings | None" = None) -> ToolRegistry:
    """Create a registry with the built-in workspace tools."""
    if settings is None:
        from ..config import get_settings
        settings = get_settings()

    from .file_tool import FileManager, create_file_tools

    registry = ToolRegistry()
    for tool in create_file_tools(FileManager(settings.workspace_dir)):
        registry.register(tool)
    return registry
