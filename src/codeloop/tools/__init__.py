"""
Tools module: the registry the agent loop dispatches tool calls through.
"""

from .base import BaseTool, Tool, ToolParameter, ToolResult
from .registry import ToolRegistry, ToolUsageStats, create_tool_registry
from .file_tool import FileManager, create_file_tools

__all__ = [
    "BaseTool",
    "Tool",
    "ToolParameter",
    "ToolResult",
    "ToolRegistry",
    "ToolUsageStats",
    "create_tool_registry",
    "FileManager",
    "create_file_tools",
]
