"""
File Tools - Read, list and search files in the workspace.

Read-only by construction: editing and backups belong to the host program.
"""

import fnmatch
import logging
import re
from pathlib import Path
from typing import Optional

from .base import Tool, ToolParameter, ToolResult

logger = logging.getLogger(__name__)

MAX_LISTED_FILES = 50
MAX_SEARCH_RESULTS = 20


class FileManager:
    """Read-only file access confined to a workspace directory."""

    def __init__(self, workspace_dir: str):
        self.workspace_dir = Path(workspace_dir).expanduser().resolve()

        self.blocked_paths = {
            ".ssh", ".gnupg", ".aws", ".gcloud", "credentials", ".env",
        }

    def _is_safe_path(self, path: Path) -> bool:
        """Check if a path is safe to access."""
        resolved = path.resolve()

        if resolved != self.workspace_dir and self.workspace_dir not in resolved.parents:
            logger.warning(f"Path outside workspace: {path}")
            return False

        parts = {p.lower() for p in resolved.relative_to(self.workspace_dir).parts}
        if parts & self.blocked_paths:
            logger.warning(f"Blocked path pattern: {path}")
            return False

        return True

    def _normalize_path(self, path: str) -> Path:
        """Normalize a path relative to workspace."""
        p = Path(path)

        if not p.is_absolute():
            p = self.workspace_dir / p

        return p

    def read_file(self, path: str, max_lines: Optional[int] = None) -> str:
        """Read a file's contents."""
        file_path = self._normalize_path(path)

        if not self._is_safe_path(file_path):
            raise PermissionError(f"Access denied: {path}")

        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {path}")

        if not file_path.is_file():
            raise IsADirectoryError(f"Path is a directory: {path}")

        content = file_path.read_text()

        if max_lines:
            lines = content.split("\n")
            if len(lines) > max_lines:
                content = "\n".join(lines[:max_lines])
                content += f"\n\n... (truncated, {len(lines) - max_lines} more lines)"

        return content

    def list_files(
        self,
        path: str = ".",
        pattern: str = "*",
        recursive: bool = False,
    ) -> list[str]:
        """List files in a directory."""
        dir_path = self._normalize_path(path)

        if not self._is_safe_path(dir_path):
            raise PermissionError(f"Access denied: {path}")

        if not dir_path.exists():
            raise FileNotFoundError(f"Directory not found: {path}")

        if not dir_path.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {path}")

        matches = dir_path.rglob(pattern) if recursive else dir_path.glob(pattern)
        return sorted(
            str(file_path.relative_to(dir_path))
            for file_path in matches
            if file_path.is_file() and self._is_safe_path(file_path)
        )

    def search_files(
        self,
        pattern: str,
        path: str = ".",
        content_search: bool = False,
    ) -> list[dict]:
        """Search for files by name or content."""
        dir_path = self._normalize_path(path)

        if not self._is_safe_path(dir_path):
            raise PermissionError(f"Access denied: {path}")

        if not dir_path.exists():
            raise FileNotFoundError(f"Directory not found: {path}")

        regex = re.compile(pattern, re.IGNORECASE) if content_search else None
        results = []

        for file_path in sorted(dir_path.rglob("*")):
            if not file_path.is_file() or not self._is_safe_path(file_path):
                continue

            relative = str(file_path.relative_to(dir_path))
            if regex is not None:
                try:
                    content = file_path.read_text()
                except (UnicodeDecodeError, PermissionError):
                    continue
                matches = list(regex.finditer(content))
                if matches:
                    results.append({
                        "file": relative,
                        "matches": len(matches),
                        "preview": content[max(0, matches[0].start() - 20):matches[0].end() + 50],
                    })
            elif fnmatch.fnmatch(file_path.name.lower(), pattern.lower()):
                results.append({"file": relative, "size": file_path.stat().st_size})

        return results


def create_file_tools(manager: FileManager) -> list[Tool]:
    """Create the read-only file tools bound to one workspace."""

    async def read_file_handler(path: str, max_lines: int = 400) -> ToolResult:
        try:
            content = manager.read_file(path, max_lines)
        except (OSError, ValueError) as e:
            return ToolResult.failure(str(e))
        return ToolResult(success=True, output=content, data={"path": path})

    async def list_files_handler(path: str = ".", pattern: str = "*", recursive: bool = False) -> ToolResult:
        try:
            files = manager.list_files(path, pattern, recursive)
        except (OSError, ValueError) as e:
            return ToolResult.failure(str(e))

        if not files:
            return ToolResult(success=True, output="No files found.", data=[])

        output = "\n".join(files[:MAX_LISTED_FILES])
        if len(files) > MAX_LISTED_FILES:
            output += f"\n... and {len(files) - MAX_LISTED_FILES} more files"
        return ToolResult(success=True, output=output, data=files)

    async def search_files_handler(pattern: str, path: str = ".", search_content: bool = False) -> ToolResult:
        try:
            results = manager.search_files(pattern, path, search_content)
        except (OSError, ValueError, re.error) as e:
            return ToolResult.failure(str(e))

        if not results:
            return ToolResult(success=True, output="No matches found.", data=[])

        lines = []
        for r in results[:MAX_SEARCH_RESULTS]:
            if "preview" in r:
                lines.append(f"{r['file']} ({r['matches']} matches): {r['preview'][:60]!r}")
            else:
                lines.append(f"{r['file']} ({r['size']} bytes)")
        if len(results) > MAX_SEARCH_RESULTS:
            lines.append(f"... and {len(results) - MAX_SEARCH_RESULTS} more matches")
        return ToolResult(success=True, output="\n".join(lines), data=results)

    read_file = Tool(
        name="read_file",
        description="Read the contents of a file in the workspace.",
        parameters=[
            ToolParameter(
                name="path",
                param_type="string",
                description="Path to the file, relative to the workspace",
                required=True,
            ),
            ToolParameter(
                name="max_lines",
                param_type="integer",
                description="Maximum lines to read (default: 400)",
                required=False,
            ),
        ],
        handler=read_file_handler,
    )

    list_files = Tool(
        name="list_files",
        description="List files in a workspace directory.",
        parameters=[
            ToolParameter(
                name="path",
                param_type="string",
                description="Directory path (default: workspace root)",
                required=False,
            ),
            ToolParameter(
                name="pattern",
                param_type="string",
                description="Glob pattern to filter files (default: *)",
                required=False,
            ),
            ToolParameter(
                name="recursive",
                param_type="boolean",
                description="Search recursively (default: false)",
                required=False,
            ),
        ],
        handler=list_files_handler,
    )

    search_files = Tool(
        name="search_files",
        description="Search workspace files by name pattern or content regex.",
        parameters=[
            ToolParameter(
                name="pattern",
                param_type="string",
                description="Search pattern (glob for names, regex for content)",
                required=True,
            ),
            ToolParameter(
                name="path",
                param_type="string",
                description="Directory to search in (default: workspace root)",
                required=False,
            ),
            ToolParameter(
                name="search_content",
                param_type="boolean",
                description="Search file contents instead of names (default: false)",
                required=False,
            ),
        ],
        handler=search_files_handler,
    )

    return [read_file, list_files, search_files]
