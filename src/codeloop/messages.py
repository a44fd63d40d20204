"""
Conversation data model: messages, tool calls and compression summaries.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

# Approximate tokens per character (conservative estimate)
CHARS_PER_TOKEN = 4

# Role markers and formatting overhead per message, in characters
MESSAGE_OVERHEAD_CHARS = 20

SUMMARY_PREFIX = "[Previous conversation summary]"


class MessageRole(str, Enum):
    """Message roles for conversation."""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"
    SYSTEM_SUMMARY = "system_summary"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a single message body."""
    return (len(text) + MESSAGE_OVERHEAD_CHARS) // CHARS_PER_TOKEN


def estimate_message_tokens(messages: list["Message"]) -> int:
    """Sum the size estimates of a list of messages."""
    return sum(m.size for m in messages)


@dataclass(frozen=True)
class ToolCall:
    """A tool call made by the model."""

    id: str
    name: str
    arguments: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        return cls(id=data["id"], name=data["name"], arguments=dict(data.get("arguments") or {}))


SEGMENT_TITLES = {
    "background_context": "Background context",
    "key_decisions": "Key decisions",
    "tool_usage": "Tool usage",
    "user_intent": "User intent",
    "execution_results": "Execution results",
    "error_handling": "Error handling",
    "open_issues": "Open issues",
    "next_steps": "Next steps",
}


@dataclass(frozen=True)
class SummarySegments:
    """The eight named blocks of a compression summary."""

    background_context: str = ""
    key_decisions: str = ""
    tool_usage: str = ""
    user_intent: str = ""
    execution_results: str = ""
    error_handling: str = ""
    open_issues: str = ""
    next_steps: str = ""

    def items(self) -> list[tuple[str, str]]:
        return [(f.name, getattr(self, f.name)) for f in fields(self)]

    def render(self) -> str:
        """Render the non-empty segments as the summary message body."""
        lines = [SUMMARY_PREFIX]
        for name, text in self.items():
            if text:
                lines.append(f"{SEGMENT_TITLES[name]}: {text}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, str]:
        return dict(self.items())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SummarySegments":
        return cls(**{name: str(data.get(name, "")) for name in SEGMENT_TITLES})


@dataclass(frozen=True)
class Message:
    """One contribution to the session log. Immutable once created."""

    role: MessageRole
    content: str
    size: int
    created_at: datetime = field(default_factory=_utcnow)
    importance: float | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None
    is_error: bool = False
    segments: SummarySegments | None = None
    summarized_count: int = 0

    @classmethod
    def user(cls, content: str, size: int | None = None) -> "Message":
        return cls(
            role=MessageRole.USER,
            content=content,
            size=estimate_tokens(content) if size is None else size,
        )

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: list[ToolCall] | tuple[ToolCall, ...] = (),
        size: int | None = None,
    ) -> "Message":
        if size is None:
            size = estimate_tokens(content + "".join(
                f"{tc.name}{tc.arguments}" for tc in tool_calls
            ))
        return cls(
            role=MessageRole.ASSISTANT,
            content=content,
            size=size,
            tool_calls=tuple(tool_calls),
        )

    @classmethod
    def tool_result(
        cls,
        tool_call_id: str,
        content: str,
        name: str = "",
        is_error: bool = False,
        size: int | None = None,
    ) -> "Message":
        return cls(
            role=MessageRole.TOOL_RESULT,
            content=content,
            size=estimate_tokens(content) if size is None else size,
            tool_call_id=tool_call_id,
            name=name,
            is_error=is_error,
        )

    @classmethod
    def summary(cls, segments: SummarySegments, summarized_count: int) -> "Message":
        content = segments.render()
        return cls(
            role=MessageRole.SYSTEM_SUMMARY,
            content=content,
            size=estimate_tokens(content),
            segments=segments,
            summarized_count=summarized_count,
        )

    @property
    def is_summary(self) -> bool:
        return self.role == MessageRole.SYSTEM_SUMMARY

    def with_importance(self, importance: float) -> "Message":
        return replace(self, importance=importance)

    def to_dict(self) -> dict[str, Any]:
        """Serialize every field, including summary segments."""
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "size": self.size,
            "created_at": self.created_at.isoformat(),
            "importance": self.importance,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "is_error": self.is_error,
            "segments": self.segments.to_dict() if self.segments else None,
            "summarized_count": self.summarized_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        created_at = data["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        segments = data.get("segments")
        return cls(
            id=data["id"],
            role=MessageRole(data["role"]),
            content=data["content"],
            size=int(data["size"]),
            created_at=created_at,
            importance=data.get("importance"),
            tool_calls=tuple(ToolCall.from_dict(tc) for tc in data.get("tool_calls") or []),
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
            is_error=bool(data.get("is_error", False)),
            segments=SummarySegments.from_dict(segments) if segments else None,
            summarized_count=int(data.get("summarized_count", 0)),
        )
