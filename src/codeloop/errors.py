"""
Error taxonomy for the agent core.

Every turn-fatal condition carries the loop state it happened in and the index
of the last committed message, so callers can resume or restart the turn.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Kinds of failure the core reports."""
    TRANSPORT_ERROR = "transport_error"
    INVALID_TOOL_CALL = "invalid_tool_call"
    TOOL_EXECUTION_FAILURE = "tool_execution_failure"
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"
    SIZE_LIMIT_EXCEEDED = "size_limit_exceeded"
    QUEUE_CLOSED = "queue_closed"
    QUEUE_FULL = "queue_full"


class AgentError(Exception):
    """Base class for all core errors."""

    kind: ErrorKind = ErrorKind.TRANSPORT_ERROR

    def __init__(
        self,
        message: str,
        *,
        state: str | None = None,
        last_message_index: int | None = None,
        cause: Exception | None = None,
        **details: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.state = state
        self.last_message_index = last_message_index
        self.cause = cause
        self.details = details

    @property
    def recoverable(self) -> bool:
        """Whether the turn can continue after this error."""
        return self.kind == ErrorKind.TOOL_EXECUTION_FAILURE

    def at(self, state: str, last_message_index: int) -> "AgentError":
        """Attach the loop position where the error surfaced."""
        self.state = state
        self.last_message_index = last_message_index
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "state": self.state,
            "last_message_index": self.last_message_index,
            **self.details,
        }

    @classmethod
    def wrap(cls, err: Exception) -> "AgentError":
        if isinstance(err, AgentError):
            return err
        return TransportError(str(err) or type(err).__name__, cause=err)


class TransportError(AgentError):
    """The model endpoint failed (network, provider, timeout)."""
    kind = ErrorKind.TRANSPORT_ERROR

    def __init__(self, message: str, *, provider: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.provider = provider


class InvalidToolCallError(AgentError):
    """The model asked for a tool invocation that cannot be dispatched."""
    kind = ErrorKind.INVALID_TOOL_CALL

    def __init__(self, message: str, *, tool_name: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, tool_name=tool_name, **kwargs)
        self.tool_name = tool_name


class ToolExecutionError(AgentError):
    """A tool ran and reported failure. Fed back to the model, never turn-fatal."""
    kind = ErrorKind.TOOL_EXECUTION_FAILURE


class ToolLoopExceededError(AgentError):
    """The model kept requesting tools past the iteration cap."""
    kind = ErrorKind.TOOL_LOOP_EXCEEDED

    def __init__(self, max_iterations: int, **kwargs: Any) -> None:
        super().__init__(
            f"Tool loop exceeded {max_iterations} iterations",
            max_iterations=max_iterations,
            **kwargs,
        )
        self.max_iterations = max_iterations


class SizeLimitExceededError(AgentError):
    """A message cannot fit in the context budget, even after compression."""
    kind = ErrorKind.SIZE_LIMIT_EXCEEDED

    def __init__(self, size: int, limit: int, **kwargs: Any) -> None:
        super().__init__(
            f"Message of {size} tokens cannot fit in a context limit of {limit} tokens",
            size=size,
            limit=limit,
            **kwargs,
        )
        self.size = size
        self.limit = limit


class QueueClosedError(AgentError):
    """A steering event was posted after Shutdown."""
    kind = ErrorKind.QUEUE_CLOSED

    def __init__(self, message: str = "Steering queue is closed", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class QueueFullError(AgentError):
    """A bounded steering inbox cannot take more events."""
    kind = ErrorKind.QUEUE_FULL

    def __init__(self, maxsize: int, **kwargs: Any) -> None:
        super().__init__(f"Steering queue is full ({maxsize} events)", maxsize=maxsize, **kwargs)
        self.maxsize = maxsize


class SessionClosedError(AgentError):
    """A turn was requested on a session that has been shut down."""
    kind = ErrorKind.QUEUE_CLOSED

    def __init__(self, session_id: str, **kwargs: Any) -> None:
        super().__init__(f"Session {session_id} is closed", session_id=session_id, **kwargs)
        self.session_id = session_id
