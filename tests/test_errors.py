"""
Tests for the error taxonomy.
"""

from codeloop.errors import (
    AgentError,
    ErrorKind,
    InvalidToolCallError,
    QueueClosedError,
    SizeLimitExceededError,
    ToolExecutionError,
    ToolLoopExceededError,
    TransportError,
)


def test_kinds():
    """Test each error class reports its kind."""
    assert TransportError("x").kind == ErrorKind.TRANSPORT_ERROR
    assert InvalidToolCallError("x").kind == ErrorKind.INVALID_TOOL_CALL
    assert ToolExecutionError("x").kind == ErrorKind.TOOL_EXECUTION_FAILURE
    assert ToolLoopExceededError(3).kind == ErrorKind.TOOL_LOOP_EXCEEDED
    assert SizeLimitExceededError(10, 5).kind == ErrorKind.SIZE_LIMIT_EXCEEDED
    assert QueueClosedError().kind == ErrorKind.QUEUE_CLOSED


def test_only_tool_failures_are_recoverable():
    """Test the recoverable flag."""
    assert ToolExecutionError("x").recoverable
    assert not TransportError("x").recoverable
    assert not ToolLoopExceededError(3).recoverable


def test_at_and_to_dict():
    """Test attaching the loop position and serializing."""
    error = SizeLimitExceededError(1200, 1000).at("dispatching", 7)

    assert error.to_dict() == {
        "kind": "size_limit_exceeded",
        "message": "Message of 1200 tokens cannot fit in a context limit of 1000 tokens",
        "state": "dispatching",
        "last_message_index": 7,
        "size": 1200,
        "limit": 1000,
    }


def test_wrap():
    """Test wrapping foreign exceptions as transport errors."""
    cause = TimeoutError("read timed out")

    wrapped = AgentError.wrap(cause)

    assert isinstance(wrapped, TransportError)
    assert wrapped.cause is cause
    assert wrapped.message == "read timed out"
    existing = InvalidToolCallError("bad")
    assert AgentError.wrap(existing) is existing
    assert AgentError.wrap(ValueError()).message == "ValueError"
