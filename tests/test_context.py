"""
Tests for the context manager.
"""

import pytest

from codeloop.agent.compaction import ContextConfig
from codeloop.agent.context import ContextManager
from codeloop.errors import ErrorKind, SizeLimitExceededError
from codeloop.messages import Message, MessageRole, ToolCall


def sized(index: int, size: int = 100) -> Message:
    if index % 2 == 0:
        return Message.user(f"question {index}", size=size)
    return Message.assistant(f"answer {index}", size=size)


def test_append_tracks_size():
    """Test that the cumulative size follows appends."""
    manager = ContextManager(ContextConfig(max_context_tokens=1000))

    manager.append(sized(0, 40))
    manager.append(sized(1, 60))

    assert manager.size == 100
    assert len(manager) == 2
    assert manager.last_index == 1


def test_current_prompt_is_a_copy():
    """Test that callers cannot mutate the log through the prompt."""
    manager = ContextManager(ContextConfig(max_context_tokens=1000))
    manager.append(sized(0))

    prompt = manager.current_prompt()
    prompt.clear()

    assert len(manager) == 1


def test_no_compression_below_trigger():
    """Test that nothing happens under the threshold."""
    manager = ContextManager(ContextConfig(max_context_tokens=1000))
    for i in range(9):
        assert manager.commit(sized(i)) is None

    assert manager.size == 900
    assert manager.compression_history == []


def test_compression_at_threshold():
    """Test ten 100-token messages against a 1000-token limit."""
    manager = ContextManager(ContextConfig(max_context_tokens=1000))
    for i in range(9):
        manager.commit(sized(i))
    newest = sized(9)

    record = manager.commit(newest)

    assert record is not None
    assert record.size_before == 1000
    assert manager.size < 700
    assert manager.size == record.size_after
    messages = manager.current_prompt()
    assert messages[0].is_summary
    assert messages[-1] is newest
    assert sum(1 for m in messages if m.is_summary) == 1
    assert messages[0].summarized_count == record.absorbed


def test_maybe_compress_is_idempotent():
    """Test that a second call without an append changes nothing."""
    manager = ContextManager(ContextConfig(max_context_tokens=1000))
    for i in range(10):
        manager.commit(sized(i))
    after_first = manager.current_prompt()

    assert manager.maybe_compress() is None
    assert manager.current_prompt() == after_first
    assert len(manager.compression_history) == 1


def test_compression_always_shrinks_and_fits():
    """Test size monotonicity across a long mixed-size session."""
    limit = 1000
    manager = ContextManager(ContextConfig(max_context_tokens=limit, keep_recent_messages=4))

    for i in range(200):
        manager.commit(sized(i, size=30 + (i * 37) % 170))
        assert manager.size <= limit

    assert len(manager.compression_history) > 1
    for record in manager.compression_history:
        assert record.size_after < record.size_before
        assert record.size_after <= limit


def test_prior_summary_is_absorbed():
    """Test that repeated compressions never nest summaries."""
    manager = ContextManager(ContextConfig(max_context_tokens=1000))
    for i in range(40):
        manager.commit(sized(i))

    messages = manager.current_prompt()
    summaries = [i for i, m in enumerate(messages) if m.is_summary]
    assert summaries == [0]
    assert len(manager.compression_history) >= 2
    assert messages[0].summarized_count == 40 - (len(messages) - 1)


def test_oversized_message_rejected():
    """Test that a message bigger than the limit never enters the log."""
    manager = ContextManager(ContextConfig(max_context_tokens=1000))
    manager.append(sized(0))

    with pytest.raises(SizeLimitExceededError) as exc_info:
        manager.commit(Message.user("huge", size=1001))

    assert exc_info.value.kind == ErrorKind.SIZE_LIMIT_EXCEEDED
    assert exc_info.value.size == 1001
    assert exc_info.value.last_message_index == 0
    assert manager.size == 100
    assert len(manager) == 1


def test_rejects_newest_when_compression_cannot_help():
    """Test that an append compression cannot make room for is undone."""
    manager = ContextManager(ContextConfig(max_context_tokens=1000))
    manager.commit(Message.user("hi", size=10))

    with pytest.raises(SizeLimitExceededError):
        manager.commit(Message.user("almost everything", size=995))

    assert [m.content for m in manager.current_prompt()] == ["hi"]
    assert manager.size == 10
    assert manager.maybe_compress() is None
    assert len(manager) == 1


def test_keeps_log_between_trigger_and_limit():
    """Test that an append which still fits is kept when nothing can be compacted."""
    manager = ContextManager(ContextConfig(max_context_tokens=1000))
    manager.commit(Message.user("hi", size=10))

    assert manager.commit(Message.user("almost everything", size=950)) is None

    assert [m.content for m in manager.current_prompt()] == ["hi", "almost everything"]
    assert manager.size == 960
    assert manager.compression_history == []


def test_session_usable_after_rejection():
    """Test that a smaller message is accepted after a rejection."""
    manager = ContextManager(ContextConfig(max_context_tokens=1000))
    manager.commit(Message.user("hi", size=10))
    with pytest.raises(SizeLimitExceededError):
        manager.commit(Message.user("too much", size=995))

    manager.commit(Message.user("smaller", size=50))

    assert manager.size == 60


def test_tool_results_stay_with_their_call():
    """Test that a compression prefix never splits a call from its results."""
    manager = ContextManager(ContextConfig(max_context_tokens=1000, keep_recent_messages=2))
    calls = [ToolCall(f"c{i}", "read_file", {"path": f"{i}.txt"}) for i in range(4)]
    for i in range(5):
        manager.commit(sized(i))
    manager.commit(Message.assistant("reading", calls, size=100))
    for call in calls:
        manager.commit(Message.tool_result(call.id, "contents", name="read_file", size=100))

    messages = manager.current_prompt()
    assert messages[0].is_summary
    assert messages[1].tool_calls == tuple(calls)
    assert [m.tool_call_id for m in messages[2:]] == ["c0", "c1", "c2", "c3"]
    assert manager.size < 700


def test_compress_hook_and_history():
    """Test the compression callback and recorded history."""
    seen = []
    manager = ContextManager(ContextConfig(max_context_tokens=1000), on_compress=seen.append)
    for i in range(10):
        manager.commit(sized(i))

    assert seen == manager.compression_history
    assert seen[0].compressed_at is not None


def test_stats_levels():
    """Test usage reporting and warning levels."""
    manager = ContextManager(ContextConfig(max_context_tokens=1000))

    manager.append(sized(0, 500))
    assert manager.stats().level == "ok"

    manager.append(sized(1, 100))
    stats = manager.stats()
    assert stats.level == "warning"
    assert stats.usage_ratio == pytest.approx(0.6)

    manager.append(sized(2, 250))
    stats = manager.stats()
    assert stats.level == "critical"
    assert stats.message_count == 3
    assert stats.compression_count == 0
    assert stats.last_compression is None


def test_restore_does_not_recompress():
    """Test that a restored log is taken as is."""
    messages = [sized(i) for i in range(10)]

    manager = ContextManager.restore(messages, ContextConfig(max_context_tokens=1000), compression_count=3)

    assert manager.maybe_compress() is None
    assert manager.size == 1000
    assert manager.stats().compression_count == 3
    assert [m.role for m in manager.current_prompt()][:2] == [MessageRole.USER, MessageRole.ASSISTANT]
