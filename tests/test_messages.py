"""
Tests for the conversation data model.
"""

from datetime import datetime, timezone

import pytest

from codeloop.messages import (
    SUMMARY_PREFIX,
    Message,
    MessageRole,
    SummarySegments,
    ToolCall,
    estimate_message_tokens,
    estimate_tokens,
)


def test_estimate_tokens():
    """Test the size estimate includes per-message overhead."""
    assert estimate_tokens("") == 5
    assert estimate_tokens("a" * 80) == 25


def test_estimate_message_tokens():
    """Test summing message sizes."""
    messages = [Message.user("hi", size=10), Message.assistant("hello", size=15)]
    assert estimate_message_tokens(messages) == 25
    assert estimate_message_tokens([]) == 0


def test_user_message_defaults():
    """Test the user message constructor."""
    msg = Message.user("Hello there")

    assert msg.role == MessageRole.USER
    assert msg.size == estimate_tokens("Hello there")
    assert msg.created_at.tzinfo is not None
    assert msg.tool_calls == ()
    assert not msg.is_summary


def test_assistant_size_counts_tool_calls():
    """Test that tool call payloads count toward the size."""
    call = ToolCall(id="c1", name="read_file", arguments={"path": "a" * 200})
    plain = Message.assistant("")
    with_call = Message.assistant("", [call])

    assert with_call.size > plain.size + 40
    assert with_call.tool_calls == (call,)


def test_messages_are_immutable():
    """Test that a message cannot change once created."""
    msg = Message.user("fixed")

    with pytest.raises(AttributeError):
        msg.content = "changed"  # type: ignore[misc]


def test_with_importance_returns_copy():
    """Test tagging a message with an explicit importance."""
    msg = Message.user("note")
    tagged = msg.with_importance(0.9)

    assert tagged.importance == 0.9
    assert msg.importance is None
    assert tagged.id == msg.id


def test_summary_render_skips_empty_segments():
    """Test that only filled segments appear in the summary body."""
    segments = SummarySegments(user_intent="Fix the login bug", tool_usage="read_file x2")
    msg = Message.summary(segments, summarized_count=6)

    assert msg.is_summary
    assert msg.content.startswith(SUMMARY_PREFIX)
    assert "User intent: Fix the login bug" in msg.content
    assert "Tool usage: read_file x2" in msg.content
    assert "Open issues" not in msg.content
    assert msg.summarized_count == 6


def test_summary_segments_items_order():
    """Test that segments are listed in their fixed order."""
    names = [name for name, _ in SummarySegments().items()]

    assert names == [
        "background_context",
        "key_decisions",
        "tool_usage",
        "user_intent",
        "execution_results",
        "error_handling",
        "open_issues",
        "next_steps",
    ]


def test_serialization_keeps_every_field():
    """Test that a serialized log restores summaries and tool pairing exactly."""
    created = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    summary = Message(
        role=MessageRole.SYSTEM_SUMMARY,
        content="[Previous conversation summary]\nUser intent: ship it",
        size=14,
        created_at=created,
        segments=SummarySegments(user_intent="ship it"),
        summarized_count=12,
    )
    call = Message.assistant("checking", [ToolCall("c1", "read_file", {"path": "a.txt"})])
    result = Message.tool_result("c1", "Error: missing", name="read_file", is_error=True).with_importance(0.7)

    for original in (summary, call, result):
        restored = Message.from_dict(original.to_dict())
        assert restored == original

    restored_summary = Message.from_dict(summary.to_dict())
    assert restored_summary.is_summary
    assert restored_summary.segments.user_intent == "ship it"


def test_from_dict_assumes_utc_for_naive_timestamps():
    """Test that naive timestamps are read back as UTC."""
    data = Message.user("hi").to_dict()
    data["created_at"] = "2024-01-01T00:00:00"

    msg = Message.from_dict(data)

    assert msg.created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
