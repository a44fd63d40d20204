"""
Tests for conversation compaction module.
"""

import pytest

from codeloop.agent.compaction import (
    ContextConfig,
    _classify_message_importance,
    build_summary,
    extract_segments,
    plan_compression,
    score_importance,
)
from codeloop.messages import Message, SummarySegments, ToolCall


def test_context_config_thresholds():
    """Test trigger and target token thresholds."""
    config = ContextConfig(max_context_tokens=1000)

    assert config.trigger_tokens == 920
    assert config.target_tokens == 700
    assert config.summary_budget_tokens == 100


@pytest.mark.parametrize("kwargs", [
    {"max_context_tokens": 0},
    {"trigger_ratio": 0.7, "target_ratio": 0.7},
    {"trigger_ratio": 0.5, "target_ratio": 0.8},
    {"summary_budget_ratio": 0.9},
    {"keep_recent_messages": -1},
])
def test_context_config_validation(kwargs):
    """Test that inconsistent budgets are rejected."""
    with pytest.raises(ValueError):
        ContextConfig(**kwargs)


def test_classify_message_importance_tool():
    """Test that tool results outrank routine assistant prose."""
    tool_msg = Message.tool_result("c1", "Search results here", name="search_files")
    prose = Message.assistant("Sure, here is a quick overview of the module layout.")

    assert _classify_message_importance(tool_msg) > _classify_message_importance(prose)


def test_classify_message_importance_markers():
    """Test that errors and explicit markers raise the score."""
    important = Message.user("Remember: never push directly to main, it breaks the deploy")
    mundane = Message.user("ok thanks")
    failed = Message.tool_result("c1", "Traceback: something", name="read_file", is_error=True)

    assert _classify_message_importance(important) > _classify_message_importance(mundane)
    assert _classify_message_importance(failed) > _classify_message_importance(
        Message.tool_result("c2", "plain output", name="read_file")
    )


def test_explicit_importance_wins():
    """Test that a tagged importance overrides the heuristic."""
    msg = Message.user("ok").with_importance(0.95)

    assert _classify_message_importance(msg) == 0.95


def test_score_importance_weights_recency():
    """Test that identical messages score higher when newer."""
    messages = [Message.user("Please refactor the parser module") for _ in range(3)]

    scores = score_importance(messages)

    assert scores[0] < scores[1] < scores[2]
    assert all(0.0 <= s <= 1.0 for s in scores)


def test_extract_segments_topics():
    """Test that prefix content lands in the right segments."""
    prefix = [
        Message.user("Please fix the login bug in auth.py"),
        Message.assistant("", [ToolCall("c1", "read_file", {"path": "auth.py"})]),
        Message.tool_result("c1", "Error: file not found", name="read_file", is_error=True),
        Message.assistant("I decided to use pathlib instead of os.path."),
        Message.assistant("The fix is done and the tests passed."),
        Message.assistant("Next I will update the changelog."),
        Message.user("There is still an unresolved question about sessions."),
    ]

    segments = extract_segments(prefix, score_importance(prefix), char_budget=4000)

    assert "login bug" in segments.background_context
    assert "unresolved question" in segments.user_intent
    assert segments.tool_usage == "read_file x1 (1 failed)"
    assert "file not found" in segments.error_handling
    assert "pathlib" in segments.key_decisions
    assert "tests passed" in segments.execution_results
    assert "changelog" in segments.next_steps
    assert "unresolved" in segments.open_issues


def test_extract_segments_merges_prior_summary():
    """Test that an earlier summary's facts carry over."""
    prior = Message.summary(SummarySegments(key_decisions="Use SQLite for storage"), summarized_count=8)
    prefix = [prior, Message.user("Now add a migration")]

    segments = extract_segments(prefix, score_importance(prefix), char_budget=4000)

    assert "Use SQLite for storage" in segments.key_decisions
    assert "add a migration" in segments.user_intent


def test_extract_segments_respects_budget():
    """Test that each segment is trimmed to its share of the budget."""
    prefix = [Message.user("word " * 400) for _ in range(5)]

    small = extract_segments(prefix, score_importance(prefix), char_budget=600)
    large = extract_segments(prefix, score_importance(prefix), char_budget=6000)

    assert len(small.render()) < len(large.render())
    assert len(small.render()) <= 600


def test_build_summary_fits_token_budget():
    """Test the summary never exceeds its budget."""
    prefix = [
        Message.user("Important: the API must stay backwards compatible " * 20),
        Message.assistant("Decided to keep the old endpoints and add new ones. " * 20),
        Message.tool_result("c1", "failed with exception " * 50, name="run_tests", is_error=True),
    ]

    summary = build_summary(prefix, token_budget=60)

    assert summary.is_summary
    assert summary.size <= 60
    assert summary.summarized_count == 3


def test_build_summary_counts_absorbed_summaries():
    """Test that summarized_count accumulates across compressions."""
    prior = Message.summary(SummarySegments(user_intent="old goal"), summarized_count=5)

    summary = build_summary([prior, Message.user("new goal")], token_budget=100)

    assert summary.summarized_count == 6


def test_plan_compression_keeps_newest():
    """Test that the newest message is never absorbed."""
    config = ContextConfig(max_context_tokens=1000, keep_recent_messages=0)
    messages = [Message.user(f"m{i}", size=100) for i in range(10)]

    plan = plan_compression(messages, config)

    assert plan is not None
    assert plan.absorbed <= 9
    assert plan.reduces


def test_plan_compression_too_short():
    """Test that a single message cannot be compressed."""
    config = ContextConfig(max_context_tokens=1000)

    assert plan_compression([Message.user("only", size=950)], config) is None


def test_plan_compression_extends_into_recent_tail():
    """Test that the kept tail shrinks only as far as needed to reach the target."""
    config = ContextConfig(max_context_tokens=1000, keep_recent_messages=8)
    messages = [Message.user(f"m{i}", size=100) for i in range(10)]

    plan = plan_compression(messages, config)

    assert plan.size_after < config.target_tokens
    assert plan.absorbed >= 4
    tail = plan.size_after - plan.summary.size
    assert tail + 100 + plan.summary.size >= config.target_tokens
