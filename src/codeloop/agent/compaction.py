"""
Conversation Compaction - Structured summarization of the oldest history.

When the session log crosses the trigger threshold, the oldest run of messages
is replaced by a single summary message with eight fixed segments. Everything
here is a pure function of the messages passed in; the ContextManager decides
when to call it and applies the result.

Key features:
- Recency-weighted importance scoring (tool results and errors rank high)
- Eight-segment extraction, filled from the highest-scoring messages first
- Summary size bounded by a fraction of the context limit
- A prior summary is always absorbed into the next one, never nested
"""

import math
import re
from dataclasses import dataclass

from ..messages import Message, MessageRole, SummarySegments, SEGMENT_TITLES, SUMMARY_PREFIX, CHARS_PER_TOKEN

# Default context budget
DEFAULT_MAX_CONTEXT_TOKENS = 100_000
DEFAULT_TRIGGER_RATIO = 0.92  # Compress when 92% of budget used
DEFAULT_TARGET_RATIO = 0.70  # ...down to below 70%
DEFAULT_SUMMARY_BUDGET_RATIO = 0.10
DEFAULT_KEEP_RECENT = 10  # Kept verbatim unless the target demands more

# Usage levels reported by ContextStats
WARNING_RATIO = 0.6
CRITICAL_RATIO = 0.8

SNIPPET_CHARS = 160
ITEM_SEPARATOR = "; "

IMPORTANT_MARKERS = (
    "remember", "important", "must", "never", "always", "deadline",
    "requirement", "constraint", "don't forget",
)
ERROR_MARKERS = ("error", "failed", "exception", "traceback", "cannot", "denied")
DECISION_MARKERS = ("decided", "decide", "chose", "choose", "going to", "will use", "instead", "switch to")
RESULT_MARKERS = ("done", "completed", "created", "updated", "fixed", "passed", "result")
OPEN_ISSUE_MARKERS = ("todo", "unresolved", "not yet", "still need", "open question", "blocked", "unclear")
NEXT_STEP_MARKERS = ("next", "then i", "after that", "plan", "follow up", "follow-up")


def _ceil_tokens(value: float) -> int:
    # Absorb float noise such as 1000 * 0.92 == 920.0000000000001
    return math.ceil(value - 1e-9)


@dataclass
class ContextConfig:
    """Configuration for the context budget and compaction."""

    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS
    trigger_ratio: float = DEFAULT_TRIGGER_RATIO
    target_ratio: float = DEFAULT_TARGET_RATIO
    summary_budget_ratio: float = DEFAULT_SUMMARY_BUDGET_RATIO
    keep_recent_messages: int = DEFAULT_KEEP_RECENT

    def __post_init__(self) -> None:
        if self.max_context_tokens <= 0:
            raise ValueError("max_context_tokens must be positive")
        if not 0 < self.target_ratio < self.trigger_ratio <= 1:
            raise ValueError("ratios must satisfy 0 < target_ratio < trigger_ratio <= 1")
        if not 0 < self.summary_budget_ratio < self.target_ratio:
            raise ValueError("summary_budget_ratio must be positive and below target_ratio")
        if self.keep_recent_messages < 0:
            raise ValueError("keep_recent_messages cannot be negative")

    @property
    def trigger_tokens(self) -> int:
        return _ceil_tokens(self.max_context_tokens * self.trigger_ratio)

    @property
    def target_tokens(self) -> int:
        return _ceil_tokens(self.max_context_tokens * self.target_ratio)

    @property
    def summary_budget_tokens(self) -> int:
        return max(1, int(self.max_context_tokens * self.summary_budget_ratio))


@dataclass
class CompressionPlan:
    """A computed, not yet applied, compression of a log prefix."""

    absorbed: int  # number of leading messages the summary replaces
    summary: Message
    size_before: int
    size_after: int

    @property
    def reduces(self) -> bool:
        return self.size_after < self.size_before


def _contains(text: str, markers: tuple[str, ...]) -> bool:
    return any(marker in text for marker in markers)


def _snippet(text: str, limit: int = SNIPPET_CHARS) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: max(0, limit - 3)].rstrip() + "..."


def _first_sentence(text: str) -> str:
    collapsed = " ".join(text.split())
    match = re.match(r"(.+?[.!?])(\s|$)", collapsed)
    return match.group(1) if match else collapsed


def _classify_message_importance(message: Message) -> float:
    """Rate a message's importance for context preservation, 0.0 to 1.0.

    An explicit importance on the message wins over the content heuristic.
    """
    if message.importance is not None:
        return max(0.0, min(1.0, message.importance))

    if message.role == MessageRole.SYSTEM_SUMMARY:
        score = 0.8
    elif message.role == MessageRole.TOOL_RESULT:
        score = 0.6
    elif message.role == MessageRole.USER:
        score = 0.5
    elif message.tool_calls:
        score = 0.4
    else:
        score = 0.3  # routine assistant prose

    content_lower = message.content.lower()

    if message.is_error or _contains(content_lower, ERROR_MARKERS):
        score += 0.3

    if _contains(content_lower, IMPORTANT_MARKERS):
        score += 0.2

    if len(message.content) < 20:
        score -= 0.1

    if len(message.content) > 1000:
        score += 0.1

    return max(0.0, min(1.0, score))


def score_importance(messages: list[Message]) -> list[float]:
    """Score each message, weighting newer messages higher."""
    count = len(messages)
    scores = []
    for index, message in enumerate(messages):
        recency = 0.5 + 0.5 * (index + 1) / count
        scores.append(round(_classify_message_importance(message) * recency, 6))
    return scores


def _tool_usage_items(messages: list[Message]) -> list[tuple[float, str]]:
    """One line per tool: call count and failures."""
    names_by_call: dict[str, str] = {}
    calls: dict[str, int] = {}
    failures: dict[str, int] = {}

    for msg in messages:
        for tc in msg.tool_calls:
            names_by_call[tc.id] = tc.name
            calls[tc.name] = calls.get(tc.name, 0) + 1
        if msg.role == MessageRole.TOOL_RESULT and msg.is_error:
            name = msg.name or names_by_call.get(msg.tool_call_id or "", "unknown")
            failures[name] = failures.get(name, 0) + 1

    items = []
    for name, count in calls.items():
        text = f"{name} x{count}"
        if failures.get(name):
            text += f" ({failures[name]} failed)"
        items.append((0.5 + 0.1 * failures.get(name, 0), text))
    return items


def _collect_items(
    prefix: list[Message],
    scores: list[float],
) -> dict[str, list[tuple[float, str]]]:
    """Sort the prefix content into the eight segments as (score, text) items."""
    items: dict[str, list[tuple[float, str]]] = {name: [] for name in SEGMENT_TITLES}

    user_messages = [
        (score, msg) for msg, score in zip(prefix, scores) if msg.role == MessageRole.USER
    ]

    for score, msg in user_messages[:3]:
        items["background_context"].append((score, _snippet(msg.content)))

    if user_messages:
        score, latest = user_messages[-1]
        items["user_intent"].append((score + 1.0, _snippet(latest.content)))

    items["tool_usage"].extend(_tool_usage_items(prefix))

    for msg, score in zip(prefix, scores):
        if msg.is_summary:
            continue
        content_lower = msg.content.lower()
        if not content_lower.strip():
            continue

        if msg.role == MessageRole.TOOL_RESULT:
            label = msg.name or "tool"
            target = "error_handling" if msg.is_error else "execution_results"
            items[target].append((score, f"{label}: {_snippet(msg.content)}"))
            continue

        if msg.role == MessageRole.ASSISTANT:
            if _contains(content_lower, DECISION_MARKERS):
                items["key_decisions"].append((score, _snippet(_first_sentence(msg.content))))
            if _contains(content_lower, RESULT_MARKERS):
                items["execution_results"].append((score, _snippet(_first_sentence(msg.content))))
            if _contains(content_lower, NEXT_STEP_MARKERS):
                items["next_steps"].append((score, _snippet(_first_sentence(msg.content))))

        if _contains(content_lower, ERROR_MARKERS):
            items["error_handling"].append((score, _snippet(msg.content)))
        if _contains(content_lower, OPEN_ISSUE_MARKERS):
            items["open_issues"].append((score, _snippet(msg.content)))

    return items


def _fit_segment(candidates: list[tuple[float, str]], limit: int) -> str:
    """Join the highest-scoring items that fit in ``limit`` characters."""
    if limit <= 0:
        return ""

    chosen: list[str] = []
    used = 0
    seen = set()
    for _, text in sorted(candidates, key=lambda item: -item[0]):
        if not text or text in seen:
            continue
        seen.add(text)
        extra = len(text) + (len(ITEM_SEPARATOR) if chosen else 0)
        if used + extra <= limit:
            chosen.append(text)
            used += extra
        elif not chosen:
            chosen.append(_snippet(text, limit))
            break
    return ITEM_SEPARATOR.join(chosen)


def extract_segments(
    prefix: list[Message],
    scores: list[float],
    char_budget: int,
) -> SummarySegments:
    """Fill the eight summary segments from a prefix, within ``char_budget``.

    A summary already in the prefix contributes its segments at top priority,
    so nothing carried by an earlier summary is dropped silently.
    """
    items = _collect_items(prefix, scores)

    for msg in prefix:
        if msg.is_summary and msg.segments is not None:
            for name, text in msg.segments.items():
                if text:
                    items[name].append((2.0, text))

    header_chars = len(SUMMARY_PREFIX) + sum(len(title) + 3 for title in SEGMENT_TITLES.values())
    per_segment = max(0, (char_budget - header_chars) // len(SEGMENT_TITLES))

    return SummarySegments(**{
        name: _fit_segment(candidates, per_segment)
        for name, candidates in items.items()
    })


def build_summary(prefix: list[Message], token_budget: int) -> Message:
    """Build the summary message for ``prefix`` no larger than the budget allows."""
    scores = score_importance(prefix)
    summarized_count = sum(
        msg.summarized_count if msg.is_summary else 1 for msg in prefix
    )

    char_budget = token_budget * CHARS_PER_TOKEN
    while True:
        summary = Message.summary(extract_segments(prefix, scores, char_budget), summarized_count)
        if summary.size <= token_budget or char_budget <= 0:
            return summary
        char_budget -= max(CHARS_PER_TOKEN, (summary.size - token_budget) * CHARS_PER_TOKEN)


def plan_compression(messages: list[Message], config: ContextConfig) -> CompressionPlan | None:
    """Choose the prefix to summarize and build its summary.

    The prefix is the longest run that leaves the ``keep_recent_messages``
    tail verbatim, extended into that tail only while the log is still above
    the target. The newest message is never absorbed, and the prefix never
    ends between a tool call and its results.
    """
    count = len(messages)
    if count < 2:
        return None

    size_before = sum(m.size for m in messages)
    last_allowed = count - 1
    min_end = 2 if messages[0].is_summary else 1

    plan = None
    candidate = min(max(min_end, count - config.keep_recent_messages), last_allowed)
    while candidate <= last_allowed:
        end = _pair_boundary(messages, candidate, last_allowed)
        if end >= min_end and (plan is None or end > plan.absorbed):
            summary = build_summary(messages[:end], config.summary_budget_tokens)
            plan = CompressionPlan(
                absorbed=end,
                summary=summary,
                size_before=size_before,
                size_after=summary.size + sum(m.size for m in messages[end:]),
            )
            if plan.size_after < config.target_tokens:
                break
        candidate = max(candidate, end) + 1

    return plan


def _pair_boundary(messages: list[Message], end: int, last_allowed: int) -> int:
    """Move a prefix end so no tool call is separated from its results."""
    while end < last_allowed and messages[end].role == MessageRole.TOOL_RESULT:
        end += 1
    if messages[end].role == MessageRole.TOOL_RESULT:
        # Results run up to the newest message: keep the calling turn whole
        while end > 0 and messages[end].role == MessageRole.TOOL_RESULT:
            end -= 1
    return end
