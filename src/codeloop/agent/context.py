"""
Context manager: the session's message log and its size budget.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import structlog

from ..errors import SizeLimitExceededError
from ..messages import Message
from .compaction import CRITICAL_RATIO, WARNING_RATIO, ContextConfig, plan_compression

logger = structlog.get_logger()


@dataclass(frozen=True)
class CompressionRecord:
    """What one compression pass did."""

    size_before: int
    size_after: int
    absorbed: int
    summarized_count: int
    compressed_at: datetime


@dataclass(frozen=True)
class ContextStats:
    """Point-in-time usage of the context budget."""

    total_tokens: int
    max_tokens: int
    message_count: int
    compression_count: int
    last_compression: datetime | None

    @property
    def usage_ratio(self) -> float:
        return self.total_tokens / self.max_tokens

    @property
    def level(self) -> str:
        if self.usage_ratio >= CRITICAL_RATIO:
            return "critical"
        if self.usage_ratio >= WARNING_RATIO:
            return "warning"
        return "ok"


class ContextManager:
    """Owns the ordered message log and keeps it within the configured limit.

    The log is append-only except for compression, which swaps a prefix for a
    single summary in one assignment. Only the agent loop of the owning
    session calls the mutating methods.
    """

    def __init__(
        self,
        config: ContextConfig | None = None,
        messages: list[Message] | None = None,
        on_compress: Callable[[CompressionRecord], None] | None = None,
    ):
        self.config = config or ContextConfig()
        self._messages: list[Message] = list(messages or [])
        self._size = sum(m.size for m in self._messages)
        self._settled = False
        self.compression_history: list[CompressionRecord] = []
        self.restored_compression_count = 0
        self.on_compress = on_compress

    @classmethod
    def restore(
        cls,
        messages: list[Message],
        config: ContextConfig | None = None,
        compression_count: int = 0,
    ) -> "ContextManager":
        """Rebuild a context from a persisted log without re-compressing it."""
        manager = cls(config, messages)
        manager._settled = True
        manager.restored_compression_count = compression_count
        return manager

    @property
    def limit(self) -> int:
        return self.config.max_context_tokens

    @property
    def size(self) -> int:
        """Cumulative size estimate of the log."""
        return self._size

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def last_index(self) -> int:
        """Index of the last committed message, -1 when empty."""
        return len(self._messages) - 1

    def current_prompt(self) -> list[Message]:
        """The ordered messages to present to the model."""
        return list(self._messages)

    def append(self, message: Message) -> None:
        """Add a message to the end of the log."""
        if message.size > self.limit:
            logger.warning(
                "Rejected oversized message",
                role=message.role.value,
                size=message.size,
                limit=self.limit,
            )
            raise SizeLimitExceededError(message.size, self.limit, last_message_index=self.last_index)

        self._messages.append(message)
        self._size += message.size
        self._settled = False

    def maybe_compress(self) -> CompressionRecord | None:
        """Compress if the log has reached the trigger threshold.

        Runs at most once per append. When no prefix can be compressed, a log
        still within the limit is left as it is; a log over the limit has its
        newest message rejected.
        """
        if self._settled or self._size < self.config.trigger_tokens:
            return None

        logger.info(
            "Context approaching limit, running compaction",
            size=self._size,
            trigger=self.config.trigger_tokens,
            limit=self.limit,
        )

        plan = plan_compression(self._messages, self.config)
        if plan is None or not plan.reduces:
            if self._size <= self.limit:
                self._settled = True
                logger.warning(
                    "Nothing to compact, keeping log above trigger",
                    size=self._size,
                    limit=self.limit,
                )
                return None
            plan = None

        if plan is None or plan.size_after > self.limit:
            rejected = self._messages.pop()
            self._size -= rejected.size
            self._settled = True
            logger.error(
                "Compaction cannot make room, rejecting newest message",
                size=self._size + rejected.size,
                rejected_size=rejected.size,
                limit=self.limit,
            )
            raise SizeLimitExceededError(rejected.size, self.limit, last_message_index=self.last_index)

        self._messages = [plan.summary] + self._messages[plan.absorbed:]
        self._size = plan.size_after
        self._settled = True

        record = CompressionRecord(
            size_before=plan.size_before,
            size_after=plan.size_after,
            absorbed=plan.absorbed,
            summarized_count=plan.summary.summarized_count,
            compressed_at=datetime.now(timezone.utc),
        )
        self.compression_history.append(record)

        logger.info(
            "Compaction complete",
            size_before=record.size_before,
            size_after=record.size_after,
            absorbed=record.absorbed,
        )
        if self.on_compress is not None:
            self.on_compress(record)
        return record

    def commit(self, message: Message) -> CompressionRecord | None:
        """Append a message and compress if that crossed the threshold."""
        self.append(message)
        return self.maybe_compress()

    def stats(self) -> ContextStats:
        last = self.compression_history[-1].compressed_at if self.compression_history else None
        return ContextStats(
            total_tokens=self._size,
            max_tokens=self.limit,
            message_count=len(self._messages),
            compression_count=self.restored_compression_count + len(self.compression_history),
            last_compression=last,
        )
