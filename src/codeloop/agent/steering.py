"""
Steering - Out-of-band control of a running turn.

Any number of producers (a UI thread, an asyncio callback, a signal handler)
post events into a session's inbox; the agent loop is the single consumer and
polls it without blocking at fixed points of a turn.

Event semantics for the loop:
- UserMessage: buffered, becomes the next turn's input if this one completes
- Interrupt: appended as a user message, the model call restarts
- Cancel: the turn ends as cancelled
- Shutdown: like Cancel, and the inbox refuses further events
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Union

import structlog

from ..errors import QueueClosedError, QueueFullError

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UserMessage:
    text: str
    posted_at: datetime = field(default_factory=_utcnow, compare=False)


@dataclass(frozen=True)
class Cancel:
    posted_at: datetime = field(default_factory=_utcnow, compare=False)


@dataclass(frozen=True)
class Interrupt:
    text: str
    posted_at: datetime = field(default_factory=_utcnow, compare=False)


@dataclass(frozen=True)
class Shutdown:
    posted_at: datetime = field(default_factory=_utcnow, compare=False)


SteeringEvent = Union[UserMessage, Cancel, Interrupt, Shutdown]


class SteeringController:
    """Ordered, thread-safe inbox of steering events for one session.

    ``maxsize`` of 0 means unbounded. A full bounded inbox raises
    QueueFullError to the producer; events are never dropped silently.
    """

    def __init__(self, maxsize: int = 0):
        self.maxsize = maxsize
        self._queue: deque[SteeringEvent] = deque()
        self._buffered: list[UserMessage] = []
        # Re-entrant so a signal handler interrupting a post on the same
        # thread cannot deadlock
        self._lock = threading.RLock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Number of events waiting to be polled."""
        with self._lock:
            return len(self._queue)

    def post(self, event: SteeringEvent) -> None:
        """Enqueue an event. Never blocks."""
        with self._lock:
            if self._closed:
                raise QueueClosedError()
            # Shutdown always gets in so a full inbox can still be closed
            if (
                self.maxsize
                and len(self._queue) >= self.maxsize
                and not isinstance(event, Shutdown)
            ):
                raise QueueFullError(self.maxsize)
            self._queue.append(event)
            if isinstance(event, Shutdown):
                self._closed = True

        logger.debug("Steering event posted", event_type=type(event).__name__)

    def poll(self) -> SteeringEvent | None:
        """Return the oldest event, or None when the inbox is empty."""
        with self._lock:
            if self._queue:
                return self._queue.popleft()
            return None

    def buffer_user_message(self, event: UserMessage) -> None:
        """Hold a user message polled mid-turn until the turn completes."""
        with self._lock:
            self._buffered.append(event)

    def drain_buffered_user_messages(self) -> list[UserMessage]:
        """Take every buffered user message, oldest first."""
        with self._lock:
            drained, self._buffered = self._buffered, []
        return drained

    def send_user_message(self, text: str) -> None:
        self.post(UserMessage(text))

    def interrupt(self, text: str) -> None:
        self.post(Interrupt(text))

    def cancel(self) -> None:
        self.post(Cancel())

    def shutdown(self) -> None:
        self.post(Shutdown())
