"""
Observer notifications emitted by the agent loop.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

import structlog

logger = structlog.get_logger()


class EventKind(str, Enum):
    TURN_STARTED = "turn_started"
    STATE_CHANGED = "state_changed"
    FRAGMENT_FORWARDED = "fragment_forwarded"
    TOOL_DISPATCHED = "tool_dispatched"
    TOOL_COMPLETED = "tool_completed"
    TURN_FINISHED = "turn_finished"
    COMPRESSION_TRIGGERED = "compression_triggered"


@dataclass(frozen=True)
class AgentEvent:
    kind: EventKind
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Observer = Callable[[AgentEvent], None]


class EventHub:
    """Fans events out to synchronous observers.

    Observers run inline and must return quickly; one that raises is logged
    and skipped so it cannot break the loop.
    """

    def __init__(self, observers: list[Observer] | None = None):
        self._observers: list[Observer] = list(observers or [])

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def unsubscribe(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def emit(self, kind: EventKind, session_id: str, **data: Any) -> AgentEvent:
        event = AgentEvent(kind=kind, session_id=session_id, data=data)
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                logger.warning(
                    "Observer failed",
                    observer=getattr(observer, "__name__", repr(observer)),
                    event_kind=kind.value,
                    error=str(e),
                )
        return event


def log_observer(event: AgentEvent) -> None:
    """Log every event; fragments at debug level only."""
    if event.kind == EventKind.FRAGMENT_FORWARDED:
        logger.debug(event.kind.value, session_id=event.session_id, **event.data)
    else:
        logger.info(event.kind.value, session_id=event.session_id, **event.data)
