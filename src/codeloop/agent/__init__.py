"""
Agent module - the execution core.

Includes:
- AgentLoop: Turn scheduling with streaming, tools and steering
- ContextManager: Size-bounded session log with compression
- SteeringController: Out-of-band control of a running turn
- SessionStore: Persistent session logs
"""

from .compaction import ContextConfig, plan_compression, score_importance
from .context import CompressionRecord, ContextManager, ContextStats
from .core import AgentLoop, Session, TurnResult, TurnState
from .events import AgentEvent, EventHub, EventKind, log_observer
from .session import SessionStore
from .steering import Cancel, Interrupt, Shutdown, SteeringController, SteeringEvent, UserMessage

__all__ = [
    "AgentLoop",
    "Session",
    "TurnResult",
    "TurnState",
    "ContextConfig",
    "ContextManager",
    "ContextStats",
    "CompressionRecord",
    "plan_compression",
    "score_importance",
    "AgentEvent",
    "EventHub",
    "EventKind",
    "log_observer",
    "SessionStore",
    "SteeringController",
    "SteeringEvent",
    "UserMessage",
    "Cancel",
    "Interrupt",
    "Shutdown",
]
