"""
Session persistence.
"""

from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..messages import Message, MessageRole, SummarySegments, ToolCall
from ..models import MessageRecord, SessionRecord
from .compaction import ContextConfig
from .context import ContextManager
from .core import Session, TurnState
from .steering import SteeringController

logger = structlog.get_logger()

TITLE_MAX_CHARS = 60


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def derive_title(messages: list[Message]) -> str | None:
    """Title a session after its first user message."""
    for msg in messages:
        if msg.role == MessageRole.USER and msg.content.strip():
            title = " ".join(msg.content.split())
            if len(title) > TITLE_MAX_CHARS:
                title = title[: TITLE_MAX_CHARS - 3].rstrip() + "..."
            return title
    return None


def _to_record(session_id: str, position: int, msg: Message) -> MessageRecord:
    return MessageRecord(
        id=msg.id,
        session_id=session_id,
        position=position,
        role=msg.role.value,
        content=msg.content,
        size=msg.size,
        importance=msg.importance,
        tool_calls=[tc.to_dict() for tc in msg.tool_calls] or None,
        tool_call_id=msg.tool_call_id,
        name=msg.name,
        is_error=msg.is_error,
        segments=msg.segments.to_dict() if msg.segments else None,
        summarized_count=msg.summarized_count,
        created_at=msg.created_at,
    )


def _from_record(record: MessageRecord) -> Message:
    return Message(
        id=record.id,
        role=MessageRole(record.role),
        content=record.content,
        size=record.size,
        importance=record.importance,
        tool_calls=tuple(ToolCall.from_dict(tc) for tc in record.tool_calls or []),
        tool_call_id=record.tool_call_id,
        name=record.name,
        is_error=record.is_error,
        segments=SummarySegments.from_dict(record.segments) if record.segments else None,
        summarized_count=record.summarized_count,
        created_at=_as_utc(record.created_at),
    )


class SessionStore:
    """Saves and restores session logs through an async SQLAlchemy session maker."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def save(self, session: Session) -> SessionRecord:
        """Write the session and replace its stored log with the current one."""
        messages = session.context.current_prompt()
        if session.title is None:
            session.title = derive_title(messages)

        async with self.session_maker() as db:
            record = await db.get(SessionRecord, session.id)
            if record is None:
                record = SessionRecord(id=session.id, created_at=session.created_at)
                db.add(record)

            record.title = session.title
            record.status = session.status.value
            record.is_closed = session.closed
            record.context_limit = session.context.limit
            record.compression_count = session.context.stats().compression_count
            record.updated_at = datetime.now(timezone.utc)

            await db.execute(delete(MessageRecord).where(MessageRecord.session_id == session.id))
            for position, msg in enumerate(messages):
                db.add(_to_record(session.id, position, msg))

            await db.commit()

        logger.info("Session saved", session_id=session.id, messages=len(messages))
        return record

    async def load(
        self,
        session_id: str,
        config: ContextConfig | None = None,
        steering_queue_size: int = 0,
    ) -> Session | None:
        """Restore a session, or None if it was never saved."""
        async with self.session_maker() as db:
            record = await db.get(SessionRecord, session_id)
            if record is None:
                return None

            result = await db.execute(
                select(MessageRecord)
                .where(MessageRecord.session_id == session_id)
                .order_by(MessageRecord.position)
            )
            messages = [_from_record(row) for row in result.scalars().all()]

        config = config or ContextConfig(max_context_tokens=record.context_limit)
        status = TurnState(record.status)
        if not status.is_terminal:
            # A turn that was in flight when saved did not finish
            status = TurnState.IDLE

        session = Session(
            id=record.id,
            context=ContextManager.restore(messages, config, record.compression_count),
            steering=SteeringController(steering_queue_size),
            title=record.title,
            status=status,
            created_at=_as_utc(record.created_at),
            closed=record.is_closed,
        )
        logger.info("Session loaded", session_id=session_id, messages=len(messages))
        return session

    async def list_sessions(self, limit: int = 50) -> list[dict[str, Any]]:
        """Summaries of stored sessions, most recently updated first."""
        async with self.session_maker() as db:
            counts = (
                select(MessageRecord.session_id, func.count(MessageRecord.id).label("message_count"))
                .group_by(MessageRecord.session_id)
                .subquery()
            )
            result = await db.execute(
                select(SessionRecord, counts.c.message_count)
                .outerjoin(counts, counts.c.session_id == SessionRecord.id)
                .order_by(SessionRecord.updated_at.desc())
                .limit(limit)
            )
            rows = result.all()

        return [
            {
                "id": record.id,
                "title": record.title,
                "status": record.status,
                "closed": record.is_closed,
                "message_count": message_count or 0,
                "compression_count": record.compression_count,
                "created_at": _as_utc(record.created_at),
                "updated_at": _as_utc(record.updated_at) if record.updated_at else None,
            }
            for record, message_count in rows
        ]

    async def delete(self, session_id: str) -> bool:
        """Delete a session and its log. Returns False if it did not exist."""
        async with self.session_maker() as db:
            record = await db.get(SessionRecord, session_id)
            if record is None:
                return False
            await db.execute(delete(MessageRecord).where(MessageRecord.session_id == session_id))
            await db.execute(delete(SessionRecord).where(SessionRecord.id == session_id))
            await db.commit()

        logger.info("Session deleted", session_id=session_id)
        return True
