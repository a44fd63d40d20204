"""
Core agent loop: turn scheduling, tool dispatch and steering.

A turn runs one user input to a terminal state:
1. Commits the input to the session log
2. Streams the model's reply, forwarding text fragments as they arrive
3. Executes requested tool calls one at a time, in the order requested
4. Feeds the results back and re-dispatches until the model answers in text
5. Polls the steering inbox between fragments, before each tool call and
   before each dispatch, so the caller can cancel or redirect the turn
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable
from uuid import uuid4

import structlog

from ..config import Settings, get_settings
from ..errors import (
    AgentError,
    ErrorKind,
    InvalidToolCallError,
    SessionClosedError,
    SizeLimitExceededError,
    ToolExecutionError,
    ToolLoopExceededError,
)
from ..llm import BaseLLM, TextFragment, ToolCallRequest, ToolDefinition, create_llm
from ..messages import Message, ToolCall
from ..tools import ToolRegistry, ToolResult, create_tool_registry
from .context import CompressionRecord, ContextManager
from .events import EventHub, EventKind, Observer
from .steering import Interrupt, Shutdown, SteeringController, SteeringEvent, UserMessage

logger = structlog.get_logger()


DEFAULT_SYSTEM_PROMPT = """You are a coding assistant working inside the user's project.

Guidelines:
1. Read before you change: inspect files with the available tools instead of guessing
2. Be concise and precise; show code when it helps
3. When a tool fails, say what failed and try another approach
4. If the user redirects you mid-task, follow the newest instruction"""


class TurnState(str, Enum):
    """States of the turn state machine."""
    IDLE = "idle"
    DISPATCHING = "dispatching"
    STREAMING_MODEL = "streaming_model"
    TOOL_PENDING = "tool_pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnState.COMPLETED, TurnState.CANCELLED, TurnState.FAILED)


@dataclass
class Session:
    """One conversation: its log, its steering inbox and its turn status.

    Owned by exactly one AgentLoop; sessions share nothing with each other.
    """

    context: ContextManager = field(default_factory=ContextManager)
    steering: SteeringController = field(default_factory=SteeringController)
    id: str = field(default_factory=lambda: str(uuid4()))
    title: str | None = None
    status: TurnState = TurnState.IDLE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    closed: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, settings: Settings | None = None, title: str | None = None) -> "Session":
        """Create a session sized by the settings."""
        settings = settings or get_settings()
        return cls(
            context=ContextManager(settings.get_context_config()),
            steering=SteeringController(settings.steering_queue_size),
            title=title,
        )

    @property
    def messages(self) -> list[Message]:
        return self.context.current_prompt()

    @property
    def message_count(self) -> int:
        return len(self.context)


@dataclass
class TurnResult:
    """How a turn ended."""

    state: TurnState
    output: str = ""
    error: AgentError | None = None
    last_message_index: int = -1
    tool_rounds: int = 0
    pending_input: list[str] = field(default_factory=list)
    discarded_input: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state == TurnState.COMPLETED

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


class _TurnCancelled(Exception):
    """Internal signal: a Cancel or Shutdown was observed at a poll point."""

    def __init__(self, event: SteeringEvent, point: str):
        super().__init__(point)
        self.event = event
        self.point = point


class AgentLoop:
    """Runs turns for one session against a transport and a tool registry."""

    def __init__(
        self,
        session: Session,
        llm: BaseLLM | None = None,
        tool_registry: ToolRegistry | None = None,
        settings: Settings | None = None,
        observers: list[Observer] | None = None,
        system_prompt: str | None = None,
        max_tool_iterations: int | None = None,
    ):
        self.settings = settings or get_settings()
        self.session = session
        self.llm = llm or create_llm(settings=self.settings)
        self.tool_registry = tool_registry or create_tool_registry(self.settings)
        if max_tool_iterations is None:
            max_tool_iterations = self.settings.max_tool_iterations
        self.max_tool_iterations = max_tool_iterations
        self.events = EventHub(observers)
        self.system_prompt = system_prompt or self._build_system_prompt()
        self.last_result: TurnResult | None = None

        self.session.context.on_compress = self._on_compress
        self._running = False
        self._shutdown_seen = False
        self._tool_rounds = 0

    def _build_system_prompt(self) -> str:
        """System prompt with the registered tools listed."""
        parts = [DEFAULT_SYSTEM_PROMPT]
        tool_names = self.tool_registry.list_tools()
        if tool_names:
            parts.append(
                "\n## Available Tools\n" + "\n".join(f"- **{name}**" for name in tool_names)
            )
        return "\n".join(parts)

    def _tool_definitions(self) -> list[ToolDefinition]:
        return self.tool_registry.get_definitions()

    # -- state and notifications -------------------------------------------

    def _set_state(self, state: TurnState) -> None:
        previous = self.session.status
        if previous == state:
            return
        self.session.status = state
        self.events.emit(
            EventKind.STATE_CHANGED,
            self.session.id,
            previous=previous.value,
            state=state.value,
        )

    def _on_compress(self, record: CompressionRecord) -> None:
        self.events.emit(
            EventKind.COMPRESSION_TRIGGERED,
            self.session.id,
            size_before=record.size_before,
            size_after=record.size_after,
            absorbed=record.absorbed,
        )

    def _forward(self, text: str, on_fragment: Callable[[str], Any] | None) -> None:
        if on_fragment is not None:
            try:
                on_fragment(text)
            except Exception as e:
                logger.warning("Fragment consumer failed", session_id=self.session.id, error=str(e))
        self.events.emit(EventKind.FRAGMENT_FORWARDED, self.session.id, chars=len(text))

    def _commit(self, message: Message) -> None:
        self.session.context.commit(message)

    # -- steering ------------------------------------------------------------

    def _poll_control(self) -> SteeringEvent | None:
        """Poll until a control event or an empty inbox.

        User messages met on the way are buffered for the next turn; the
        first Cancel, Shutdown or Interrupt stops the poll, later events stay
        queued for the next poll point.
        """
        steering = self.session.steering
        while True:
            event = steering.poll()
            if event is None:
                return None
            if isinstance(event, UserMessage):
                steering.buffer_user_message(event)
                continue
            if isinstance(event, Shutdown):
                self._shutdown_seen = True
            return event

    def _check_steering(self, point: str) -> Interrupt | None:
        """Poll at ``point``; raise on Cancel/Shutdown, hand back an Interrupt."""
        event = self._poll_control()
        if event is None:
            return None
        if isinstance(event, Interrupt):
            logger.info("Turn interrupted", session_id=self.session.id, point=point)
            return event
        raise _TurnCancelled(event, point)

    # -- turn ------------------------------------------------------------------

    async def run_turn(
        self,
        user_input: str | None = None,
        on_fragment: Callable[[str], Any] | None = None,
    ) -> TurnResult:
        """Run one turn to a terminal state.

        ``user_input`` is committed before dispatch; None resumes from the
        current log (for example after an aborted turn). Fragments are passed
        to ``on_fragment`` as soon as they arrive.
        """
        if self.session.closed:
            raise SessionClosedError(self.session.id)
        if self._running:
            raise RuntimeError(f"Session {self.session.id} already has a turn in flight")

        self._running = True
        self._tool_rounds = 0
        self.session.status = TurnState.IDLE
        self.events.emit(
            EventKind.TURN_STARTED,
            self.session.id,
            has_input=user_input is not None,
            message_count=self.session.message_count,
        )

        try:
            if user_input is not None:
                self._commit(Message.user(user_input))
            output = await self._drive(on_fragment)

        except _TurnCancelled as cancelled:
            result = self._finish(TurnState.CANCELLED, reason=type(cancelled.event).__name__.lower())

        except AgentError as e:
            result = self._finish(TurnState.FAILED, error=e)

        except asyncio.CancelledError:
            self._finish(TurnState.CANCELLED, reason="task_cancelled")
            raise

        else:
            result = self._finish(TurnState.COMPLETED, output=output)

        return result

    async def _drive(self, on_fragment: Callable[[str], Any] | None) -> str:
        """Dispatch until the model answers without tool calls."""
        while True:
            interrupt = self._check_steering("before_dispatch")
            if interrupt is not None:
                self._commit(Message.user(interrupt.text))
                continue

            self._set_state(TurnState.DISPATCHING)
            streamed = await self._stream_once(on_fragment)
            if streamed is None:
                continue  # interrupted mid-stream, re-dispatch with the new input

            text, requests = streamed
            if not requests:
                if text:
                    self._commit(Message.assistant(text))
                return text

            self._tool_rounds += 1
            if self._tool_rounds > self.max_tool_iterations:
                raise ToolLoopExceededError(self.max_tool_iterations)

            calls = self._validate_tool_calls(requests)
            self._commit(Message.assistant(text, calls))

            self._set_state(TurnState.TOOL_PENDING)
            await self._run_tools(calls)

    async def _stream_once(
        self,
        on_fragment: Callable[[str], Any] | None,
    ) -> tuple[str, list[ToolCallRequest]] | None:
        """One transport call. Returns None when an interrupt restarted it."""
        cancel = asyncio.Event()
        prompt = self.session.context.current_prompt()
        tools = self._tool_definitions()

        self._set_state(TurnState.STREAMING_MODEL)
        stream = self.llm.send(
            prompt,
            cancel,
            tools=tools or None,
            system_prompt=self.system_prompt,
        )

        chunks: list[str] = []
        requests: list[ToolCallRequest] = []
        try:
            async for fragment in stream:
                interrupt = self._check_steering("between_fragments")
                if interrupt is not None:
                    cancel.set()
                    self._discard_partial(chunks)
                    self._commit(Message.user(interrupt.text))
                    return None

                if isinstance(fragment, TextFragment):
                    chunks.append(fragment.text)
                    self._forward(fragment.text, on_fragment)
                else:
                    requests.append(fragment)

            interrupt = self._check_steering("end_of_stream")
            if interrupt is not None:
                self._discard_partial(chunks)
                self._commit(Message.user(interrupt.text))
                return None

        except _TurnCancelled:
            cancel.set()
            self._discard_partial(chunks)
            raise

        except AgentError:
            cancel.set()
            raise

        except Exception as e:
            cancel.set()
            logger.error("LLM streaming error", session_id=self.session.id, error=str(e))
            raise AgentError.wrap(e) from e

        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        return "".join(chunks), requests

    def _discard_partial(self, chunks: list[str]) -> None:
        if chunks:
            logger.info(
                "Discarding partial output",
                session_id=self.session.id,
                chars=sum(len(c) for c in chunks),
            )

    def _validate_tool_calls(self, requests: list[ToolCallRequest]) -> list[ToolCall]:
        """Reject malformed tool calls before anything is committed."""
        seen: set[str] = set()
        calls = []
        for request in requests:
            problem = None
            if request.error:
                problem = request.error
            elif not request.name or not isinstance(request.name, str):
                problem = "missing tool name"
            elif not request.id:
                problem = "missing correlation id"
            elif request.id in seen:
                problem = f"duplicate correlation id {request.id}"
            elif not isinstance(request.arguments, dict):
                problem = "arguments are not an object"

            if problem is not None:
                logger.error(
                    "Invalid tool call",
                    session_id=self.session.id,
                    tool=request.name,
                    call_id=request.id,
                    arguments=repr(request.arguments),
                    problem=problem,
                )
                raise InvalidToolCallError(
                    f"Invalid call to tool '{request.name}': {problem}",
                    tool_name=request.name or None,
                )

            seen.add(request.id)
            calls.append(request.to_tool_call())
        return calls

    async def _run_tools(self, calls: list[ToolCall]) -> None:
        """Execute tool calls in order, committing each result."""
        for index, call in enumerate(calls):
            try:
                interrupt = self._check_steering("before_tool_call")
            except _TurnCancelled:
                self._skip_tools(calls[index:], "cancelled")
                raise
            if interrupt is not None:
                self._skip_tools(calls[index:], "interrupted by the user")
                self._commit(Message.user(interrupt.text))
                return

            self.events.emit(
                EventKind.TOOL_DISPATCHED,
                self.session.id,
                tool=call.name,
                call_id=call.id,
                arguments=call.arguments,
            )
            try:
                result = await self.tool_registry.invoke(call.name, call.arguments)
            except Exception as e:
                logger.error("Tool registry error", tool=call.name, error=str(e))
                result = ToolResult.failure(str(e))

            error_kind = None
            if not result.success:
                failure = ToolExecutionError(result.error or "tool failed", tool_name=call.name)
                error_kind = failure.kind.value
                logger.warning("Tool reported failure", session_id=self.session.id, **failure.to_dict())

            self._commit_tool_result(call, result)
            self.events.emit(
                EventKind.TOOL_COMPLETED,
                self.session.id,
                tool=call.name,
                call_id=call.id,
                success=result.success,
                error_kind=error_kind,
            )

    def _commit_tool_result(self, call: ToolCall, result: ToolResult) -> None:
        message = Message.tool_result(
            call.id,
            result.to_content(),
            name=call.name,
            is_error=not result.success,
        )
        try:
            self._commit(message)
        except SizeLimitExceededError as e:
            # Keep the call paired: report the oversized output as a failure
            logger.warning("Tool output too large for context", tool=call.name, size=e.size)
            self._commit_paired(Message.tool_result(
                call.id,
                f"Error: output of {e.size} tokens exceeds the context limit of {e.limit} tokens",
                name=call.name,
                is_error=True,
            ))

    def _commit_paired(self, message: Message) -> None:
        """Commit a short error result that must land to answer its call.

        If compression cannot make room, the result is appended without it;
        the next commit compresses the now complete call and results.
        """
        try:
            self._commit(message)
        except SizeLimitExceededError:
            logger.warning(
                "Appending tool result without compaction",
                session_id=self.session.id,
                call_id=message.tool_call_id,
            )
            self.session.context.append(message)

    def _skip_tools(self, calls: list[ToolCall], reason: str) -> None:
        for call in calls:
            self._commit_paired(Message.tool_result(
                call.id,
                f"Error: tool call skipped ({reason})",
                name=call.name,
                is_error=True,
            ))

    def _drain_late_events(self) -> None:
        """Empty the inbox of events that arrived after the last poll point.

        User messages join the buffer for the next turn. A Cancel or
        Interrupt aimed at this turn must not reach the next one, so it is
        dropped; a Shutdown still closes the session.
        """
        steering = self.session.steering
        while True:
            event = steering.poll()
            if event is None:
                return
            if isinstance(event, UserMessage):
                steering.buffer_user_message(event)
            elif isinstance(event, Shutdown):
                self._shutdown_seen = True
            else:
                logger.info(
                    "Dropping steering event that arrived after the turn ended",
                    session_id=self.session.id,
                    event_type=type(event).__name__,
                )

    def _finish(
        self,
        state: TurnState,
        output: str = "",
        error: AgentError | None = None,
        reason: str | None = None,
    ) -> TurnResult:
        """The single terminal transition of a turn."""
        context = self.session.context
        failed_in = self.session.status
        if error is not None:
            error.at(failed_in.value, context.last_index)

        self._drain_late_events()
        buffered =[event.text for event in self.session.steering.drain_buffered_user_messages()]
        pending, discarded = (buffered, []) if state == TurnState.COMPLETED else ([], buffered)

        self._set_state(state)
        self._running = False
        if self._shutdown_seen:
            self.session.closed = True

        result = TurnResult(
            state=state,
            output=output,
            error=error,
            last_message_index=context.last_index,
            tool_rounds=self._tool_rounds,
            pending_input=pending,
            discarded_input=discarded,
        )
        self.last_result = result

        self.events.emit(
            EventKind.TURN_FINISHED,
            self.session.id,
            state=state.value,
            error_kind=error.kind.value if error else None,
            reason=reason,
            last_message_index=result.last_message_index,
        )

        if error is not None:
            logger.error(
                "Turn failed",
                session_id=self.session.id,
                error_kind=error.kind.value,
                error=error.message,
                failed_in=failed_in.value,
                last_message_index=result.last_message_index,
            )
        else:
            logger.info(
                "Turn finished",
                session_id=self.session.id,
                state=state.value,
                reason=reason,
                tool_rounds=self._tool_rounds,
            )
        if discarded:
            logger.info("Dropped buffered user messages", session_id=self.session.id, count=len(discarded))
        return result

    async def run(
        self,
        user_input: str | None = None,
        on_fragment: Callable[[str], Any] | None = None,
    ) -> list[TurnResult]:
        """Run a turn, then follow-up turns for user messages buffered during it."""
        results = []
        next_input = user_input
        while True:
            result = await self.run_turn(next_input, on_fragment)
            results.append(result)
            if not result.ok or not result.pending_input or self.session.closed:
                return results
            next_input = "\n\n".join(result.pending_input)

    async def stream_turn(self, user_input: str | None = None) -> AsyncIterator[str]:
        """Run a turn, yielding fragments as they are forwarded.

        The TurnResult is available as ``last_result`` once iteration ends.
        """
        queue: asyncio.Queue[str | None] = asyncio.Queue()

        async def runner() -> None:
            try:
                await self.run_turn(user_input, on_fragment=queue.put_nowait)
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(runner())
        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                yield chunk
            await task
        finally:
            if not task.done():
                if not self.session.steering.closed:
                    self.session.steering.cancel()
                await task

    def close(self) -> None:
        """Shut the session down. Later posts fail, later turns are refused."""
        if not self.session.steering.closed:
            self.session.steering.shutdown()
        self.session.closed = True
        logger.info("Session closed", session_id=self.session.id)
