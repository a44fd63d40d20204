"""
Command-line interface for codeloop.
"""

import argparse
import asyncio
import logging
import signal
import sys
import threading

import structlog

from .config import Settings, get_settings

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

HELP_TEXT = """Type a message and press Enter.
While the assistant is working:
  <text>    queue a message for after this turn
  !<text>   interrupt and redirect the current turn
  Ctrl-C    cancel the current turn
Commands: /stats  /quit"""


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="codeloop",
        description="codeloop - interactive coding assistant with a steerable agent loop",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    chat_parser = subparsers.add_parser("chat", help="Start an interactive session")
    chat_parser.add_argument("--session", help="Resume a saved session by id")
    chat_parser.add_argument(
        "--provider",
        choices=["anthropic", "openai", "openrouter"],
        help="LLM provider (defaults to DEFAULT_PROVIDER)",
    )

    sessions_parser = subparsers.add_parser("sessions", help="Manage saved sessions")
    sessions_subparsers = sessions_parser.add_subparsers(dest="sessions_command")

    sessions_subparsers.add_parser("list", help="List saved sessions")

    show_parser = sessions_subparsers.add_parser("show", help="Show a saved session log")
    show_parser.add_argument("session_id", help="Session id")

    delete_parser = sessions_subparsers.add_parser("delete", help="Delete a saved session")
    delete_parser.add_argument("session_id", help="Session id")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(message)s")

    if args.command == "chat":
        asyncio.run(run_chat(settings, args.session, args.provider))
    elif args.command == "sessions":
        if args.sessions_command == "list":
            asyncio.run(list_sessions(settings))
        elif args.sessions_command == "show":
            asyncio.run(show_session(settings, args.session_id))
        elif args.sessions_command == "delete":
            asyncio.run(delete_session(settings, args.session_id))
        else:
            sessions_parser.print_help()
    elif args.command == "config":
        show_config(settings, args.check)
    else:
        parser.print_help()


async def _open_store(settings: Settings):
    from .agent import SessionStore
    from .models import init_database

    session_maker = await init_database(settings.database_url)
    return SessionStore(session_maker)


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, lines: asyncio.Queue) -> None:
    """Feed stdin lines into ``lines`` from a daemon thread; None marks EOF."""

    def read() -> None:
        while True:
            try:
                line = input()
            except EOFError:
                loop.call_soon_threadsafe(lines.put_nowait, None)
                return
            loop.call_soon_threadsafe(lines.put_nowait, line)

    threading.Thread(target=read, name="codeloop-stdin", daemon=True).start()


def _print_fragment(text: str) -> None:
    print(text, end="", flush=True)


async def run_chat(settings: Settings, session_id: str | None, provider: str | None) -> None:
    """Run the interactive REPL."""
    from .agent import AgentLoop, Session, log_observer
    from .errors import AgentError
    from .llm import create_llm

    store = await _open_store(settings)

    if session_id:
        session = await store.load(
            session_id,
            settings.get_context_config(),
            settings.steering_queue_size,
        )
        if session is None:
            print(f"Session {session_id} not found.")
            return
        if session.closed:
            print(f"Session {session_id} is closed.")
            return
    else:
        session = Session.create(settings)

    agent = AgentLoop(
        session,
        llm=create_llm(settings.get_llm_config(provider)),
        settings=settings,
        observers=[log_observer] if settings.debug else None,
    )

    loop = asyncio.get_running_loop()
    lines: asyncio.Queue = asyncio.Queue()
    turn: asyncio.Task | None = None

    def on_sigint() -> None:
        if turn is not None and not turn.done():
            try:
                session.steering.cancel()
            except AgentError as e:
                print(f"\n[{e.message}]")
        else:
            lines.put_nowait(None)

    sigint_installed = True
    try:
        loop.add_signal_handler(signal.SIGINT, on_sigint)
    except NotImplementedError:
        sigint_installed = False
        logger.warning("Ctrl-C cancellation is not available on this platform")

    _start_stdin_reader(loop, lines)

    print(f"\n=== codeloop session {session.id} ===")
    print(HELP_TEXT)
    print("\n> ", end="", flush=True)

    next_line = asyncio.ensure_future(lines.get())
    try:
        while True:
            if turn is not None:
                done, _ = await asyncio.wait({next_line, turn}, return_when=asyncio.FIRST_COMPLETED)
                if turn in done:
                    _report_turns(turn.result())
                    turn = None
                    await store.save(session)
                    if session.closed:
                        break
                    print("\n> ", end="", flush=True)
                    continue

            line = await next_line
            next_line = asyncio.ensure_future(lines.get())
            if line is None:
                break
            line = line.strip()
            if not line:
                continue

            if turn is not None:
                _steer(session, line)
                continue

            if line == "/quit":
                break
            if line == "/stats":
                _print_stats(agent)
                print("\n> ", end="", flush=True)
                continue

            turn = asyncio.create_task(agent.run(line, on_fragment=_print_fragment))

    finally:
        next_line.cancel()
        if turn is not None and not turn.done():
            if not session.steering.closed:
                session.steering.shutdown()
            await turn
        await store.save(session)
        if sigint_installed:
            loop.remove_signal_handler(signal.SIGINT)
        print(f"\nSession saved: {session.id}")


def _steer(session, line: str) -> None:
    """Route a line typed while a turn is running."""
    from .errors import AgentError

    try:
        if line == "/quit":
            session.steering.shutdown()
        elif line.startswith("!"):
            session.steering.interrupt(line[1:].strip())
        else:
            session.steering.send_user_message(line)
    except AgentError as e:
        print(f"\n[{e.message}]")


def _report_turns(results) -> None:
    print()
    for result in results:
        if result.error is not None:
            print(f"[turn failed: {result.error.kind.value}] {result.error.message}")
        elif not result.ok:
            print(f"[turn {result.state.value}]")
        if result.discarded_input:
            print(f"[dropped {len(result.discarded_input)} queued message(s)]")


def _print_stats(agent) -> None:
    stats = agent.session.context.stats()
    print(f"Context: {stats.total_tokens}/{stats.max_tokens} tokens ({stats.usage_ratio:.0%}, {stats.level})")
    print(f"Messages: {stats.message_count}  Compressions: {stats.compression_count}")
    for name in agent.tool_registry.list_tools():
        usage = agent.tool_registry.get_stats(name)
        if usage and usage.calls:
            print(f"  {name}: {usage.calls} calls, {usage.failures} failed")


async def list_sessions(settings: Settings) -> None:
    """List saved sessions."""
    store = await _open_store(settings)
    sessions = await store.list_sessions()

    if not sessions:
        print("No saved sessions.")
        return

    print(f"\n{'ID':<38} {'Title':<30} {'Messages':<10} {'Status':<12} {'Updated':<20}")
    print("-" * 112)

    for info in sessions:
        updated = info["updated_at"].strftime("%Y-%m-%d %H:%M:%S") if info["updated_at"] else "N/A"
        title = (info["title"] or "(untitled)")[:29]
        print(f"{info['id']:<38} {title:<30} {info['message_count']:<10} {info['status']:<12} {updated:<20}")


async def show_session(settings: Settings, session_id: str) -> None:
    """Print a saved session log."""
    store = await _open_store(settings)
    session = await store.load(session_id)

    if session is None:
        print(f"Session {session_id} not found.")
        return

    stats = session.context.stats()
    print(f"\n=== {session.title or '(untitled)'} ===")
    print(f"Status: {session.status.value}  Messages: {stats.message_count}  "
          f"Tokens: {stats.total_tokens}/{stats.max_tokens}  Compressions: {stats.compression_count}\n")

    for index, msg in enumerate(session.messages):
        label = msg.role.value
        if msg.name:
            label += f" ({msg.name})"
        print(f"[{index}] {label}")
        if msg.content:
            print(f"    {msg.content[:500]}")
        for tc in msg.tool_calls:
            print(f"    -> {tc.name} {tc.arguments}")


async def delete_session(settings: Settings, session_id: str) -> None:
    """Delete a saved session."""
    store = await _open_store(settings)
    if await store.delete(session_id):
        print(f"Deleted session {session_id}.")
    else:
        print(f"Session {session_id} not found.")


def show_config(settings: Settings, check: bool) -> None:
    """Show current configuration."""

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    llm_config = settings.get_llm_config()

    print("\n=== codeloop Configuration ===\n")

    print("LLM Providers:")
    print(f"  Default: {settings.default_provider}")
    print(f"  Model: {llm_config.model}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  OpenRouter Key: {mask(settings.openrouter_api_key)}")

    print("\nContext:")
    print(f"  Limit: {settings.context_limit_tokens} tokens")
    print(f"  Compress at: {settings.compression_trigger_ratio:.0%}, down to below {settings.compression_target_ratio:.0%}")
    print(f"  Summary budget: {settings.summary_budget_ratio:.0%}")
    print(f"  Kept verbatim: {settings.keep_recent_messages} messages")

    print("\nAgent Loop:")
    print(f"  Max tool iterations: {settings.max_tool_iterations}")
    print(f"  Steering queue size: {settings.steering_queue_size or 'unbounded'}")
    print(f"  Workspace: {settings.workspace_dir}")

    print("\nDatabase:")
    print(f"  URL: {settings.database_url}")

    if check:
        print("\n=== Configuration Check ===\n")
        errors = []
        warnings = []

        if not llm_config.api_key:
            errors.append(f"No API key set for the default provider ({settings.default_provider})")

        if settings.keep_recent_messages == 0:
            warnings.append("KEEP_RECENT_MESSAGES=0 lets compression absorb all but the newest message")

        if settings.steering_queue_size == 0:
            warnings.append("Unbounded steering queue")

        if errors:
            print("❌ Errors:")
            for e in errors:
                print(f"   - {e}")

        if warnings:
            print("⚠️  Warnings:")
            for w in warnings:
                print(f"   - {w}")

        if not errors and not warnings:
            print("✅ Configuration looks good!")
        elif not errors:
            print("\n✅ Configuration is valid (with warnings)")
        else:
            print("\n❌ Configuration has errors - fix them before starting")


if __name__ == "__main__":
    main()
