"""
Command-line interface for acp-relay.

Logs go to stderr; stdout carries only command output (summaries, the XML
context block, listings) so it can be piped into another prompt.
"""

import argparse
import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, TextIO

import structlog

from .agent import AGENT_COMMANDS, AgentClient, AgentError, ApprovalManager, PendingPermission
from .config import Settings, get_settings
from .protocol import PermissionPolicy, ProtocolError
from .protocol.schema import PermissionOutcome, RequestPermissionRequest, SessionNotification
from .session import (
    CompressedSession,
    SessionContent,
    SessionRecorder,
    SessionStore,
    compress_session,
    load_content_file,
    sessions_to_context_xml,
    write_events,
)

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

DEFAULT_PROMPT = 'Say "Hello! I\'m ready to help you review code." and nothing else.'


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="acp-relay",
        description="acp-relay - Capture coding-agent sessions and replay them as context",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    capture_parser = subparsers.add_parser("capture", help="Run a prompt in a new session")
    _add_agent_arguments(capture_parser)
    capture_parser.add_argument("--prompt", help="Prompt text (default: $ACP_PROMPT)")
    capture_parser.add_argument("--model", help="Model id to switch the session to")
    capture_parser.add_argument("--output", "-o", help="Also write the raw events to this file")
    capture_parser.add_argument("--title", help="Title stored with the session")
    capture_parser.add_argument("--no-store", action="store_true", help="Do not save to the store")

    sessions_parser = subparsers.add_parser("sessions", help="List the agent's sessions")
    _add_agent_arguments(sessions_parser)
    sessions_parser.add_argument("--limit", type=int, help="Maximum sessions to list")

    load_parser = subparsers.add_parser("load", help="Load a past session through the agent")
    _add_agent_arguments(load_parser)
    load_parser.add_argument("session_id", help="Session to load")
    load_parser.add_argument("--output", "-o", help="Also write the raw events to this file")
    load_parser.add_argument("--no-store", action="store_true", help="Do not save to the store")

    context_parser = subparsers.add_parser("context", help="Print sessions as an XML context block")
    context_parser.add_argument(
        "sources",
        nargs="*",
        help="Stored session ids or capture files (default: most recent stored sessions)",
    )
    context_parser.add_argument(
        "--title",
        action="append",
        default=[],
        metavar="ID=TITLE",
        help="Title for a session (repeatable)",
    )
    context_parser.add_argument("--recent", type=int, default=5, help="Stored sessions to use")
    context_parser.add_argument("--max-length", type=int, help="Summary length cap")

    subparsers.add_parser("stored", help="List stored sessions")

    subparsers.add_parser("config", help="Show configuration")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()
    setup_logging(settings)

    try:
        if args.command == "capture":
            asyncio.run(capture(settings, args))
        elif args.command == "sessions":
            asyncio.run(list_agent_sessions(settings, args))
        elif args.command == "load":
            asyncio.run(load_session(settings, args))
        elif args.command == "context":
            print_context(settings, args)
        elif args.command == "stored":
            list_stored_sessions(settings)
        elif args.command == "config":
            show_config(settings)
        else:
            parser.print_help()
    except (
        ProtocolError,
        AgentError,
        FileNotFoundError,
        ValueError,
        asyncio.TimeoutError,
    ) as e:
        logger.error("Command failed", command=args.command, error=str(e) or type(e).__name__)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.warning("Interrupted", command=args.command)
        sys.exit(130)


def setup_logging(settings: Settings) -> None:
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, settings.effective_log_level, logging.INFO),
    )


def _add_agent_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--agent", choices=sorted(AGENT_COMMANDS), help="Agent to run")
    parser.add_argument("--cwd", default=os.getcwd(), help="Working directory for the session")


def _store(settings: Settings) -> SessionStore:
    return SessionStore(settings.store_dir, max_sessions=settings.max_stored_sessions)


class TerminalApprovals:
    """Asks about each permission request on the terminal.

    Prompts are shown one at a time. Answers are read from stdin through the
    event loop, so a prompt whose request times out or is decided elsewhere
    is simply cancelled and nothing is left blocked on the terminal.
    """

    def __init__(self, timeout: float, stdin: TextIO | None = None, output: TextIO | None = None):
        self.manager = ApprovalManager(timeout=timeout, on_request=self._on_request)
        self.stdin = stdin or sys.stdin
        self.output = output or sys.stderr
        self._lock = asyncio.Lock()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._reader: asyncio.StreamReader | None = None
        self._transport: asyncio.BaseTransport | None = None

    def policy(self) -> PermissionPolicy:
        ask = self.manager.policy()

        async def _policy(request: RequestPermissionRequest) -> PermissionOutcome:
            try:
                return await ask(request)
            finally:
                self._cancel_settled()

        return _policy

    def _on_request(self, pending: PendingPermission) -> None:
        task = asyncio.get_running_loop().create_task(self._ask(pending))
        self._tasks[pending.id] = task
        task.add_done_callback(lambda t: self._prompt_done(pending.id, t))

    def _prompt_done(self, permission_id: str, task: asyncio.Task[None]) -> None:
        self._tasks.pop(permission_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Permission prompt failed",
                permission_id=permission_id,
                error=str(task.exception()),
            )

    def _cancel_settled(self) -> None:
        for permission_id, task in list(self._tasks.items()):
            if self.manager.get_pending(permission_id) is None:
                task.cancel()

    async def _ask(self, pending: PendingPermission) -> None:
        async with self._lock:
            # Timed out while an earlier prompt was on screen
            if self.manager.get_pending(pending.id) is None:
                return

            print(pending.format_for_display(), file=self.output)
            print("Allow? [y/N/option id] ", end="", file=self.output, flush=True)
            try:
                answer = (await self._readline()).strip()
            except (OSError, ValueError) as e:
                logger.warning("Cannot read permission answer", error=str(e))
                answer = ""

        if answer.lower() in ("y", "yes"):
            self.manager.approve(pending.id)
        elif answer and any(o.option_id == answer for o in pending.options):
            self.manager.approve(pending.id, answer)
        else:
            self.manager.deny(pending.id)

    async def _readline(self) -> str:
        if self._reader is None:
            reader = asyncio.StreamReader()
            loop = asyncio.get_running_loop()
            self._transport, _ = await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), self.stdin
            )
            self._reader = reader
        line = await self._reader.readline()
        return line.decode("utf-8", errors="replace")

    async def close(self) -> None:
        """Cancel open prompts and stop reading stdin."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._transport is not None:
            self._transport.close()
            self._transport = None
            self._reader = None


@asynccontextmanager
async def _agent_client(
    settings: Settings, args: argparse.Namespace, recorder: SessionRecorder | None = None
) -> AsyncIterator[AgentClient]:
    approvals = None
    if settings.permission_mode == "ask":
        approvals = TerminalApprovals(settings.approval_timeout)

    client = AgentClient(
        args.agent,
        settings=settings,
        cwd=args.cwd,
        recorder=recorder,
        permission_policy=approvals.policy() if approvals else None,
    )
    try:
        async with client:
            yield client
    finally:
        if approvals is not None:
            await approvals.close()


def _save_capture(
    settings: Settings,
    args: argparse.Namespace,
    content: SessionContent,
    agent: str,
    title: str | None = None,
) -> None:
    if args.output:
        write_events(args.output, content.notifications)
    if not args.no_store:
        _store(settings).save(content, agent=agent, cwd=args.cwd, title=title or content.title)


async def capture(settings: Settings, args: argparse.Namespace) -> None:
    """Run one prompt in a new session, save and summarize what came back."""
    prompt = args.prompt or os.environ.get("ACP_PROMPT") or DEFAULT_PROMPT

    def on_update(notification: SessionNotification) -> None:
        logger.info("Session update", kind=notification.kind, session_id=notification.session_id)

    recorder = SessionRecorder(on_update=on_update)
    session_ids: list[str] = []

    async with _agent_client(settings, args, recorder) as client:
        try:
            content = await client.run_prompt(
                args.cwd,
                prompt,
                model=args.model,
                on_session_created=session_ids.append,
            )
        except (ProtocolError, asyncio.TimeoutError) as e:
            if not session_ids:
                raise
            # Keep whatever streamed in before the failure
            logger.error("Prompt failed", session_id=session_ids[0], error=str(e))
            content = recorder.content(session_ids[0])
            _save_capture(settings, args, content, client.agent, args.title)
            raise

        logger.info("Captured events", session_id=content.session_id, events=len(content))
        _save_capture(settings, args, content, client.agent, args.title)

    summary = compress_session(content, settings.compression_config())
    print(summary.summary)


async def list_agent_sessions(settings: Settings, args: argparse.Namespace) -> None:
    async with _agent_client(settings, args) as client:
        sessions = await client.list_sessions(args.cwd, args.limit)

    if not sessions:
        print("No sessions found.")
        return

    print(f"\n{'Session ID':<40} {'Updated':<20} {'Title'}")
    print("-" * 90)

    for session in sessions:
        updated = session.updated_at.strftime("%Y-%m-%d %H:%M:%S") if session.updated_at else "N/A"
        print(f"{session.session_id:<40} {updated:<20} {session.title or ''}")


async def load_session(settings: Settings, args: argparse.Namespace) -> None:
    """Replay a past session through the agent and save its content."""
    async with _agent_client(settings, args) as client:
        content = await client.load_session_content(args.session_id, args.cwd)
        _save_capture(settings, args, content, client.agent)

    summary = compress_session(content, settings.compression_config())
    print(summary.summary)


def _parse_titles(values: list[str]) -> dict[str, str]:
    titles = {}
    for value in values:
        session_id, sep, title = value.partition("=")
        if not sep or not session_id:
            raise ValueError(f"Invalid --title {value!r}, expected ID=TITLE")
        titles[session_id] = title
    return titles


def _load_source(store: SessionStore, source: str) -> SessionContent:
    path = Path(source)
    if path.is_file():
        return load_content_file(path)
    return store.load(source)


def print_context(settings: Settings, args: argparse.Namespace) -> None:
    """Print the XML context block for stored sessions or capture files."""
    store = _store(settings)
    titles = _parse_titles(args.title)

    if args.sources:
        contents = [_load_source(store, source) for source in args.sources]
    else:
        stored = store.list()[: args.recent]
        for meta in stored:
            if meta.title and meta.session_id not in titles:
                titles[meta.session_id] = meta.title
        contents = [store.load(meta.session_id) for meta in stored]

    # Explicit and stored titles win over ones the agent announced
    for content in contents:
        if content.title and content.session_id not in titles:
            titles[content.session_id] = content.title

    config = settings.compression_config()
    if args.max_length is not None:
        config.max_summary_length = args.max_length

    sessions: list[CompressedSession] = [compress_session(c, config) for c in contents]
    sys.stdout.write(sessions_to_context_xml(sessions, titles))


def list_stored_sessions(settings: Settings) -> None:
    store = _store(settings)
    sessions = store.list()

    if not sessions:
        print(f"No stored sessions in {store.directory}.")
        return

    print(f"\n{'Session ID':<40} {'Agent':<10} {'Events':<8} {'Captured':<20} {'Title'}")
    print("-" * 100)

    for meta in sessions:
        captured = meta.captured_at.strftime("%Y-%m-%d %H:%M:%S")
        print(
            f"{meta.session_id:<40} {meta.agent or 'N/A':<10} "
            f"{meta.notification_count:<8} {captured:<20} {meta.title or ''}"
        )


def show_config(settings: Settings) -> None:
    """Show current configuration."""
    print("\n=== acp-relay Configuration ===\n")

    print("Agent:")
    print(f"  Default: {settings.default_agent}")
    print(f"  Command: {' '.join(settings.agent_command_for())}")
    print(f"  Protocol Version: {settings.protocol_version}")
    print(f"  Request Timeout: {settings.request_timeout or '(none)'}")

    print("\nPermissions:")
    print(f"  Mode: {settings.permission_mode}")
    print(f"  Approval Timeout: {settings.approval_timeout}s")

    print("\nCompression:")
    print(f"  Max Summary Length: {settings.max_summary_length}")

    print("\nStorage:")
    print(f"  Directory: {settings.store_dir}")
    print(f"  Max Sessions: {settings.max_stored_sessions}")

    print("\nSession Listing:")
    print(f"  Limit: {settings.list_sessions_limit}")
    print(f"  Claude Projects: {settings.claude_projects_dir}")

    print("\nLogging:")
    print(f"  Level: {settings.effective_log_level}")


if __name__ == "__main__":
    main()
