"""
Session Compression - bounded digests of agent activity.

A captured session is an unbounded stream of small updates: thinking
fragments, answer fragments, tool calls, plans. This module reduces that
stream to a short, readable summary that fits into a later prompt.

Key features:
- One line per unit of activity, in the order the agent produced it
- Consecutive answer fragments read as one paragraph (configurable)
- Tool calls reduced to their kind (and touched files, when known)
- Unrecognized or malformed updates are skipped, never fatal
- Hard size cap with an explicit truncation marker
"""

from dataclasses import dataclass, field
from typing import Iterable

import structlog

from ..protocol.schema import (
    AgentMessageChunk,
    AgentThoughtChunk,
    Plan,
    SessionNotification,
    ToolCallStart,
    UserMessageChunk,
    parse_update,
)
from .models import CompressedSession, SessionContent

logger = structlog.get_logger()

DEFAULT_MAX_SUMMARY_LENGTH = 2000
TRUNCATION_SUFFIX = "... (truncated)"
DEFAULT_TOOL_KIND = "tool"

CHUNK_PREFIXES = {
    "agent_thought_chunk": "Thinking: ",
    "agent_message_chunk": "Message: ",
    "user_message_chunk": "User: ",
}


@dataclass
class CompressionConfig:
    """Configuration for session compression."""

    max_summary_length: int = DEFAULT_MAX_SUMMARY_LENGTH
    truncation_suffix: str = TRUNCATION_SUFFIX
    # Chunk kinds whose consecutive fragments are joined onto one line
    merge_kinds: frozenset[str] = field(
        default_factory=lambda: frozenset({"agent_message_chunk", "user_message_chunk"})
    )
    include_user_messages: bool = True
    include_plans: bool = True
    include_tool_locations: bool = True


def _tool_line(update: ToolCallStart, config: CompressionConfig) -> str:
    line = f"Tool [{update.kind or DEFAULT_TOOL_KIND}]"
    if config.include_tool_locations and update.locations:
        line += ": " + ", ".join(location.path for location in update.locations)
    return line


def summary_lines(
    notifications: Iterable[SessionNotification],
    config: CompressionConfig | None = None,
) -> list[str]:
    """Extract one line per unit of activity, preserving order."""
    config = config or CompressionConfig()
    lines: list[str] = []
    # Kind of the last update that produced or hid a line
    last_kind: str | None = None

    for notification in notifications:
        update = parse_update(notification.update)

        if isinstance(update, (AgentThoughtChunk, AgentMessageChunk, UserMessageChunk)):
            kind = update.session_update
            if kind == "user_message_chunk" and not config.include_user_messages:
                # A hidden user turn still separates the messages around it
                last_kind = kind
                continue
            text = update.text
            if not text:
                continue

            if kind == last_kind and kind in config.merge_kinds:
                lines[-1] += text
            else:
                lines.append(CHUNK_PREFIXES[kind] + text)
            last_kind = kind

        elif isinstance(update, ToolCallStart):
            lines.append(_tool_line(update, config))
            last_kind = update.session_update

        elif isinstance(update, Plan) and config.include_plans and update.entries:
            for entry in update.entries:
                lines.append(f"Plan [{entry.status}]: {entry.content}")
            last_kind = update.session_update

    return lines


def truncate_summary(
    summary: str,
    max_length: int = DEFAULT_MAX_SUMMARY_LENGTH,
    suffix: str = TRUNCATION_SUFFIX,
) -> str:
    """Cap ``summary`` at ``max_length`` characters plus ``suffix``."""
    if len(summary) <= max_length:
        return summary
    return summary[:max_length] + suffix


def compress_session(
    content: SessionContent,
    config: CompressionConfig | None = None,
) -> CompressedSession:
    """Compress a captured session into a bounded summary.

    Args:
        content: Session id plus its notifications in arrival order
        config: Compression configuration

    Returns:
        CompressedSession with no title; titles are supplied by the caller
        when serializing.
    """
    config = config or CompressionConfig()

    raw = "\n".join(summary_lines(content.notifications, config))
    summary = truncate_summary(raw, config.max_summary_length, config.truncation_suffix)

    logger.debug(
        "Session compressed",
        session_id=content.session_id,
        notifications=len(content.notifications),
        raw_length=len(raw),
        truncated=len(raw) > config.max_summary_length,
    )

    return CompressedSession(session_id=content.session_id, summary=summary)


def compress_sessions(
    contents: Iterable[SessionContent],
    config: CompressionConfig | None = None,
) -> list[CompressedSession]:
    return [compress_session(content, config) for content in contents]
