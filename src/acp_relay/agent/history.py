"""
Claude Code session history.

Claude Code keeps each session as a JSONL file under
``~/.claude/projects/<cwd with "/" replaced by "-">/``. Its ACP adapter does
not always implement ``session/list``, so sessions are listed from these
files instead.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from ..protocol.schema import SessionInfo

logger = structlog.get_logger()

DEFAULT_PROJECTS_DIR = Path("~/.claude/projects")
TITLE_LENGTH = 100


def project_dir_for(cwd: str, projects_dir: str | Path = DEFAULT_PROJECTS_DIR) -> Path:
    return Path(projects_dir).expanduser() / cwd.replace("/", "-")


def _title_from_entry(entry: Any) -> str | None:
    if not isinstance(entry, dict) or entry.get("type") != "user":
        return None
    message = entry.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not content:
        return None

    if isinstance(content, str):
        return content[:TITLE_LENGTH]
    if isinstance(content, list) and isinstance(content[0], dict):
        text = content[0].get("text")
        return text[:TITLE_LENGTH] if isinstance(text, str) else None
    return None


def _read_session_file(path: Path, cwd: str) -> SessionInfo | None:
    lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
    if not lines:
        return None

    first = json.loads(lines[0])
    session_id = first.get("sessionId") if isinstance(first, dict) else None

    title = None
    for line in lines:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError as e:
            logger.debug("Failed to parse session line", file=path.name, error=str(e))
            continue
        title = _title_from_entry(entry)
        if title is not None:
            break

    return SessionInfo(
        session_id=session_id or path.stem,
        cwd=cwd,
        title=title,
        updated_at=datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc),
    )


def list_claude_sessions(
    cwd: str,
    limit: int = 10,
    projects_dir: str | Path = DEFAULT_PROJECTS_DIR,
) -> list[SessionInfo]:
    """List Claude Code sessions for ``cwd``, most recently updated first.

    Sub-agent transcripts (``agent-*.jsonl``) are ignored, as are files that
    cannot be parsed.
    """
    project_dir = project_dir_for(cwd, projects_dir)
    if not project_dir.is_dir():
        return []

    sessions: list[SessionInfo] = []
    for path in project_dir.glob("*.jsonl"):
        if path.name.startswith("agent-"):
            continue
        try:
            info = _read_session_file(path, cwd)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.debug("Failed to parse session file", file=path.name, error=str(e))
            continue
        if info is not None:
            sessions.append(info)

    sessions.sort(key=lambda s: s.sort_key, reverse=True)
    return sessions[:limit]
