"""
Session Store - captured sessions on disk.

Each captured session is one JSON file in the store directory, named after
the session id. Only the newest ``max_sessions`` files are kept.

Raw capture files (a bare JSON array of notifications, as written by
``acp-relay capture --output``) can be read back as well.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import structlog
from pydantic import ValidationError

from ..protocol.schema import SessionNotification
from .models import SessionContent

logger = structlog.get_logger()

DEFAULT_MAX_SESSIONS = 50

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass
class StoredSession:
    """Metadata of a stored session (without its notifications)."""

    session_id: str
    captured_at: datetime
    path: Path
    agent: str | None = None
    cwd: str | None = None
    title: str | None = None
    notification_count: int = 0


def _filename(session_id: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", session_id) + ".json"


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Unreadable session file {path}: {e}") from e


def _parse_notifications(items: Any, path: Path) -> list[SessionNotification]:
    if not isinstance(items, list):
        raise ValueError(f"Expected a list of notifications in {path}")
    try:
        return [SessionNotification.model_validate(item) for item in items]
    except ValidationError as e:
        raise ValueError(f"Invalid notification in {path}: {e.error_count()} error(s)") from e


class SessionStore:
    """Directory of captured sessions."""

    def __init__(self, directory: str | Path, max_sessions: int = DEFAULT_MAX_SESSIONS):
        self.directory = Path(directory).expanduser()
        self.max_sessions = max_sessions

    def _ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, session_id: str) -> Path:
        return self.directory / _filename(session_id)

    def save(
        self,
        content: SessionContent,
        *,
        agent: str | None = None,
        cwd: str | None = None,
        title: str | None = None,
    ) -> Path:
        """Write a session to the store, then prune old sessions."""
        self._ensure_directory()

        record = content.to_dict()
        record.update(
            {
                "capturedAt": datetime.now(timezone.utc).isoformat(),
                "agent": agent,
                "cwd": cwd,
                "title": title,
            }
        )

        path = self.path_for(content.session_id)
        path.write_text(json.dumps(record, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info(
            "Session saved",
            session_id=content.session_id,
            notifications=len(content.notifications),
            path=str(path),
        )

        self.cleanup()
        return path

    def load(self, session_id: str) -> SessionContent:
        """Load a stored session.

        Raises:
            FileNotFoundError: no session with this id is stored
            ValueError: the file exists but cannot be parsed
        """
        path = self.path_for(session_id)
        if not path.exists():
            raise FileNotFoundError(f"No stored session {session_id!r} in {self.directory}")
        return load_content_file(path)

    def list(self) -> list[StoredSession]:
        """Stored sessions, most recently captured first."""
        if not self.directory.exists():
            return []

        sessions: list[StoredSession] = []
        for path in self.directory.glob("*.json"):
            try:
                meta = self._read_meta(path)
            except ValueError as e:
                logger.debug("Skipping unreadable session file", path=str(path), error=str(e))
                continue
            sessions.append(meta)

        sessions.sort(key=lambda s: s.captured_at, reverse=True)
        return sessions

    def _read_meta(self, path: Path) -> StoredSession:
        data = _read_json(path)
        if not isinstance(data, dict) or "sessionId" not in data:
            raise ValueError(f"Not a stored session: {path}")

        captured_at = data.get("capturedAt")
        timestamp = None
        if isinstance(captured_at, str) and captured_at:
            try:
                timestamp = datetime.fromisoformat(captured_at.replace("Z", "+00:00"))
            except ValueError:
                pass
        if timestamp is None:
            timestamp = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        elif timestamp.tzinfo is None:
            # Naive times are taken as UTC so every entry sorts together
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        return StoredSession(
            session_id=data["sessionId"],
            captured_at=timestamp,
            path=path,
            agent=data.get("agent"),
            cwd=data.get("cwd"),
            title=data.get("title"),
            notification_count=len(data.get("notifications") or []),
        )

    def delete(self, session_id: str) -> bool:
        path = self.path_for(session_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info("Session deleted", session_id=session_id)
        return True

    def cleanup(self) -> int:
        """Delete sessions beyond ``max_sessions``, oldest first."""
        stale = self.list()[self.max_sessions:]
        for meta in stale:
            try:
                meta.path.unlink()
            except FileNotFoundError:
                continue
        if stale:
            logger.info("Pruned old sessions", removed=len(stale), kept=self.max_sessions)
        return len(stale)


def write_events(path: str | Path, notifications: Iterable[SessionNotification]) -> Path:
    """Write notifications as a bare JSON array (capture file format)."""
    path = Path(path)
    events = [notification.dump() for notification in notifications]
    path.write_text(json.dumps(events, indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info("Events written", path=str(path), events=len(events))
    return path


def read_events(path: str | Path) -> list[SessionNotification]:
    """Read a capture file written by ``write_events``."""
    path = Path(path)
    return _parse_notifications(_read_json(path), path)


def load_content_file(path: str | Path) -> SessionContent:
    """Load either a stored session file or a raw capture file.

    For capture files the session id is taken from the first notification,
    falling back to the file name.
    """
    path = Path(path)
    data = _read_json(path)

    if isinstance(data, dict):
        if "sessionId" not in data:
            raise ValueError(f"Missing sessionId in {path}")
        return SessionContent(
            session_id=data["sessionId"],
            notifications=_parse_notifications(data.get("notifications", []), path),
        )

    notifications = _parse_notifications(data, path)
    session_id = notifications[0].session_id if notifications else path.stem
    return SessionContent(session_id=session_id, notifications=notifications)
