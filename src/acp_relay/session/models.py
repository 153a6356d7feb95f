"""
Session data containers.
"""

from dataclasses import dataclass, field
from typing import Any

from ..protocol.schema import SessionInfoUpdate, SessionNotification, parse_update


@dataclass
class SessionContent:
    """A session id plus its notifications in arrival order."""

    session_id: str
    notifications: list[SessionNotification] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.notifications)

    @property
    def title(self) -> str | None:
        """Latest title the agent announced through ``session_info_update``."""
        title = None
        for notification in self.notifications:
            update = parse_update(notification.update)
            if isinstance(update, SessionInfoUpdate) and update.title:
                title = update.title
        return title

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "notifications": [n.dump() for n in self.notifications],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionContent":
        return cls(
            session_id=data["sessionId"],
            notifications=[
                SessionNotification.model_validate(n) for n in data.get("notifications", [])
            ],
        )


@dataclass(frozen=True)
class CompressedSession:
    """Bounded textual digest of one session."""

    session_id: str
    summary: str
    title: str | None = None
