"""
Session recorder - collects ``session/update`` notifications.

A recorder is an ordinary object owned by whoever wants the capture. Two
recorders never share state, so several sessions (or several captures of
the same agent) can run side by side without cross-talk.
"""

import inspect
from typing import Awaitable, Callable, Union

import structlog

from ..protocol.client import ClientConnection
from ..protocol.schema import SessionNotification
from .models import SessionContent

logger = structlog.get_logger()

UpdateCallback = Callable[[SessionNotification], Union[Awaitable[None], None]]


class SessionRecorder:
    """Ordered, unfiltered accumulator of session notifications."""

    def __init__(self, on_update: UpdateCallback | None = None):
        self._updates: dict[str, list[SessionNotification]] = {}
        self._callbacks: list[UpdateCallback] = [on_update] if on_update else []

    def attach(self, client: ClientConnection) -> None:
        """Start recording every session update the client receives."""
        client.add_session_update_listener(self.record)

    def detach(self, client: ClientConnection) -> None:
        client.remove_session_update_listener(self.record)

    def subscribe(self, callback: UpdateCallback) -> None:
        """Also forward each recorded notification to ``callback``."""
        self._callbacks.append(callback)

    async def record(self, notification: SessionNotification) -> None:
        self._updates.setdefault(notification.session_id, []).append(notification)

        for callback in self._callbacks:
            result = callback(notification)
            if inspect.isawaitable(result):
                await result

    def updates(self, session_id: str) -> list[SessionNotification]:
        """Notifications recorded so far for ``session_id`` (a copy)."""
        return list(self._updates.get(session_id, []))

    def content(self, session_id: str) -> SessionContent:
        """Snapshot of one session's capture."""
        return SessionContent(session_id=session_id, notifications=self.updates(session_id))

    def reset(self, session_id: str) -> None:
        """Forget anything recorded for ``session_id`` and start it empty."""
        self._updates[session_id] = []

    def clear(self) -> None:
        self._updates.clear()

    @property
    def session_ids(self) -> list[str]:
        return list(self._updates)

    def __len__(self) -> int:
        return sum(len(updates) for updates in self._updates.values())
