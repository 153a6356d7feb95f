"""
Typed client side of the Agent Client Protocol.

Wraps a Connection with one method per agent call (initialize, session/new,
session/prompt, ...) and the two callbacks agents make into the client:
``session/update`` notifications, fanned out to listeners, and
``session/request_permission`` calls, answered by a pluggable policy.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, TypeVar, Union

import structlog
from pydantic import ValidationError

from .connection import Connection
from .errors import RemoteError
from .schema import (
    PROTOCOL_VERSION,
    AcpModel,
    CancelNotification,
    InitializeRequest,
    InitializeResponse,
    ListSessionsRequest,
    ListSessionsResponse,
    LoadSessionRequest,
    NewSessionRequest,
    NewSessionResponse,
    PermissionOutcome,
    PromptRequest,
    PromptResponse,
    RequestPermissionRequest,
    RequestPermissionResponse,
    ResumeSessionRequest,
    SessionNotification,
    SetSessionModelRequest,
)

logger = structlog.get_logger()

# Methods the agent implements
AGENT_METHODS = {
    "initialize": "initialize",
    "session_new": "session/new",
    "session_load": "session/load",
    "session_prompt": "session/prompt",
    "session_cancel": "session/cancel",
    "session_list": "session/list",
    "session_set_model": "session/set_model",
    "session_resume": "session/resume",
}

# Methods the client implements
CLIENT_METHODS = {
    "session_update": "session/update",
    "session_request_permission": "session/request_permission",
}

SessionUpdateListener = Callable[[SessionNotification], Union[Awaitable[None], None]]
PermissionPolicy = Callable[
    [RequestPermissionRequest], Union[Awaitable[PermissionOutcome], PermissionOutcome]
]

ResponseT = TypeVar("ResponseT", bound=AcpModel)


def _error_details(error: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
        for e in error.errors(include_url=False)
    ]


class ClientConnection:
    """Client-side ACP endpoint on top of a Connection."""

    def __init__(
        self,
        connection: Connection,
        *,
        permission_policy: PermissionPolicy | None = None,
        request_timeout: float | None = None,
    ):
        self.connection = connection
        self.permission_policy = permission_policy
        self.request_timeout = request_timeout
        self._update_listeners: list[SessionUpdateListener] = []

        connection.register_notification_handler(
            CLIENT_METHODS["session_update"], self._handle_session_update
        )
        connection.register_request_handler(
            CLIENT_METHODS["session_request_permission"], self._handle_request_permission
        )

    @classmethod
    def open(
        cls,
        writer: asyncio.StreamWriter,
        reader: asyncio.StreamReader,
        **kwargs: Any,
    ) -> "ClientConnection":
        return cls(Connection.open(writer, reader, name="acp.client"), **kwargs)

    # Callback hooks

    def add_session_update_listener(self, listener: SessionUpdateListener) -> None:
        self._update_listeners.append(listener)

    def remove_session_update_listener(self, listener: SessionUpdateListener) -> None:
        if listener in self._update_listeners:
            self._update_listeners.remove(listener)

    async def _handle_session_update(self, params: Any) -> None:
        try:
            notification = SessionNotification.model_validate(params)
        except ValidationError as e:
            logger.warning("Dropping malformed session update", errors=e.error_count())
            return

        for listener in list(self._update_listeners):
            result = listener(notification)
            if inspect.isawaitable(result):
                await result

    async def _handle_request_permission(self, params: Any) -> dict[str, Any]:
        try:
            request = RequestPermissionRequest.model_validate(params)
        except ValidationError as e:
            raise RemoteError.invalid_params({"errors": _error_details(e)}) from e

        logger.info(
            "Permission requested",
            session_id=request.session_id,
            tool=request.tool_call.title if request.tool_call else None,
            options=[{"id": o.option_id, "kind": o.kind} for o in request.options],
        )

        if self.permission_policy is None:
            logger.warning("No permission policy configured, cancelling")
            outcome = PermissionOutcome.cancelled()
        else:
            result = self.permission_policy(request)
            outcome = await result if inspect.isawaitable(result) else result

        return RequestPermissionResponse(outcome=outcome).dump()

    # Agent methods

    async def _request(
        self,
        method: str,
        params: AcpModel,
        response_type: type[ResponseT],
        timeout: float | None = None,
    ) -> ResponseT:
        result = await self.connection.call(
            method,
            params.dump(),
            timeout=timeout if timeout is not None else self.request_timeout,
        )
        try:
            return response_type.model_validate(result or {})
        except ValidationError as e:
            raise RemoteError.invalid_params(
                {"method": method, "errors": _error_details(e)}
            ) from e

    async def initialize(
        self,
        protocol_version: int = PROTOCOL_VERSION,
        client_capabilities: dict[str, Any] | None = None,
    ) -> InitializeResponse:
        """Negotiate protocol version and capabilities."""
        request = InitializeRequest(
            protocol_version=protocol_version,
            client_capabilities=client_capabilities or {},
        )
        response = await self._request(AGENT_METHODS["initialize"], request, InitializeResponse)
        logger.info("Agent initialized", protocol_version=response.protocol_version)
        return response

    async def new_session(
        self,
        cwd: str,
        mcp_servers: list[dict[str, Any]] | None = None,
        meta: dict[str, Any] | None = None,
    ) -> NewSessionResponse:
        """Create a fresh session scoped to ``cwd``."""
        request = NewSessionRequest(cwd=cwd, mcp_servers=mcp_servers or [], meta=meta)
        return await self._request(AGENT_METHODS["session_new"], request, NewSessionResponse)

    async def load_session(self, session_id: str, cwd: str) -> None:
        """Replay a past session; its history arrives as session updates."""
        request = LoadSessionRequest(session_id=session_id, cwd=cwd)
        await self.connection.call(
            AGENT_METHODS["session_load"], request.dump(), timeout=self.request_timeout
        )

    async def prompt(
        self,
        session_id: str,
        text: str,
        timeout: float | None = None,
    ) -> PromptResponse:
        """Send one user turn.

        Session updates for the turn stream in before this returns; once it
        returns no further updates for the turn will arrive.
        """
        request = PromptRequest.from_text(session_id, text)
        return await self._request(
            AGENT_METHODS["session_prompt"], request, PromptResponse, timeout=timeout
        )

    async def list_sessions(
        self, cwd: str | None = None, cursor: str | None = None
    ) -> ListSessionsResponse:
        request = ListSessionsRequest(cwd=cwd, cursor=cursor)
        return await self._request(AGENT_METHODS["session_list"], request, ListSessionsResponse)

    async def set_session_model(self, session_id: str, model_id: str) -> None:
        request = SetSessionModelRequest(session_id=session_id, model_id=model_id)
        await self.connection.call(
            AGENT_METHODS["session_set_model"], request.dump(), timeout=self.request_timeout
        )

    async def resume_session(self, session_id: str, cwd: str) -> None:
        request = ResumeSessionRequest(session_id=session_id, cwd=cwd)
        await self.connection.call(
            AGENT_METHODS["session_resume"], request.dump(), timeout=self.request_timeout
        )

    async def cancel(self, session_id: str) -> None:
        """Ask the agent to stop the current turn (notification)."""
        await self.connection.notify(
            AGENT_METHODS["session_cancel"], CancelNotification(session_id=session_id).dump()
        )

    async def close(self) -> None:
        await self.connection.close()

    async def __aenter__(self) -> "ClientConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
