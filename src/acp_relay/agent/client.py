"""
Agent Client - drives a coding agent over ACP.

Owns the agent process, the client connection and a SessionRecorder, and
exposes the handful of things the CLI needs: run a prompt in a new session,
replay a past session, list sessions, resume one.

The process is spawned on first use (or ``connect()``/``async with``) and
is always killed by ``close()``.
"""

import asyncio
from typing import Any, Awaitable, Callable, Sequence, Union

import structlog

from ..config import Settings, get_settings
from ..protocol.client import ClientConnection, PermissionPolicy
from ..protocol.errors import RemoteError
from ..protocol.schema import (
    InitializeResponse,
    PromptResponse,
    SessionInfo,
    SessionNotification,
)
from ..session.models import SessionContent
from ..session.recorder import SessionRecorder
from .history import list_claude_sessions
from .permissions import ApprovalManager, policy_for_mode
from .process import AGENT_COMMANDS, AgentError, AgentProcess

logger = structlog.get_logger()

SessionCreatedCallback = Callable[[str], Union[Awaitable[None], None]]

MODEL_FORMAT_HINTS = {
    "opencode": "provider/model-id (e.g., anthropic/claude-sonnet-4-20250514)",
    "claude": "model-id (e.g., claude-sonnet-4-20250514)",
}


class AgentClient:
    """High level client for one agent process."""

    def __init__(
        self,
        agent: str | None = None,
        *,
        settings: Settings | None = None,
        command: Sequence[str] | None = None,
        cwd: str | None = None,
        recorder: SessionRecorder | None = None,
        permission_policy: PermissionPolicy | None = None,
    ):
        self.settings = settings or get_settings()
        self.agent = agent or self.settings.default_agent
        if self.agent not in AGENT_COMMANDS:
            raise AgentError(
                f"Unknown agent {self.agent!r}, expected one of {', '.join(AGENT_COMMANDS)}"
            )

        self.command = list(command) if command else self.settings.agent_command_for(self.agent)
        self.cwd = cwd
        self.recorder = recorder or SessionRecorder()
        self.permission_policy = permission_policy or policy_for_mode(
            self.settings.permission_mode,
            ApprovalManager(timeout=self.settings.approval_timeout),
        )

        self.initialize_response: InitializeResponse | None = None
        self._process: AgentProcess | None = None
        self._client: ClientConnection | None = None
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._client is not None and not self._client.connection.closed

    async def connect(self) -> ClientConnection:
        """Spawn the agent and run the ``initialize`` handshake (once)."""
        async with self._connect_lock:
            if self._client is not None:
                return self._client

            logger.info("Connecting to agent", agent=self.agent, command=self.command)
            process = AgentProcess(self.command, cwd=self.cwd)
            writer, reader = await process.start()

            client: ClientConnection | None = None
            try:
                client = ClientConnection.open(
                    writer,
                    reader,
                    permission_policy=self.permission_policy,
                    request_timeout=self.settings.request_timeout,
                )
                self.recorder.attach(client)
                self.initialize_response = await client.initialize(
                    protocol_version=self.settings.protocol_version,
                    client_capabilities={},
                )
            except BaseException:
                if client is not None:
                    await client.close()
                await process.terminate()
                raise

            self._process = process
            self._client = client
            logger.info("Agent connection established", agent=self.agent, pid=process.pid)
            return client

    async def create_session(
        self,
        cwd: str,
        model: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> str:
        """Create a new session, optionally switching it to ``model``."""
        client = await self.connect()

        logger.info("Creating session", cwd=cwd, model=model)
        response = await client.new_session(cwd, mcp_servers=[], meta=meta)
        session_id = response.session_id
        logger.info("Session created", session_id=session_id)

        if model:
            available = response.models.available_models if response.models else []
            if not any(m.model_id == model for m in available):
                model_list = "\n".join(f"  {m.model_id}" for m in available) or "  (none)"
                raise AgentError(
                    f'Model "{model}" not found.\n\n'
                    f"Available models:\n{model_list}\n\n"
                    f"Format for {self.agent}: {MODEL_FORMAT_HINTS[self.agent]}"
                )

            await client.set_session_model(session_id, model)
            logger.info("Model set", session_id=session_id, model=model)

        return session_id

    async def prompt(self, session_id: str, text: str) -> PromptResponse:
        """Send a prompt and wait until the agent ends its turn."""
        client = await self.connect()

        logger.info("Sending prompt", session_id=session_id, prompt_length=len(text))
        try:
            response = await client.prompt(session_id, text)
        except Exception as e:
            logger.error("Prompt failed", session_id=session_id, error=str(e))
            raise

        logger.info("Prompt completed", session_id=session_id, stop_reason=response.stop_reason)
        return response

    async def run_prompt(
        self,
        cwd: str,
        text: str,
        *,
        model: str | None = None,
        meta: dict[str, Any] | None = None,
        on_session_created: SessionCreatedCallback | None = None,
    ) -> SessionContent:
        """New session, one prompt, and everything the agent streamed back."""
        session_id = await self.create_session(cwd, model=model, meta=meta)

        if on_session_created:
            result = on_session_created(session_id)
            if asyncio.iscoroutine(result):
                await result

        await self.prompt(session_id, text)
        return self.recorder.content(session_id)

    async def load_session_content(self, session_id: str, cwd: str) -> SessionContent:
        """Replay a past session and collect its history."""
        client = await self.connect()

        self.recorder.reset(session_id)
        logger.info("Loading session", session_id=session_id, cwd=cwd)
        await client.load_session(session_id, cwd)

        content = self.recorder.content(session_id)
        logger.info("Session loaded", session_id=session_id, notifications=len(content))
        return content

    async def list_sessions(self, cwd: str, limit: int | None = None) -> list[SessionInfo]:
        """Sessions for ``cwd``, most recently updated first.

        Uses ``session/list`` with pagination. Claude's adapter may not
        implement it, in which case sessions are read from Claude's history
        files instead.
        """
        limit = limit if limit is not None else self.settings.list_sessions_limit
        client = await self.connect()

        sessions: list[SessionInfo] = []
        cursor: str | None = None
        try:
            while len(sessions) < limit:
                response = await client.list_sessions(cwd=cwd, cursor=cursor)
                sessions.extend(response.sessions[: limit - len(sessions)])
                if not response.next_cursor:
                    break
                cursor = response.next_cursor
        except RemoteError as e:
            if self.agent != "claude":
                raise
            logger.debug(
                "session/list not supported, reading Claude history",
                code=e.code,
                error=e.message,
            )
            return list_claude_sessions(cwd, limit, self.settings.claude_projects_dir)

        sessions.sort(key=lambda s: s.sort_key, reverse=True)
        return sessions

    async def resume_session(self, session_id: str, cwd: str) -> bool:
        """Resume an interrupted session. False if the agent refused."""
        client = await self.connect()

        logger.info("Resuming session", session_id=session_id)
        try:
            await client.resume_session(session_id, cwd)
        except RemoteError as e:
            logger.warning("Failed to resume session", session_id=session_id, error=e.message)
            return False

        logger.info("Session resumed", session_id=session_id)
        return True

    async def cancel(self, session_id: str) -> None:
        if self._client is not None:
            await self._client.cancel(session_id)

    def get_session_updates(self, session_id: str) -> list[SessionNotification]:
        return self.recorder.updates(session_id)

    async def close(self) -> None:
        """Close the connection and kill the agent process."""
        client, process = self._client, self._process
        self._client = None
        self._process = None
        try:
            if client is not None:
                self.recorder.detach(client)
                await client.close()
        finally:
            if process is not None:
                await process.terminate()

    async def __aenter__(self) -> "AgentClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
