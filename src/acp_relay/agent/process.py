"""
Agent process management.

The agent runs as a child process speaking ACP on its stdin/stdout; its
stderr is passed through to ours untouched.
"""

import asyncio
import os
from typing import Sequence

import structlog

logger = structlog.get_logger()

AGENT_COMMANDS: dict[str, list[str]] = {
    "opencode": ["opencode", "acp"],
    "claude": ["bunx", "@zed-industries/claude-code-acp"],
}


class AgentError(Exception):
    """The agent could not be started or used as requested."""


def command_for_agent(agent: str) -> list[str]:
    try:
        return list(AGENT_COMMANDS[agent])
    except KeyError:
        raise AgentError(
            f"Unknown agent {agent!r}, expected one of {', '.join(AGENT_COMMANDS)}"
        ) from None


class AgentProcess:
    """A spawned agent, killed on every exit path."""

    def __init__(
        self,
        command: Sequence[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ):
        if not command:
            raise AgentError("Empty agent command")
        self.command = list(command)
        self.cwd = cwd
        self.env = env
        self.process: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def start(self) -> tuple[asyncio.StreamWriter, asyncio.StreamReader]:
        """Spawn the agent and return its (stdin, stdout) streams."""
        if self.process is not None:
            raise AgentError("Agent process already started")

        logger.info("Spawning agent", command=self.command, cwd=self.cwd)

        env = {**os.environ, **self.env} if self.env else None
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None,
                cwd=self.cwd,
                env=env,
            )
        except OSError as e:
            logger.error("Failed to spawn agent", command=self.command, error=str(e))
            raise AgentError(f"Failed to start {self.command[0]!r}: {e}") from e

        if self.process.stdin is None or self.process.stdout is None:
            await self.terminate()
            raise AgentError("Failed to create stdin/stdout pipes")

        logger.debug("Agent spawned", pid=self.process.pid)
        return self.process.stdin, self.process.stdout

    async def terminate(self) -> int | None:
        """Kill the agent (if still running) and reap it.

        Returns the exit code, or None if the process was never started.
        """
        process = self.process
        if process is None:
            return None

        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                # exited between the check and the kill
                pass
        returncode = await process.wait()

        logger.debug("Agent process exited", pid=process.pid, returncode=returncode)
        return returncode

    async def __aenter__(self) -> "AgentProcess":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.terminate()
