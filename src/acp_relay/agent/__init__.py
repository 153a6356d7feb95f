"""
Agent module - the coding agent on the other end of the pipe.

Includes:
- AgentClient: connect, create sessions, prompt, replay and list sessions
- AgentProcess: spawning and killing the agent executable
- Permission policies: allow_first, reject_all, cancel_all, ApprovalManager
- list_claude_sessions: session listing from Claude Code's history files
"""

from .client import AgentClient
from .history import list_claude_sessions
from .permissions import (
    ApprovalManager,
    PendingPermission,
    allow_first,
    cancel_all,
    policy_for_mode,
    reject_all,
)
from .process import AGENT_COMMANDS, AgentError, AgentProcess, command_for_agent

__all__ = [
    "AGENT_COMMANDS",
    "AgentClient",
    "AgentError",
    "AgentProcess",
    "ApprovalManager",
    "PendingPermission",
    "allow_first",
    "cancel_all",
    "command_for_agent",
    "list_claude_sessions",
    "policy_for_mode",
    "reject_all",
]
