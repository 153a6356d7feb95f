"""
Agent Client Protocol payload models.

Wire field names are camelCase; Python attributes are snake_case through
the alias generator. Unknown fields are kept (``extra="allow"``) so that a
payload survives a parse/dump cycle unchanged.
"""

from datetime import datetime
from typing import Any, Literal, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = structlog.get_logger()

PROTOCOL_VERSION = 1

PermissionOptionKind = Literal["allow_once", "allow_always", "reject_once", "reject_always"]
ALLOW_KINDS: tuple[str, ...] = ("allow_once", "allow_always")
REJECT_KINDS: tuple[str, ...] = ("reject_once", "reject_always")


class AcpModel(BaseModel):
    """Base for all protocol payloads."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        protected_namespaces=(),
    )

    def dump(self) -> dict[str, Any]:
        """Serialize to a wire-ready dict."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# Initialization


class InitializeRequest(AcpModel):
    protocol_version: int = PROTOCOL_VERSION
    client_capabilities: dict[str, Any] = Field(default_factory=dict)


class InitializeResponse(AcpModel):
    protocol_version: int = PROTOCOL_VERSION
    agent_capabilities: dict[str, Any] = Field(default_factory=dict)
    auth_methods: list[dict[str, Any]] = Field(default_factory=list)


# Sessions


class ModelInfo(AcpModel):
    model_id: str
    name: str | None = None
    description: str | None = None


class SessionModelState(AcpModel):
    available_models: list[ModelInfo] = Field(default_factory=list)
    current_model_id: str | None = None


class NewSessionRequest(AcpModel):
    cwd: str
    mcp_servers: list[dict[str, Any]] = Field(default_factory=list)
    meta: dict[str, Any] | None = Field(default=None, alias="_meta")


class NewSessionResponse(AcpModel):
    session_id: str
    models: SessionModelState | None = None


class LoadSessionRequest(AcpModel):
    session_id: str
    cwd: str
    mcp_servers: list[dict[str, Any]] = Field(default_factory=list)


class ResumeSessionRequest(AcpModel):
    session_id: str
    cwd: str
    mcp_servers: list[dict[str, Any]] = Field(default_factory=list)


class SetSessionModelRequest(AcpModel):
    session_id: str
    model_id: str


class ListSessionsRequest(AcpModel):
    cwd: str | None = None
    cursor: str | None = None


class SessionInfo(AcpModel):
    session_id: str
    cwd: str | None = None
    title: str | None = None
    updated_at: datetime | None = None
    meta: dict[str, Any] | None = Field(default=None, alias="_meta")

    @property
    def sort_key(self) -> float:
        return self.updated_at.timestamp() if self.updated_at else 0.0


class ListSessionsResponse(AcpModel):
    sessions: list[SessionInfo] = Field(default_factory=list)
    next_cursor: str | None = None


class PromptRequest(AcpModel):
    session_id: str
    prompt: list[dict[str, Any]]

    @classmethod
    def from_text(cls, session_id: str, text: str) -> "PromptRequest":
        return cls(session_id=session_id, prompt=[{"type": "text", "text": text}])


class PromptResponse(AcpModel):
    stop_reason: str | None = None


class CancelNotification(AcpModel):
    session_id: str


# Permissions


class PermissionOption(AcpModel):
    option_id: str
    name: str = ""
    kind: str


class ToolCallLocation(AcpModel):
    path: str
    line: int | None = None


class ToolCallUpdate(AcpModel):
    tool_call_id: str | None = None
    title: str | None = None
    kind: str | None = None
    status: str | None = None
    locations: list[ToolCallLocation] = Field(default_factory=list)


class RequestPermissionRequest(AcpModel):
    session_id: str
    tool_call: ToolCallUpdate | None = None
    options: list[PermissionOption] = Field(default_factory=list)

    def first_option(self, kinds: tuple[str, ...]) -> PermissionOption | None:
        """First option whose kind is one of ``kinds``, in offered order."""
        return next((o for o in self.options if o.kind in kinds), None)


class PermissionOutcome(AcpModel):
    outcome: Literal["selected", "cancelled"]
    option_id: str | None = None

    @classmethod
    def selected(cls, option_id: str) -> "PermissionOutcome":
        return cls(outcome="selected", option_id=option_id)

    @classmethod
    def cancelled(cls) -> "PermissionOutcome":
        return cls(outcome="cancelled")

    @property
    def is_cancelled(self) -> bool:
        return self.outcome == "cancelled"


class RequestPermissionResponse(AcpModel):
    outcome: PermissionOutcome


# Session updates


class SessionNotification(AcpModel):
    """Payload of one ``session/update`` notification.

    ``update`` stays a raw dict so captured sessions persist losslessly;
    use ``parse_update`` for the typed view.
    """

    session_id: str
    update: dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> str | None:
        kind = self.update.get("sessionUpdate")
        return kind if isinstance(kind, str) else None


class ContentBlock(AcpModel):
    type: str
    text: str | None = None


class _ChunkUpdate(AcpModel):
    content: ContentBlock

    @property
    def text(self) -> str | None:
        """Chunk text, or None for non-text content (images, resources)."""
        if self.content.type != "text":
            return None
        return self.content.text


class AgentMessageChunk(_ChunkUpdate):
    session_update: Literal["agent_message_chunk"]


class AgentThoughtChunk(_ChunkUpdate):
    session_update: Literal["agent_thought_chunk"]


class UserMessageChunk(_ChunkUpdate):
    session_update: Literal["user_message_chunk"]


class ToolCallStart(AcpModel):
    session_update: Literal["tool_call"]
    tool_call_id: str | None = None
    title: str | None = None
    kind: str | None = None
    status: str | None = None
    locations: list[ToolCallLocation] = Field(default_factory=list)


class PlanEntry(AcpModel):
    content: str
    status: str = "pending"
    priority: str | None = None


class Plan(AcpModel):
    session_update: Literal["plan"]
    entries: list[PlanEntry] = Field(default_factory=list)


class SessionInfoUpdate(AcpModel):
    session_update: Literal["session_info_update"]
    title: str | None = None


class UnknownUpdate(AcpModel):
    """Any variant we do not interpret, kept opaque."""

    session_update: Any = None


SessionUpdate = Union[
    AgentMessageChunk,
    AgentThoughtChunk,
    UserMessageChunk,
    ToolCallStart,
    Plan,
    SessionInfoUpdate,
    UnknownUpdate,
]

UPDATE_TYPES: dict[str, type[AcpModel]] = {
    "agent_message_chunk": AgentMessageChunk,
    "agent_thought_chunk": AgentThoughtChunk,
    "user_message_chunk": UserMessageChunk,
    "tool_call": ToolCallStart,
    "plan": Plan,
    "session_info_update": SessionInfoUpdate,
}


def parse_update(raw: Any) -> SessionUpdate:
    """Parse a raw ``update`` dict into its typed variant.

    Unrecognized or malformed updates come back as UnknownUpdate; this
    never raises.
    """
    if not isinstance(raw, dict):
        return UnknownUpdate()

    kind = raw.get("sessionUpdate")
    model = UPDATE_TYPES.get(kind) if isinstance(kind, str) else None
    if model is None:
        return UnknownUpdate(session_update=kind)

    try:
        return model.model_validate(raw)  # type: ignore[return-value]
    except ValidationError as e:
        logger.debug("Malformed session update", kind=kind, errors=e.error_count())
        return UnknownUpdate(session_update=kind)
