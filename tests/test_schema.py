"""
Tests for protocol payload models.
"""

from acp_relay.protocol.schema import (
    AgentMessageChunk,
    NewSessionRequest,
    PermissionOutcome,
    Plan,
    RequestPermissionRequest,
    SessionNotification,
    ToolCallStart,
    UnknownUpdate,
    parse_update,
)


def test_dump_uses_camel_case_and_drops_none():
    """Test wire serialization of requests."""
    request = NewSessionRequest(cwd="/work", meta={"critique": True})

    assert request.dump() == {"cwd": "/work", "mcpServers": [], "_meta": {"critique": True}}
    assert NewSessionRequest(cwd="/work").dump() == {"cwd": "/work", "mcpServers": []}


def test_permission_outcomes():
    """Test the two outcome shapes."""
    assert PermissionOutcome.selected("opt").dump() == {"outcome": "selected", "optionId": "opt"}
    assert PermissionOutcome.cancelled().dump() == {"outcome": "cancelled"}
    assert PermissionOutcome.cancelled().is_cancelled


def test_first_option_keeps_offered_order():
    """Test option lookup by kind."""
    request = RequestPermissionRequest.model_validate(
        {
            "sessionId": "s1",
            "options": [
                {"optionId": "r", "name": "Reject", "kind": "reject_once"},
                {"optionId": "aa", "name": "Always", "kind": "allow_always"},
                {"optionId": "a", "name": "Once", "kind": "allow_once"},
            ],
        }
    )

    assert request.first_option(("allow_once", "allow_always")).option_id == "aa"
    assert request.first_option(("reject_always",)) is None


def test_notification_keeps_raw_update():
    """Test that unknown update fields survive a parse/dump cycle."""
    raw = {
        "sessionId": "s1",
        "update": {"sessionUpdate": "available_commands_update", "availableCommands": [{"name": "init"}]},
    }
    notification = SessionNotification.model_validate(raw)

    assert notification.kind == "available_commands_update"
    assert notification.dump() == raw


def test_parse_known_variants():
    """Test typed parsing of session updates."""
    message = parse_update({"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": "hi"}})
    tool = parse_update(
        {"sessionUpdate": "tool_call", "toolCallId": "t1", "kind": "edit", "locations": [{"path": "a.py"}]}
    )
    plan = parse_update({"sessionUpdate": "plan", "entries": [{"content": "Step", "status": "pending"}]})

    assert isinstance(message, AgentMessageChunk) and message.text == "hi"
    assert isinstance(tool, ToolCallStart) and tool.locations[0].path == "a.py"
    assert tool.title is None
    assert isinstance(plan, Plan) and plan.entries[0].content == "Step"


def test_non_text_chunk_has_no_text():
    """Test that image chunks expose no text."""
    update = parse_update(
        {"sessionUpdate": "agent_message_chunk", "content": {"type": "image", "data": "...", "mimeType": "image/png"}}
    )

    assert isinstance(update, AgentMessageChunk)
    assert update.text is None


def test_parse_update_never_raises():
    """Test that unknown and malformed updates come back opaque."""
    assert isinstance(parse_update({"sessionUpdate": "current_mode_update"}), UnknownUpdate)
    assert isinstance(parse_update({"sessionUpdate": "agent_message_chunk"}), UnknownUpdate)
    assert isinstance(parse_update({"sessionUpdate": "tool_call", "kind": 42}), UnknownUpdate)
    assert isinstance(parse_update({"no": "tag"}), UnknownUpdate)
    assert isinstance(parse_update("not a dict"), UnknownUpdate)
    assert isinstance(parse_update(None), UnknownUpdate)
