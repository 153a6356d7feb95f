"""
End-to-end tests for the agent client against a scripted agent process.
"""

import json
import os
import sys

import pytest

from acp_relay.agent.client import AgentClient
from acp_relay.agent.permissions import reject_all
from acp_relay.agent.process import AgentError, AgentProcess
from acp_relay.config import Settings
from acp_relay.protocol.errors import RemoteError
from acp_relay.session.compression import compress_session
from acp_relay.session.recorder import SessionRecorder


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        store_dir=tmp_path / "store",
        claude_projects_dir=tmp_path / "claude",
        request_timeout=10.0,
    )


@pytest.mark.asyncio
async def test_run_prompt_captures_turn(settings, fake_agent_command, tmp_path):
    """Test initialize, new session, prompt and the captured updates."""
    created = []

    async with AgentClient("opencode", settings=settings, command=fake_agent_command()) as client:
        assert client.initialize_response.agent_capabilities == {"loadSession": True}

        content = await client.run_prompt(str(tmp_path), "hi", on_session_created=created.append)

    assert created == [content.session_id]
    assert content.session_id == "sess-1"
    assert [n.kind for n in content.notifications] == [
        "agent_thought_chunk",
        "tool_call",
        "tool_call_update",
        "agent_message_chunk",
        "agent_message_chunk",
    ]
    assert compress_session(content).summary == (
        "Thinking: Thinking about it\n"
        "Tool [read]: README.md\n"
        "Message: Echo: hi (permission: allow)"
    )


@pytest.mark.asyncio
async def test_permission_policy_override(settings, fake_agent_command, tmp_path):
    """Test that an explicit policy answers the agent's permission request."""
    client = AgentClient(
        "opencode",
        settings=settings,
        command=fake_agent_command(),
        permission_policy=reject_all,
    )
    try:
        content = await client.run_prompt(str(tmp_path), "hi")
    finally:
        await client.close()

    assert content.notifications[-1].update["content"]["text"] == " (permission: reject)"


@pytest.mark.asyncio
async def test_shared_recorder_sees_updates(settings, fake_agent_command, tmp_path):
    """Test that a caller-owned recorder collects the session."""
    seen = []
    recorder = SessionRecorder(on_update=lambda n: seen.append(n.kind))

    async with AgentClient(settings=settings, command=fake_agent_command(), recorder=recorder) as client:
        content = await client.run_prompt(str(tmp_path), "hello")

    assert recorder.content(content.session_id) == content
    assert len(seen) == 5
    assert client.get_session_updates(content.session_id) == content.notifications


@pytest.mark.asyncio
async def test_model_selection(settings, fake_agent_command, tmp_path):
    """Test switching to an available model and rejecting an unknown one."""
    async with AgentClient("opencode", settings=settings, command=fake_agent_command()) as client:
        session_id = await client.create_session(str(tmp_path), model="openai/gpt-4o")
        assert session_id == "sess-1"

        with pytest.raises(AgentError) as exc_info:
            await client.create_session(str(tmp_path), model="made-up/model")

    message = str(exc_info.value)
    assert 'Model "made-up/model" not found' in message
    assert "anthropic/claude-sonnet-4" in message
    assert "provider/model-id" in message


@pytest.mark.asyncio
async def test_load_session_content(settings, fake_agent_command, tmp_path):
    """Test replaying a past session."""
    async with AgentClient(settings=settings, command=fake_agent_command()) as client:
        first = await client.load_session_content("old-session", str(tmp_path))
        again = await client.load_session_content("old-session", str(tmp_path))

    assert first.session_id == "old-session"
    assert compress_session(first).summary == "User: Earlier question\nMessage: Earlier answer"
    assert len(again) == len(first) == 2


@pytest.mark.asyncio
async def test_list_sessions_paginates(settings, fake_agent_command):
    """Test pagination, sorting and the limit."""
    async with AgentClient(settings=settings, command=fake_agent_command()) as client:
        all_sessions = await client.list_sessions("/work")
        first_two = await client.list_sessions("/work", limit=2)

    assert [s.session_id for s in all_sessions] == ["listed-c", "listed-a", "listed-b"]
    assert [s.session_id for s in first_two] == ["listed-a", "listed-b"]


@pytest.mark.asyncio
async def test_list_sessions_falls_back_for_claude(settings, fake_agent_command):
    """Test reading Claude history when session/list is not implemented."""
    project = settings.claude_projects_dir / "-work"
    project.mkdir(parents=True)
    (project / "abc.jsonl").write_text(
        json.dumps({"type": "user", "sessionId": "claude-1", "message": {"content": "Refactor"}}) + "\n"
    )

    async with AgentClient("claude", settings=settings, command=fake_agent_command("--no-list")) as client:
        sessions = await client.list_sessions("/work")

    assert [(s.session_id, s.title) for s in sessions] == [("claude-1", "Refactor")]


@pytest.mark.asyncio
async def test_list_sessions_error_for_other_agents(settings, fake_agent_command):
    """Test that the error propagates when no fallback exists."""
    async with AgentClient("opencode", settings=settings, command=fake_agent_command("--no-list")) as client:
        with pytest.raises(RemoteError) as exc_info:
            await client.list_sessions("/work")

    assert exc_info.value.code == -32601


@pytest.mark.asyncio
async def test_resume_session(settings, fake_agent_command, tmp_path):
    """Test resume success and failure."""
    async with AgentClient(settings=settings, command=fake_agent_command()) as client:
        assert await client.resume_session("sess-9", str(tmp_path)) is True
        assert await client.resume_session("missing", str(tmp_path)) is False


@pytest.mark.asyncio
async def test_close_kills_agent(settings, fake_agent_command):
    """Test that closing always reaps the process."""
    client = AgentClient(settings=settings, command=fake_agent_command())
    await client.connect()
    process = client._process.process
    assert client.connected

    await client.close()

    assert process.returncode is not None
    assert not client.connected
    await client.close()


@pytest.mark.asyncio
async def test_failed_handshake_kills_agent(settings):
    """Test that an agent that exits immediately is cleaned up."""
    client = AgentClient(settings=settings, command=[sys.executable, "-c", "pass"])

    with pytest.raises(Exception):
        await client.connect()

    assert not client.connected


@pytest.mark.asyncio
async def test_spawn_failure(settings):
    """Test a command that does not exist."""
    client = AgentClient(settings=settings, command=["/nonexistent/agent-binary"])

    with pytest.raises(AgentError):
        await client.connect()


def test_unknown_agent(settings):
    """Test that only known agents are accepted."""
    with pytest.raises(AgentError):
        AgentClient("cursor", settings=settings)


@pytest.mark.asyncio
async def test_agent_process_lifecycle():
    """Test spawning and killing a long-running process."""
    process = AgentProcess([sys.executable, "-c", "import sys; sys.stdin.read()"], cwd=os.getcwd())

    async with process:
        assert process.running
        assert process.pid is not None

    assert not process.running
    assert await process.terminate() is not None


def test_agent_process_rejects_empty_command():
    """Test the empty command guard."""
    with pytest.raises(AgentError):
        AgentProcess([])
