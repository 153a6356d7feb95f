"""
Tests for permission policies and the approval manager.
"""

import asyncio

import pytest

from acp_relay.agent.permissions import (
    ApprovalManager,
    allow_first,
    cancel_all,
    policy_for_mode,
    reject_all,
)
from acp_relay.protocol.schema import RequestPermissionRequest


def make_request(*kinds: str) -> RequestPermissionRequest:
    return RequestPermissionRequest.model_validate(
        {
            "sessionId": "s1",
            "toolCall": {"toolCallId": "call-1", "title": "Edit README.md", "kind": "edit"},
            "options": [
                {"optionId": f"opt-{index}", "name": kind.replace("_", " "), "kind": kind}
                for index, kind in enumerate(kinds)
            ],
        }
    )


STANDARD = ("reject_once", "allow_always", "allow_once", "reject_always")


def test_allow_first_uses_offered_order():
    """Test that the first allow option wins, whichever allow kind it is."""
    outcome = allow_first(make_request(*STANDARD))

    assert outcome.outcome == "selected"
    assert outcome.option_id == "opt-1"


def test_allow_first_without_allow_option():
    """Test the cancelled fallback."""
    outcome = allow_first(make_request("reject_once", "reject_always"))

    assert outcome.is_cancelled
    assert outcome.option_id is None


def test_reject_all():
    """Test picking the first reject option."""
    assert reject_all(make_request(*STANDARD)).option_id == "opt-0"
    assert reject_all(make_request("allow_once")).is_cancelled


def test_cancel_all():
    """Test that nothing is ever selected."""
    assert cancel_all(make_request(*STANDARD)).is_cancelled


def test_create_request():
    """Test registering a pending permission."""
    manager = ApprovalManager()

    pending = manager.create_request(make_request(*STANDARD))

    assert pending.id
    assert pending.tool_title == "Edit README.md"
    assert not pending.decided
    assert manager.get_pending(pending.id) is pending


def test_approve_default_option():
    """Test approving without naming an option."""
    manager = ApprovalManager()
    pending = manager.create_request(make_request(*STANDARD))

    assert manager.approve(pending.id)
    assert pending.decided
    assert pending.option_id == "opt-1"


def test_approve_specific_option():
    """Test approving with an explicit option id."""
    manager = ApprovalManager()
    pending = manager.create_request(make_request(*STANDARD))

    assert not manager.approve(pending.id, "no-such-option")
    assert manager.approve(pending.id, "opt-2")
    assert pending.option_id == "opt-2"


def test_decisions_are_final():
    """Test that a decided request cannot be decided again."""
    manager = ApprovalManager()
    pending = manager.create_request(make_request(*STANDARD))

    assert manager.deny(pending.id)
    assert pending.option_id == "opt-0"
    assert not manager.approve(pending.id)
    assert not manager.deny(pending.id)


def test_approve_nonexistent():
    """Test approving an unknown id."""
    manager = ApprovalManager()

    assert not manager.approve("nonexistent_id")
    assert not manager.deny("nonexistent_id")


def test_list_pending():
    """Test listing requests still waiting."""
    manager = ApprovalManager()

    p1 = manager.create_request(make_request(*STANDARD))
    p2 = manager.create_request(make_request(*STANDARD))
    assert len(manager.list_pending()) == 2

    manager.approve(p1.id)
    pending = manager.list_pending()
    assert len(pending) == 1
    assert pending[0].id == p2.id


def test_pending_format():
    """Test the display text."""
    manager = ApprovalManager()
    pending = manager.create_request(make_request(*STANDARD))

    display = pending.format_for_display()

    assert pending.id in display
    assert "Edit README.md" in display
    assert "opt-1 (allow_always)" in display


@pytest.mark.asyncio
async def test_wait_for_decision_approved():
    """Test waiting for a request that gets approved."""
    manager = ApprovalManager()
    pending = manager.create_request(make_request(*STANDARD))

    async def approve_later():
        await asyncio.sleep(0.05)
        manager.approve(pending.id)

    task = asyncio.create_task(approve_later())
    outcome = await manager.wait_for_decision(pending.id, timeout=5.0)
    await task

    assert outcome.option_id == "opt-1"
    assert manager.get_pending(pending.id) is None


@pytest.mark.asyncio
async def test_wait_for_decision_denied_without_reject_option():
    """Test that denying with no reject option cancels."""
    manager = ApprovalManager()
    pending = manager.create_request(make_request("allow_once"))
    manager.deny(pending.id)

    outcome = await manager.wait_for_decision(pending.id, timeout=1.0)

    assert outcome.is_cancelled


@pytest.mark.asyncio
async def test_wait_for_decision_timeout():
    """Test that an unanswered request is cancelled."""
    manager = ApprovalManager()
    pending = manager.create_request(make_request(*STANDARD))

    outcome = await manager.wait_for_decision(pending.id, timeout=0.05)

    assert outcome.is_cancelled
    assert manager.list_pending() == []


@pytest.mark.asyncio
async def test_wait_for_unknown_request():
    """Test waiting on an id that was never created."""
    outcome = await ApprovalManager().wait_for_decision("missing", timeout=0.05)

    assert outcome.is_cancelled


@pytest.mark.asyncio
async def test_manager_policy():
    """Test the manager used as a permission policy."""
    manager = ApprovalManager(on_request=lambda pending: manager.approve(pending.id, "opt-2"))
    policy = manager.policy(timeout=1.0)

    outcome = await policy(make_request(*STANDARD))

    assert outcome.option_id == "opt-2"


@pytest.mark.asyncio
async def test_manager_policy_times_out():
    """Test the policy's timeout path."""
    manager = ApprovalManager(timeout=0.05)

    outcome = await manager.policy()(make_request(*STANDARD))

    assert outcome.is_cancelled


def test_policy_for_mode():
    """Test mapping configured modes to policies."""
    assert policy_for_mode("allow") is allow_first
    assert policy_for_mode("reject") is reject_all
    assert policy_for_mode("cancel") is cancel_all
    assert callable(policy_for_mode("ask"))

    with pytest.raises(ValueError):
        policy_for_mode("maybe")
