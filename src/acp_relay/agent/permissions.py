"""
Permission Policies - answering ``session/request_permission``.

Before running a tool the agent asks the client to pick one of several
options (allow once, allow always, reject once, reject always). A policy is
any callable taking the request and returning the outcome, sync or async.

Built-in policies:
- allow_first: pick the first allow option, in offered order (default)
- reject_all: pick the first reject option
- cancel_all: never pick anything
- ApprovalManager.policy(): hold the request until someone decides, with a
  timeout
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

import structlog

from ..protocol.client import PermissionPolicy
from ..protocol.schema import (
    ALLOW_KINDS,
    REJECT_KINDS,
    PermissionOption,
    PermissionOutcome,
    RequestPermissionRequest,
)

logger = structlog.get_logger()

DEFAULT_APPROVAL_TIMEOUT = 300.0


def _select(
    request: RequestPermissionRequest, kinds: tuple[str, ...], label: str
) -> PermissionOutcome:
    option = request.first_option(kinds)
    if option is None:
        logger.warning("No matching permission option, cancelling", policy=label)
        return PermissionOutcome.cancelled()

    logger.info("Permission answered", policy=label, option_id=option.option_id)
    return PermissionOutcome.selected(option.option_id)


def allow_first(request: RequestPermissionRequest) -> PermissionOutcome:
    """Approve with the first ``allow_once``/``allow_always`` option."""
    return _select(request, ALLOW_KINDS, "allow")


def reject_all(request: RequestPermissionRequest) -> PermissionOutcome:
    """Refuse with the first ``reject_once``/``reject_always`` option."""
    return _select(request, REJECT_KINDS, "reject")


def cancel_all(request: RequestPermissionRequest) -> PermissionOutcome:
    logger.info("Permission cancelled", session_id=request.session_id)
    return PermissionOutcome.cancelled()


@dataclass
class PendingPermission:
    """A permission request waiting for a decision."""

    id: str
    request: RequestPermissionRequest
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    option_id: str | None = None
    decided: bool = False

    @property
    def tool_title(self) -> str:
        tool_call = self.request.tool_call
        return (tool_call.title if tool_call else None) or "(unknown tool)"

    @property
    def options(self) -> list[PermissionOption]:
        return self.request.options

    def format_for_display(self) -> str:
        """Human readable prompt for this request."""
        lines = [f"Permission requested [{self.id}]: {self.tool_title}"]
        for option in self.options:
            lines.append(f"  {option.option_id} ({option.kind}) {option.name}".rstrip())
        return "\n".join(lines)


class ApprovalManager:
    """Holds permission requests until they are approved, denied or time out.

    ``policy()`` plugs the manager into a client connection; something else
    (a prompt loop, a UI, a test) calls ``approve``/``deny`` with the id of
    a pending request.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_APPROVAL_TIMEOUT,
        on_request: Callable[[PendingPermission], None] | None = None,
    ):
        self.timeout = timeout
        self.on_request = on_request
        self._pending: dict[str, PendingPermission] = {}
        self._decision_events: dict[str, asyncio.Event] = {}

    def create_request(self, request: RequestPermissionRequest) -> PendingPermission:
        """Register a pending permission request."""
        pending = PendingPermission(id=str(uuid.uuid4())[:8], request=request)

        self._pending[pending.id] = pending
        self._decision_events[pending.id] = asyncio.Event()

        logger.info(
            "Permission request pending",
            permission_id=pending.id,
            session_id=request.session_id,
            tool=pending.tool_title,
        )

        if self.on_request:
            self.on_request(pending)

        return pending

    def approve(self, permission_id: str, option_id: str | None = None) -> bool:
        """Approve a pending request.

        Without ``option_id`` the first allow option is chosen. Returns False
        when the id is unknown, already decided, or has no such option.
        """
        pending = self._pending.get(permission_id)
        if pending is None or pending.decided:
            return False

        if option_id is None:
            option = pending.request.first_option(ALLOW_KINDS)
            if option is None:
                return False
            option_id = option.option_id
        elif not any(o.option_id == option_id for o in pending.options):
            return False

        pending.option_id = option_id
        self._decide(pending)

        logger.info("Permission approved", permission_id=permission_id, option_id=option_id)
        return True

    def deny(self, permission_id: str) -> bool:
        """Deny a pending request with its first reject option.

        With no reject option on offer, the request ends up cancelled.
        """
        pending = self._pending.get(permission_id)
        if pending is None or pending.decided:
            return False

        option = pending.request.first_option(REJECT_KINDS)
        pending.option_id = option.option_id if option else None
        self._decide(pending)

        logger.info("Permission denied", permission_id=permission_id, tool=pending.tool_title)
        return True

    def _decide(self, pending: PendingPermission) -> None:
        pending.decided = True
        event = self._decision_events.get(pending.id)
        if event:
            event.set()

    async def wait_for_decision(
        self, permission_id: str, timeout: float | None = None
    ) -> PermissionOutcome:
        """Wait for a decision. Timeouts and unknown ids come back cancelled."""
        event = self._decision_events.get(permission_id)
        if event is None:
            return PermissionOutcome.cancelled()

        if timeout is None:
            timeout = self.timeout

        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.info("Permission request timed out", permission_id=permission_id)
            return PermissionOutcome.cancelled()
        finally:
            pending = self._pending.pop(permission_id, None)
            self._decision_events.pop(permission_id, None)

        if pending is None or pending.option_id is None:
            return PermissionOutcome.cancelled()
        return PermissionOutcome.selected(pending.option_id)

    def get_pending(self, permission_id: str) -> PendingPermission | None:
        return self._pending.get(permission_id)

    def list_pending(self) -> list[PendingPermission]:
        """List requests still waiting for a decision."""
        return [p for p in self._pending.values() if not p.decided]

    def policy(self, timeout: float | None = None) -> PermissionPolicy:
        """Permission policy backed by this manager."""

        async def _ask(request: RequestPermissionRequest) -> PermissionOutcome:
            pending = self.create_request(request)
            return await self.wait_for_decision(pending.id, timeout)

        return _ask


PERMISSION_MODES = ("allow", "reject", "cancel", "ask")


def policy_for_mode(mode: str, manager: ApprovalManager | None = None) -> PermissionPolicy:
    """Map a configured permission mode to a policy."""
    if mode == "allow":
        return allow_first
    if mode == "reject":
        return reject_all
    if mode == "cancel":
        return cancel_all
    if mode == "ask":
        return (manager or ApprovalManager()).policy()
    raise ValueError(
        f"Unknown permission mode {mode!r}, expected one of {', '.join(PERMISSION_MODES)}"
    )
