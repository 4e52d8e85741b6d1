"""
Interactive Entry Adapter.

Responsibility:
- Authorize the caller and build a Command with session history
- Run it on the full tool surface, as a result or as an event stream
- Carry confirmation round-trips (the caller resubmits with every approval
  granted so far and the undo batch of the previous round)
- NO intent parsing, NO domain logic
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Callable, Sequence

from conversation.manager import ConversationManager
from execution.engine import ExecutionCore
from execution.streaming import CommandStream
from shared.models import (
    Command,
    ConfirmationApproval,
    ConfirmationRequest,
    ExecutionContext,
    ExecutionOptions,
    ExecutionResult,
)

logger = logging.getLogger(__name__)


def session_key(workspace_id: str, user_id: str, session_id: str | None = None) -> str:
    return session_id or f"{workspace_id}:{user_id}"


def approval_for(confirmation: ConfirmationRequest) -> ConfirmationApproval:
    """Approval that matches exactly the call the gate asked about."""
    return ConfirmationApproval(decision="approve", tool=confirmation.tool, arguments=dict(confirmation.arguments))


class InteractiveAdapter:
    """Interactive (web/CLI) channel over the execution core."""

    def __init__(
        self,
        core: ExecutionCore,
        authorize: Callable[[str, str], Any],
        conversation: ConversationManager | None = None,
        history_limit: int = 20,
    ):
        self.core = core
        self.authorize = authorize
        self.conversation = conversation
        self.history_limit = history_limit

    def build_command(
        self,
        text: str,
        workspace_id: str,
        user_id: str,
        session_id: str | None = None,
        project_id: str | None = None,
        tab_id: str | None = None,
        undo_batch_id: str | None = None,
    ) -> Command:
        """Raises Unauthorized before anything runs."""
        auth = self.authorize(workspace_id, user_id)
        history = []
        if self.conversation is not None:
            history = self.conversation.get_history(session_key(workspace_id, user_id, session_id), self.history_limit)
        context = ExecutionContext(
            workspace_id=workspace_id,
            user_id=user_id,
            workspace_name=getattr(auth, "workspace_name", None),
            user_name=getattr(auth, "user_name", None),
            current_project_id=project_id,
            current_tab_id=tab_id,
            undo_batch_id=undo_batch_id,
            auth=auth,
        )
        return Command(text=text.strip(), history=history, context=context)

    async def execute(
        self,
        command: Command,
        options: ExecutionOptions | None = None,
        approvals: Sequence[ConfirmationApproval] | None = None,
        session_id: str | None = None,
    ) -> ExecutionResult:
        result = await self.core.execute(command, options=options, approvals=approvals)
        self.record_turn(command, result, session_id=session_id, resubmitted=bool(approvals))
        return result

    def stream(
        self,
        command: Command,
        options: ExecutionOptions | None = None,
        approvals: Sequence[ConfirmationApproval] | None = None,
    ) -> CommandStream:
        return CommandStream(self.core, command, options=options, approvals=approvals)

    async def ndjson(
        self,
        command: Command,
        options: ExecutionOptions | None = None,
        approvals: Sequence[ConfirmationApproval] | None = None,
        session_id: str | None = None,
    ) -> AsyncIterator[str]:
        """NDJSON frames for one Command; history is written once the run ends."""
        stream = self.stream(command, options=options, approvals=approvals)
        try:
            async for frame in stream.ndjson():
                yield frame
        finally:
            if stream.result is not None:
                self.record_turn(command, stream.result, session_id=session_id, resubmitted=bool(approvals))

    def record_turn(
        self,
        command: Command,
        result: ExecutionResult,
        session_id: str | None = None,
        resubmitted: bool = False,
    ) -> None:
        if self.conversation is None:
            return
        key = session_key(command.context.workspace_id, command.context.user_id, session_id)
        # An approval resubmits the same text; keep one user turn.
        if not resubmitted:
            self.conversation.save(key, "user", command.text)
        if result.response:
            self.conversation.save(
                key,
                "assistant",
                result.response,
                metadata={"success": result.success, "undo_batch_id": result.undo_batch_id},
            )
