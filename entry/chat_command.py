"""
Chat-Command Entry Adapter — synchronous, one-shot surface.

There is no round-trip for confirmations here, so authorization is decided
once from the command text: read-only by default, and a fixed allow-list of
write tools when the text states an explicit mutation. Commands that would
create something without a target project get a project picker instead of
a guess.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from entry.idempotency import IdempotencyStore, idempotency_key
from entry.rate_limiter import RateLimiter
from execution.engine import ExecutionCore
from observability.logger import Observability
from planner.system_prompt import CHAT_COMMAND_PREAMBLE
from shared.errors import CommandError, Unauthorized
from shared.models import (
    Command,
    ContextOption,
    ExecutionContext,
    ExecutionOptions,
    NeedsContext,
    SyncChannelResponse,
)

logger = logging.getLogger(__name__)

CREATE_PATTERN = re.compile(r"\b(create|add|new)\s+(task|table|doc|timeline)\b", re.IGNORECASE)
UPDATE_PATTERN = re.compile(r"\b(update|edit|change|set|mark|complete)\b", re.IGNORECASE)

CHAT_WRITE_TOOLS = ["createTaskItem", "updateTaskItem", "createProject", "updateProject", "createDoc"]
CHAT_TOOL_GROUPS = ["core", "task", "project", "doc"]
PROJECT_OPTION_LIMIT = 10


def needs_project_context(text: str) -> bool:
    return bool(CREATE_PATTERN.search(text))


def allows_mutation(text: str) -> bool:
    return needs_project_context(text) or bool(UPDATE_PATTERN.search(text))


def chat_options(text: str) -> ExecutionOptions:
    allow = allows_mutation(text)
    return ExecutionOptions(
        read_only=not allow,
        allowed_write_tools=list(CHAT_WRITE_TOOLS) if allow else [],
        forced_tool_groups=list(CHAT_TOOL_GROUPS),
        disable_deterministic=False,
        disable_optimistic_early_exit=False,
    )


class ChatCommandAdapter:
    """Idempotent, rate-limited chat commands against a linked workspace identity."""

    def __init__(
        self,
        core: ExecutionCore,
        store: Any,
        rate_limiter: RateLimiter | None = None,
        idempotency: IdempotencyStore | None = None,
    ):
        self.core = core
        self.store = store
        self.rate_limiter = rate_limiter
        self.idempotency = idempotency

    async def handle(
        self,
        text: str,
        team_id: str,
        external_user_id: str,
        request_id: str | None = None,
        project_id: str | None = None,
        tab_id: str | None = None,
    ) -> SyncChannelResponse:
        obs = Observability()
        key = idempotency_key(team_id, request_id) if request_id else None

        if key and self.idempotency is not None:
            cached = self.idempotency.get(key)
            if cached is not None:
                obs.log_event("chat_command_replayed", {"team_id": team_id, "request_id": request_id})
                return SyncChannelResponse.model_validate(cached)

        if self.rate_limiter is not None:
            limit = self.rate_limiter.check(team_id, external_user_id)
            if not limit.allowed:
                obs.log_event("chat_command_rate_limited", {"team_id": team_id, "user": external_user_id}, level="WARNING")
                return SyncChannelResponse(success=False, response=limit.message or "Rate limit exceeded.", error="rate_limited")

        try:
            auth = self.store.resolve_chat_identity(team_id, external_user_id)
        except Unauthorized as e:
            obs.log_event("chat_command_unauthorized", {"team_id": team_id, "error": str(e)}, level="WARNING")
            return SyncChannelResponse(success=False, response=e.user_message, error=e.kind)

        try:
            response = await self._run(text.strip(), auth, project_id, tab_id)
        except CommandError as e:
            logger.warning("Chat command failed: %s", e)
            response = SyncChannelResponse(success=False, response=e.user_message, error=e.kind)
        except Exception as e:
            logger.exception("Chat command crashed")
            response = SyncChannelResponse(
                success=False,
                response="An unexpected error occurred while processing your command.",
                error=f"{type(e).__name__}: {e}",
            )

        if key and self.idempotency is not None:
            self.idempotency.save(key, response.model_dump(mode="json"))
        return response

    async def _run(self, text: str, auth: Any, project_id: str | None, tab_id: str | None) -> SyncChannelResponse:
        if needs_project_context(text) and not project_id:
            return self._project_picker(text, auth.workspace_id)

        command = Command(
            text=text,
            context=ExecutionContext(
                workspace_id=auth.workspace_id,
                user_id=auth.user_id,
                workspace_name=getattr(auth, "workspace_name", None),
                user_name=getattr(auth, "user_name", None),
                current_project_id=project_id,
                current_tab_id=tab_id,
                auth=auth,
            ),
        )
        result = await self.core.execute(command, options=chat_options(text), system_preamble=CHAT_COMMAND_PREAMBLE)
        return SyncChannelResponse(
            success=result.success,
            response=result.response,
            tool_calls_made=result.tool_calls_made,
            error=result.error,
        )

    def _project_picker(self, text: str, workspace_id: str) -> SyncChannelResponse:
        projects = self.store.list_projects(workspace_id, limit=PROJECT_OPTION_LIMIT)
        if not projects:
            return SyncChannelResponse(
                success=False,
                response="No projects found. Please create a project first.",
                error="No projects available",
            )
        return SyncChannelResponse(
            success=False,
            response="Which project should I create this in?",
            needs_context=NeedsContext(
                type="project",
                options=[ContextOption(id=p["id"], name=p["name"]) for p in projects],
                original_command=text,
            ),
        )
