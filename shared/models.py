"""
Shared Pydantic models for all layers.
All contracts are immutable (frozen) after creation.

Wire shapes (HTTP/NDJSON) use camelCase aliases; models accept both
snake_case and camelCase on input.
"""

from __future__ import annotations

import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for models that travel over the wire in camelCase."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ─── Command Layer ─────────────────────────────────────────────

MessageRole = Literal["system", "user", "assistant", "tool"]


class Message(WireModel):
    """One role-tagged conversation message."""
    role: MessageRole
    content: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None
    name: str | None = None


class ExecutionContext(WireModel):
    """Who is acting, in which tenant, and on what."""
    workspace_id: str
    user_id: str
    workspace_name: str | None = None
    user_name: str | None = None
    current_project_id: str | None = None
    current_tab_id: str | None = None
    target_entity_id: str | None = Field(default=None, description="Pre-resolved target entity, if any")
    undo_batch_id: str | None = Field(default=None, description="Client-supplied undo batch id")
    auth: Any = Field(default=None, exclude=True, description="Opaque auth context for tool executors")


class Command(WireModel):
    """Normalized input from any channel adapter."""
    text: str
    history: list[Message] = Field(default_factory=list)
    context: ExecutionContext


# ─── Intent Layer ──────────────────────────────────────────────

class Intent(BaseModel):
    """Coarse intent derived from the raw command text. Never persisted."""
    model_config = {"frozen": True}

    actions: frozenset[str] = Field(default_factory=frozenset)
    tool_groups: frozenset[str] = Field(default_factory=lambda: frozenset({"core"}))
    has_write_intent: bool = False
    entities: tuple[str, ...] = ()
    confidence: float = 0.5
    reasoning: str = ""


# ─── Tool Layer ────────────────────────────────────────────────

def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class ToolCallRequest(WireModel):
    """A tool name plus arguments matching that tool's schema."""
    tool: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    call_id: str = Field(default_factory=new_call_id)


class ToolCallResult(WireModel):
    """Outcome of one tool call, tagged with the originating request."""
    request: ToolCallRequest
    success: bool
    data: Any = None
    error: str | None = None
    error_kind: str | None = None

    def to_record(self) -> ToolCallRecord:
        return ToolCallRecord(
            tool=self.request.tool,
            arguments=dict(self.request.arguments),
            result={"success": self.success, "data": self.data, "error": self.error},
        )


class ToolCallRecord(WireModel):
    """Wire form of one entry in `toolCallsMade`."""
    tool: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] = Field(default_factory=dict)


# ─── Confirmation Layer ────────────────────────────────────────

class ConfirmationRequest(WireModel):
    """Shown to the caller before a mutating tool call may execute."""
    tool: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    question: str
    item_name: str
    change_summary: str


class ConfirmationApproval(WireModel):
    """Caller-supplied approval, honored only on a structural match."""
    decision: Literal["approve", "reject"] = "approve"
    tool: str
    arguments: dict[str, Any] | None = None


# ─── Execution Layer ───────────────────────────────────────────

class ExecutionOptions(WireModel):
    """Per-invocation knobs used by channel adapters to narrow behavior."""
    read_only: bool = False
    allowed_write_tools: list[str] = Field(default_factory=list)
    forced_tool_groups: list[str] | None = None
    disable_deterministic: bool = False
    disable_optimistic_early_exit: bool = False
    timeout_seconds: float | None = Field(default=None, description="Timeout for each model/tool suspension point")
    max_tool_iterations: int | None = None


class ExecutionResult(WireModel):
    """Terminal output of one Command."""
    success: bool
    response: str
    tool_calls_made: list[ToolCallRecord] = Field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None
    confirmation: ConfirmationRequest | None = None
    undo_batch_id: str | None = None
    states: list[str] = Field(default_factory=list)


StreamEventType = Literal[
    "thinking",
    "tool_call",
    "tool_result",
    "response_delta",
    "response",
    "error",
    "done",
]


class StreamEvent(WireModel):
    """One frame of the ordered event stream for a Command."""
    type: StreamEventType
    content: str = ""
    data: Any = None


# ─── Undo Layer ────────────────────────────────────────────────

class UndoRecord(WireModel):
    """One applied mutation recorded as its inverse operation."""
    tool: str
    forward_arguments: dict[str, Any] = Field(default_factory=dict)
    inverse_tool: str
    inverse_arguments: dict[str, Any] = Field(default_factory=dict)
    entity_id: str | None = None


class UndoOutcome(WireModel):
    reverted: int = 0
    failed: list[str] = Field(default_factory=list)


# ─── Channel Layer ─────────────────────────────────────────────

class ContextOption(WireModel):
    id: str
    name: str


class NeedsContext(WireModel):
    """Disambiguation prompt returned instead of guessing a target."""
    type: Literal["project", "tab"]
    options: list[ContextOption] = Field(default_factory=list)
    original_command: str | None = None


class SyncChannelResponse(WireModel):
    """Response shape of the synchronous chat-command surface."""
    success: bool
    response: str
    tool_calls_made: list[ToolCallRecord] = Field(default_factory=list)
    needs_context: NeedsContext | None = None
    error: str | None = None


# ─── Model Layer (Policy) ──────────────────────────────────────

class ModelPolicy(BaseModel):
    """Configuration for Model Layer execution."""
    model_config = {"frozen": True}
    model_name: str
    temperature: float = 0.1
    timeout_seconds: float = 30.0
    max_retries: int = 1
    max_tokens: int = 4096


class ModelCompletion(BaseModel):
    """Either a direct text answer or a list of requested tool calls."""
    model_config = {"frozen": True}
    text: str | None = None
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)
