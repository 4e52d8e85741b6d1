"""
Tool Registry — maps tool names to schemas, groups and bound executors.

Responsibility:
- Hold every callable domain operation with its argument schema
- Flag mutating tools and describe how to invert them (for undo)
- Validate arguments at the boundary before dispatch
- Execute a tool with the caller's opaque auth context

Executors are supplied by the domain layer; this module never touches data.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from shared.errors import DomainError, ToolTimeout
from shared.models import ExecutionContext, ToolCallRequest, ToolCallResult

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[dict[str, Any], Any], Any]
SnapshotFn = Callable[[dict[str, Any], Any], Any]

# Context ids a tool may declare; filled from the ExecutionContext when absent.
_CONTEXT_ARGS = {
    "workspaceId": "workspace_id",
    "projectId": "current_project_id",
    "tabId": "current_tab_id",
}


class ToolArgs(BaseModel):
    """Base for tool argument schemas. Unknown keys are dropped, not trusted."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


@dataclass
class ToolDefinition:
    name: str
    description: str
    group: str
    args_model: type[ToolArgs]
    operation: str = "search"  # search|get|create|update|delete|restore
    entity: str | None = None
    id_arg: str | None = None
    inverse_tool: str | None = None
    planner_available: bool = True
    executor: ToolExecutor | None = field(default=None, repr=False)
    snapshot: SnapshotFn | None = field(default=None, repr=False)

    @property
    def mutating(self) -> bool:
        return self.operation in {"create", "update", "delete", "restore"}

    def argument_names(self) -> set[str]:
        return {f.alias or name for name, f in self.args_model.model_fields.items()}

    def to_openai_format(self) -> dict[str, Any]:
        schema = self.args_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }


class ToolRegistry:
    """Registry for tool definitions and their bound executors."""

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}
        self._schema_cache: dict[tuple[str, ...], list[dict[str, Any]]] = {}

    def register(self, definition: ToolDefinition) -> None:
        self._tools[definition.name] = definition
        self._schema_cache.clear()
        logger.debug("Registered tool: %s (group=%s, mutating=%s)", definition.name, definition.group, definition.mutating)

    def bind(self, name: str, executor: ToolExecutor, snapshot: SnapshotFn | None = None) -> None:
        """Bind a domain executor (and optional pre-mutation snapshot) to a tool."""
        definition = self._tools.get(name)
        if definition is None:
            raise KeyError(f"Unknown tool '{name}'")
        definition.executor = executor
        if snapshot is not None:
            definition.snapshot = snapshot
        self._schema_cache.clear()

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def is_mutating(self, name: str) -> bool:
        """Unknown tools are treated as mutating so they can never skip the gate."""
        definition = self._tools.get(name)
        return True if definition is None else definition.mutating

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def tools_for_groups(self, groups: Iterable[str]) -> list[ToolDefinition]:
        wanted = set(groups)
        return [
            definition
            for definition in self._tools.values()
            if definition.group in wanted and definition.planner_available and definition.executor is not None
        ]

    def schema_for_groups(self, groups: Iterable[str]) -> list[dict[str, Any]]:
        """OpenAI-format tool schema for the allowed groups, cached per group set."""
        key = tuple(sorted(set(groups)))
        cached = self._schema_cache.get(key)
        if cached is not None:
            return cached
        schema = [definition.to_openai_format() for definition in self.tools_for_groups(key)]
        self._schema_cache[key] = schema
        return schema

    def warm_schemas(self, group_sets: Iterable[Iterable[str]]) -> int:
        return sum(len(self.schema_for_groups(groups)) for groups in group_sets)

    # ─── Boundary validation ───────────────────────────────────

    def normalize_request(self, request: ToolCallRequest, context: ExecutionContext | None = None) -> ToolCallRequest:
        """Fill context ids, validate against the schema, return canonical arguments.

        Raises ValidationError or KeyError; callers turn those into per-call errors.
        """
        definition = self._tools.get(request.tool)
        if definition is None:
            raise KeyError(f"Unknown tool '{request.tool}'")

        arguments = dict(request.arguments or {})
        if context is not None:
            declared = definition.argument_names()
            for arg_name, context_attr in _CONTEXT_ARGS.items():
                if arg_name in declared and arguments.get(arg_name) in (None, ""):
                    value = getattr(context, context_attr, None)
                    if value:
                        arguments[arg_name] = value

        validated = definition.args_model.model_validate(arguments)
        canonical = validated.model_dump(mode="json", by_alias=True, exclude_none=True)
        return request.model_copy(update={"arguments": canonical})

    # ─── Execution ─────────────────────────────────────────────

    async def capture_before(self, request: ToolCallRequest, auth: Any, timeout: float | None = None) -> Any:
        """Best-effort snapshot of the entity a mutation is about to change."""
        definition = self._tools.get(request.tool)
        if definition is None or definition.snapshot is None or not definition.mutating:
            return None
        try:
            return await _invoke(definition.snapshot, request.arguments, auth, timeout=timeout)
        except ToolTimeout:
            raise
        except Exception as e:
            logger.warning("Snapshot before %s failed: %s", request.tool, e)
            return None

    async def execute(self, request: ToolCallRequest, auth: Any, timeout: float | None = None) -> ToolCallResult:
        """Run one tool call. Domain failures become error results; timeouts raise."""
        definition = self._tools.get(request.tool)
        if definition is None:
            return ToolCallResult(
                request=request,
                success=False,
                error=f"Unknown tool '{request.tool}'.",
                error_kind="unknown_tool",
            )
        if definition.executor is None:
            return ToolCallResult(
                request=request,
                success=False,
                error=f"Tool '{request.tool}' is not available.",
                error_kind="unbound_tool",
            )

        try:
            args = definition.args_model.model_validate(request.arguments)
        except ValidationError as e:
            return ToolCallResult(
                request=request,
                success=False,
                error=_format_validation_error(e),
                error_kind="invalid_arguments",
            )

        payload = args.model_dump(mode="json", by_alias=True, exclude_none=True)
        try:
            data = await _invoke(definition.executor, payload, auth, timeout=timeout)
        except ToolTimeout:
            raise
        except DomainError as e:
            logger.info("Tool %s failed: %s", request.tool, e)
            return ToolCallResult(request=request, success=False, error=e.user_message, error_kind=e.kind)
        except Exception as e:
            logger.exception("Tool %s raised unexpectedly", request.tool)
            return ToolCallResult(
                request=request,
                success=False,
                error=f"{request.tool} failed.",
                error_kind="tool_execution",
            )
        return ToolCallResult(request=request, success=True, data=data)


async def _invoke(fn: Callable[..., Any], args: dict[str, Any], auth: Any, timeout: float | None = None) -> Any:
    """Call a sync or async domain callable under an optional timeout."""
    if inspect.iscoroutinefunction(fn):
        awaitable = fn(args, auth)
    else:
        awaitable = asyncio.to_thread(fn, args, auth)
    try:
        if timeout is None:
            result = await awaitable
        else:
            result = await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ToolTimeout(f"Tool call exceeded {timeout}s") from e
    if inspect.isawaitable(result):
        result = await result
    return result


def _format_validation_error(error: ValidationError) -> str:
    parts: list[str] = []
    for item in error.errors()[:3]:
        location = ".".join(str(part) for part in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg', 'invalid')}" if location else str(item.get("msg", "invalid")))
    return "Invalid arguments: " + "; ".join(parts)
