"""Execution Core.

Runs one Command through the state machine:

    CLASSIFYING -> CACHED | MODEL_PLANNING -> CONFIRMING -> EXECUTING_TOOLS
                -> MODEL_RESPONDING -> DONE            (ERROR from any state)

Shortcut plans (prompt cache, deterministic patterns) replace the planning
call only; the response phase follows the same early-exit rules. Mutating
calls pass the write-confirmation gate as a batch before any call in that
batch runs. Each caller approval authorizes one matching call. Progress is
reported through an optional emit callback; the streaming adapter is just
one such callback.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from pydantic import ValidationError

from execution.confirmation import WriteConfirmationGate, matches_approval, stable_serialize
from execution.undo import UndoManager
from intent.classifier import CORE_GROUP, classify
from observability.logger import Observability
from planner.deterministic import match_command
from planner.prompt_cache import PromptCache, normalize
from planner.system_prompt import build_system_prompt
from registry.tool_registry import ToolRegistry
from shared.env import env_float, env_int
from shared.errors import CommandCancelled, CommandError, ModelTimeout
from shared.models import (
    Command,
    ConfirmationApproval,
    ExecutionOptions,
    ExecutionResult,
    Intent,
    Message,
    ModelCompletion,
    ModelPolicy,
    StreamEvent,
    ToolCallRequest,
    ToolCallResult,
    UndoRecord,
    new_call_id,
)
from shared.response_formatter import partial_failure_note, summarize_tool_results

logger = logging.getLogger(__name__)

EmitCallback = Callable[[StreamEvent], Any]

MAX_TOOL_RESULT_CHARS = 8000


class ExecutionState(str, enum.Enum):
    CLASSIFYING = "CLASSIFYING"
    CACHED = "CACHED"
    MODEL_PLANNING = "MODEL_PLANNING"
    CONFIRMING = "CONFIRMING"
    EXECUTING_TOOLS = "EXECUTING_TOOLS"
    MODEL_RESPONDING = "MODEL_RESPONDING"
    DONE = "DONE"
    ERROR = "ERROR"


@dataclass
class _Run:
    """Mutable bookkeeping for one invocation."""

    command: Command
    options: ExecutionOptions
    obs: Observability
    emit: EmitCallback | None
    cancel_event: asyncio.Event | None
    timeout: float
    approvals: list[ConfirmationApproval]
    states: list[str] = field(default_factory=list)
    results: list[ToolCallResult] = field(default_factory=list)
    batch_id: str | None = None
    undo_written: bool = False
    applied: list[UndoRecord] = field(default_factory=list)


class ExecutionCore:
    """Turns a Command into tool calls and a final response."""

    def __init__(
        self,
        registry: ToolRegistry,
        model: Any,
        prompt_cache: PromptCache | None = None,
        undo: UndoManager | None = None,
        confirmation_gate: WriteConfirmationGate | None = None,
        policy: ModelPolicy | None = None,
        max_tool_iterations: int | None = None,
        tool_execution_mode: str | None = None,
        command_timeout: float | None = None,
    ):
        self.registry = registry
        self.model = model
        self.prompt_cache = prompt_cache
        self.undo = undo
        self.confirmation_gate = confirmation_gate or WriteConfirmationGate()
        self.policy = policy or ModelPolicy(
            model_name=os.getenv("PLANNER_MODEL", "llama3.1:8b").strip() or "llama3.1:8b",
            temperature=0.1,
            timeout_seconds=env_float("PLANNER_TIMEOUT_SECONDS", 30.0),
            max_retries=1,
        )
        self.max_tool_iterations = max(1, max_tool_iterations or env_int("MAX_TOOL_ITERATIONS", 5))
        mode = (tool_execution_mode or os.getenv("TOOL_EXECUTION_MODE", "sequential")).strip().lower()
        self.tool_execution_mode = mode if mode in {"sequential", "parallel"} else "sequential"
        self.command_timeout = command_timeout or env_float("COMMAND_TIMEOUT_SECONDS", 60.0)

    # ─── Public entry point ────────────────────────────────────

    async def execute(
        self,
        command: Command,
        options: ExecutionOptions | None = None,
        approvals: Sequence[ConfirmationApproval] | None = None,
        emit: EmitCallback | None = None,
        cancel_event: asyncio.Event | None = None,
        system_preamble: str | None = None,
    ) -> ExecutionResult:
        options = options or ExecutionOptions()
        run = _Run(
            command=command,
            options=options,
            obs=Observability(workspace_id=command.context.workspace_id),
            emit=emit,
            cancel_event=cancel_event,
            timeout=options.timeout_seconds or self.command_timeout,
            approvals=list(approvals or []),
        )
        run.obs.log_event(
            "command_received",
            {"user_id": command.context.user_id, "chars": len(command.text), "read_only": options.read_only},
        )
        try:
            return await self._run(run, system_preamble)
        except CommandError as e:
            level = "WARNING" if isinstance(e, CommandCancelled) else "ERROR"
            run.obs.log_event("command_failed", {"kind": e.kind, "error": str(e)}, level=level)
            return self._failure(run, e.user_message, e.kind)
        except Exception as e:
            logger.exception("Command %s failed unexpectedly", run.obs.command_id)
            run.obs.log_event("command_failed", {"kind": "internal", "error": f"{type(e).__name__}: {e}"}, level="ERROR")
            return self._failure(run, CommandError.default_user_message, "internal")

    # ─── State machine ─────────────────────────────────────────

    async def _run(self, run: _Run, system_preamble: str | None) -> ExecutionResult:
        command = run.command
        options = run.options

        self._enter(run, ExecutionState.CLASSIFYING)
        await self._emit(run, StreamEvent(type="thinking", content="Understanding your request..."))
        intent = classify(command.text)
        allowed_groups = self._allowed_groups(intent, options)
        run.obs.log_event(
            "intent_classified",
            {
                "actions": intent.actions,
                "groups": allowed_groups,
                "write": intent.has_write_intent,
                "confidence": intent.confidence,
            },
        )
        allowed_tools = {definition.name for definition in self.registry.tools_for_groups(allowed_groups)}
        run.applied = self._applied_records(run)

        tools_schema = self.registry.schema_for_groups(allowed_groups)
        messages: list[Message] = [
            Message(role="system", content=build_system_prompt(command.context, preamble=system_preamble)),
            *command.history,
            Message(role="user", content=command.text),
        ]

        # A shortcut plan replaces phase 1 only; phase 2 follows the same rules either way.
        plan = None if options.disable_deterministic else self._shortcut_plan(command.text, allowed_tools, run)
        if plan is not None:
            self._enter(run, ExecutionState.CACHED)
            pending = plan
            planned_text = None
        else:
            self._enter(run, ExecutionState.MODEL_PLANNING)
            await self._emit(run, StreamEvent(type="thinking", content="Planning..."))
            completion = await self._call_model(run, messages, tools_schema)
            if not completion.wants_tools:
                return self._done(run, completion.text or "")
            pending = completion.tool_calls
            planned_text = completion.text

        seen_signatures: set[str] = set()
        iterations = 0
        while True:
            iterations += 1
            messages.append(_assistant_tool_message(pending, planned_text))
            for request in pending:
                seen_signatures.add(_signature(request))

            batch_start = len(run.results)
            outcome = await self._process_batch(run, pending, allowed_tools)
            if outcome is not None:
                return outcome
            batch_results = run.results[batch_start:]
            messages.extend(_tool_result_message(result) for result in batch_results)

            if self._can_exit_early(intent, run):
                run.obs.log_event("optimistic_early_exit", {"tool_calls": len(run.results)})
                return self._done(run, summarize_tool_results(run.results))

            self._enter(run, ExecutionState.MODEL_RESPONDING)
            can_continue = iterations < self.max_tool_iterations
            completion = await self._call_model(run, messages, tools_schema if can_continue else None)
            if not completion.wants_tools or not can_continue:
                break

            repeated = [
                call for call in completion.tool_calls
                if _signature(call) in seen_signatures and not self._is_search(call.tool)
            ]
            if repeated:
                logger.info("Stopping tool loop: model repeated %s", [call.tool for call in repeated])
                run.obs.log_event("duplicate_tool_call", {"tools": [call.tool for call in repeated]}, level="WARNING")
                break
            pending = completion.tool_calls
            planned_text = completion.text

        response = completion.text or summarize_tool_results(run.results)
        return self._done(run, response)

    def _allowed_groups(self, intent: Intent, options: ExecutionOptions) -> set[str]:
        groups = set(intent.tool_groups)
        if options.forced_tool_groups is not None:
            groups &= set(options.forced_tool_groups)
        groups.add(CORE_GROUP)
        return groups

    def _shortcut_plan(self, text: str, allowed_tools: set[str], run: _Run) -> list[ToolCallRequest] | None:
        source = "cache"
        plan = self.prompt_cache.lookup(normalize(text)) if self.prompt_cache is not None else None
        if plan is None:
            source = "pattern"
            plan = match_command(text)
        if not plan:
            return None
        if any(request.tool not in allowed_tools for request in plan):
            run.obs.log_event("shortcut_ignored", {"source": source, "tools": [r.tool for r in plan]})
            return None
        run.obs.log_event("shortcut_hit", {"source": source, "tools": [r.tool for r in plan]})
        return [request.model_copy(update={"call_id": new_call_id()}) for request in plan]

    def _can_exit_early(self, intent: Intent, run: _Run) -> bool:
        if run.options.disable_optimistic_early_exit or intent.has_write_intent:
            return False
        return all(
            result.success and not self.registry.is_mutating(result.request.tool)
            for result in run.results
        )

    def _take_approval(self, run: _Run, request: ToolCallRequest) -> bool:
        """Consume the first approval that matches this call; each approval authorizes one call."""
        for position, approval in enumerate(run.approvals):
            if matches_approval(request.tool, request.arguments, approval):
                del run.approvals[position]
                return True
        return False

    def _applied_records(self, run: _Run) -> list[UndoRecord]:
        """Mutations already committed under the caller's undo batch (an earlier confirmation round)."""
        context = run.command.context
        if self.undo is None or not context.undo_batch_id:
            return []
        try:
            return self.undo.store.list_batch(context.workspace_id, context.undo_batch_id)
        except Exception as e:
            logger.warning("Could not read undo batch %s: %s", context.undo_batch_id, e)
            return []

    def _take_applied(self, run: _Run, request: ToolCallRequest) -> ToolCallResult | None:
        signature = stable_serialize(request.arguments)
        for position, record in enumerate(run.applied):
            if record.tool == request.tool and stable_serialize(record.forward_arguments) == signature:
                del run.applied[position]
                run.batch_id = run.command.context.undo_batch_id
                run.undo_written = True
                run.obs.log_event("mutation_already_applied", {"tool": request.tool, "entity_id": record.entity_id})
                return ToolCallResult(
                    request=request,
                    success=True,
                    data={"id": record.entity_id, "alreadyApplied": True},
                )
        return None

    def _is_search(self, tool: str) -> bool:
        definition = self.registry.get(tool)
        return definition is not None and definition.operation in {"search", "get"}

    # ─── Confirmation + execution of one batch ─────────────────

    async def _process_batch(
        self,
        run: _Run,
        requests: list[ToolCallRequest],
        allowed_tools: set[str],
    ) -> ExecutionResult | None:
        """Gate and execute one batch. Returns a result only when halting."""
        context = run.command.context
        slots: list[ToolCallResult | None] = []
        runnable: list[tuple[int, ToolCallRequest]] = []

        for request in requests:
            if request.tool not in allowed_tools:
                slots.append(_rejected(request, f"Tool '{request.tool}' is not available for this command.", "unknown_tool"))
                continue
            try:
                normalized = self.registry.normalize_request(request, context)
            except KeyError:
                slots.append(_rejected(request, f"Unknown tool '{request.tool}'.", "unknown_tool"))
                continue
            except ValidationError as e:
                slots.append(_rejected(request, f"Invalid arguments for {request.tool}: {e.error_count()} error(s).", "invalid_arguments"))
                continue
            slots.append(None)
            runnable.append((len(slots) - 1, normalized))

        mutating = [(index, request) for index, request in runnable if self.registry.is_mutating(request.tool)]
        if mutating:
            self._enter(run, ExecutionState.CONFIRMING)
        for index, request in mutating:
            applied = self._take_applied(run, request)
            if applied is not None:
                slots[index] = applied
                continue
            if run.options.read_only:
                slots[index] = _rejected(request, f"Read-only mode: {request.tool} was not run.", "read_only")
                continue
            if request.tool in run.options.allowed_write_tools:
                continue
            if self._take_approval(run, request):
                run.obs.log_event("approval_matched", {"tool": request.tool})
                continue
            confirmation = await self.confirmation_gate.build_request(request.tool, request.arguments)
            run.obs.log_event("confirmation_required", {"tool": request.tool, "item": confirmation.item_name})
            self._enter(run, ExecutionState.DONE)
            return ExecutionResult(
                success=True,
                response=confirmation.question,
                tool_calls_made=[result.to_record() for result in run.results],
                confirmation=confirmation,
                undo_batch_id=run.batch_id if run.undo_written else None,
                states=list(run.states),
            )

        to_execute = [(index, request) for index, request in runnable if slots[index] is None]
        if to_execute:
            self._enter(run, ExecutionState.EXECUTING_TOOLS)
            executed = await self._execute_calls(run, [request for _, request in to_execute])
            for (index, _), result in zip(to_execute, executed):
                slots[index] = result

        for result in slots:
            if result is None:
                continue
            run.results.append(result)
            if result.request.call_id not in {request.call_id for _, request in to_execute}:
                await self._emit(run, _tool_result_event(result))
        return None

    async def _execute_calls(self, run: _Run, requests: list[ToolCallRequest]) -> list[ToolCallResult]:
        if self.tool_execution_mode == "parallel" and len(requests) > 1:
            self._check_cancelled(run)
            return list(await asyncio.gather(*(self._execute_one(run, request) for request in requests)))

        results: list[ToolCallResult] = []
        for request in requests:
            self._check_cancelled(run)
            results.append(await self._execute_one(run, request))
        return results

    async def _execute_one(self, run: _Run, request: ToolCallRequest) -> ToolCallResult:
        context = run.command.context
        mutating = self.registry.is_mutating(request.tool)
        await self._emit(
            run,
            StreamEvent(
                type="tool_call",
                content=request.tool,
                data={"tool": request.tool, "arguments": request.arguments, "callId": request.call_id},
            ),
        )

        before = None
        if mutating and self.undo is not None:
            before = await self.registry.capture_before(request, context.auth, timeout=run.timeout)

        with run.obs.measure("tool_call", {"tool": request.tool, "mutating": mutating}):
            result = await self.registry.execute(request, context.auth, timeout=run.timeout)

        if result.success and mutating and self.undo is not None:
            if run.batch_id is None:
                run.batch_id = context.undo_batch_id or f"batch_{uuid.uuid4().hex[:16]}"
            try:
                record = self.undo.record_mutation(run.batch_id, request.tool, request.arguments, result.data, before=before)
            except Exception as e:
                logger.error("Failed to record undo for %s: %s", request.tool, e)
                record = None
            if record is not None:
                run.undo_written = True

        await self._emit(run, _tool_result_event(result))
        return result

    # ─── Model boundary ────────────────────────────────────────

    async def _call_model(self, run: _Run, messages: list[Message], tools: list[dict[str, Any]] | None) -> ModelCompletion:
        self._check_cancelled(run)
        timeout = min(run.timeout, self.policy.timeout_seconds) if self.policy.timeout_seconds else run.timeout
        with run.obs.measure("model_turn", {"messages": len(messages), "tools": len(tools or [])}):
            try:
                return await asyncio.wait_for(self.model.complete(messages, tools, self.policy), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise ModelTimeout(f"Model turn exceeded {timeout}s") from e

    # ─── Helpers ───────────────────────────────────────────────

    def _check_cancelled(self, run: _Run) -> None:
        if run.cancel_event is not None and run.cancel_event.is_set():
            raise CommandCancelled("Consumer disconnected")

    def _enter(self, run: _Run, state: ExecutionState) -> None:
        run.states.append(state.value)
        run.obs.log_event("state_transition", {"state": state.value}, level="DEBUG")

    async def _emit(self, run: _Run, event: StreamEvent) -> None:
        if run.emit is None:
            return
        try:
            maybe_result = run.emit(event)
            if inspect.isawaitable(maybe_result):
                await maybe_result
        except Exception as exc:
            logger.warning("Failed to emit %s event: %s", event.type, exc)

    def _done(self, run: _Run, response: str) -> ExecutionResult:
        note = partial_failure_note(run.results)
        if note:
            response = f"{response}\n\n{note}".strip() if response else note
        self._enter(run, ExecutionState.DONE)
        run.obs.log_event("command_completed", {"tool_calls": len(run.results), "states": run.states})
        return ExecutionResult(
            success=True,
            response=response,
            tool_calls_made=[result.to_record() for result in run.results],
            undo_batch_id=run.batch_id if run.undo_written else None,
            states=list(run.states),
        )

    def _failure(self, run: _Run, message: str, kind: str) -> ExecutionResult:
        self._enter(run, ExecutionState.ERROR)
        return ExecutionResult(
            success=False,
            response=message,
            tool_calls_made=[result.to_record() for result in run.results],
            error=message,
            error_kind=kind,
            undo_batch_id=run.batch_id if run.undo_written else None,
            states=list(run.states),
        )


def _signature(request: ToolCallRequest) -> str:
    return f"{request.tool}:{stable_serialize(request.arguments)}"


def _rejected(request: ToolCallRequest, error: str, kind: str) -> ToolCallResult:
    return ToolCallResult(request=request, success=False, error=error, error_kind=kind)


def _tool_result_event(result: ToolCallResult) -> StreamEvent:
    return StreamEvent(
        type="tool_result",
        content=result.request.tool,
        data={
            "tool": result.request.tool,
            "callId": result.request.call_id,
            "success": result.success,
            "error": result.error,
        },
    )


def _assistant_tool_message(tool_calls: list[ToolCallRequest], text: str | None) -> Message:
    return Message(
        role="assistant",
        content=text,
        tool_calls=[
            {
                "id": call.call_id,
                "type": "function",
                "function": {"name": call.tool, "arguments": json.dumps(call.arguments)},
            }
            for call in tool_calls
        ],
    )


def _tool_result_message(result: ToolCallResult) -> Message:
    payload = {"success": result.success, "data": result.data, "error": result.error}
    content = json.dumps(payload, default=str, ensure_ascii=False)
    if len(content) > MAX_TOOL_RESULT_CHARS:
        content = content[:MAX_TOOL_RESULT_CHARS] + "...(truncated)"
    return Message(role="tool", content=content, tool_call_id=result.request.call_id, name=result.request.tool)
