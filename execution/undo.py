"""
Undo Subsystem — records inverse operations for applied mutations and
replays them on request.

Inverse rules come from the tool catalog:
- create  -> the entity's delete tool, by the id the create returned
- update  -> the same update tool, with values captured before the change
- delete  -> restoreEntity, from the snapshot captured before the delete
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from execution.undo_store import UndoStore
from observability.logger import Observability
from registry.tool_registry import ToolDefinition, ToolRegistry
from shared.models import ToolCallRequest, UndoOutcome, UndoRecord

logger = logging.getLogger(__name__)

RESTORE_TOOL = "restoreEntity"

# Keys that identify the target rather than describe a change.
_IDENTITY_KEYS = frozenset({"workspaceId", "projectId", "tabId"})


def extract_entity_id(data: Any, entity: str | None = None) -> str | None:
    """Find the created entity's id in a tool result."""
    if not isinstance(data, dict):
        return None
    if isinstance(data.get("id"), (str, int)):
        return str(data["id"])
    for key in filter(None, (entity, "entity", "item", "record")):
        nested = data.get(key)
        if isinstance(nested, dict) and isinstance(nested.get("id"), (str, int)):
            return str(nested["id"])
    return None


class UndoManager:
    def __init__(self, registry: ToolRegistry, store: UndoStore):
        self.registry = registry
        self.store = store

    def build_record(
        self,
        tool: str,
        args: dict[str, Any],
        result: Any,
        before: Any = None,
    ) -> UndoRecord | None:
        definition = self.registry.get(tool)
        if definition is None or not definition.mutating or not definition.inverse_tool:
            return None

        workspace_id = args.get("workspaceId")
        if definition.inverse_tool == RESTORE_TOOL:
            return self._restore_record(definition, args, before)
        if definition.operation == "create":
            return self._delete_record(definition, args, result, workspace_id)
        if definition.operation == "update":
            return self._revert_update_record(definition, args, before, workspace_id)
        return None

    def _delete_record(self, definition: ToolDefinition, args: dict[str, Any], result: Any, workspace_id: Any) -> UndoRecord | None:
        entity_id = extract_entity_id(result, definition.entity)
        inverse = self.registry.get(definition.inverse_tool or "")
        if entity_id is None or inverse is None or not inverse.id_arg:
            logger.warning("Cannot record undo for %s: no id in result", definition.name)
            return None
        return UndoRecord(
            tool=definition.name,
            forward_arguments=dict(args),
            inverse_tool=inverse.name,
            inverse_arguments={"workspaceId": workspace_id, inverse.id_arg: entity_id},
            entity_id=entity_id,
        )

    def _revert_update_record(self, definition: ToolDefinition, args: dict[str, Any], before: Any, workspace_id: Any) -> UndoRecord | None:
        entity_id = args.get(definition.id_arg or "")
        if not isinstance(before, dict) or not entity_id:
            logger.warning("Cannot record undo for %s: no snapshot of previous values", definition.name)
            return None
        inverse_arguments: dict[str, Any] = {"workspaceId": workspace_id, definition.id_arg: entity_id}
        for key in args:
            if key in _IDENTITY_KEYS or key == definition.id_arg:
                continue
            inverse_arguments[key] = before.get(key)
        return UndoRecord(
            tool=definition.name,
            forward_arguments=dict(args),
            inverse_tool=definition.inverse_tool or definition.name,
            inverse_arguments=inverse_arguments,
            entity_id=str(entity_id),
        )

    def _restore_record(self, definition: ToolDefinition, args: dict[str, Any], before: Any) -> UndoRecord | None:
        entity_id = args.get(definition.id_arg or "")
        if not isinstance(before, dict) or not entity_id:
            logger.warning("Cannot record undo for %s: no snapshot to restore", definition.name)
            return None
        return UndoRecord(
            tool=definition.name,
            forward_arguments=dict(args),
            inverse_tool=RESTORE_TOOL,
            inverse_arguments={
                "workspaceId": args.get("workspaceId"),
                "entityId": str(entity_id),
                "entity": definition.entity,
                "data": before,
            },
            entity_id=str(entity_id),
        )

    def record_mutation(
        self,
        batch_id: str,
        tool: str,
        args: dict[str, Any],
        result: Any,
        before: Any = None,
    ) -> UndoRecord | None:
        """Persist the inverse of one successful mutation under a batch."""
        record = self.build_record(tool, args, result, before)
        if record is None:
            return None
        workspace_id = str(args.get("workspaceId") or "")
        self.store.append(batch_id, workspace_id, record)
        return record

    async def undo(
        self,
        workspace_id: str,
        batch_ids: Iterable[str],
        auth: Any,
        timeout: float | None = None,
    ) -> UndoOutcome:
        """Replay inverses: newest first within a batch, batches in the given order.

        Never raises. Inverses that fail are reported by forward tool name.
        """
        obs = Observability(workspace_id=workspace_id)
        reverted = 0
        failed: list[str] = []

        for batch_id in batch_ids:
            try:
                records = self.store.pop_batch(workspace_id, batch_id)
            except Exception as e:
                logger.error("Undo store read failed for batch %s: %s", batch_id, e)
                continue

            for record in reversed(records):
                request = ToolCallRequest(tool=record.inverse_tool, arguments=record.inverse_arguments)
                try:
                    with obs.measure("undo_replay", {"batch_id": batch_id, "tool": record.tool, "inverse": record.inverse_tool}):
                        result = await self.registry.execute(request, auth, timeout=timeout)
                except Exception as e:
                    logger.warning("Undo of %s (%s) raised: %s", record.tool, record.entity_id, e)
                    failed.append(record.tool)
                    continue
                if result.success:
                    reverted += 1
                else:
                    logger.info("Undo of %s (%s) failed: %s", record.tool, record.entity_id, result.error)
                    failed.append(record.tool)

        obs.log_event("undo_complete", {"reverted": reverted, "failed": failed})
        return UndoOutcome(reverted=reverted, failed=failed)
