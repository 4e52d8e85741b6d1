"""
Write-Confirmation Gate.

Builds the human-facing confirmation for a mutating tool call and decides
whether a caller-supplied approval covers a given call. Approvals match on
tool name plus a canonical serialization of the arguments, never on call id.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
from typing import Any, Callable

from shared.models import ConfirmationApproval, ConfirmationRequest

logger = logging.getLogger(__name__)

NameResolver = Callable[[str, str], Any]

ITEM_NAME_KEYS = (
    "name",
    "title",
    "label",
    "tableName",
    "fieldName",
    "projectName",
    "tabName",
    "clientName",
    "docName",
)

ITEM_ID_KEYS = (
    "id",
    "tableId",
    "rowId",
    "fieldId",
    "blockId",
    "taskId",
    "projectId",
    "tabId",
    "docId",
    "clientId",
    "eventId",
    "entityId",
)

CHANGE_EXCLUDE_KEYS = frozenset(ITEM_ID_KEYS) | {"workspaceId", "userId"}

# Ids worth a lookup for a readable item name; key -> entity kind.
_RESOLVABLE_IDS = {"tableId": "table", "tabId": "tab"}


def action_phrase(tool: str) -> str:
    lower = tool.lower()
    for prefix in ("create", "delete", "move", "rename", "archive"):
        if lower.startswith(prefix):
            return prefix
    if lower.startswith("bulk"):
        return "apply changes to"
    return "update"


def truncate(value: str, limit: int = 140) -> str:
    compact = re.sub(r"\s+", " ", value).strip()
    if len(compact) <= limit:
        return compact
    return compact[: limit - 1] + "…"


def preview(key: str, value: Any) -> str:
    if value is None:
        return f"{key}: none"
    if isinstance(value, list):
        return f"{key}: {len(value)} item(s)"
    if isinstance(value, dict):
        keys = list(value.keys())
        if not keys:
            return f"{key}: none"
        suffix = ", ..." if len(keys) > 3 else ""
        return f"{key}: {', '.join(str(k) for k in keys[:3])}{suffix}"
    if isinstance(value, bool):
        return f"{key}: {'yes' if value else 'no'}"
    return f"{key}: {truncate(str(value), 80)}"


def item_name(args: dict[str, Any]) -> str:
    for key in ITEM_NAME_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    for key in ITEM_ID_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return f"{key} {value.strip()}"
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return f"{key} {value}"
    return "this item"


def change_summary(args: dict[str, Any]) -> str:
    entries = [
        preview(key, value)
        for key, value in args.items()
        if key not in CHANGE_EXCLUDE_KEYS and value is not None
    ][:3]
    if entries:
        return truncate(", ".join(entries), 180)
    if args:
        return truncate(f"fields: {', '.join(args.keys())}", 180)
    return "the requested changes"


def stable_serialize(value: Any) -> str:
    """Canonical, key-sorted, deep serialization used for approval matching."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def matches_approval(tool: str, args: dict[str, Any], approval: ConfirmationApproval | None) -> bool:
    if approval is None or approval.decision != "approve":
        return False
    if approval.tool != tool:
        return False
    if approval.arguments is None:
        return True
    return stable_serialize(approval.arguments) == stable_serialize(args)


class WriteConfirmationGate:
    """Builds confirmation requests, resolving ids to names where it can."""

    def __init__(self, name_resolver: NameResolver | None = None):
        self.name_resolver = name_resolver
        self._name_cache: dict[tuple[str, str], str] = {}

    async def _resolve_name(self, kind: str, entity_id: str) -> str | None:
        cache_key = (kind, entity_id)
        cached = self._name_cache.get(cache_key)
        if cached:
            return cached
        if self.name_resolver is None:
            return None
        try:
            if inspect.iscoroutinefunction(self.name_resolver):
                resolved = await self.name_resolver(kind, entity_id)
            else:
                resolved = await asyncio.to_thread(self.name_resolver, kind, entity_id)
        except Exception as e:
            logger.warning("Name lookup for %s %s failed: %s", kind, entity_id, e)
            return None
        if not resolved or not str(resolved).strip():
            return None
        name = str(resolved).strip()
        self._name_cache[cache_key] = name
        return name

    async def build_request(self, tool: str, args: dict[str, Any]) -> ConfirmationRequest:
        name = item_name(args)
        has_explicit_name = any(isinstance(args.get(k), str) and args[k].strip() for k in ITEM_NAME_KEYS)
        if not has_explicit_name:
            for key, kind in _RESOLVABLE_IDS.items():
                entity_id = args.get(key)
                if not isinstance(entity_id, str) or not entity_id.strip():
                    continue
                resolved = await self._resolve_name(kind, entity_id.strip())
                if resolved:
                    name = f'{kind} "{resolved}"'
                    break

        summary = change_summary(args)
        question = f"I'm about to {action_phrase(tool)} {name} with {summary}. Continue?"
        return ConfirmationRequest(
            tool=tool,
            arguments=dict(args),
            question=question,
            item_name=name,
            change_summary=summary,
        )
