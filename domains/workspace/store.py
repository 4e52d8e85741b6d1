"""
Workspace domain layer — SQLite-backed entities behind the tool registry.

Every executor has the registry signature `(args, auth) -> result` and checks
that `auth` belongs to the workspace named in the arguments. Entities share
one table; per-kind attributes live in a JSON column keyed by the camelCase
argument names the tools use, so snapshots line up with update arguments.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from functools import partial
from typing import Any

from registry.tool_registry import ToolRegistry
from shared.errors import DomainError, Unauthorized

logger = logging.getLogger(__name__)

# Argument keys stored in columns rather than in the JSON payload.
_COLUMN_KEYS = frozenset({"workspaceId", "projectId", "limit", "query"})
_ID_KEYS = frozenset({"taskId", "tabId", "tableId", "rowId", "docId", "eventId", "clientId", "entityId"})

# Child kind -> (argument naming the parent, parent kind).
_PARENTS = {
    "tab": ("projectId", "project"),
    "row": ("tableId", "table"),
}


@dataclass(frozen=True)
class WorkspaceAuth:
    """Opaque auth context handed to tool executors."""

    workspace_id: str
    user_id: str
    user_name: str | None = None
    workspace_name: str | None = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id(kind: str) -> str:
    return f"{kind}_{uuid.uuid4().hex[:12]}"


class WorkspaceStore:
    """Reference data store for tasks, projects, tabs, tables, docs, timeline events and clients."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or os.getenv("WORKSPACE_DB_PATH", "workspace.db")
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level="DEFERRED")
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_db()

    def _init_db(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS workspaces (
                workspace_id TEXT PRIMARY KEY,
                name TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS workspace_members (
                workspace_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                PRIMARY KEY (workspace_id, user_id)
            );
            CREATE TABLE IF NOT EXISTS chat_identities (
                team_id TEXT NOT NULL,
                external_user_id TEXT NOT NULL,
                workspace_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                PRIMARY KEY (team_id, external_user_id)
            );
            CREATE TABLE IF NOT EXISTS entities (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                project_id TEXT,
                name TEXT NOT NULL DEFAULT '',
                data_json TEXT NOT NULL,
                archived INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_entities_kind ON entities(workspace_id, kind);
            """
        )
        self._conn.commit()

    # ─── Tenancy ───────────────────────────────────────────────

    def create_workspace(self, workspace_id: str, name: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO workspaces (workspace_id, name) VALUES (?, ?)",
                (workspace_id, name),
            )
            self._conn.commit()

    def add_member(self, workspace_id: str, user_id: str, name: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO workspace_members (workspace_id, user_id, name) VALUES (?, ?, ?)",
                (workspace_id, user_id, name),
            )
            self._conn.commit()

    def link_chat_identity(self, team_id: str, external_user_id: str, workspace_id: str, user_id: str) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO chat_identities (team_id, external_user_id, workspace_id, user_id)
                VALUES (?, ?, ?, ?)
                """,
                (team_id, external_user_id, workspace_id, user_id),
            )
            self._conn.commit()

    def authorize(self, workspace_id: str, user_id: str) -> WorkspaceAuth:
        """Membership check. Raises Unauthorized for unknown tenants or users."""
        if not workspace_id or not user_id:
            raise Unauthorized("Missing workspace or user id")
        with self._lock:
            row = self._conn.execute(
                """
                SELECT m.name AS user_name, w.name AS workspace_name
                FROM workspace_members m
                JOIN workspaces w ON w.workspace_id = m.workspace_id
                WHERE m.workspace_id = ? AND m.user_id = ?
                """,
                (workspace_id, user_id),
            ).fetchone()
        if row is None:
            raise Unauthorized(f"User {user_id} is not a member of workspace {workspace_id}")
        return WorkspaceAuth(
            workspace_id=workspace_id,
            user_id=user_id,
            user_name=row["user_name"],
            workspace_name=row["workspace_name"],
        )

    def resolve_chat_identity(self, team_id: str, external_user_id: str) -> WorkspaceAuth:
        with self._lock:
            row = self._conn.execute(
                "SELECT workspace_id, user_id FROM chat_identities WHERE team_id = ? AND external_user_id = ?",
                (team_id, external_user_id),
            ).fetchone()
        if row is None:
            raise Unauthorized(
                f"Chat user {external_user_id} in team {team_id} is not linked",
                user_message="Please link your chat account to your workspace first.",
            )
        return self.authorize(row["workspace_id"], row["user_id"])

    def list_projects(self, workspace_id: str, limit: int = 10) -> list[dict[str, str]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id, name FROM entities
                WHERE workspace_id = ? AND kind = 'project' AND archived = 0
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (workspace_id, limit),
            ).fetchall()
        return [{"id": row["id"], "name": row["name"]} for row in rows]

    def resolve_name(self, kind: str, entity_id: str) -> str | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT name FROM entities WHERE id = ? AND kind = ?",
                (entity_id, kind),
            ).fetchone()
        return row["name"] if row and row["name"] else None

    # ─── Row helpers ───────────────────────────────────────────

    def _check_auth(self, args: dict[str, Any], auth: Any) -> str:
        workspace_id = str(args.get("workspaceId") or "")
        if not isinstance(auth, WorkspaceAuth) or auth.workspace_id != workspace_id:
            raise DomainError(
                f"Auth context does not cover workspace {workspace_id!r}",
                user_message="You do not have access to that workspace.",
            )
        return workspace_id

    def _to_entity(self, row: sqlite3.Row) -> dict[str, Any]:
        entity: dict[str, Any] = {"id": row["id"], "kind": row["kind"]}
        if row["project_id"]:
            entity["projectId"] = row["project_id"]
        entity.update(json.loads(row["data_json"]))
        entity["archived"] = bool(row["archived"])
        return entity

    def _fetch(self, workspace_id: str, entity_id: str, kind: str | None = None) -> sqlite3.Row | None:
        if kind is None:
            return self._conn.execute(
                "SELECT * FROM entities WHERE workspace_id = ? AND id = ?",
                (workspace_id, entity_id),
            ).fetchone()
        return self._conn.execute(
            "SELECT * FROM entities WHERE workspace_id = ? AND id = ? AND kind = ?",
            (workspace_id, entity_id, kind),
        ).fetchone()

    def _require(self, workspace_id: str, entity_id: str, kind: str) -> sqlite3.Row:
        row = self._fetch(workspace_id, entity_id, kind)
        if row is None:
            raise DomainError(
                f"{kind} {entity_id} not found in {workspace_id}",
                user_message=f"That {kind.replace('_', ' ')} no longer exists.",
            )
        return row

    def _member_names(self, workspace_id: str) -> dict[str, str]:
        rows = self._conn.execute(
            "SELECT name FROM workspace_members WHERE workspace_id = ?",
            (workspace_id,),
        ).fetchall()
        return {row["name"].lower(): row["name"] for row in rows}

    def _resolve_assignees(self, workspace_id: str, names: list[str]) -> list[str]:
        members = self._member_names(workspace_id)
        resolved: list[str] = []
        for name in names:
            key = name.strip().lower()
            match = members.get(key) or next((full for low, full in members.items() if low.startswith(key)), None)
            resolved.append(match or name.strip())
        return resolved

    # ─── Executors ─────────────────────────────────────────────

    def search(self, kind: str, args: dict[str, Any], auth: Any) -> list[dict[str, Any]]:
        workspace_id = self._check_auth(args, auth)
        limit = int(args.get("limit") or 20)
        if kind == "member":
            return self._search_members(workspace_id, args.get("query"), limit)

        sql = "SELECT * FROM entities WHERE workspace_id = ? AND kind = ? AND archived = 0"
        params: list[Any] = [workspace_id, kind]
        if args.get("projectId") and kind != "project":
            sql += " AND project_id = ?"
            params.append(args["projectId"])
        if args.get("query") and kind != "row":
            sql += " AND name LIKE ?"
            params.append(f"%{args['query']}%")
        sql += " ORDER BY created_at ASC"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()

        entities = [self._to_entity(row) for row in rows]
        if kind == "row" and args.get("query"):
            needle = str(args["query"]).lower()
            entities = [e for e in entities if needle in json.dumps(e.get("data", {})).lower()]
        if kind == "task":
            entities = [e for e in entities if _task_matches(e, args)]
        return entities[:limit]

    def _search_members(self, workspace_id: str, query: Any, limit: int) -> list[dict[str, Any]]:
        sql = "SELECT user_id, name FROM workspace_members WHERE workspace_id = ?"
        params: list[Any] = [workspace_id]
        if query:
            sql += " AND name LIKE ?"
            params.append(f"%{query}%")
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY name LIMIT ?", [*params, limit]).fetchall()
        return [{"id": row["user_id"], "name": row["name"]} for row in rows]

    def search_all(self, args: dict[str, Any], auth: Any) -> list[dict[str, Any]]:
        workspace_id = self._check_auth(args, auth)
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id, kind, name FROM entities
                WHERE workspace_id = ? AND archived = 0 AND name LIKE ?
                ORDER BY kind, name LIMIT ?
                """,
                (workspace_id, f"%{args.get('query', '')}%", int(args.get("limit") or 10)),
            ).fetchall()
        return [{"id": row["id"], "kind": row["kind"], "name": row["name"]} for row in rows]

    def get_entity(self, args: dict[str, Any], auth: Any) -> dict[str, Any]:
        workspace_id = self._check_auth(args, auth)
        with self._lock:
            row = self._fetch(workspace_id, str(args.get("entityId")))
        if row is None:
            raise DomainError(f"Entity {args.get('entityId')} not found", user_message="That item does not exist.")
        return self._to_entity(row)

    def create(self, kind: str, args: dict[str, Any], auth: Any) -> dict[str, Any]:
        workspace_id = self._check_auth(args, auth)
        data = {k: v for k, v in args.items() if k not in _COLUMN_KEYS}
        project_id = args.get("projectId")
        entity_id = _new_id(kind)
        now = _now()

        with self._lock:
            if project_id and kind != "project":
                self._require(workspace_id, project_id, "project")
            parent = _PARENTS.get(kind)
            if parent and parent[0] != "projectId":
                self._require(workspace_id, str(args.get(parent[0])), parent[1])
            if kind == "task" and data.get("assignees"):
                data["assignees"] = self._resolve_assignees(workspace_id, data["assignees"])
            if kind == "task":
                data.setdefault("status", "todo")
            name = str(data.get("title") or data.get("name") or "")
            self._conn.execute(
                """
                INSERT INTO entities (id, workspace_id, kind, project_id, name, data_json, archived, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (entity_id, workspace_id, kind, project_id, name, json.dumps(data, ensure_ascii=False), now, now),
            )
            self._conn.commit()
            row = self._fetch(workspace_id, entity_id)
        logger.info("Created %s %s in %s", kind, entity_id, workspace_id)
        return self._to_entity(row)

    def update(self, kind: str, id_arg: str, args: dict[str, Any], auth: Any) -> dict[str, Any]:
        workspace_id = self._check_auth(args, auth)
        entity_id = str(args.get(id_arg))
        changes = {k: v for k, v in args.items() if k not in _COLUMN_KEYS and k not in _ID_KEYS and k != id_arg}
        with self._lock:
            row = self._require(workspace_id, entity_id, kind)
            data = json.loads(row["data_json"])
            if kind == "task" and changes.get("assignees"):
                changes["assignees"] = self._resolve_assignees(workspace_id, changes["assignees"])
            data.update(changes)
            name = str(data.get("title") or data.get("name") or row["name"])
            self._conn.execute(
                "UPDATE entities SET data_json = ?, name = ?, updated_at = ? WHERE id = ?",
                (json.dumps(data, ensure_ascii=False), name, _now(), entity_id),
            )
            self._conn.commit()
            row = self._fetch(workspace_id, entity_id)
        return self._to_entity(row)

    def archive(self, kind: str, id_arg: str, args: dict[str, Any], auth: Any) -> dict[str, Any]:
        workspace_id = self._check_auth(args, auth)
        entity_id = str(args.get(id_arg))
        with self._lock:
            self._require(workspace_id, entity_id, kind)
            self._conn.execute("UPDATE entities SET archived = 1, updated_at = ? WHERE id = ?", (_now(), entity_id))
            self._conn.commit()
            row = self._fetch(workspace_id, entity_id)
        return self._to_entity(row)

    def delete(self, kind: str, id_arg: str, args: dict[str, Any], auth: Any) -> dict[str, Any]:
        workspace_id = self._check_auth(args, auth)
        entity_id = str(args.get(id_arg))
        with self._lock:
            row = self._require(workspace_id, entity_id, kind)
            self._conn.execute("DELETE FROM entities WHERE id = ?", (entity_id,))
            self._conn.commit()
        logger.info("Deleted %s %s in %s", kind, entity_id, workspace_id)
        return {"id": entity_id, "name": row["name"], "deleted": True}

    def restore(self, args: dict[str, Any], auth: Any) -> dict[str, Any]:
        """Re-insert (or overwrite) an entity from a snapshot."""
        workspace_id = self._check_auth(args, auth)
        snapshot = dict(args.get("data") or {})
        entity_id = str(args.get("entityId"))
        kind = str(args.get("entity") or snapshot.get("kind") or "")
        if not kind:
            raise DomainError("Restore without entity kind", user_message="That item cannot be restored.")
        project_id = snapshot.pop("projectId", None)
        archived = bool(snapshot.pop("archived", False))
        snapshot.pop("id", None)
        snapshot.pop("kind", None)
        name = str(snapshot.get("title") or snapshot.get("name") or "")
        now = _now()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO entities (id, workspace_id, kind, project_id, name, data_json, archived, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    project_id=excluded.project_id,
                    name=excluded.name,
                    data_json=excluded.data_json,
                    archived=excluded.archived,
                    updated_at=excluded.updated_at
                """,
                (entity_id, workspace_id, kind, project_id, name, json.dumps(snapshot, ensure_ascii=False), int(archived), now, now),
            )
            self._conn.commit()
            row = self._fetch(workspace_id, entity_id)
        return self._to_entity(row)

    def snapshot(self, kind: str, id_arg: str, args: dict[str, Any], auth: Any) -> dict[str, Any] | None:
        workspace_id = self._check_auth(args, auth)
        with self._lock:
            row = self._fetch(workspace_id, str(args.get(id_arg)), kind)
        return self._to_entity(row) if row is not None else None

    # ─── Registry wiring ───────────────────────────────────────

    def bind_to(self, registry: ToolRegistry) -> None:
        """Bind an executor (and a snapshot for update/delete) to every catalog tool."""
        for name in registry.tool_names:
            definition = registry.get(name)
            op = definition.operation
            kind = definition.entity
            if name == "searchAll":
                registry.bind(name, self.search_all)
            elif op == "get":
                registry.bind(name, self.get_entity)
            elif op == "restore":
                registry.bind(name, self.restore)
            elif op == "search" and kind:
                registry.bind(name, partial(self.search, kind))
            elif op == "create" and kind:
                registry.bind(name, partial(self.create, kind))
            elif op in {"update", "delete"} and kind and definition.id_arg:
                if name.startswith("archive"):
                    executor = partial(self.archive, kind, definition.id_arg)
                elif op == "update":
                    executor = partial(self.update, kind, definition.id_arg)
                else:
                    executor = partial(self.delete, kind, definition.id_arg)
                registry.bind(name, executor, snapshot=partial(self.snapshot, kind, definition.id_arg))
            else:
                logger.warning("No workspace executor for tool %s", name)

    def close(self) -> None:
        self._conn.close()


def _task_matches(task: dict[str, Any], args: dict[str, Any]) -> bool:
    if args.get("status") and task.get("status") != args["status"]:
        return False
    if args.get("priority") and task.get("priority") != args["priority"]:
        return False
    if args.get("assignee"):
        wanted = str(args["assignee"]).lower()
        if not any(wanted in str(name).lower() for name in task.get("assignees") or []):
            return False
    if args.get("overdue"):
        due = task.get("dueDate")
        if not due or task.get("status") == "done":
            return False
        try:
            if date.fromisoformat(str(due)[:10]) >= date.today():
                return False
        except ValueError:
            return False
    return True
