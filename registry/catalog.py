"""
Default tool catalog: argument schemas, groups, and undo inverses.

Schemas are explicit records validated at the registry boundary. Field names
are snake_case in Python and camelCase on the wire (what the model sees).
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field, field_validator

from registry.tool_registry import ToolArgs, ToolDefinition, ToolRegistry

TaskStatus = Literal["todo", "in-progress", "blocked", "done"]
TaskPriority = Literal["low", "medium", "high", "urgent"]


def _lower(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


# ─── Search / read ─────────────────────────────────────────────

class SearchArgs(ToolArgs):
    workspace_id: str
    query: str | None = Field(default=None, description="Free-text filter on name/title")
    project_id: str | None = None
    limit: int = Field(default=20, ge=1, le=100)


class SearchTasksArgs(SearchArgs):
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    assignee: str | None = Field(default=None, description="Assignee name")
    overdue: bool | None = Field(default=None, description="Only tasks past their due date and not done")
    project_id: str | None = Field(default=None, description="Restrict to one project; omit for the whole workspace")

    @field_validator("status", "priority", mode="before")
    @classmethod
    def lowercase_enums(cls, value: Any) -> Any:
        return _lower(value)


class SearchAllArgs(ToolArgs):
    workspace_id: str
    query: str
    limit: int = Field(default=10, ge=1, le=50)


class GetEntityArgs(ToolArgs):
    workspace_id: str
    entity_id: str


# ─── Tasks ─────────────────────────────────────────────────────

class CreateTaskArgs(ToolArgs):
    workspace_id: str
    project_id: str | None = None
    title: str = Field(..., min_length=1)
    assignees: list[str] | None = Field(default=None, description="Assignee NAMES, resolved server-side")
    tags: list[str] | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    description: str | None = None
    due_date: str | None = Field(default=None, description="YYYY-MM-DD")

    @field_validator("status", "priority", mode="before")
    @classmethod
    def lowercase_enums(cls, value: Any) -> Any:
        return _lower(value)


class UpdateTaskArgs(ToolArgs):
    workspace_id: str
    task_id: str
    title: str | None = None
    assignees: list[str] | None = None
    tags: list[str] | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    description: str | None = None
    due_date: str | None = None

    @field_validator("status", "priority", mode="before")
    @classmethod
    def lowercase_enums(cls, value: Any) -> Any:
        return _lower(value)


class DeleteTaskArgs(ToolArgs):
    workspace_id: str
    task_id: str


# ─── Projects / tabs ───────────────────────────────────────────

class CreateProjectArgs(ToolArgs):
    workspace_id: str
    name: str = Field(..., min_length=1)
    client_name: str | None = None
    status: str | None = None
    due_date: str | None = None


class UpdateProjectArgs(ToolArgs):
    workspace_id: str
    project_id: str
    name: str | None = None
    status: str | None = None
    due_date: str | None = None


class DeleteProjectArgs(ToolArgs):
    workspace_id: str
    project_id: str


class CreateTabArgs(ToolArgs):
    workspace_id: str
    project_id: str
    name: str = Field(..., min_length=1)


class UpdateTabArgs(ToolArgs):
    workspace_id: str
    tab_id: str
    name: str | None = None


class DeleteTabArgs(ToolArgs):
    workspace_id: str
    tab_id: str


# ─── Tables ────────────────────────────────────────────────────

class CreateTableArgs(ToolArgs):
    workspace_id: str
    project_id: str | None = None
    tab_id: str | None = None
    title: str = Field(..., min_length=1)
    fields: list[dict[str, Any]] | None = Field(default=None, description="Field definitions: [{name, type}]")


class UpdateTableArgs(ToolArgs):
    workspace_id: str
    table_id: str
    title: str | None = None


class DeleteTableArgs(ToolArgs):
    workspace_id: str
    table_id: str


class CreateRowArgs(ToolArgs):
    workspace_id: str
    table_id: str
    data: dict[str, Any] = Field(default_factory=dict, description="Cell values keyed by field name")


class UpdateRowArgs(ToolArgs):
    workspace_id: str
    row_id: str
    data: dict[str, Any] | None = None


class DeleteRowArgs(ToolArgs):
    workspace_id: str
    row_id: str


# ─── Docs ──────────────────────────────────────────────────────

class CreateDocArgs(ToolArgs):
    workspace_id: str
    project_id: str | None = None
    title: str = Field(..., min_length=1)
    content: str | None = None


class UpdateDocArgs(ToolArgs):
    workspace_id: str
    doc_id: str
    title: str | None = None
    content: str | None = None


class DocIdArgs(ToolArgs):
    workspace_id: str
    doc_id: str


# ─── Timeline ──────────────────────────────────────────────────

class CreateTimelineEventArgs(ToolArgs):
    workspace_id: str
    project_id: str | None = None
    title: str = Field(..., min_length=1)
    start_date: str | None = None
    end_date: str | None = None
    status: str | None = None


class UpdateTimelineEventArgs(ToolArgs):
    workspace_id: str
    event_id: str
    title: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    status: str | None = None


class DeleteTimelineEventArgs(ToolArgs):
    workspace_id: str
    event_id: str


# ─── Clients ───────────────────────────────────────────────────

class CreateClientArgs(ToolArgs):
    workspace_id: str
    name: str = Field(..., min_length=1)
    email: str | None = None


class UpdateClientArgs(ToolArgs):
    workspace_id: str
    client_id: str
    name: str | None = None
    email: str | None = None


class DeleteClientArgs(ToolArgs):
    workspace_id: str
    client_id: str


# ─── Internal (undo only) ──────────────────────────────────────

class RestoreEntityArgs(ToolArgs):
    workspace_id: str
    entity_id: str
    entity: str
    data: dict[str, Any] = Field(default_factory=dict)


def _search(name: str, entity: str | None, description: str, args_model: type[ToolArgs] = SearchArgs) -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description=description,
        group="core",
        args_model=args_model,
        operation="search",
        entity=entity,
    )


def _crud(
    entity: str,
    group: str,
    id_arg: str,
    create: tuple[str, type[ToolArgs], str],
    update: tuple[str, type[ToolArgs], str],
    delete: tuple[str, type[ToolArgs], str],
) -> list[ToolDefinition]:
    create_name, create_model, create_desc = create
    update_name, update_model, update_desc = update
    delete_name, delete_model, delete_desc = delete
    return [
        ToolDefinition(
            name=create_name,
            description=create_desc,
            group=group,
            args_model=create_model,
            operation="create",
            entity=entity,
            inverse_tool=delete_name,
        ),
        ToolDefinition(
            name=update_name,
            description=update_desc,
            group=group,
            args_model=update_model,
            operation="update",
            entity=entity,
            id_arg=id_arg,
            inverse_tool=update_name,
        ),
        ToolDefinition(
            name=delete_name,
            description=delete_desc,
            group=group,
            args_model=delete_model,
            operation="delete",
            entity=entity,
            id_arg=id_arg,
            inverse_tool="restoreEntity",
        ),
    ]


def default_tool_definitions() -> list[ToolDefinition]:
    definitions: list[ToolDefinition] = [
        _search("searchTasks", "task", "SEARCH tasks (read-only). Filters: query, status, priority, assignee, overdue.", SearchTasksArgs),
        _search("searchProjects", "project", "SEARCH projects by name (read-only)."),
        _search("searchTabs", "tab", "SEARCH tabs/pages by name (read-only)."),
        _search("searchTables", "table", "SEARCH tables by title (read-only)."),
        _search("searchTableRows", "row", "SEARCH table rows by cell text (read-only)."),
        _search("searchDocs", "doc", "SEARCH documents by title (read-only)."),
        _search("searchTimelineEvents", "timeline_event", "SEARCH timeline events (read-only)."),
        _search("searchClients", "client", "SEARCH clients by name (read-only)."),
        _search("searchWorkspaceMembers", "member", "SEARCH workspace members by name (read-only)."),
        _search("searchAll", None, "SEARCH across ALL entity types at once (read-only).", SearchAllArgs),
        ToolDefinition(
            name="getEntityById",
            description="GET one entity by id (read-only).",
            group="core",
            args_model=GetEntityArgs,
            operation="get",
        ),
    ]
    definitions += _crud(
        "task",
        "task",
        "taskId",
        ("createTaskItem", CreateTaskArgs, "CREATE a task. Pass assignee NAMES directly; tasks land in the current project."),
        ("updateTaskItem", UpdateTaskArgs, "UPDATE an existing task's properties (title, status, priority, assignees, tags, dates)."),
        ("deleteTaskItem", DeleteTaskArgs, "DELETE a task by id."),
    )
    definitions += _crud(
        "project",
        "project",
        "projectId",
        ("createProject", CreateProjectArgs, "CREATE a project."),
        ("updateProject", UpdateProjectArgs, "UPDATE a project's name, status or due date."),
        ("deleteProject", DeleteProjectArgs, "DELETE a project by id."),
    )
    definitions += _crud(
        "tab",
        "tab",
        "tabId",
        ("createTab", CreateTabArgs, "CREATE a tab (page) inside a project."),
        ("updateTab", UpdateTabArgs, "RENAME or update a tab."),
        ("deleteTab", DeleteTabArgs, "DELETE a tab by id."),
    )
    definitions += _crud(
        "table",
        "table",
        "tableId",
        ("createTable", CreateTableArgs, "CREATE a table, optionally with field definitions."),
        ("updateTable", UpdateTableArgs, "UPDATE a table's title."),
        ("deleteTable", DeleteTableArgs, "DELETE a table by id."),
    )
    definitions += _crud(
        "row",
        "table",
        "rowId",
        ("createRow", CreateRowArgs, "INSERT one row into a table."),
        ("updateRow", UpdateRowArgs, "UPDATE cell values of a row."),
        ("deleteRow", DeleteRowArgs, "DELETE a row by id."),
    )
    definitions += _crud(
        "doc",
        "doc",
        "docId",
        ("createDoc", CreateDocArgs, "CREATE a document."),
        ("updateDoc", UpdateDocArgs, "UPDATE a document's title or content."),
        ("deleteDoc", DocIdArgs, "DELETE a document by id."),
    )
    definitions.append(
        ToolDefinition(
            name="archiveDoc",
            description="ARCHIVE a document.",
            group="doc",
            args_model=DocIdArgs,
            operation="update",
            entity="doc",
            id_arg="docId",
            inverse_tool="restoreEntity",
        )
    )
    definitions += _crud(
        "timeline_event",
        "timeline",
        "eventId",
        ("createTimelineEvent", CreateTimelineEventArgs, "CREATE a timeline event."),
        ("updateTimelineEvent", UpdateTimelineEventArgs, "UPDATE a timeline event."),
        ("deleteTimelineEvent", DeleteTimelineEventArgs, "DELETE a timeline event by id."),
    )
    definitions += _crud(
        "client",
        "client",
        "clientId",
        ("createClient", CreateClientArgs, "CREATE a client."),
        ("updateClient", UpdateClientArgs, "UPDATE a client."),
        ("deleteClient", DeleteClientArgs, "DELETE a client by id."),
    )
    definitions.append(
        ToolDefinition(
            name="restoreEntity",
            description="Restore a deleted entity from a snapshot. Used by undo only.",
            group="core",
            args_model=RestoreEntityArgs,
            operation="restore",
            planner_available=False,
        )
    )
    return definitions


def build_default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    for definition in default_tool_definitions():
        registry.register(definition)
    return registry
