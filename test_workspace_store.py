import pytest

from domains.workspace.store import WorkspaceAuth
from shared.errors import DomainError, Unauthorized


def test_authorize_members_only(store) -> None:
    auth = store.authorize("ws_1", "u_2")

    assert auth == WorkspaceAuth(workspace_id="ws_1", user_id="u_2", user_name="Amna Khan", workspace_name="Acme")
    with pytest.raises(Unauthorized):
        store.authorize("ws_1", "u_missing")
    with pytest.raises(Unauthorized):
        store.authorize("", "u_1")


def test_chat_identity_links_to_member(store) -> None:
    store.link_chat_identity("T1", "U_EXT", "ws_1", "u_2")

    assert store.resolve_chat_identity("T1", "U_EXT").user_name == "Amna Khan"
    with pytest.raises(Unauthorized) as info:
        store.resolve_chat_identity("T2", "U_EXT")
    assert info.value.user_message == "Please link your chat account to your workspace first."


def test_executors_reject_foreign_workspace(store, auth) -> None:
    store.create_workspace("ws_2", "Other")

    with pytest.raises(DomainError):
        store.search("task", {"workspaceId": "ws_2"}, auth)
    with pytest.raises(DomainError):
        store.create("task", {"workspaceId": "ws_1", "title": "x"}, auth=None)


def test_task_creation_resolves_assignees_and_defaults_status(store, auth) -> None:
    project = store.create("project", {"workspaceId": "ws_1", "name": "Launch"}, auth)

    task = store.create(
        "task",
        {"workspaceId": "ws_1", "projectId": project["id"], "title": "Brief", "assignees": ["amna", "Dana Lee", "Zed"]},
        auth,
    )

    assert task["projectId"] == project["id"]
    assert task["assignees"] == ["Amna Khan", "Dana Lee", "Zed"]
    assert task["status"] == "todo"
    assert task["archived"] is False


def test_children_require_existing_parent(store, auth) -> None:
    with pytest.raises(DomainError) as info:
        store.create("task", {"workspaceId": "ws_1", "projectId": "project_missing", "title": "x"}, auth)
    assert info.value.user_message == "That project no longer exists."

    with pytest.raises(DomainError):
        store.create("row", {"workspaceId": "ws_1", "tableId": "table_missing", "data": {}}, auth)


def test_task_filters(store, auth) -> None:
    store.create("task", {"workspaceId": "ws_1", "title": "Old bug", "dueDate": "2001-02-03", "assignees": ["Dana"]}, auth)
    store.create("task", {"workspaceId": "ws_1", "title": "Old done", "dueDate": "2001-02-03", "status": "done"}, auth)
    store.create("task", {"workspaceId": "ws_1", "title": "Future", "dueDate": "2999-01-01", "priority": "high"}, auth)

    def titles(**filters):
        return [t["title"] for t in store.search("task", {"workspaceId": "ws_1", **filters}, auth)]

    assert titles(overdue=True) == ["Old bug"]
    assert titles(priority="high") == ["Future"]
    assert titles(status="done") == ["Old done"]
    assert titles(assignee="dana") == ["Old bug"]
    assert titles(query="Old") == ["Old bug", "Old done"]
    assert titles(limit=1) == ["Old bug"]


def test_project_search_ignores_current_project_filter(store, auth) -> None:
    project = store.create("project", {"workspaceId": "ws_1", "name": "Launch"}, auth)
    store.create("task", {"workspaceId": "ws_1", "title": "Loose"}, auth)

    projects = store.search("project", {"workspaceId": "ws_1", "projectId": project["id"]}, auth)
    tasks = store.search("task", {"workspaceId": "ws_1", "projectId": project["id"]}, auth)

    assert [p["name"] for p in projects] == ["Launch"]
    assert tasks == []


def test_rows_search_cell_text(store, auth) -> None:
    table = store.create("table", {"workspaceId": "ws_1", "title": "Budget"}, auth)
    store.create("row", {"workspaceId": "ws_1", "tableId": table["id"], "data": {"Item": "Laptop", "Cost": 1200}}, auth)
    store.create("row", {"workspaceId": "ws_1", "tableId": table["id"], "data": {"Item": "Desk", "Cost": 300}}, auth)

    rows = store.search("row", {"workspaceId": "ws_1", "query": "laptop"}, auth)

    assert [r["data"]["Item"] for r in rows] == ["Laptop"]
    assert store.resolve_name("table", table["id"]) == "Budget"


def test_members_search(store, auth) -> None:
    members = store.search("member", {"workspaceId": "ws_1", "query": "Amna"}, auth)

    assert members == [{"id": "u_2", "name": "Amna Khan"}]


def test_update_archive_delete_and_restore(store, auth) -> None:
    doc = store.create("doc", {"workspaceId": "ws_1", "title": "Notes", "content": "v1"}, auth)
    args = {"workspaceId": "ws_1", "docId": doc["id"]}

    updated = store.update("doc", "docId", {**args, "title": "Meeting notes"}, auth)
    assert updated["title"] == "Meeting notes"
    assert updated["content"] == "v1"
    assert store.search_all({"workspaceId": "ws_1", "query": "Meeting"}, auth) == [
        {"id": doc["id"], "kind": "doc", "name": "Meeting notes"}
    ]

    before = store.snapshot("doc", "docId", args, auth)
    assert store.archive("doc", "docId", args, auth)["archived"] is True
    assert store.search("doc", {"workspaceId": "ws_1"}, auth) == []

    assert store.delete("doc", "docId", args, auth) == {"id": doc["id"], "name": "Meeting notes", "deleted": True}
    assert store.snapshot("doc", "docId", args, auth) is None
    with pytest.raises(DomainError):
        store.delete("doc", "docId", args, auth)

    restored = store.restore({"workspaceId": "ws_1", "entityId": doc["id"], "entity": "doc", "data": before}, auth)
    assert restored["title"] == "Meeting notes"
    assert restored["archived"] is False


def test_list_projects_for_picker(store, auth) -> None:
    assert store.list_projects("ws_1") == []
    project = store.create("project", {"workspaceId": "ws_1", "name": "Launch"}, auth)

    assert store.list_projects("ws_1") == [{"id": project["id"], "name": "Launch"}]


def test_every_catalog_tool_is_bound(registry) -> None:
    assert all(registry.get(name).executor is not None for name in registry.tool_names)
