import pytest

from domains.workspace.store import WorkspaceStore
from registry.catalog import build_default_registry


@pytest.fixture
def store(tmp_path):
    store = WorkspaceStore(db_path=str(tmp_path / "workspace.db"))
    store.create_workspace("ws_1", "Acme")
    store.add_member("ws_1", "u_1", "Dana Lee")
    store.add_member("ws_1", "u_2", "Amna Khan")
    yield store
    store.close()


@pytest.fixture
def registry(store):
    registry = build_default_registry()
    store.bind_to(registry)
    return registry


@pytest.fixture
def auth(store):
    return store.authorize("ws_1", "u_1")
