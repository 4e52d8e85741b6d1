import asyncio

import pytest

from conversation.manager import ConversationManager
from entry.interactive import InteractiveAdapter, approval_for, session_key
from shared.errors import Unauthorized
from shared.models import ConfirmationRequest, ExecutionResult


@pytest.fixture
def conversation(tmp_path):
    manager = ConversationManager(db_path=str(tmp_path / "conversations.db"))
    yield manager
    manager.close()


class RecordingCore:
    def __init__(self, result: ExecutionResult):
        self.result = result
        self.commands = []

    async def execute(self, command, options=None, approvals=None, **kwargs):
        self.commands.append((command, approvals))
        return self.result


def test_history_is_oldest_first_and_limited(conversation) -> None:
    for i in range(5):
        conversation.save("s1", "user" if i % 2 == 0 else "assistant", f"turn {i}")
    conversation.save("s2", "user", "other session")

    history = conversation.get_history("s1", limit=3)

    assert [m.content for m in history] == ["turn 2", "turn 3", "turn 4"]
    assert [m.role for m in history] == ["user", "assistant", "user"]


def test_clear_session(conversation) -> None:
    conversation.save("s1", "user", "hello")
    conversation.clear_session("s1")

    assert conversation.get_history("s1") == []


def test_session_key_defaults_to_workspace_and_user() -> None:
    assert session_key("ws_1", "u_1") == "ws_1:u_1"
    assert session_key("ws_1", "u_1", "tab-7") == "tab-7"


def test_adapter_loads_history_and_records_turns(store, conversation) -> None:
    conversation.save("ws_1:u_1", "user", "list projects")
    conversation.save("ws_1:u_1", "assistant", "No projects found.")
    core = RecordingCore(ExecutionResult(success=True, response="Found 0 task(s):"))
    adapter = InteractiveAdapter(core, store.authorize, conversation=conversation)

    command = adapter.build_command("  list tasks ", "ws_1", "u_1", project_id="prj_1")
    asyncio.run(adapter.execute(command))

    assert command.text == "list tasks"
    assert [m.content for m in command.history] == ["list projects", "No projects found."]
    assert command.context.current_project_id == "prj_1"
    assert command.context.user_name == "Dana Lee"
    assert [m.content for m in conversation.get_history("ws_1:u_1")][-2:] == ["list tasks", "Found 0 task(s):"]


def test_adapter_rejects_non_members(store) -> None:
    adapter = InteractiveAdapter(RecordingCore(ExecutionResult(success=True, response="")), store.authorize)

    with pytest.raises(Unauthorized):
        adapter.build_command("list tasks", "ws_1", "u_stranger")


def test_approval_resubmission_keeps_one_user_turn(store, conversation) -> None:
    confirmation = ConfirmationRequest(
        tool="createTaskItem",
        arguments={"workspaceId": "ws_1", "title": "Ship"},
        question="I'm about to create Ship with title: Ship. Continue?",
        item_name="Ship",
        change_summary="title: Ship",
    )
    core = RecordingCore(ExecutionResult(success=True, response=confirmation.question, confirmation=confirmation))
    adapter = InteractiveAdapter(core, store.authorize, conversation=conversation)
    command = adapter.build_command("create a task called Ship", "ws_1", "u_1")

    asyncio.run(adapter.execute(command))
    core.result = ExecutionResult(success=True, response='Created task item "Ship".')
    approval = approval_for(confirmation)
    asyncio.run(adapter.execute(command, approvals=[approval]))

    assert core.commands[0][1] is None
    assert core.commands[1][1] == [approval]
    assert approval.arguments == {"workspaceId": "ws_1", "title": "Ship"}
    roles = [m.role for m in conversation.get_history("ws_1:u_1")]
    assert roles == ["user", "assistant", "assistant"]
