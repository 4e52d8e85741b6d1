import asyncio
from datetime import date, timedelta

from entry.interactive import approval_for
from execution.engine import ExecutionCore
from execution.undo import UndoManager
from execution.undo_store import UndoStore
from planner.prompt_cache import PromptCache
from shared.errors import ModelError
from shared.models import (
    Command,
    ConfirmationApproval,
    ExecutionContext,
    ExecutionOptions,
    ModelCompletion,
    ModelPolicy,
    ToolCallRequest,
)


class ScriptedModel:
    """Returns queued completions in order; falls back to a short text answer."""

    def __init__(self, *completions: ModelCompletion):
        self.completions = list(completions)
        self.calls: list[dict] = []

    async def complete(self, messages, tools, policy):
        self.calls.append({"messages": list(messages), "tools": tools})
        if not self.completions:
            return ModelCompletion(text="Done.")
        return self.completions.pop(0)


class SlowModel:
    async def complete(self, messages, tools, policy):
        await asyncio.sleep(1.0)
        return ModelCompletion(text="too late")


class FailingModel:
    async def complete(self, messages, tools, policy):
        raise ModelError("provider said: 502 upstream connect error")


def _calls(*requests: tuple[str, dict]) -> ModelCompletion:
    return ModelCompletion(tool_calls=[ToolCallRequest(tool=tool, arguments=args) for tool, args in requests])


def _core(registry, tmp_path, model, **kwargs) -> ExecutionCore:
    undo = UndoManager(registry, UndoStore(db_path=str(tmp_path / "undo.db")))
    return ExecutionCore(
        registry,
        model,
        undo=undo,
        policy=ModelPolicy(model_name="test-model", timeout_seconds=5.0),
        **kwargs,
    )


def _command(text: str, auth, **context) -> Command:
    return Command(text=text, context=ExecutionContext(workspace_id="ws_1", user_id="u_1", auth=auth, **context))


def _tool_names(schema: list[dict] | None) -> set[str]:
    return {tool["function"]["name"] for tool in schema or []}


BENCHMARK = "Create a task called 'Benchmark Task', assign it to Amna, and set priority to High"


def test_benchmark_create_task_requires_confirmation_then_runs_once(registry, store, auth, tmp_path) -> None:
    proposed = ("createTaskItem", {"title": "Benchmark Task", "assignees": ["Amna"], "priority": "High"})
    model = ScriptedModel(
        _calls(proposed),
        _calls(proposed),
        ModelCompletion(text="Created Benchmark Task and assigned it to Amna Khan."),
    )
    core = _core(registry, tmp_path, model)

    first = asyncio.run(core.execute(_command(BENCHMARK, auth)))

    assert first.success is True
    assert first.confirmation is not None
    assert first.confirmation.tool == "createTaskItem"
    assert first.confirmation.item_name == "Benchmark Task"
    assert "assignees" in first.confirmation.change_summary
    assert "priority: high" in first.confirmation.change_summary
    assert first.tool_calls_made == []
    assert "EXECUTING_TOOLS" not in first.states
    assert store.search("task", {"workspaceId": "ws_1"}, auth) == []

    approval = ConfirmationApproval(tool="createTaskItem", arguments=dict(reversed(list(first.confirmation.arguments.items()))))
    second = asyncio.run(core.execute(_command(BENCHMARK, auth), approvals=[approval]))

    assert second.success is True
    assert second.confirmation is None
    assert [record.tool for record in second.tool_calls_made] == ["createTaskItem"]
    assert second.tool_calls_made[0].result["success"] is True
    assert second.response == "Created Benchmark Task and assigned it to Amna Khan."
    assert second.undo_batch_id is not None
    tasks = store.search("task", {"workspaceId": "ws_1"}, auth)
    assert len(tasks) == 1
    assert tasks[0]["assignees"] == ["Amna Khan"]
    assert tasks[0]["priority"] == "high"


def test_overdue_search_skips_model_and_confirmation(registry, store, auth, tmp_path) -> None:
    yesterday = (date.today() - timedelta(days=1)).isoformat()
    next_week = (date.today() + timedelta(days=7)).isoformat()
    store.create("task", {"workspaceId": "ws_1", "title": "Fix login bug", "dueDate": yesterday}, auth)
    store.create("task", {"workspaceId": "ws_1", "title": "Plan offsite", "dueDate": next_week}, auth)
    model = ScriptedModel()
    core = _core(registry, tmp_path, model)

    result = asyncio.run(core.execute(_command("search overdue tasks", auth)))

    assert result.success is True
    assert result.confirmation is None
    assert model.calls == []
    assert "CACHED" in result.states
    assert "CONFIRMING" not in result.states
    assert "MODEL_RESPONDING" not in result.states
    assert "Found 1 task(s)" in result.response
    assert "Fix login bug" in result.response
    assert "Plan offsite" not in result.response


def test_cached_write_still_gets_a_model_response(registry, store, auth, tmp_path) -> None:
    cache = PromptCache(seed_file="")
    cache.warm()
    model = ScriptedModel(ModelCompletion(text="Project X is ready."))
    core = _core(registry, tmp_path, model, prompt_cache=cache)

    result = asyncio.run(
        core.execute(
            _command("Create a project named 'X'", auth),
            options=ExecutionOptions(allowed_write_tools=["createProject"]),
        )
    )

    assert result.success is True
    assert "CACHED" in result.states
    assert "MODEL_PLANNING" not in result.states
    assert "MODEL_RESPONDING" in result.states
    assert len(model.calls) == 1
    assert model.calls[0]["messages"][-1].role == "tool"
    assert result.response == "Project X is ready."
    assert [p["name"] for p in store.list_projects("ws_1")] == ["X"]


def test_cached_read_honors_disabled_early_exit(registry, store, auth, tmp_path) -> None:
    store.create("task", {"workspaceId": "ws_1", "title": "Fix login bug", "dueDate": "2000-01-01"}, auth)
    model = ScriptedModel(ModelCompletion(text="One task is overdue: Fix login bug."))
    core = _core(registry, tmp_path, model)

    result = asyncio.run(
        core.execute(
            _command("search overdue tasks", auth),
            options=ExecutionOptions(disable_optimistic_early_exit=True),
        )
    )

    assert result.states == ["CLASSIFYING", "CACHED", "EXECUTING_TOOLS", "MODEL_RESPONDING", "DONE"]
    assert len(model.calls) == 1
    assert result.response == "One task is overdue: Fix login bug."
    assert [record.tool for record in result.tool_calls_made] == ["searchTasks"]


def test_deterministic_write_still_hits_the_gate(registry, store, auth, tmp_path) -> None:
    model = ScriptedModel()
    core = _core(registry, tmp_path, model)

    result = asyncio.run(core.execute(_command("create a task called Ship it", auth)))

    assert result.confirmation is not None
    assert result.confirmation.arguments == {"workspaceId": "ws_1", "title": "Ship it"}
    assert model.calls == []
    assert store.search("task", {"workspaceId": "ws_1"}, auth) == []


def test_stale_approval_does_not_authorize_a_different_mutation(registry, store, auth, tmp_path) -> None:
    core = _core(registry, tmp_path, ScriptedModel())
    stale = ConfirmationApproval(tool="createTaskItem", arguments={"workspaceId": "ws_1", "title": "Other"})

    result = asyncio.run(core.execute(_command("create a task called Ship it", auth), approvals=[stale]))

    assert result.confirmation is not None
    assert result.tool_calls_made == []


def test_two_mutation_plan_converges_with_accumulated_approvals(registry, store, auth, tmp_path) -> None:
    plan = _calls(("createTaskItem", {"title": "Alpha"}), ("createTaskItem", {"title": "Beta"}))
    model = ScriptedModel(*[plan for _ in range(6)])
    core = _core(registry, tmp_path, model)
    text = "create two tasks called Alpha and Beta"

    approvals: list[ConfirmationApproval] = []
    asked: list[str] = []
    result = asyncio.run(core.execute(_command(text, auth)))
    while result.confirmation is not None and len(asked) < 5:
        asked.append(result.confirmation.item_name)
        approvals.append(approval_for(result.confirmation))
        result = asyncio.run(core.execute(_command(text, auth), approvals=approvals))

    assert asked == ["Alpha", "Beta"]
    assert result.success is True
    assert result.confirmation is None
    assert [record.tool for record in result.tool_calls_made] == ["createTaskItem", "createTaskItem"]
    titles = sorted(task["title"] for task in store.search("task", {"workspaceId": "ws_1"}, auth))
    assert titles == ["Alpha", "Beta"]


def test_each_approval_authorizes_one_call(registry, store, auth, tmp_path) -> None:
    plan = _calls(("createTaskItem", {"title": "Alpha"}), ("createTaskItem", {"title": "Alpha"}))
    core = _core(registry, tmp_path, ScriptedModel(plan))
    approval = ConfirmationApproval(tool="createTaskItem", arguments={"workspaceId": "ws_1", "title": "Alpha"})

    result = asyncio.run(core.execute(_command("create two tasks called Alpha", auth), approvals=[approval]))

    assert result.confirmation is not None
    assert result.tool_calls_made == []
    assert store.search("task", {"workspaceId": "ws_1"}, auth) == []


def test_resubmission_skips_mutations_already_in_the_undo_batch(registry, store, auth, tmp_path) -> None:
    alpha = ("createTaskItem", {"title": "Alpha"})
    beta = ("createTaskItem", {"title": "Beta"})
    model = ScriptedModel(
        _calls(alpha),
        _calls(alpha),
        _calls(beta),
        _calls(alpha),
        _calls(beta),
        ModelCompletion(text="Created Alpha and Beta."),
    )
    core = _core(registry, tmp_path, model)
    text = "create a task called Alpha and then one called Beta"

    first = asyncio.run(core.execute(_command(text, auth)))
    approvals = [approval_for(first.confirmation)]
    second = asyncio.run(core.execute(_command(text, auth), approvals=approvals))

    assert second.confirmation is not None
    assert second.confirmation.item_name == "Beta"
    assert second.undo_batch_id is not None
    approvals.append(approval_for(second.confirmation))

    third = asyncio.run(
        core.execute(_command(text, auth, undo_batch_id=second.undo_batch_id), approvals=approvals)
    )

    assert third.success is True
    assert third.confirmation is None
    assert third.response == "Created Alpha and Beta."
    assert third.undo_batch_id == second.undo_batch_id
    assert third.tool_calls_made[0].result["data"]["alreadyApplied"] is True
    titles = sorted(task["title"] for task in store.search("task", {"workspaceId": "ws_1"}, auth))
    assert titles == ["Alpha", "Beta"]


def test_read_only_refuses_mutations_outright(registry, store, auth, tmp_path) -> None:
    task = store.create("task", {"workspaceId": "ws_1", "title": "Keep me"}, auth)
    model = ScriptedModel(
        _calls(("deleteTaskItem", {"taskId": task["id"]})),
        ModelCompletion(text="I could not delete it."),
    )
    core = _core(registry, tmp_path, model)

    result = asyncio.run(
        core.execute(
            _command("delete the Keep me task", auth),
            options=ExecutionOptions(read_only=True, allowed_write_tools=["deleteTaskItem"]),
        )
    )

    assert result.success is True
    assert result.confirmation is None
    assert result.tool_calls_made[0].result["success"] is False
    assert "Read-only" in result.tool_calls_made[0].result["error"]
    assert "None of the requested actions succeeded (deleteTaskItem)." in result.response
    assert len(store.search("task", {"workspaceId": "ws_1"}, auth)) == 1


def test_failed_call_does_not_abort_siblings(registry, store, auth, tmp_path) -> None:
    store.create("task", {"workspaceId": "ws_1", "title": "Write brief"}, auth)
    model = ScriptedModel(
        _calls(
            ("updateTaskItem", {"taskId": "task_missing", "status": "done"}),
            ("searchTasks", {"query": "brief"}),
        ),
        ModelCompletion(text="I found the brief task but could not update the other one."),
    )
    core = _core(registry, tmp_path, model)

    result = asyncio.run(
        core.execute(
            _command("mark task_missing as done and find the brief task", auth),
            options=ExecutionOptions(allowed_write_tools=["updateTaskItem"]),
        )
    )

    assert result.success is True
    assert [record.tool for record in result.tool_calls_made] == ["updateTaskItem", "searchTasks"]
    assert result.tool_calls_made[0].result["success"] is False
    assert result.tool_calls_made[1].result["success"] is True
    assert "Some actions did not complete (updateTaskItem)" in result.response


def test_invalid_and_unknown_calls_become_error_results(registry, auth, tmp_path) -> None:
    model = ScriptedModel(
        _calls(("searchTasks", {"status": "someday"}), ("launchRocket", {})),
        ModelCompletion(text="Nothing matched."),
    )
    core = _core(registry, tmp_path, model)

    result = asyncio.run(core.execute(_command("find my tasks that are someday", auth)))

    errors = [record.result["error"] for record in result.tool_calls_made]
    assert "Invalid arguments for searchTasks" in errors[0]
    assert "launchRocket" in errors[1]


def test_forced_groups_hide_tools_and_ignore_shortcuts(registry, auth, tmp_path) -> None:
    model = ScriptedModel(ModelCompletion(text="Tables are not available here."))
    core = _core(registry, tmp_path, model)

    result = asyncio.run(
        core.execute(
            _command("create a table called Budget", auth),
            options=ExecutionOptions(forced_tool_groups=["core", "task"]),
        )
    )

    assert result.response == "Tables are not available here."
    assert len(model.calls) == 1
    offered = _tool_names(model.calls[0]["tools"])
    assert "createTable" not in offered
    assert "searchTasks" in offered


def test_disable_deterministic_goes_to_the_model(registry, auth, tmp_path) -> None:
    model = ScriptedModel(ModelCompletion(text="Here are your projects."))
    core = _core(registry, tmp_path, model)

    result = asyncio.run(core.execute(_command("list projects", auth), options=ExecutionOptions(disable_deterministic=True)))

    assert len(model.calls) == 1
    assert result.response == "Here are your projects."
    assert "MODEL_PLANNING" in result.states


def test_disable_optimistic_early_exit_asks_model_for_summary(registry, auth, tmp_path) -> None:
    model = ScriptedModel(
        _calls(("searchProjects", {})),
        ModelCompletion(text="You have no projects yet."),
    )
    core = _core(registry, tmp_path, model)

    result = asyncio.run(
        core.execute(
            _command("what projects do we have", auth),
            options=ExecutionOptions(disable_optimistic_early_exit=True),
        )
    )

    assert len(model.calls) == 2
    assert result.response == "You have no projects yet."
    assert model.calls[1]["messages"][-1].role == "tool"


def test_read_only_intent_exits_early_after_model_tool_calls(registry, auth, tmp_path) -> None:
    model = ScriptedModel(_calls(("searchProjects", {})))
    core = _core(registry, tmp_path, model)

    result = asyncio.run(core.execute(_command("what projects do we have", auth)))

    assert len(model.calls) == 1
    assert result.response == "No projects found."


def test_repeated_identical_write_stops_the_loop(registry, store, auth, tmp_path) -> None:
    task = store.create("task", {"workspaceId": "ws_1", "title": "Ship"}, auth)
    update = ("updateTaskItem", {"taskId": task["id"], "status": "done"})
    model = ScriptedModel(_calls(update), _calls(update), ModelCompletion(text="never reached"))
    core = _core(registry, tmp_path, model)

    result = asyncio.run(
        core.execute(
            _command("mark the Ship task as done", auth),
            options=ExecutionOptions(allowed_write_tools=["updateTaskItem"]),
        )
    )

    assert [record.tool for record in result.tool_calls_made] == ["updateTaskItem"]
    assert len(model.calls) == 2
    assert result.response == 'Updated task item "Ship".'


def test_max_tool_iterations_withholds_tools_on_last_turn(registry, auth, tmp_path) -> None:
    model = ScriptedModel(
        _calls(("searchTasks", {"query": "a"})),
        ModelCompletion(text="Done searching."),
    )
    core = _core(registry, tmp_path, model, max_tool_iterations=1)

    result = asyncio.run(
        core.execute(
            _command("find tasks named a", auth),
            options=ExecutionOptions(disable_optimistic_early_exit=True),
        )
    )

    assert result.response == "Done searching."
    assert model.calls[1]["tools"] is None


def test_parallel_mode_keeps_request_order(registry, auth, tmp_path) -> None:
    model = ScriptedModel(_calls(("searchDocs", {}), ("searchProjects", {}), ("searchTasks", {})))
    core = _core(registry, tmp_path, model, tool_execution_mode="parallel")

    result = asyncio.run(core.execute(_command("show what we have", auth)))

    assert [record.tool for record in result.tool_calls_made] == ["searchDocs", "searchProjects", "searchTasks"]


def test_model_timeout_is_a_timeout_failure(registry, auth, tmp_path) -> None:
    core = _core(registry, tmp_path, SlowModel())

    result = asyncio.run(
        core.execute(_command("summarize the launch", auth), options=ExecutionOptions(timeout_seconds=0.05))
    )

    assert result.success is False
    assert result.error_kind == "timeout"
    assert result.states[-1] == "ERROR"


def test_model_errors_never_leak_provider_text(registry, auth, tmp_path) -> None:
    core = _core(registry, tmp_path, FailingModel())

    result = asyncio.run(core.execute(_command("summarize the launch", auth)))

    assert result.success is False
    assert result.error_kind == "model"
    assert "502" not in result.response
    assert result.response == "The assistant is unavailable right now. Please try again."


def test_text_answer_finishes_without_tools(registry, auth, tmp_path) -> None:
    model = ScriptedModel(ModelCompletion(text="Hi! What should I do?"))
    core = _core(registry, tmp_path, model)

    result = asyncio.run(core.execute(_command("hello", auth)))

    assert result.success is True
    assert result.response == "Hi! What should I do?"
    assert result.tool_calls_made == []
    assert result.states[-1] == "DONE"
