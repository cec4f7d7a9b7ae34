import asyncio
import json
import sys
import textwrap

import pytest

from conductor.agent_definitions import AgentDefinition, AgentPermissions
from conductor.agent_pool import AgentPool
from conductor.config import ExecutionConfig, LivenessConfig
from conductor.exceptions import AgentNotFoundError, ConductorError
from conductor.execution_manager import COMPLETED, ExecutionManager
from conductor.execution_store import ExecutionStore
from conductor.liveness import COMPLETED as LIVE_COMPLETED, LivenessTracker
from conductor.task_graph import Task
from conductor.task_router import (
    ABORTED,
    AGENT_BUSY,
    FAILED,
    SUCCEEDED,
    TaskRouter,
    WorkflowContext,
    build_task_query,
)

SUCCESS_SCRIPT = textwrap.dedent("""
    import json, sys
    def emit(obj):
        sys.stdout.write(json.dumps(obj) + "\\n")
        sys.stdout.flush()
    emit({"type": "system", "subtype": "init", "session_id": "cli-1"})
    emit({"type": "assistant", "message": {"content": [
        {"type": "tool_use", "id": "tu1", "name": "Read", "input": {"path": "a.py"}}
    ]}})
    emit({"type": "result", "subtype": "success", "is_error": False, "result": "patched",
          "usage": {"input_tokens": 11, "output_tokens": 7}, "total_cost_usd": 0.01})
""")

FAIL_SCRIPT = textwrap.dedent("""
    import sys
    sys.stdout.write('{"type": "result", "subtype": "error_max_turns", "is_error": true, "result": ""}\\n')
    sys.exit(1)
""")

SLOW_SCRIPT = textwrap.dedent("""
    import sys, time
    sys.stdout.write('{"type": "assistant", "message": {"content": "thinking"}}\\n')
    sys.stdout.flush()
    time.sleep(30)
""")


class RecordingObserver:
    def __init__(self) -> None:
        self.progress: list = []
        self.finished: list = []
        self.done = asyncio.Event()

    def on_task_progress(self, workflow_id, task_id, progress) -> None:
        self.progress.append((workflow_id, task_id, progress))

    def on_task_finished(self, outcome) -> None:
        self.finished.append(outcome)
        self.done.set()


def _definition(name: str = "coder", **kwargs) -> AgentDefinition:
    return AgentDefinition(name=name, description="Writes code", **kwargs)


def _router(script: str, store: ExecutionStore | None = None, queries: list | None = None):
    def builder(params):
        if queries is not None:
            queries.append(params.query)
        return [sys.executable, "-c", script]

    pool = AgentPool()
    pool.register_definition(_definition())
    executions = ExecutionManager(ExecutionConfig(terminate_grace_seconds=2.0), command_builder=builder)
    liveness = LivenessTracker(LivenessConfig(), store=store)
    return TaskRouter(pool, executions, liveness, store), pool, liveness


def _context(tmp_path, observer, **kwargs) -> WorkflowContext:
    return WorkflowContext(workflow_id="wf-1", project_path=str(tmp_path), observer=observer, **kwargs)


def test_task_query_sections_in_order():
    definition = _definition(
        instructions="Keep changes small.",
        allowed_tools=["Read", "Edit"],
        permissions=AgentPermissions(allow_list=["Bash(git:*)"], deny_list=["Bash(rm:*)"]),
        output_style="concise",
    )
    task = Task(id="t1", title="Fix the bug", agent="coder", description="The parser drops lines.")

    query = build_task_query(definition, task, {"t0": "found it"})

    headings = [
        "/output-style concise",
        "You are **coder**: Writes code",
        "## Your Role and Instructions",
        "## Your Available Tools",
        "## Your Permissions",
        "**Allowed:**",
        "**Denied:**",
        "---",
        "# Task: Fix the bug",
        "## Description",
        "## Previous Results",
    ]
    positions = [query.index(h) for h in headings]
    assert positions == sorted(positions)
    assert "- Bash(rm:*)" in query
    payload = query.split("```json\n")[1].split("\n```")[0]
    assert json.loads(payload) == {"t0": "found it"}


def test_task_query_omits_empty_sections():
    query = build_task_query(_definition(), Task(id="t1", title="Plain", agent="coder"))

    assert query.startswith("You are **coder**")
    assert "## Your Permissions" not in query
    assert "## Previous Results" not in query
    assert "## Description" not in query
    assert query.rstrip().endswith("# Task: Plain")


@pytest.mark.asyncio
async def test_dispatch_relays_progress_and_success(tmp_path) -> None:
    store = ExecutionStore(tmp_path / "conductor.db")
    queries: list[str] = []
    router, pool, liveness = _router(SUCCESS_SCRIPT, store=store, queries=queries)
    observer = RecordingObserver()
    try:
        task = Task(id="t1", title="Fix", agent="coder")
        dispatch = router.dispatch(task, _context(tmp_path, observer, dependency_results={"t0": "ok"}))

        assert dispatch.dispatched
        assert pool.get_agent("coder").status == "busy"
        assert router.session_for("wf-1", "t1") == dispatch.session_id

        await asyncio.wait_for(observer.done.wait(), timeout=10)
        await router.shutdown()

        outcome = observer.finished[0]
        assert outcome.status == SUCCEEDED
        assert outcome.result == "patched"
        assert outcome.session_id == dispatch.session_id
        assert outcome.progress.current_tool == "Read"
        assert outcome.progress.input_tokens == 11
        assert outcome.progress.status == "completed"
        assert observer.progress and all(p[1] == "t1" for p in observer.progress)
        assert "## Previous Results" in queries[0]

        assert pool.get_agent("coder").is_idle
        assert pool.get_agent("coder").completed_tasks == ["t1"]
        assert liveness.get_execution(dispatch.session_id) is None
        assert liveness.get_all_tracked() == []
        await liveness.flush()
        row = await store.get_execution(dispatch.session_id)
        assert row["status"] == LIVE_COMPLETED
        assert row["task_id"] == "t1"
        assert router.session_for("wf-1", "t1") is None
        metrics = await store.list_task_metrics("wf-1")
        assert [m["status"] for m in metrics] == [SUCCEEDED]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_dispatch_reports_busy_agent(tmp_path) -> None:
    router, pool, _ = _router(SLOW_SCRIPT)
    observer = RecordingObserver()
    context = _context(tmp_path, observer)

    first = router.dispatch(Task(id="t1", title="One", agent="coder"), context)
    second = router.dispatch(Task(id="t2", title="Two", agent="coder"), context)

    assert first.dispatched
    assert not second.dispatched
    assert second.reason == AGENT_BUSY

    assert router.abort_workflow("wf-1") == 1
    await asyncio.wait_for(observer.done.wait(), timeout=10)
    await router.shutdown()
    assert observer.finished[0].status == ABORTED
    assert observer.finished[0].error
    assert pool.get_agent("coder").is_idle
    assert pool.get_agent("coder").completed_tasks == []


@pytest.mark.asyncio
async def test_failed_execution_becomes_failed_outcome(tmp_path) -> None:
    router, pool, _ = _router(FAIL_SCRIPT)
    observer = RecordingObserver()

    router.dispatch(Task(id="t1", title="One", agent="coder"), _context(tmp_path, observer))
    await asyncio.wait_for(observer.done.wait(), timeout=10)
    await router.shutdown()

    outcome = observer.finished[0]
    assert outcome.status == FAILED
    assert outcome.error
    assert pool.get_agent("coder").is_idle


def test_dispatch_unknown_agent_raises(tmp_path):
    router, _, _ = _router(SUCCESS_SCRIPT)

    with pytest.raises(AgentNotFoundError):
        router.dispatch(Task(id="t1", title="One", agent="ghost"), _context(tmp_path, RecordingObserver()))


def test_abort_unknown_task_is_false():
    router, _, _ = _router(SUCCESS_SCRIPT)

    assert router.abort("wf-1", "nope") is False
    assert router.abort_workflow("wf-1") == 0


@pytest.mark.asyncio
async def test_execute_with_agent_runs_direct_query(tmp_path) -> None:
    router, pool, _ = _router(SUCCESS_SCRIPT)

    record = await router.execute_with_agent("coder", "summarize the repo", str(tmp_path))

    assert record.status == COMPLETED
    assert record.agent_name == "coder"
    assert record.query == "summarize the repo"
    assert pool.get_agent("coder").is_idle

    with pytest.raises(AgentNotFoundError):
        await router.execute_with_agent("ghost", "hi", str(tmp_path))


@pytest.mark.asyncio
async def test_execute_with_agent_refuses_busy_agent(tmp_path) -> None:
    router, pool, _ = _router(SUCCESS_SCRIPT)
    pool.find_idle("coder")
    pool.mark_busy("coder", "other")

    with pytest.raises(ConductorError):
        await router.execute_with_agent("coder", "hi", str(tmp_path))
    assert pool.get_agent("coder").status == "busy"
