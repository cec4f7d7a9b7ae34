"""Dispatch workflow tasks to agents and follow their executions."""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Protocol

from conductor.agent_definitions import AgentDefinition
from conductor.agent_pool import AgentPool
from conductor.exceptions import AgentNotFoundError, ConductorError, PersistenceError
from conductor.execution_manager import (
    COMPLETED as EXECUTION_COMPLETED,
    ExecutionManager,
    ExecutionRecord,
    ExecutionSubscription,
    StartExecutionParams,
)
from conductor.execution_store import ExecutionStore
from conductor.liveness import COMPLETED as LIVE_COMPLETED, FAILED as LIVE_FAILED, LivenessTracker
from conductor.logging import get_logger
from conductor.stream_events import AssistantMessage, ErrorRecord, ResultRecord, StreamRecord
from conductor.task_graph import Task

log = get_logger(__name__)

# Outcome statuses
SUCCEEDED = "succeeded"
FAILED = "failed"
ABORTED = "aborted"

AGENT_BUSY = "agent_busy"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class TaskProgress:
    """Live counters for one task's current execution."""

    status: str = "pending"
    event_count: int = 0
    last_activity: str = ""
    current_tool: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    total_cost_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "event_count": self.event_count,
            "last_activity": self.last_activity,
            "current_tool": self.current_tool,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "total_cost_usd": self.total_cost_usd,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskProgress":
        return cls(
            status=str(data.get("status", "pending")),
            event_count=int(data.get("event_count", 0)),
            last_activity=str(data.get("last_activity", "")),
            current_tool=str(data.get("current_tool", "")),
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            cache_read_tokens=int(data.get("cache_read_tokens", 0)),
            total_cost_usd=float(data.get("total_cost_usd", 0.0)),
        )


@dataclass
class TaskOutcome:
    workflow_id: str
    task_id: str
    agent_name: str
    status: str
    result: str = ""
    error: str = ""
    session_id: str = ""
    duration_seconds: float = 0.0
    progress: TaskProgress = field(default_factory=TaskProgress)


@dataclass
class DispatchOutcome:
    dispatched: bool
    session_id: str = ""
    reason: str = ""


class TaskObserver(Protocol):
    """Receiver of task progress and completion, usually the scheduler."""

    def on_task_progress(self, workflow_id: str, task_id: str, progress: TaskProgress) -> None:
        ...

    def on_task_finished(self, outcome: TaskOutcome) -> None:
        ...


@dataclass
class WorkflowContext:
    workflow_id: str
    project_path: str
    observer: TaskObserver
    # Results of the task's dependencies, keyed by task id.
    dependency_results: dict[str, Any] = field(default_factory=dict)


def build_task_query(
    definition: AgentDefinition,
    task: Task,
    dependency_results: dict[str, Any] | None = None,
) -> str:
    """Compose the prompt sent to the agent CLI for ``task``."""
    sections: list[str] = []
    if definition.output_style:
        sections.append(f"/output-style {definition.output_style}")
    sections.append(f"You are **{definition.name}**: {definition.description}")
    if definition.instructions:
        sections.append(f"## Your Role and Instructions\n\n{definition.instructions}")
    if definition.allowed_tools:
        tools = "\n".join(f"- {tool}" for tool in definition.allowed_tools)
        sections.append(f"## Your Available Tools\n\n{tools}")
    permissions = definition.permissions
    if permissions.allow_list or permissions.deny_list:
        lines = ["## Your Permissions"]
        if permissions.allow_list:
            lines.append("**Allowed:**\n" + "\n".join(f"- {p}" for p in permissions.allow_list))
        if permissions.deny_list:
            lines.append("**Denied:**\n" + "\n".join(f"- {p}" for p in permissions.deny_list))
        sections.append("\n\n".join(lines))
    sections.append("---")
    sections.append(f"# Task: {task.title}")
    if task.description:
        sections.append(f"## Description\n\n{task.description}")
    if dependency_results:
        payload = json.dumps(dependency_results, indent=2, ensure_ascii=False, default=str)
        sections.append(f"## Previous Results\n\n```json\n{payload}\n```")
    return "\n\n".join(sections) + "\n"


class TaskRouter:
    """Bridge between the scheduler, the agent pool and running processes.

    ``dispatch`` is synchronous: the idle check, ``mark_busy`` and the
    execution start happen without yielding to the event loop. A follower
    task then consumes the execution's records and reports back through the
    workflow context's observer.
    """

    def __init__(
        self,
        pool: AgentPool,
        executions: ExecutionManager,
        liveness: LivenessTracker | None = None,
        store: ExecutionStore | None = None,
    ):
        self.pool = pool
        self.executions = executions
        self.liveness = liveness
        self.store = store
        self._inflight: dict[tuple[str, str], str] = {}
        self._followers: set[asyncio.Task[None]] = set()
        self._metric_writes: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(self, task: Task, context: WorkflowContext) -> DispatchOutcome:
        definition = self.pool.get_definition(task.agent)
        if definition is None:
            raise AgentNotFoundError(task.agent)
        if self.pool.find_idle(task.agent) is None:
            return DispatchOutcome(dispatched=False, reason=AGENT_BUSY)

        self.pool.mark_busy(task.agent, task.id)
        params = StartExecutionParams(
            project_path=context.project_path,
            query=build_task_query(definition, task, context.dependency_results),
            agent_name=task.agent,
            task_id=task.id,
            workflow_id=context.workflow_id,
            model=definition.model,
            mcp_config=definition.mcp_config,
            allowed_tools=list(definition.allowed_tools),
        )
        try:
            session_id = self.executions.start_execution(params)
            subscription = self.executions.subscribe(session_id)
        except ConductorError:
            self.pool.mark_idle(task.agent)
            raise

        self.pool.set_session(task.agent, session_id)
        if self.liveness is not None:
            self.liveness.register_execution(session_id, {
                "agent_name": task.agent,
                "task_id": task.id,
                "project_path": context.project_path,
            })
        self._inflight[(context.workflow_id, task.id)] = session_id

        follower = asyncio.create_task(self._follow(task, context, session_id, subscription))
        self._followers.add(follower)
        follower.add_done_callback(self._followers.discard)
        log.info(
            "Task dispatched",
            workflow_id=context.workflow_id,
            task_id=task.id,
            agent=task.agent,
            session_id=session_id,
        )
        return DispatchOutcome(dispatched=True, session_id=session_id)

    async def _follow(
        self,
        task: Task,
        context: WorkflowContext,
        session_id: str,
        subscription: ExecutionSubscription,
    ) -> None:
        started = time.monotonic()
        progress = TaskProgress(status="running", last_activity=_utcnow_iso())
        outcome: TaskOutcome | None = None
        try:
            async for record in subscription:
                self._apply_record(progress, record)
                if self.liveness is not None:
                    self.liveness.update_heartbeat(session_id)
                try:
                    context.observer.on_task_progress(context.workflow_id, task.id, replace(progress))
                except Exception as e:
                    log.error("Progress observer failed", task_id=task.id, error=str(e))
            execution = await self.executions.wait(session_id)
            outcome = self._build_outcome(task, context, execution, progress)
        except asyncio.CancelledError:
            self.pool.mark_idle(task.agent)
            self._inflight.pop((context.workflow_id, task.id), None)
            if self.liveness is not None:
                self.liveness.unregister_execution(session_id)
            raise
        except Exception as e:
            log.error("Task follower crashed", task_id=task.id, session_id=session_id, error=str(e))
            progress.status = FAILED
            outcome = TaskOutcome(
                workflow_id=context.workflow_id,
                task_id=task.id,
                agent_name=task.agent,
                status=FAILED,
                error=str(e),
                session_id=session_id,
                progress=progress,
            )
        outcome.duration_seconds = time.monotonic() - started

        self._inflight.pop((context.workflow_id, task.id), None)
        if self.liveness is not None:
            self.liveness.update_status(
                session_id, LIVE_COMPLETED if outcome.status == SUCCEEDED else LIVE_FAILED
            )
            # The final status is already queued for the store.
            self.liveness.unregister_execution(session_id)
        self.pool.mark_idle(task.agent, task.id if outcome.status == SUCCEEDED else None)
        self._record_metrics(outcome)
        log.info(
            "Task finished",
            workflow_id=context.workflow_id,
            task_id=task.id,
            status=outcome.status,
            events=progress.event_count,
            duration_seconds=round(outcome.duration_seconds, 2),
        )
        try:
            context.observer.on_task_finished(outcome)
        except Exception as e:
            log.error("Completion observer failed", task_id=task.id, error=str(e))

    @staticmethod
    def _apply_record(progress: TaskProgress, record: StreamRecord) -> None:
        progress.event_count += 1
        progress.last_activity = _utcnow_iso()
        if isinstance(record, AssistantMessage):
            uses = record.tool_uses()
            if uses:
                progress.current_tool = uses[-1].name
        elif isinstance(record, ResultRecord):
            usage = record.usage()
            progress.input_tokens = usage.input_tokens
            progress.output_tokens = usage.output_tokens
            progress.cache_read_tokens = usage.cache_read_input_tokens
            progress.total_cost_usd = usage.total_cost_usd

    @staticmethod
    def _build_outcome(
        task: Task,
        context: WorkflowContext,
        execution: ExecutionRecord,
        progress: TaskProgress,
    ) -> TaskOutcome:
        terminal = execution.terminal_record
        result = terminal.result if isinstance(terminal, ResultRecord) else ""
        if execution.aborted:
            status = ABORTED
        elif execution.status == EXECUTION_COMPLETED:
            status = SUCCEEDED
        else:
            status = FAILED

        error = ""
        if status != SUCCEEDED:
            if isinstance(terminal, ErrorRecord) and terminal.message:
                error = terminal.message
            elif execution.errors:
                error = execution.errors[0]
            else:
                error = "Execution failed"
        progress.status = {SUCCEEDED: "completed", FAILED: "failed", ABORTED: "aborted"}[status]
        return TaskOutcome(
            workflow_id=context.workflow_id,
            task_id=task.id,
            agent_name=task.agent,
            status=status,
            result=result,
            error=error,
            session_id=execution.session_id,
            progress=progress,
        )

    def _record_metrics(self, outcome: TaskOutcome) -> None:
        if self.store is None:
            return
        row = {
            "workflow_id": outcome.workflow_id,
            "task_id": outcome.task_id,
            "agent_name": outcome.agent_name,
            "session_id": outcome.session_id,
            "status": outcome.status,
            "event_count": outcome.progress.event_count,
            "input_tokens": outcome.progress.input_tokens,
            "output_tokens": outcome.progress.output_tokens,
            "cache_read_tokens": outcome.progress.cache_read_tokens,
            "total_cost_usd": outcome.progress.total_cost_usd,
            "duration_seconds": outcome.duration_seconds,
        }
        write = asyncio.create_task(self._write_metrics(row))
        self._metric_writes.add(write)
        write.add_done_callback(self._metric_writes.discard)

    async def _write_metrics(self, row: dict[str, Any]) -> None:
        try:
            await self.store.save_task_metrics(row)
        except PersistenceError as e:
            log.warning("Task metrics not saved", task_id=row["task_id"], error=str(e))

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def session_for(self, workflow_id: str, task_id: str) -> str | None:
        return self._inflight.get((workflow_id, task_id))

    def abort(self, workflow_id: str, task_id: str) -> bool:
        session_id = self._inflight.get((workflow_id, task_id))
        if session_id is None:
            return False
        return self.executions.kill_execution(session_id)

    def abort_workflow(self, workflow_id: str) -> int:
        aborted = 0
        for (wf_id, task_id) in list(self._inflight):
            if wf_id == workflow_id and self.abort(wf_id, task_id):
                aborted += 1
        return aborted

    # ------------------------------------------------------------------
    # Direct mode
    # ------------------------------------------------------------------

    async def execute_with_agent(
        self,
        agent_name: str,
        query: str,
        project_path: str,
    ) -> ExecutionRecord:
        """Run a free-form query through one agent, outside any workflow."""
        definition = self.pool.get_definition(agent_name)
        if definition is None:
            raise AgentNotFoundError(agent_name)
        if self.pool.find_idle(agent_name) is None:
            raise ConductorError(f"Agent is busy: {agent_name}", {"agent": agent_name})
        self.pool.mark_busy(agent_name, "direct")
        try:
            session_id = self.executions.start_execution(StartExecutionParams(
                project_path=project_path,
                query=query,
                agent_name=agent_name,
                model=definition.model,
                mcp_config=definition.mcp_config,
                allowed_tools=list(definition.allowed_tools),
            ))
            self.pool.set_session(agent_name, session_id)
            return await self.executions.wait(session_id)
        finally:
            self.pool.mark_idle(agent_name)

    async def shutdown(self) -> None:
        pending = list(self._followers) + list(self._metric_writes)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
