"""Workflow scheduler: runs task DAGs against the agent pool.

Each workflow moves through ``idle -> running -> {paused, stopped,
completed}``. A scheduling pass is a plain synchronous method, so the
running-task count it reads is still accurate when it dispatches. Task
outcomes arrive from the router and trigger the next pass.
"""

from __future__ import annotations

import asyncio
import copy
import time
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Callable, Iterable

from conductor.agent_pool import AgentPool
from conductor.checkpoint_store import CheckpointStore
from conductor.config import SchedulerConfig
from conductor.exceptions import (
    AgentNotFoundError,
    ConductorError,
    PersistenceError,
    ValidationError,
    WorkflowNotFoundError,
)
from conductor.logging import get_logger
from conductor.task_graph import (
    AWAITING_APPROVAL,
    CANCELLED,
    COMPLETED,
    FAILED,
    PENDING,
    READY,
    RUNNING,
    Task,
    TaskGraph,
)
from conductor.task_router import (
    ABORTED,
    SUCCEEDED,
    TaskOutcome,
    TaskProgress,
    TaskRouter,
    WorkflowContext,
)

log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Workflow statuses and events
# ---------------------------------------------------------------------------

WORKFLOW_IDLE = "idle"
WORKFLOW_RUNNING = "running"
WORKFLOW_PAUSED = "paused"
WORKFLOW_STOPPED = "stopped"
WORKFLOW_COMPLETED = "completed"

WORKFLOW_STARTED = "workflow_started"
WORKFLOW_PAUSED_EVENT = "workflow_paused"
WORKFLOW_RESUMED = "workflow_resumed"
WORKFLOW_STOPPED_EVENT = "workflow_stopped"
WORKFLOW_COMPLETED_EVENT = "workflow_completed"
TASK_STARTED = "task_started"
TASK_COMPLETED = "task_completed"
TASK_FAILED = "task_failed"
TASK_RETRYING = "task_retrying"
TASK_CANCELLED = "task_cancelled"
APPROVAL_REQUESTED = "approval_requested"

STOPPED_REASON = "Workflow stopped"
REJECTED_REASON = "Approval rejected"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@dataclass
class WorkflowState:
    workflow_id: str
    project_path: str
    status: str = WORKFLOW_IDLE
    tasks: dict[str, Task] = field(default_factory=dict)
    completed_tasks: list[str] = field(default_factory=list)
    failed_tasks: list[str] = field(default_factory=list)
    cancelled_tasks: list[str] = field(default_factory=list)
    aborted_tasks: list[str] = field(default_factory=list)
    task_progress: dict[str, TaskProgress] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=dict)
    task_durations: dict[str, float] = field(default_factory=dict)
    logs: list[str] = field(default_factory=list)
    started_at: str = ""
    last_update: str = ""

    def log(self, message: str) -> None:
        self.logs.append(f"[{_utcnow_iso()}] {message}")
        self.last_update = _utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "project_path": self.project_path,
            "status": self.status,
            "tasks": [task.to_dict() for task in self.tasks.values()],
            "completed_tasks": list(self.completed_tasks),
            "failed_tasks": list(self.failed_tasks),
            "cancelled_tasks": list(self.cancelled_tasks),
            "aborted_tasks": list(self.aborted_tasks),
            "task_progress": {tid: p.to_dict() for tid, p in self.task_progress.items()},
            "results": dict(self.results),
            "task_durations": dict(self.task_durations),
            "logs": list(self.logs),
            "started_at": self.started_at,
            "last_update": self.last_update,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowState":
        tasks = [Task.from_dict(item) for item in data.get("tasks", [])]
        return cls(
            workflow_id=str(data["workflow_id"]),
            project_path=str(data.get("project_path", "")),
            status=str(data.get("status", WORKFLOW_IDLE)),
            tasks={task.id: task for task in tasks},
            completed_tasks=list(data.get("completed_tasks", [])),
            failed_tasks=list(data.get("failed_tasks", [])),
            cancelled_tasks=list(data.get("cancelled_tasks", [])),
            aborted_tasks=list(data.get("aborted_tasks", [])),
            task_progress={
                tid: TaskProgress.from_dict(p)
                for tid, p in (data.get("task_progress") or {}).items()
            },
            results=dict(data.get("results") or {}),
            task_durations=dict(data.get("task_durations") or {}),
            logs=list(data.get("logs", [])),
            started_at=str(data.get("started_at", "")),
            last_update=str(data.get("last_update", "")),
        )


@dataclass
class WorkflowEvent:
    type: str
    workflow_id: str
    state: WorkflowState
    task_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utcnow_iso)


@dataclass
class WorkflowStats:
    status: str
    total: int = 0
    pending: int = 0
    ready: int = 0
    awaiting_approval: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    aborted: int = 0
    elapsed_seconds: float = 0.0
    estimated_remaining_seconds: float | None = None


Listener = Callable[[WorkflowEvent], Any]


@dataclass
class _WorkflowRun:
    state: WorkflowState
    graph: TaskGraph
    max_concurrent: int
    started_monotonic: float
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task_started: dict[str, float] = field(default_factory=dict)
    retry_timers: dict[str, asyncio.TimerHandle] = field(default_factory=dict)
    last_checkpoint: asyncio.Task[None] | None = None


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class WorkflowScheduler:
    """Owns workflow state and decides what runs next."""

    def __init__(
        self,
        config: SchedulerConfig,
        pool: AgentPool,
        router: TaskRouter,
        checkpoints: CheckpointStore | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.config = config
        self.pool = pool
        self.router = router
        self.checkpoints = checkpoints
        self._clock = clock or time.monotonic
        self._runs: dict[str, _WorkflowRun] = {}
        self._listeners: list[Listener] = []
        self._closing = False

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(
        self,
        run: _WorkflowRun,
        event_type: str,
        task_id: str | None = None,
        **data: Any,
    ) -> None:
        if not self._listeners:
            return
        event = WorkflowEvent(
            type=event_type,
            workflow_id=run.state.workflow_id,
            state=copy.deepcopy(run.state),
            task_id=task_id,
            data=data,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                log.error("Workflow listener failed", event=event_type, error=str(e))

    # ------------------------------------------------------------------
    # Workflow lifecycle
    # ------------------------------------------------------------------

    def start_workflow(
        self,
        workflow_id: str,
        project_path: str,
        tasks: Iterable[Task | dict[str, Any]],
        max_concurrent: int | None = None,
    ) -> WorkflowState:
        """Validate the task set and begin running it.

        Raises:
            ValidationError: duplicate ids, unknown or cyclic dependencies,
                unknown agents, or a workflow id already in progress. Nothing
                is started when this is raised.
        """
        existing = self._runs.get(workflow_id)
        if existing is not None and existing.state.status in (WORKFLOW_RUNNING, WORKFLOW_PAUSED):
            raise ValidationError(
                f"Workflow already in progress: {workflow_id}", {"workflow_id": workflow_id}
            )

        task_list = [self._fresh_task(t) for t in tasks]
        if not task_list:
            raise ValidationError("Workflow has no tasks", {"workflow_id": workflow_id})
        graph = TaskGraph(task_list)
        self._check_agents(graph)

        now = _utcnow_iso()
        state = WorkflowState(
            workflow_id=workflow_id,
            project_path=project_path,
            status=WORKFLOW_RUNNING,
            tasks={tid: graph.get(tid) for tid in graph.order},
            started_at=now,
            last_update=now,
        )
        run = _WorkflowRun(
            state=state,
            graph=graph,
            max_concurrent=max(1, int(max_concurrent or self.config.max_concurrent)),
            started_monotonic=self._clock(),
        )
        self._runs[workflow_id] = run
        state.log(f"Workflow started with {len(graph)} tasks")
        log.info(
            "Workflow started",
            workflow_id=workflow_id,
            tasks=len(graph),
            levels=len(graph.levels()),
            max_concurrent=run.max_concurrent,
        )
        self._emit(run, WORKFLOW_STARTED, total_tasks=len(graph))
        self._schedule(run)
        return self._snapshot(workflow_id)

    def pause_workflow(self, workflow_id: str) -> bool:
        """Stop dispatching new tasks. Running tasks finish normally."""
        run = self._require(workflow_id)
        if run.state.status != WORKFLOW_RUNNING:
            return False
        run.state.status = WORKFLOW_PAUSED
        run.state.log("Workflow paused")
        log.info("Workflow paused", workflow_id=workflow_id)
        self._emit(run, WORKFLOW_PAUSED_EVENT)
        self._checkpoint(run)
        return True

    async def resume_workflow(
        self,
        workflow_id: str,
        tasks: Iterable[Task | dict[str, Any]] | None = None,
    ) -> WorkflowState:
        """Continue a paused or stopped workflow, loading its checkpoint when needed."""
        run = self._runs.get(workflow_id)
        if run is None:
            run = await self._restore(workflow_id, tasks)
        elif run.state.status == WORKFLOW_RUNNING:
            return self._snapshot(workflow_id)
        elif run.state.status == WORKFLOW_COMPLETED:
            raise ValidationError(
                f"Workflow already completed: {workflow_id}", {"workflow_id": workflow_id}
            )
        elif run.state.status == WORKFLOW_STOPPED:
            self._revive(run)

        run.state.status = WORKFLOW_RUNNING
        run.done.clear()
        run.state.log("Workflow resumed")
        log.info("Workflow resumed", workflow_id=workflow_id)
        self._emit(run, WORKFLOW_RESUMED)
        for task in run.state.tasks.values():
            if task.status == AWAITING_APPROVAL:
                self._emit(run, APPROVAL_REQUESTED, task.id, message=task.approval.message,
                           approver=task.approval.approver)
        self._schedule(run)
        return self._snapshot(workflow_id)

    def stop_workflow(self, workflow_id: str) -> bool:
        """Abort in-flight executions and cancel everything that has not finished."""
        run = self._require(workflow_id)
        if run.state.status in (WORKFLOW_STOPPED, WORKFLOW_COMPLETED):
            return False
        run.state.status = WORKFLOW_STOPPED
        aborted = self.router.abort_workflow(workflow_id)
        for handle in run.retry_timers.values():
            handle.cancel()
        run.retry_timers.clear()
        for task in run.state.tasks.values():
            if not task.is_terminal():
                task.status = CANCELLED
                task.error = STOPPED_REASON
                run.state.cancelled_tasks.append(task.id)
        run.state.log(f"Workflow stopped ({aborted} executions aborted)")
        log.info("Workflow stopped", workflow_id=workflow_id, aborted=aborted)
        self._emit(run, WORKFLOW_STOPPED_EVENT, aborted=aborted)
        run.done.set()
        self._checkpoint(run)
        return True

    def respond_to_approval(
        self,
        task_id: str,
        approved: bool,
        workflow_id: str | None = None,
    ) -> None:
        run, task = self._find_awaiting(task_id, workflow_id)
        state = run.state
        if approved:
            task.approved = True
            task.status = READY
            state.log(f"Task {task_id} approved")
            log.info("Task approved", workflow_id=state.workflow_id, task_id=task_id)
        else:
            task.status = CANCELLED
            task.error = REJECTED_REASON
            state.cancelled_tasks.append(task_id)
            state.log(f"Task {task_id} rejected")
            log.info("Task rejected", workflow_id=state.workflow_id, task_id=task_id)
            self._emit(run, TASK_CANCELLED, task_id, reason=REJECTED_REASON)
            self._cancel_dependents(run, task_id, f"Dependency {task_id} rejected")
        self._schedule(run)

    async def wait_for_completion(self, workflow_id: str, timeout: float | None = None) -> WorkflowState:
        """Wait until the workflow completes or is stopped."""
        run = self._require(workflow_id)
        await asyncio.wait_for(run.done.wait(), timeout=timeout)
        return self._snapshot(workflow_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_workflow_state(self, workflow_id: str) -> WorkflowState | None:
        """Snapshot of the workflow, or ``None`` for an unknown id."""
        run = self._runs.get(workflow_id)
        return copy.deepcopy(run.state) if run is not None else None

    def _snapshot(self, workflow_id: str) -> WorkflowState:
        return copy.deepcopy(self._require(workflow_id).state)

    def list_workflows(self) -> list[str]:
        return list(self._runs)

    def get_stats(self, workflow_id: str) -> WorkflowStats:
        run = self._require(workflow_id)
        state = run.state
        stats = WorkflowStats(status=state.status, total=len(state.tasks))
        for task in state.tasks.values():
            if task.status == PENDING:
                stats.pending += 1
            elif task.status == READY:
                stats.ready += 1
            elif task.status == AWAITING_APPROVAL:
                stats.awaiting_approval += 1
            elif task.status == RUNNING:
                stats.running += 1
            elif task.status == COMPLETED:
                stats.completed += 1
            elif task.status == FAILED:
                stats.failed += 1
            elif task.status == CANCELLED:
                stats.cancelled += 1
        stats.aborted = len(state.aborted_tasks)
        stats.elapsed_seconds = self._clock() - run.started_monotonic
        durations = [state.task_durations[t] for t in state.completed_tasks if t in state.task_durations]
        if durations:
            remaining = stats.pending + stats.ready + stats.awaiting_approval + stats.running
            stats.estimated_remaining_seconds = sum(durations) / len(durations) * remaining
        return stats

    # ------------------------------------------------------------------
    # Task observer
    # ------------------------------------------------------------------

    def on_task_progress(self, workflow_id: str, task_id: str, progress: TaskProgress) -> None:
        run = self._runs.get(workflow_id)
        task = run.state.tasks.get(task_id) if run else None
        if run is None or task is None or task.status != RUNNING:
            return
        run.state.task_progress[task_id] = progress
        run.state.last_update = _utcnow_iso()

    def on_task_finished(self, outcome: TaskOutcome) -> None:
        if self._closing:
            log.debug("Ignoring task outcome during shutdown", task_id=outcome.task_id)
            return
        run = self._runs.get(outcome.workflow_id)
        task = run.state.tasks.get(outcome.task_id) if run else None
        stale = (
            run is None
            or task is None
            or task.status != RUNNING
            or (outcome.session_id and task.session_id and outcome.session_id != task.session_id)
        )
        if stale:
            log.debug("Ignoring stale task outcome", workflow_id=outcome.workflow_id, task_id=outcome.task_id)
            # The agent is free again; something else may be waiting for it.
            for other in list(self._runs.values()):
                if other.state.status == WORKFLOW_RUNNING:
                    self._schedule(other)
            return

        state = run.state
        state.task_progress[task.id] = outcome.progress
        started = run.task_started.pop(task.id, None)
        if started is not None:
            state.task_durations[task.id] = self._clock() - started

        if outcome.status == SUCCEEDED:
            task.status = COMPLETED
            task.error = ""
            state.completed_tasks.append(task.id)
            state.results[task.id] = outcome.result
            state.log(f"Task {task.id} completed")
            log.info("Task completed", workflow_id=state.workflow_id, task_id=task.id)
            self._emit(run, TASK_COMPLETED, task.id, result=outcome.result)
        elif outcome.status == ABORTED:
            task.status = CANCELLED
            task.error = outcome.error
            state.cancelled_tasks.append(task.id)
            state.aborted_tasks.append(task.id)
            state.log(f"Task {task.id} aborted")
            log.info("Task aborted", workflow_id=state.workflow_id, task_id=task.id)
            self._emit(run, TASK_CANCELLED, task.id, reason=outcome.error, aborted=True)
            self._cancel_dependents(run, task.id, f"Dependency {task.id} aborted")
        else:
            self._handle_failure(run, task, outcome.error)

        self._schedule(run)
        # A freed agent may unblock ready tasks in other workflows.
        for other in list(self._runs.values()):
            if other is not run and other.state.status == WORKFLOW_RUNNING:
                self._schedule(other)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule(self, run: _WorkflowRun) -> None:
        state = run.state
        if state.status == WORKFLOW_RUNNING:
            for task in run.graph.ready_tasks(state.completed_tasks, self._clock()):
                if task.id in run.retry_timers:
                    continue
                if task.needs_approval:
                    if task.status != AWAITING_APPROVAL:
                        task.status = AWAITING_APPROVAL
                        state.log(f"Task {task.id} awaiting approval")
                        log.info("Approval requested", workflow_id=state.workflow_id, task_id=task.id)
                        self._emit(run, APPROVAL_REQUESTED, task.id, message=task.approval.message,
                                   approver=task.approval.approver)
                    continue
                task.status = READY
                if self._running_count(state) >= run.max_concurrent:
                    continue
                self._dispatch(run, task)
            self._check_completion(run)
        self._checkpoint(run)

    def _dispatch(self, run: _WorkflowRun, task: Task) -> None:
        state = run.state
        context = WorkflowContext(
            workflow_id=state.workflow_id,
            project_path=state.project_path,
            observer=self,
            dependency_results={dep: state.results.get(dep) for dep in task.depends_on},
        )
        try:
            outcome = self.router.dispatch(task, context)
        except ConductorError as e:
            log.error("Dispatch failed", workflow_id=state.workflow_id, task_id=task.id, error=str(e))
            task.attempts += 1
            self._handle_failure(run, task, str(e))
            return
        if not outcome.dispatched:
            log.debug("Task waiting for agent", task_id=task.id, agent=task.agent, reason=outcome.reason)
            return

        task.status = RUNNING
        task.attempts += 1
        task.not_before = 0.0
        task.session_id = outcome.session_id
        run.task_started[task.id] = self._clock()
        state.task_progress[task.id] = TaskProgress(status="running", last_activity=_utcnow_iso())
        state.log(f"Task {task.id} started on {task.agent} (attempt {task.attempts})")
        self._emit(run, TASK_STARTED, task.id, agent=task.agent, attempt=task.attempts,
                   session_id=outcome.session_id)

    def _handle_failure(self, run: _WorkflowRun, task: Task, error: str) -> None:
        state = run.state
        task.error = error
        if task.attempts <= self.config.max_retries:
            delay = self.config.retry_delay_seconds
            task.status = PENDING
            task.not_before = self._clock() + delay
            state.log(f"Task {task.id} failed, retrying in {delay}s: {error}")
            log.warning(
                "Task retrying",
                workflow_id=state.workflow_id,
                task_id=task.id,
                attempt=task.attempts,
                delay_seconds=delay,
                error=error,
            )
            self._emit(run, TASK_RETRYING, task.id, attempt=task.attempts, delay_seconds=delay,
                       error=error)
            self._arm_retry(run, task.id, delay)
            return

        task.status = FAILED
        state.failed_tasks.append(task.id)
        state.log(f"Task {task.id} failed: {error}")
        log.error("Task failed", workflow_id=state.workflow_id, task_id=task.id, error=error)
        self._emit(run, TASK_FAILED, task.id, error=error, attempts=task.attempts)
        self._cancel_dependents(run, task.id, f"Dependency {task.id} failed")

    def _arm_retry(self, run: _WorkflowRun, task_id: str, delay: float) -> None:
        existing = run.retry_timers.pop(task_id, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        run.retry_timers[task_id] = loop.call_later(
            delay, self._on_retry_due, run.state.workflow_id, task_id
        )

    def _on_retry_due(self, workflow_id: str, task_id: str) -> None:
        run = self._runs.get(workflow_id)
        if run is None:
            return
        run.retry_timers.pop(task_id, None)
        task = run.state.tasks.get(task_id)
        if task is not None and task.status == PENDING:
            task.not_before = 0.0
        self._schedule(run)

    def _cancel_dependents(self, run: _WorkflowRun, task_id: str, reason: str) -> None:
        for dep_id in run.graph.transitive_dependents(task_id):
            task = run.state.tasks[dep_id]
            if task.is_terminal() or task.status == RUNNING:
                continue
            timer = run.retry_timers.pop(dep_id, None)
            if timer is not None:
                timer.cancel()
            task.status = CANCELLED
            task.error = reason
            run.state.cancelled_tasks.append(dep_id)
            run.state.log(f"Task {dep_id} cancelled: {reason}")
            self._emit(run, TASK_CANCELLED, dep_id, reason=reason)

    def _check_completion(self, run: _WorkflowRun) -> None:
        state = run.state
        if state.status != WORKFLOW_RUNNING or not run.graph.all_terminal():
            return
        state.status = WORKFLOW_COMPLETED
        state.log("Workflow completed")
        log.info(
            "Workflow completed",
            workflow_id=state.workflow_id,
            completed=len(state.completed_tasks),
            failed=len(state.failed_tasks),
            cancelled=len(state.cancelled_tasks),
        )
        self._emit(
            run,
            WORKFLOW_COMPLETED_EVENT,
            completed=len(state.completed_tasks),
            failed=len(state.failed_tasks),
            cancelled=len(state.cancelled_tasks),
        )
        run.done.set()

    @staticmethod
    def _running_count(state: WorkflowState) -> int:
        return sum(1 for task in state.tasks.values() if task.status == RUNNING)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, workflow_id: str) -> _WorkflowRun:
        run = self._runs.get(workflow_id)
        if run is None:
            raise WorkflowNotFoundError(workflow_id)
        return run

    def _find_awaiting(self, task_id: str, workflow_id: str | None) -> tuple[_WorkflowRun, Task]:
        runs = [self._require(workflow_id)] if workflow_id else list(self._runs.values())
        for run in runs:
            task = run.state.tasks.get(task_id)
            if task is not None and task.status == AWAITING_APPROVAL:
                return run, task
        raise ValidationError(
            f"Task is not awaiting approval: {task_id}",
            {"task_id": task_id, "workflow_id": workflow_id},
        )

    def _check_agents(self, graph: TaskGraph) -> None:
        for task in graph.tasks.values():
            if not self.pool.has_definition(task.agent):
                raise AgentNotFoundError(task.agent)

    @staticmethod
    def _fresh_task(item: Task | dict[str, Any]) -> Task:
        if not isinstance(item, Task):
            item = Task.from_dict(item)
        # Copied so the caller's instance never aliases live workflow state.
        return replace(
            item,
            depends_on=list(item.depends_on),
            approval=replace(item.approval),
            status=PENDING,
            attempts=0,
            approved=False,
            error="",
            session_id="",
            not_before=0.0,
        )

    @staticmethod
    def _normalize_for_resume(task: Task) -> None:
        # Interrupted work runs again; finished work is kept.
        if task.status in (RUNNING, READY):
            task.status = PENDING
        elif task.status == CANCELLED and task.error == STOPPED_REASON:
            task.status = PENDING
            task.error = ""
        task.not_before = 0.0

    def _revive(self, run: _WorkflowRun) -> None:
        state = run.state
        for task in state.tasks.values():
            self._normalize_for_resume(task)
        state.cancelled_tasks = [
            tid for tid in state.cancelled_tasks if state.tasks[tid].status == CANCELLED
        ]

    async def _restore(
        self,
        workflow_id: str,
        tasks: Iterable[Task | dict[str, Any]] | None,
    ) -> _WorkflowRun:
        data = await self.checkpoints.load(workflow_id) if self.checkpoints else None
        if data is None:
            raise WorkflowNotFoundError(workflow_id)
        state = WorkflowState.from_dict(data)

        if tasks is not None:
            previous = state.tasks
            rebuilt: dict[str, Task] = {}
            for item in tasks:
                task = self._fresh_task(item)
                old = previous.get(task.id)
                if old is not None:
                    task.status = old.status
                    task.attempts = old.attempts
                    task.approved = old.approved
                    task.error = old.error
                    task.session_id = old.session_id
                rebuilt[task.id] = task
            state.tasks = rebuilt

        for task in state.tasks.values():
            self._normalize_for_resume(task)
        graph = TaskGraph(state.tasks.values())
        self._check_agents(graph)
        state.tasks = {tid: graph.get(tid) for tid in graph.order}
        state.completed_tasks = [tid for tid in graph.order if state.tasks[tid].status == COMPLETED]
        state.failed_tasks = [tid for tid in graph.order if state.tasks[tid].status == FAILED]
        state.cancelled_tasks = [tid for tid in graph.order if state.tasks[tid].status == CANCELLED]
        state.aborted_tasks = [tid for tid in state.aborted_tasks if tid in state.cancelled_tasks]

        run = _WorkflowRun(
            state=state,
            graph=graph,
            max_concurrent=self.config.max_concurrent,
            started_monotonic=self._clock(),
        )
        self._runs[workflow_id] = run
        log.info(
            "Workflow restored from checkpoint",
            workflow_id=workflow_id,
            completed=len(state.completed_tasks),
            remaining=sum(1 for t in state.tasks.values() if not t.is_terminal()),
        )
        return run

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def _checkpoint(self, run: _WorkflowRun) -> None:
        if self.checkpoints is None or not self.config.checkpoints:
            return
        data = run.state.to_dict()
        run.last_checkpoint = asyncio.create_task(self._write_checkpoint(run.last_checkpoint, data))

    async def _write_checkpoint(self, previous: asyncio.Task[None] | None, data: dict[str, Any]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            await self.checkpoints.save(data)
        except PersistenceError as e:
            log.warning("Checkpoint not saved", workflow_id=data["workflow_id"], error=str(e))

    async def flush_checkpoints(self) -> None:
        """Wait for every queued checkpoint write."""
        for run in list(self._runs.values()):
            while run.last_checkpoint is not None and not run.last_checkpoint.done():
                await asyncio.wait({run.last_checkpoint})

    async def shutdown(self) -> None:
        """Stop reacting to outcomes and persist the latest state of every workflow."""
        self._closing = True
        for run in self._runs.values():
            for handle in run.retry_timers.values():
                handle.cancel()
            run.retry_timers.clear()
        await self.flush_checkpoints()
