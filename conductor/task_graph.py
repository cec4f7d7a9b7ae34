"""Task model and dependency graph for workflows.

Validation and ordering use Kahn's algorithm iteratively, which yields a
stable topological order, the dependency level of every task, and the set
of tasks stuck on a cycle when one exists.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from conductor.exceptions import (
    CyclicDependencyError,
    DuplicateTaskError,
    UnknownDependencyError,
    ValidationError,
)


# ---------------------------------------------------------------------------
# Task statuses
# ---------------------------------------------------------------------------

PENDING = "pending"
READY = "ready"
AWAITING_APPROVAL = "awaiting_approval"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

TERMINAL_STATES = frozenset({COMPLETED, FAILED, CANCELLED})
SCHEDULABLE_STATES = frozenset({PENDING, READY})


# ---------------------------------------------------------------------------
# Task dataclass
# ---------------------------------------------------------------------------


@dataclass
class ApprovalRequirement:
    required: bool = False
    message: str = ""
    approver: str = ""

    @classmethod
    def from_value(cls, value: Any) -> "ApprovalRequirement":
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            return cls(
                required=bool(value.get("required", True)),
                message=str(value.get("message", "") or ""),
                approver=str(value.get("approver", "") or ""),
            )
        return cls(required=bool(value))

    def to_dict(self) -> dict[str, Any]:
        return {"required": self.required, "message": self.message, "approver": self.approver}


@dataclass
class Task:
    """Single unit of work, executed by one named agent."""

    id: str
    title: str
    agent: str
    description: str = ""
    depends_on: list[str] = field(default_factory=list)
    approval: ApprovalRequirement = field(default_factory=ApprovalRequirement)
    status: str = PENDING
    attempts: int = 0
    approved: bool = False
    error: str = ""
    session_id: str = ""
    # Monotonic time before which a retrying task is not schedulable.
    not_before: float = 0.0

    def __post_init__(self) -> None:
        deduped: list[str] = []
        for dep in self.depends_on:
            if dep not in deduped:
                deduped.append(dep)
        self.depends_on = deduped

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def needs_approval(self) -> bool:
        return self.approval.required and not self.approved

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        if not isinstance(data, dict):
            raise ValidationError(f"Task definition must be a mapping, got {type(data).__name__}")
        task_id = str(data.get("id", "") or "").strip()
        if not task_id:
            raise ValidationError("Task definition is missing 'id'")
        agent = str(data.get("agent", data.get("agent_name", data.get("agentName", ""))) or "").strip()
        if not agent:
            raise ValidationError(f"Task '{task_id}' has no agent", {"task_id": task_id})
        depends_on = data.get("depends_on", data.get("dependencies", [])) or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        approval = data.get("approval", data.get("requires_approval", False))
        return cls(
            id=task_id,
            title=str(data.get("title", "") or task_id),
            agent=agent,
            description=str(data.get("description", "") or ""),
            depends_on=[str(d) for d in depends_on],
            approval=ApprovalRequirement.from_value(approval),
            status=str(data.get("status", PENDING) or PENDING),
            attempts=int(data.get("attempts", 0) or 0),
            approved=bool(data.get("approved", False)),
            error=str(data.get("error", "") or ""),
            session_id=str(data.get("session_id", "") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "agent": self.agent,
            "description": self.description,
            "depends_on": list(self.depends_on),
            "approval": self.approval.to_dict(),
            "status": self.status,
            "attempts": self.attempts,
            "approved": self.approved,
            "error": self.error,
            "session_id": self.session_id,
        }


# ---------------------------------------------------------------------------
# TaskGraph
# ---------------------------------------------------------------------------


class TaskGraph:
    """Validated DAG of tasks in stable topological order."""

    def __init__(self, tasks: Iterable[Task]):
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            if task.id in self._tasks:
                raise DuplicateTaskError(task.id)
            self._tasks[task.id] = task

        for task in self._tasks.values():
            for dep in task.depends_on:
                if dep == task.id:
                    raise CyclicDependencyError([task.id])
                if dep not in self._tasks:
                    raise UnknownDependencyError(task.id, dep)

        self._dependents: dict[str, list[str]] = {tid: [] for tid in self._tasks}
        for task in self._tasks.values():
            for dep in task.depends_on:
                self._dependents[dep].append(task.id)

        self._order, self._levels, leftover = self._topological_sort()
        if leftover:
            raise CyclicDependencyError(leftover)

    def _topological_sort(self) -> tuple[list[str], dict[str, int], list[str]]:
        """Kahn's algorithm; returns order, levels and ids left on a cycle."""
        in_degree = {tid: len(task.depends_on) for tid, task in self._tasks.items()}
        levels = {tid: 0 for tid in self._tasks}
        ready = sorted(tid for tid, degree in in_degree.items() if degree == 0)
        order: list[str] = []

        while ready:
            tid = ready.pop(0)
            order.append(tid)
            newly_ready: list[str] = []
            for child in self._dependents[tid]:
                levels[child] = max(levels[child], levels[tid] + 1)
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    newly_ready.append(child)
            if newly_ready:
                ready = sorted(ready + newly_ready)

        stuck = {tid for tid, degree in in_degree.items() if degree > 0}
        # Peel off tasks that only sit downstream of a cycle.
        changed = True
        while changed:
            changed = False
            for tid in sorted(stuck):
                if not any(child in stuck for child in self._dependents[tid]):
                    stuck.discard(tid)
                    changed = True
        return order, levels, sorted(stuck)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def tasks(self) -> dict[str, Task]:
        return dict(self._tasks)

    @property
    def order(self) -> list[str]:
        return list(self._order)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def level(self, task_id: str) -> int:
        return self._levels[task_id]

    def levels(self) -> list[list[str]]:
        """Task ids grouped by dependency depth."""
        grouped: dict[int, list[str]] = {}
        for tid in self._order:
            grouped.setdefault(self._levels[tid], []).append(tid)
        return [grouped[level] for level in sorted(grouped)]

    def dependents(self, task_id: str) -> list[str]:
        return list(self._dependents.get(task_id, []))

    def transitive_dependents(self, task_id: str) -> list[str]:
        """Every task that depends on ``task_id`` directly or indirectly, in order."""
        seen: set[str] = set()
        stack = list(self._dependents.get(task_id, []))
        while stack:
            tid = stack.pop()
            if tid in seen:
                continue
            seen.add(tid)
            stack.extend(self._dependents.get(tid, []))
        return [tid for tid in self._order if tid in seen]

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def ready_tasks(self, completed: Iterable[str], now: float) -> list[Task]:
        """Schedulable tasks whose dependencies are all completed, in order."""
        done = set(completed)
        ready: list[Task] = []
        for tid in self._order:
            task = self._tasks[tid]
            if task.status not in SCHEDULABLE_STATES:
                continue
            if task.not_before > now:
                continue
            if all(dep in done for dep in task.depends_on):
                ready.append(task)
        return ready

    def count(self, status: str) -> int:
        return sum(1 for task in self._tasks.values() if task.status == status)

    def all_terminal(self) -> bool:
        return all(task.is_terminal() for task in self._tasks.values())
