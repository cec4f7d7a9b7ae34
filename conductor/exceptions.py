"""Custom exceptions for Conductor."""


class ConductorError(Exception):
    """Base exception for Conductor."""

    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message)
        self.context = dict(context or {})


class ConfigurationError(ConductorError):
    """Configuration-related errors."""

    pass


class ValidationError(ConductorError):
    """Caller input rejected before anything was started."""

    pass


class DuplicateTaskError(ValidationError):
    """Two tasks share the same id."""

    def __init__(self, task_id: str):
        super().__init__(f"Duplicate task id: {task_id}", {"task_id": task_id})
        self.task_id = task_id


class UnknownDependencyError(ValidationError):
    """A task depends on an id that is not part of the workflow."""

    def __init__(self, task_id: str, dependency: str):
        super().__init__(
            f"Task '{task_id}' depends on unknown task '{dependency}'",
            {"task_id": task_id, "dependency": dependency},
        )
        self.task_id = task_id
        self.dependency = dependency


class CyclicDependencyError(ValidationError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        super().__init__(
            f"Dependency cycle between tasks: {', '.join(cycle)}",
            {"cycle": list(cycle)},
        )
        self.cycle = list(cycle)


class AgentNotFoundError(ValidationError):
    """No agent definition registered under the given name."""

    def __init__(self, agent_name: str):
        super().__init__(f"Agent not found: {agent_name}", {"agent": agent_name})
        self.agent_name = agent_name


class WorkflowNotFoundError(ConductorError):
    """Workflow id unknown to the scheduler and to the checkpoint store."""

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow not found: {workflow_id}", {"workflow_id": workflow_id})
        self.workflow_id = workflow_id


class ExecutionError(ConductorError):
    """External agent process errors."""

    pass


class ProcessStartError(ExecutionError):
    """The agent process could not be spawned."""

    def __init__(self, command: str, reason: str):
        super().__init__(f"Failed to start '{command}': {reason}", {"command": command})
        self.command = command
        self.reason = reason


class ExecutionNotFoundError(ExecutionError):
    """Session id unknown to the execution manager."""

    def __init__(self, session_id: str):
        super().__init__(f"Execution not found: {session_id}", {"session_id": session_id})
        self.session_id = session_id


class AbortError(ExecutionError):
    """Execution stopped through its abort signal."""

    def __init__(self, session_id: str, reason: str = "aborted"):
        super().__init__(f"Execution {session_id} aborted: {reason}", {"session_id": session_id})
        self.session_id = session_id
        self.reason = reason


class StreamDecodeError(ConductorError):
    """A stream segment could not be turned into a record.

    Reported through the decoder's error callback, never raised by ``feed``.
    """

    def __init__(self, reason: str, preview: str = ""):
        super().__init__(f"{reason}: {preview}" if preview else reason, {"reason": reason})
        self.reason = reason
        self.preview = preview


class PersistenceError(ConductorError):
    """Checkpoint or execution-record write failed."""

    pass
