"""Agent pool for workflow task dispatch.

Tracks one instance per named agent definition and whether it is idle or
busy. Every method is synchronous, so an idle check followed by
``mark_busy`` cannot interleave with another dispatch on the event loop.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from conductor.agent_definitions import AgentDefinition, AgentDefinitionLoader
from conductor.exceptions import AgentNotFoundError
from conductor.logging import get_logger

log = get_logger(__name__)

IDLE = "idle"
BUSY = "busy"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class AgentInstance:
    name: str
    definition: AgentDefinition
    status: str = IDLE
    current_task_id: str | None = None
    current_session_id: str | None = None
    completed_tasks: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    last_active: str = field(default_factory=_utcnow_iso)
    _created_monotonic: float = field(default_factory=time.monotonic, repr=False)

    @property
    def is_idle(self) -> bool:
        return self.status == IDLE

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._created_monotonic


@dataclass
class AgentStats:
    name: str
    status: str
    current_task_id: str | None
    total_completed: int
    uptime_seconds: float
    last_active: str


@dataclass
class PoolStats:
    total: int = 0
    idle: int = 0
    busy: int = 0
    agents: list[AgentStats] = field(default_factory=list)


class AgentPool:
    """Registry of agent definitions plus their live instances."""

    def __init__(self, loader: AgentDefinitionLoader | None = None):
        self._loader = loader or AgentDefinitionLoader()
        self._definitions: dict[str, AgentDefinition] = {}
        self._instances: dict[str, AgentInstance] = {}
        self._project_path: str | None = None

    @property
    def size(self) -> int:
        """Current number of live instances."""
        return len(self._instances)

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def load_definitions(self, project_path: str | Path | None) -> dict[str, AgentDefinition]:
        """Replace the definition registry with what is on disk."""
        self._project_path = str(project_path) if project_path is not None else None
        self._definitions = self._loader.load_all(project_path)
        # Instances for removed definitions are dropped unless they are working.
        for name in list(self._instances):
            if name not in self._definitions and self._instances[name].is_idle:
                del self._instances[name]
        return dict(self._definitions)

    def reload_definitions(self) -> dict[str, AgentDefinition]:
        return self.load_definitions(self._project_path)

    def register_definition(self, definition: AgentDefinition) -> None:
        self._definitions[definition.name] = definition
        instance = self._instances.get(definition.name)
        if instance is not None:
            instance.definition = definition

    def has_definition(self, name: str) -> bool:
        return name in self._definitions

    def get_definition(self, name: str) -> AgentDefinition | None:
        return self._definitions.get(name)

    def get_agent_names(self) -> list[str]:
        return sorted(self._definitions)

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def get_or_create(self, name: str) -> AgentInstance:
        instance = self._instances.get(name)
        if instance is not None:
            return instance
        definition = self._definitions.get(name)
        if definition is None:
            raise AgentNotFoundError(name)
        instance = AgentInstance(name=name, definition=definition)
        self._instances[name] = instance
        log.info("Created agent instance", agent=name, pool_size=len(self._instances))
        return instance

    def get_agent(self, name: str) -> AgentInstance | None:
        return self._instances.get(name)

    def find_idle(self, name: str) -> AgentInstance | None:
        """Idle instance for ``name``, creating it on first use."""
        if name not in self._instances and name not in self._definitions:
            return None
        instance = self.get_or_create(name)
        return instance if instance.is_idle else None

    def mark_busy(self, name: str, task_id: str, session_id: str | None = None) -> AgentInstance | None:
        """Assign ``task_id`` to an existing instance; unknown names are logged and ignored."""
        instance = self._instances.get(name)
        if instance is None:
            log.warning("mark_busy for unknown agent", agent=name, task_id=task_id)
            return None
        instance.status = BUSY
        instance.current_task_id = task_id
        instance.current_session_id = session_id
        instance.last_active = _utcnow_iso()
        log.debug("Agent busy", agent=name, task_id=task_id)
        return instance

    def set_session(self, name: str, session_id: str) -> None:
        instance = self._instances.get(name)
        if instance is not None:
            instance.current_session_id = session_id

    def mark_idle(self, name: str, completed_task_id: str | None = None) -> None:
        instance = self._instances.get(name)
        if instance is None:
            log.warning("mark_idle for unknown agent", agent=name)
            return
        if completed_task_id:
            instance.completed_tasks.append(completed_task_id)
        instance.status = IDLE
        instance.current_task_id = None
        instance.current_session_id = None
        instance.last_active = _utcnow_iso()
        log.debug("Agent idle", agent=name, completed=len(instance.completed_tasks))

    def clear_instances(self) -> None:
        self._instances.clear()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_agent_stats(self, name: str) -> AgentStats | None:
        instance = self._instances.get(name)
        if instance is None:
            return None
        return AgentStats(
            name=instance.name,
            status=instance.status,
            current_task_id=instance.current_task_id,
            total_completed=len(instance.completed_tasks),
            uptime_seconds=instance.uptime_seconds,
            last_active=instance.last_active,
        )

    def get_pool_stats(self) -> PoolStats:
        stats = PoolStats(total=len(self._instances))
        for name in sorted(self._instances):
            instance = self._instances[name]
            if instance.is_idle:
                stats.idle += 1
            else:
                stats.busy += 1
            agent_stats = self.get_agent_stats(name)
            if agent_stats is not None:
                stats.agents.append(agent_stats)
        return stats
