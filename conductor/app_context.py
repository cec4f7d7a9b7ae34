"""Application context: one object holding every long-lived component."""

from __future__ import annotations

from dataclasses import dataclass

from conductor.agent_definitions import AgentDefinitionLoader
from conductor.agent_pool import AgentPool
from conductor.checkpoint_store import CheckpointStore
from conductor.config import Config
from conductor.execution_manager import CommandBuilder, ExecutionManager
from conductor.execution_store import ExecutionStore
from conductor.liveness import LivenessTracker
from conductor.logging import get_logger
from conductor.scheduler import WorkflowScheduler
from conductor.task_router import TaskRouter

log = get_logger(__name__)


@dataclass
class AppContext:
    """Explicitly wired components.

    Built once by :meth:`create` and passed to whatever needs them, instead
    of module-level singletons.
    """

    config: Config
    pool: AgentPool
    executions: ExecutionManager
    liveness: LivenessTracker
    router: TaskRouter
    scheduler: WorkflowScheduler
    checkpoints: CheckpointStore
    execution_store: ExecutionStore

    @classmethod
    def create(
        cls,
        config: Config | None = None,
        command_builder: CommandBuilder | None = None,
    ) -> "AppContext":
        config = config or Config.load()
        db_path = config.resolved_db_path()
        checkpoints = CheckpointStore(db_path)
        execution_store = ExecutionStore(db_path)
        pool = AgentPool(AgentDefinitionLoader(config.agents))
        executions = ExecutionManager(config.execution, command_builder=command_builder)
        liveness = LivenessTracker(
            config.liveness,
            store=execution_store,
            kill_callback=lambda session_id: executions.kill_execution(
                session_id, reason="Killed by health check"
            ),
        )
        router = TaskRouter(pool, executions, liveness=liveness, store=execution_store)
        scheduler = WorkflowScheduler(config.scheduler, pool, router, checkpoints=checkpoints)
        return cls(
            config=config,
            pool=pool,
            executions=executions,
            liveness=liveness,
            router=router,
            scheduler=scheduler,
            checkpoints=checkpoints,
            execution_store=execution_store,
        )

    def start(self) -> None:
        """Begin background health checks. Needs a running event loop."""
        self.liveness.start_health_check()

    async def shutdown(self) -> None:
        """Persist workflow state, stop processes and close storage."""
        await self.scheduler.shutdown()
        await self.executions.shutdown()
        await self.router.shutdown()
        await self.liveness.shutdown()
        await self.scheduler.flush_checkpoints()
        await self.checkpoints.close()
        await self.execution_store.close()
        log.info("Conductor shut down")
