"""Heartbeat tracking and zombie detection for agent executions."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable

from conductor.config import LivenessConfig
from conductor.exceptions import PersistenceError
from conductor.execution_store import ExecutionStore
from conductor.logging import get_logger

log = get_logger(__name__)

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
ZOMBIE = "zombie"

RECOMMEND_OK = "ok"
RECOMMEND_MONITOR = "monitor"
RECOMMEND_CLEANUP = "cleanup"

Clock = Callable[[], float]
KillCallback = Callable[[str], Any]


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, UTC).isoformat()


@dataclass
class TrackedExecution:
    session_id: str
    agent_name: str = ""
    task_id: str = ""
    project_path: str = ""
    status: str = RUNNING
    start_time: float = 0.0
    last_heartbeat: float = 0.0

    def to_row(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent_name": self.agent_name,
            "task_id": self.task_id,
            "project_path": self.project_path,
            "status": self.status,
            "start_time": _iso(self.start_time),
            "last_heartbeat": _iso(self.last_heartbeat),
        }


@dataclass
class HealthStatus:
    is_alive: bool
    is_zombie: bool
    last_heartbeat: float
    seconds_since_heartbeat: float
    recommendation: str


@dataclass
class HealthSummary:
    total: int = 0
    healthy: int = 0
    zombies: int = 0
    finished: int = 0
    cleaned_up: list[str] = field(default_factory=list)


class LivenessTracker:
    """Independent view of which executions are still making progress.

    Entries receive heartbeats from the task router. A running entry whose
    last heartbeat is older than the zombie threshold is reported as a
    zombie; once it is older than the cleanup threshold a sweep kills it
    through ``kill_callback`` and drops it. State changes are written to the
    execution store on a best-effort basis.
    """

    def __init__(
        self,
        config: LivenessConfig | None = None,
        store: ExecutionStore | None = None,
        clock: Clock | None = None,
        kill_callback: KillCallback | None = None,
    ):
        self.config = config or LivenessConfig()
        self._store = store
        self._clock = clock or time.time
        self.kill_callback = kill_callback
        self._entries: dict[str, TrackedExecution] = {}
        self._health_task: asyncio.Task[None] | None = None
        self._pending_writes: set[asyncio.Task[None]] = set()
        self._last_write: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_execution(self, session_id: str, metadata: dict[str, Any] | None = None) -> TrackedExecution:
        meta = metadata or {}
        now = self._clock()
        entry = TrackedExecution(
            session_id=session_id,
            agent_name=str(meta.get("agent_name", "")),
            task_id=str(meta.get("task_id", "")),
            project_path=str(meta.get("project_path", "")),
            start_time=now,
            last_heartbeat=now,
        )
        self._entries[session_id] = entry
        self._persist(entry)
        log.debug("Execution registered", session_id=session_id, agent=entry.agent_name)
        return entry

    def update_heartbeat(self, session_id: str) -> bool:
        entry = self._entries.get(session_id)
        if entry is None:
            return False
        entry.last_heartbeat = self._clock()
        if entry.status == ZOMBIE:
            entry.status = RUNNING
            log.info("Execution recovered from zombie state", session_id=session_id)
            self._persist(entry)
        return True

    def update_status(self, session_id: str, status: str) -> bool:
        entry = self._entries.get(session_id)
        if entry is None:
            return False
        entry.status = status
        entry.last_heartbeat = self._clock()
        self._persist(entry)
        return True

    def unregister_execution(self, session_id: str) -> bool:
        return self._entries.pop(session_id, None) is not None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_all_tracked(self) -> list[TrackedExecution]:
        return list(self._entries.values())

    def get_active_executions(self) -> list[TrackedExecution]:
        return [e for e in self._entries.values() if e.status in (RUNNING, ZOMBIE)]

    def get_execution(self, session_id: str) -> TrackedExecution | None:
        return self._entries.get(session_id)

    def get_zombie_processes(self) -> list[TrackedExecution]:
        """Running entries past the heartbeat threshold, re-labelled as zombies."""
        now = self._clock()
        zombies: list[TrackedExecution] = []
        for entry in self._entries.values():
            if entry.status not in (RUNNING, ZOMBIE):
                continue
            if now - entry.last_heartbeat <= self.config.zombie_threshold_seconds:
                continue
            if entry.status != ZOMBIE:
                entry.status = ZOMBIE
                log.warning(
                    "Zombie execution detected",
                    session_id=entry.session_id,
                    agent=entry.agent_name,
                    seconds_since_heartbeat=round(now - entry.last_heartbeat, 1),
                )
                self._persist(entry)
            zombies.append(entry)
        return zombies

    def check_execution(self, session_id: str) -> HealthStatus | None:
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        elapsed = self._clock() - entry.last_heartbeat
        active = entry.status in (RUNNING, ZOMBIE)
        is_zombie = active and elapsed > self.config.zombie_threshold_seconds
        if is_zombie and elapsed > self.config.cleanup_after_seconds:
            recommendation = RECOMMEND_CLEANUP
        elif is_zombie:
            recommendation = RECOMMEND_MONITOR
        else:
            recommendation = RECOMMEND_OK
        return HealthStatus(
            is_alive=active and not is_zombie,
            is_zombie=is_zombie,
            last_heartbeat=entry.last_heartbeat,
            seconds_since_heartbeat=elapsed,
            recommendation=recommendation,
        )

    # ------------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------------

    def perform_health_check(self) -> HealthSummary:
        zombies = self.get_zombie_processes()
        summary = HealthSummary(total=len(self._entries), zombies=len(zombies))
        for entry in self._entries.values():
            if entry.status == RUNNING:
                summary.healthy += 1
            elif entry.status in (COMPLETED, FAILED):
                summary.finished += 1

        for entry in zombies:
            status = self.check_execution(entry.session_id)
            if status is not None and status.recommendation == RECOMMEND_CLEANUP:
                self._cleanup(entry)
                summary.cleaned_up.append(entry.session_id)

        log.info(
            "Health check",
            total=summary.total,
            healthy=summary.healthy,
            zombies=summary.zombies,
            cleaned_up=len(summary.cleaned_up),
        )
        return summary

    def _cleanup(self, entry: TrackedExecution) -> None:
        if self.kill_callback is not None:
            try:
                self.kill_callback(entry.session_id)
            except Exception as e:
                log.error("Zombie kill failed", session_id=entry.session_id, error=str(e))
        entry.status = FAILED
        self._persist(entry)
        self.unregister_execution(entry.session_id)
        log.warning("Zombie execution cleaned up", session_id=entry.session_id)

    def start_health_check(self, interval_seconds: float | None = None) -> None:
        if self._health_task is not None and not self._health_task.done():
            return
        interval = interval_seconds or self.config.health_check_interval_seconds
        self._health_task = asyncio.create_task(self._health_loop(interval))
        log.info("Health check started", interval_seconds=interval)

    async def stop_health_check(self) -> None:
        task = self._health_task
        self._health_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _health_loop(self, interval: float) -> None:
        while True:
            try:
                self.perform_health_check()
            except Exception as e:
                log.error("Health check failed", error=str(e))
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, entry: TrackedExecution) -> None:
        if self._store is None:
            return
        try:
            task = asyncio.get_running_loop().create_task(
                self._write(self._last_write, entry.to_row())
            )
        except RuntimeError:
            log.debug("No event loop; execution state not persisted", session_id=entry.session_id)
            return
        self._last_write = task
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _write(self, previous: asyncio.Task[None] | None, row: dict[str, Any]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            await self._store.save_execution(row)
        except PersistenceError as e:
            log.warning("Execution record not saved", session_id=row["session_id"], error=str(e))

    async def flush(self) -> None:
        """Wait for queued persistence writes."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def shutdown(self) -> None:
        await self.stop_health_check()
        await self.flush()
        self._entries.clear()
