import asyncio

import pytest

from conductor.config import LivenessConfig
from conductor.exceptions import PersistenceError
from conductor.execution_store import ExecutionStore
from conductor.liveness import (
    COMPLETED,
    FAILED,
    RECOMMEND_CLEANUP,
    RECOMMEND_MONITOR,
    RECOMMEND_OK,
    RUNNING,
    ZOMBIE,
    LivenessTracker,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _tracker(clock: FakeClock, **kwargs) -> LivenessTracker:
    config = LivenessConfig(zombie_threshold_seconds=600, cleanup_after_seconds=1200)
    return LivenessTracker(config, clock=clock, **kwargs)


def test_stale_running_entry_becomes_zombie():
    clock = FakeClock()
    tracker = _tracker(clock)
    tracker.register_execution("s1", {"agent_name": "coder", "task_id": "t1"})
    tracker.register_execution("s2")

    clock.advance(300)
    tracker.update_heartbeat("s2")
    clock.advance(400)

    zombies = tracker.get_zombie_processes()

    assert [z.session_id for z in zombies] == ["s1"]
    assert tracker.get_execution("s1").status == ZOMBIE
    assert tracker.get_execution("s2").status == RUNNING


def test_finished_entries_are_never_zombies():
    clock = FakeClock()
    tracker = _tracker(clock)
    tracker.register_execution("s1")
    tracker.update_status("s1", COMPLETED)

    clock.advance(10_000)

    assert tracker.get_zombie_processes() == []
    assert tracker.check_execution("s1").recommendation == RECOMMEND_OK
    assert tracker.get_active_executions() == []


def test_heartbeat_recovers_zombie():
    clock = FakeClock()
    tracker = _tracker(clock)
    tracker.register_execution("s1")
    clock.advance(700)
    tracker.get_zombie_processes()

    assert tracker.update_heartbeat("s1") is True

    assert tracker.get_execution("s1").status == RUNNING
    assert tracker.check_execution("s1").is_alive
    assert tracker.update_heartbeat("unknown") is False


def test_check_execution_recommendations():
    clock = FakeClock()
    tracker = _tracker(clock)
    tracker.register_execution("s1")

    assert tracker.check_execution("s1").recommendation == RECOMMEND_OK
    clock.advance(700)
    status = tracker.check_execution("s1")
    assert status.is_zombie and status.recommendation == RECOMMEND_MONITOR
    assert status.seconds_since_heartbeat == 700
    clock.advance(600)
    assert tracker.check_execution("s1").recommendation == RECOMMEND_CLEANUP
    assert tracker.check_execution("missing") is None


def test_health_check_cleans_up_old_zombies():
    clock = FakeClock()
    killed: list[str] = []
    tracker = _tracker(clock, kill_callback=killed.append)
    tracker.register_execution("old")
    clock.advance(700)
    tracker.register_execution("fresh")
    tracker.register_execution("done")
    tracker.update_status("done", COMPLETED)
    clock.advance(600)
    tracker.update_heartbeat("fresh")

    summary = tracker.perform_health_check()

    assert summary.total == 3
    assert summary.zombies == 1
    assert summary.healthy == 1
    assert summary.finished == 1
    assert summary.cleaned_up == ["old"]
    assert killed == ["old"]
    assert tracker.get_execution("old") is None


def test_health_check_survives_kill_callback_errors():
    clock = FakeClock()

    def failing_kill(session_id: str) -> None:
        raise RuntimeError("no such process")

    tracker = _tracker(clock, kill_callback=failing_kill)
    tracker.register_execution("old")
    clock.advance(2_000)

    summary = tracker.perform_health_check()

    assert summary.cleaned_up == ["old"]


@pytest.mark.asyncio
async def test_periodic_health_check_runs_immediately_and_stops() -> None:
    clock = FakeClock()
    tracker = _tracker(clock)
    tracker.register_execution("s1")
    clock.advance(700)

    tracker.start_health_check(interval_seconds=60)
    await asyncio.sleep(0.01)

    assert tracker.get_execution("s1").status == ZOMBIE
    await tracker.stop_health_check()
    await tracker.stop_health_check()


@pytest.mark.asyncio
async def test_state_changes_are_persisted(tmp_path) -> None:
    store = ExecutionStore(tmp_path / "conductor.db")
    try:
        clock = FakeClock()
        tracker = _tracker(clock, store=store)
        tracker.register_execution("s1", {"agent_name": "coder", "task_id": "t1", "project_path": "/p"})
        tracker.update_status("s1", FAILED)
        await tracker.flush()

        row = await store.get_execution("s1")
        assert row is not None
        assert row["status"] == FAILED
        assert row["agent_name"] == "coder"
        assert row["task_id"] == "t1"
        await tracker.shutdown()
        assert tracker.get_all_tracked() == []
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_persistence_failure_is_not_raised(tmp_path) -> None:
    class BrokenStore:
        async def save_execution(self, row):
            raise PersistenceError("disk full")

    tracker = _tracker(FakeClock(), store=BrokenStore())
    tracker.register_execution("s1")
    await tracker.flush()

    assert tracker.get_execution("s1").status == RUNNING
