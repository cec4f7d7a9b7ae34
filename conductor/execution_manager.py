"""Run the agent CLI as a child process and stream its records to consumers."""

from __future__ import annotations

import asyncio
import collections
import os
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable

from conductor.config import ExecutionConfig
from conductor.exceptions import ExecutionError, ExecutionNotFoundError, ProcessStartError
from conductor.logging import get_logger
from conductor.stream_decoder import StreamDecoder
from conductor.stream_events import (
    ErrorRecord,
    ResultRecord,
    StreamRecord,
    SystemInit,
    is_terminal,
    make_error_record,
    make_init_record,
)

log = get_logger(__name__)

# Execution statuses
PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

FINISHED_STATUSES = frozenset({COMPLETED, FAILED})

KILLED_BY_USER = "Killed by user"
KILLED_BY_KILL_ALL = "Killed by killAll"

_STDERR_TAIL_LINES = 20


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class StartExecutionParams:
    """Everything needed to launch one agent invocation."""

    project_path: str
    query: str
    session_id: str | None = None
    agent_name: str | None = None
    task_id: str | None = None
    workflow_id: str | None = None
    model: str | None = None
    resume_session_id: str | None = None
    mcp_config: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    permission_mode: str | None = None
    env: dict[str, str] | None = None
    on_record: Callable[[StreamRecord], Any] | None = None
    on_complete: Callable[["ExecutionRecord"], Any] | None = None


@dataclass
class ExecutionRecord:
    """State of one agent invocation, from spawn to exit."""

    session_id: str
    project_path: str
    query: str
    status: str = PENDING
    events: list[StreamRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    started_at: str | None = None
    ended_at: str | None = None
    agent_name: str | None = None
    task_id: str | None = None
    workflow_id: str | None = None
    model: str | None = None
    pid: int | None = None
    exit_code: int | None = None
    aborted: bool = False
    cli_session_id: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @property
    def terminal_record(self) -> StreamRecord | None:
        if self.events and is_terminal(self.events[-1]):
            return self.events[-1]
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "project_path": self.project_path,
            "query": self.query,
            "status": self.status,
            "event_count": len(self.events),
            "errors": list(self.errors),
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "agent_name": self.agent_name,
            "task_id": self.task_id,
            "workflow_id": self.workflow_id,
            "model": self.model,
            "pid": self.pid,
            "exit_code": self.exit_code,
            "aborted": self.aborted,
            "cli_session_id": self.cli_session_id,
        }


@dataclass
class ExecutionStats:
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    aborted: int = 0


CommandBuilder = Callable[[StartExecutionParams], list[str]]


class ClaudeCommandBuilder:
    """Build the ``claude -p ... --output-format stream-json`` command line."""

    def __init__(self, config: ExecutionConfig):
        self.config = config

    def __call__(self, params: StartExecutionParams) -> list[str]:
        cmd = [
            self.config.binary,
            "-p",
            params.query,
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        model = params.model or self.config.default_model
        if model:
            cmd += ["--model", model]
        if params.resume_session_id:
            cmd += ["--resume", params.resume_session_id]
        if params.mcp_config:
            cmd += ["--mcp-config", params.mcp_config]
        if params.allowed_tools:
            cmd += ["--allowedTools", ",".join(params.allowed_tools)]
        permission_mode = params.permission_mode or self.config.permission_mode
        if permission_mode:
            cmd += ["--permission-mode", permission_mode]
        cmd += list(self.config.extra_args)
        return cmd


class ExecutionSubscription:
    """Async iterator over one execution's records.

    Records already emitted when the subscription was opened are replayed
    first. Live records arrive through a bounded queue, so a slow consumer
    holds back the process reader instead of growing memory. Iteration ends
    after the terminal record.
    """

    def __init__(
        self,
        session_id: str,
        backlog: list[StreamRecord],
        maxsize: int,
        done: asyncio.Event,
        on_close: Callable[["ExecutionSubscription"], None] | None = None,
    ):
        self.session_id = session_id
        self._backlog = collections.deque(backlog)
        self.queue: asyncio.Queue[StreamRecord | None] = asyncio.Queue(maxsize=maxsize)
        self._done = done
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "ExecutionSubscription":
        return self

    async def __anext__(self) -> StreamRecord:
        if self._backlog:
            return self._backlog.popleft()
        while not self._closed:
            if not self.queue.empty():
                item = self.queue.get_nowait()
                if item is None:
                    break
                return item
            if self._done.is_set():
                break
            get_task = asyncio.create_task(self.queue.get())
            done_task = asyncio.create_task(self._done.wait())
            try:
                finished, _ = await asyncio.wait(
                    {get_task, done_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                for pending in (get_task, done_task):
                    if not pending.done():
                        pending.cancel()
            if get_task in finished:
                item = get_task.result()
                if item is None:
                    break
                return item
        self._closed = True
        raise StopAsyncIteration

    def close(self) -> None:
        """Stop receiving records. The reader no longer waits on this queue."""
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close(self)
            self._on_close = None
        # Nothing queued here will be read; draining frees a blocked reader.
        while not self.queue.empty():
            self.queue.get_nowait()


@dataclass
class _ExecutionHandle:
    record: ExecutionRecord
    params: StartExecutionParams
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    done_event: asyncio.Event = field(default_factory=asyncio.Event)
    subscribers: list[ExecutionSubscription] = field(default_factory=list)
    process: asyncio.subprocess.Process | None = None
    task: asyncio.Task[None] | None = None
    terminal_emitted: bool = False
    abort_reason: str = KILLED_BY_USER
    stderr_tail: collections.deque[str] = field(
        default_factory=lambda: collections.deque(maxlen=_STDERR_TAIL_LINES)
    )


class ExecutionManager:
    """Owns every running agent process and the records it produces.

    ``start_execution`` returns a session id immediately; the process is
    spawned and read in a background task. Each execution emits one
    synthetic init record, the decoded content records, and exactly one
    terminal record (the CLI's ``result`` or a synthetic ``error``).
    """

    def __init__(
        self,
        config: ExecutionConfig | None = None,
        command_builder: CommandBuilder | None = None,
    ):
        self.config = config or ExecutionConfig()
        self._command_builder = command_builder or ClaudeCommandBuilder(self.config)
        self._handles: dict[str, _ExecutionHandle] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_execution(self, params: StartExecutionParams) -> str:
        session_id = params.session_id or str(uuid.uuid4())
        if session_id in self._handles:
            raise ExecutionError(
                f"Execution already exists: {session_id}", {"session_id": session_id}
            )

        self._trim_history()

        record = ExecutionRecord(
            session_id=session_id,
            project_path=params.project_path,
            query=params.query,
            agent_name=params.agent_name,
            task_id=params.task_id,
            workflow_id=params.workflow_id,
            model=params.model or self.config.default_model or None,
        )
        handle = _ExecutionHandle(record=record, params=params)
        self._handles[session_id] = handle
        handle.task = asyncio.create_task(self._run(handle))
        log.info(
            "Execution started",
            session_id=session_id,
            agent=params.agent_name,
            task_id=params.task_id,
        )
        return session_id

    def subscribe(self, session_id: str) -> ExecutionSubscription:
        handle = self._require(session_id)
        subscription = ExecutionSubscription(
            session_id,
            backlog=list(handle.record.events),
            maxsize=self.config.stream_queue_size,
            done=handle.done_event,
            on_close=lambda sub: self._detach(handle, sub),
        )
        if not handle.done_event.is_set():
            handle.subscribers.append(subscription)
        return subscription

    async def wait(self, session_id: str) -> ExecutionRecord:
        handle = self._require(session_id)
        await handle.done_event.wait()
        return handle.record

    def kill_execution(self, session_id: str, reason: str = KILLED_BY_USER) -> bool:
        """Signal abort. The record is failed and aborted from this point on."""
        handle = self._handles.get(session_id)
        if handle is None or handle.record.is_finished:
            return False
        handle.abort_reason = reason
        handle.abort_event.set()
        handle.record.status = FAILED
        handle.record.aborted = True
        handle.record.errors.append(reason)
        log.info("Execution kill requested", session_id=session_id, reason=reason)
        return True

    def kill_all(self, reason: str = KILLED_BY_KILL_ALL) -> int:
        killed = 0
        for session_id in list(self._handles):
            if self.kill_execution(session_id, reason=reason):
                killed += 1
        return killed

    def cleanup_execution(self, session_id: str) -> bool:
        handle = self._handles.get(session_id)
        if handle is None or not handle.done_event.is_set():
            return False
        del self._handles[session_id]
        return True

    def cleanup_all_completed(self) -> int:
        finished = [sid for sid, h in self._handles.items() if h.done_event.is_set()]
        for session_id in finished:
            del self._handles[session_id]
        return len(finished)

    async def shutdown(self) -> None:
        self.kill_all()
        tasks = [h.task for h in self._handles.values() if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_execution(self, session_id: str) -> ExecutionRecord | None:
        handle = self._handles.get(session_id)
        return handle.record if handle else None

    def get_all_executions(self) -> list[ExecutionRecord]:
        return [h.record for h in self._handles.values()]

    def get_active_executions(self) -> list[ExecutionRecord]:
        return [h.record for h in self._handles.values() if not h.done_event.is_set()]

    def get_stats(self) -> ExecutionStats:
        stats = ExecutionStats(total=len(self._handles))
        for handle in self._handles.values():
            record = handle.record
            if record.status == PENDING:
                stats.pending += 1
            elif record.status == RUNNING:
                stats.running += 1
            elif record.status == COMPLETED:
                stats.completed += 1
            elif record.status == FAILED:
                stats.failed += 1
            if record.aborted:
                stats.aborted += 1
        return stats

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, session_id: str) -> _ExecutionHandle:
        handle = self._handles.get(session_id)
        if handle is None:
            raise ExecutionNotFoundError(session_id)
        return handle

    @staticmethod
    def _detach(handle: _ExecutionHandle, subscription: ExecutionSubscription) -> None:
        if subscription in handle.subscribers:
            handle.subscribers.remove(subscription)

    def _trim_history(self) -> None:
        finished = [h for h in self._handles.values() if h.done_event.is_set()]
        excess = len(finished) - self.config.max_history + 1
        if excess <= 0:
            return
        finished.sort(key=lambda h: h.record.ended_at or "")
        for handle in finished[:excess]:
            del self._handles[handle.record.session_id]

    async def _emit(self, handle: _ExecutionHandle, record: StreamRecord) -> None:
        if handle.terminal_emitted:
            log.debug("Ignoring record after terminal", session_id=handle.record.session_id)
            return
        terminal = is_terminal(record)
        if handle.abort_event.is_set() and not terminal and handle.record.events:
            return
        if terminal:
            handle.terminal_emitted = True
        if isinstance(record, SystemInit) and not record.synthetic and record.session_id:
            handle.record.cli_session_id = record.session_id

        handle.record.events.append(record)
        callback = handle.params.on_record
        if callback is not None:
            try:
                callback(record)
            except Exception as e:
                log.error(
                    "Record callback failed",
                    session_id=handle.record.session_id,
                    error=str(e),
                )
        for subscription in list(handle.subscribers):
            await self._deliver(handle, subscription, record, terminal)

    async def _deliver(
        self,
        handle: _ExecutionHandle,
        subscription: ExecutionSubscription,
        record: StreamRecord,
        terminal: bool,
    ) -> None:
        queue = subscription.queue
        if subscription.closed:
            return
        if not queue.full():
            queue.put_nowait(record)
            return
        if not handle.abort_event.is_set():
            # A full queue blocks the reader until the consumer catches up or
            # the execution is killed.
            put_task = asyncio.create_task(queue.put(record))
            abort_wait = asyncio.create_task(handle.abort_event.wait())
            try:
                await asyncio.wait({put_task, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                delivered = put_task.done()
                for pending in (put_task, abort_wait):
                    if not pending.done():
                        pending.cancel()
            if delivered:
                return
        if not terminal:
            return
        # After a kill the terminal record must not wait on a stalled consumer;
        # the oldest undelivered records make room and stay in the history.
        while queue.full():
            queue.get_nowait()
        queue.put_nowait(record)

    async def _run(self, handle: _ExecutionHandle) -> None:
        record = handle.record
        params = handle.params
        record.started_at = _utcnow_iso()
        if not record.aborted:
            record.status = RUNNING
        terminal: StreamRecord | None = None
        try:
            await self._emit(handle, make_init_record(record.session_id, record.project_path, record.model or ""))

            if handle.abort_event.is_set():
                terminal = make_error_record(handle.abort_reason, "aborted")
            else:
                terminal = await self._run_process(handle, params)
        except asyncio.CancelledError:
            await self._terminate(handle)
            if not record.aborted:
                record.status = FAILED
                record.aborted = True
                record.errors.append("Execution cancelled")
            self._finalize(handle)
            raise
        except Exception as e:
            log.error("Execution crashed", session_id=record.session_id, error=str(e))
            record.errors.append(str(e))
            terminal = make_error_record(str(e))

        if record.aborted:
            record.status = FAILED
            if not isinstance(terminal, ErrorRecord) or terminal.error_type != "aborted":
                terminal = make_error_record(handle.abort_reason, "aborted")
        elif isinstance(terminal, ResultRecord) and terminal.succeeded and record.exit_code == 0:
            record.status = COMPLETED
        else:
            record.status = FAILED
            if terminal is None:
                terminal = make_error_record(
                    f"Process exited with code {record.exit_code} without a result record"
                )
            if isinstance(terminal, ResultRecord):
                record.errors.append(terminal.result or f"Result subtype: {terminal.subtype}")
            elif isinstance(terminal, ErrorRecord) and terminal.message not in record.errors:
                record.errors.append(terminal.message)
            if handle.stderr_tail:
                record.errors.append("stderr: " + "\n".join(handle.stderr_tail))

        await self._emit(handle, terminal)
        for subscription in list(handle.subscribers):
            if not subscription.queue.full():
                subscription.queue.put_nowait(None)
        self._finalize(handle)
        log.info(
            "Execution finished",
            session_id=record.session_id,
            status=record.status,
            exit_code=record.exit_code,
            aborted=record.aborted,
        )

    def _finalize(self, handle: _ExecutionHandle) -> None:
        handle.record.ended_at = _utcnow_iso()
        handle.subscribers.clear()
        handle.done_event.set()
        callback = handle.params.on_complete
        if callback is not None:
            try:
                callback(handle.record)
            except Exception as e:
                log.error(
                    "Completion callback failed",
                    session_id=handle.record.session_id,
                    error=str(e),
                )

    async def _run_process(
        self, handle: _ExecutionHandle, params: StartExecutionParams
    ) -> StreamRecord | None:
        record = handle.record
        cmd = self._command_builder(params)
        env = os.environ.copy()
        if params.env:
            env.update(params.env)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=params.project_path or None,
                env=env,
            )
        except (OSError, ValueError) as e:
            error = ProcessStartError(cmd[0] if cmd else "", str(e))
            log.error("Failed to start agent process", session_id=record.session_id, error=str(e))
            record.errors.append(str(error))
            return make_error_record(str(error), "process_start_error")

        handle.process = process
        record.pid = process.pid
        stderr_task = asyncio.create_task(self._drain_stderr(handle, process))
        decoder = StreamDecoder(
            on_error=lambda err: record.errors.append(str(err)),
            max_buffer_bytes=self.config.max_buffer_bytes,
        )
        terminal: StreamRecord | None = None
        abort_wait = asyncio.create_task(handle.abort_event.wait())
        try:
            assert process.stdout is not None
            while not handle.abort_event.is_set():
                read_task = asyncio.create_task(process.stdout.read(self.config.read_chunk_size))
                done, _ = await asyncio.wait(
                    {read_task, abort_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if read_task not in done:
                    read_task.cancel()
                    break
                chunk = read_task.result()
                decoded = decoder.feed(chunk) if chunk else decoder.flush()
                for item in decoded:
                    if handle.abort_event.is_set():
                        break
                    if terminal is not None:
                        continue
                    if is_terminal(item):
                        terminal = item
                    else:
                        await self._emit(handle, item)
                if not chunk:
                    break
        finally:
            if not abort_wait.done():
                abort_wait.cancel()

        if handle.abort_event.is_set():
            await self._terminate(handle)
        record.exit_code = await process.wait()
        await stderr_task
        return terminal

    async def _drain_stderr(
        self, handle: _ExecutionHandle, process: asyncio.subprocess.Process
    ) -> None:
        if process.stderr is None:
            return
        async for raw_line in process.stderr:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                handle.stderr_tail.append(line)

    async def _terminate(self, handle: _ExecutionHandle) -> None:
        process = handle.process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.terminate_grace_seconds)
        except asyncio.TimeoutError:
            log.warning("Process ignored terminate; killing", pid=process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
