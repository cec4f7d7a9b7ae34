"""Headless command-line runner.

- ``conductor run tasks.yaml --project .``: start a workflow and wait for it
- ``conductor resume <workflow-id>``: continue from the last checkpoint
- ``conductor agents``: list agent definitions visible from a project
- ``conductor workflows``: list checkpointed workflows
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import uuid
from pathlib import Path
from typing import Any

import yaml

from conductor.app_context import AppContext
from conductor.config import Config
from conductor.exceptions import ConductorError, ValidationError
from conductor.execution_manager import CommandBuilder
from conductor.logging import configure_logging, get_logger
from conductor.scheduler import (
    APPROVAL_REQUESTED,
    TASK_CANCELLED,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_RETRYING,
    TASK_STARTED,
    WorkflowEvent,
    WorkflowState,
)

log = get_logger(__name__)

_TASK_EVENT_LABELS = {
    TASK_STARTED: "started",
    TASK_COMPLETED: "completed",
    TASK_FAILED: "failed",
    TASK_RETRYING: "retrying",
    TASK_CANCELLED: "cancelled",
}


def _print_status(status: str) -> None:
    """Print status updates to stderr (keeps stdout clean for result)."""
    sys.stderr.write(f"[conductor] {status}\n")
    sys.stderr.flush()


def _print_event(event: WorkflowEvent) -> None:
    label = _TASK_EVENT_LABELS.get(event.type)
    if label and event.task_id:
        task = event.state.tasks.get(event.task_id)
        title = task.title if task else ""
        detail = event.data.get("error") or event.data.get("reason") or ""
        suffix = f": {detail}" if detail else ""
        sys.stderr.write(f"  [{label}] {title} ({event.task_id}){suffix}\n")
    elif event.type.startswith("workflow_"):
        sys.stderr.write(f"[conductor] {event.type.removeprefix('workflow_')}\n")
    sys.stderr.flush()


def load_task_file(path: str | Path) -> tuple[list[dict[str, Any]], str]:
    """Read task definitions from YAML or JSON.

    Accepts a list of tasks, or a mapping with ``tasks`` and an optional
    ``workflow_id``.
    """
    file_path = Path(path).expanduser()
    try:
        with open(file_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ValidationError(f"Cannot read task file {file_path}: {e}") from e

    workflow_id = ""
    if isinstance(data, dict):
        workflow_id = str(data.get("workflow_id", "") or "")
        data = data.get("tasks")
    if not isinstance(data, list):
        raise ValidationError(f"Task file {file_path} must contain a list of tasks")
    return data, workflow_id


def _summarize(state: WorkflowState) -> dict[str, Any]:
    return {
        "ok": state.status == "completed" and not state.failed_tasks and not state.cancelled_tasks,
        "workflow_id": state.workflow_id,
        "status": state.status,
        "completed": list(state.completed_tasks),
        "failed": list(state.failed_tasks),
        "cancelled": list(state.cancelled_tasks),
        "results": dict(state.results),
        "error": "",
    }


class _ApprovalPrompter:
    """Answer approval requests on stdin, one at a time."""

    def __init__(self, ctx: AppContext, auto_approve: bool):
        self._ctx = ctx
        self._auto_approve = auto_approve
        self._queue: asyncio.Queue[tuple[str, str, str]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    def __call__(self, event: WorkflowEvent) -> None:
        if event.type != APPROVAL_REQUESTED or not event.task_id:
            return
        self._queue.put_nowait((event.workflow_id, event.task_id, str(event.data.get("message", ""))))

    def start(self) -> None:
        self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            workflow_id, task_id, message = await self._queue.get()
            if self._auto_approve:
                approved = True
            else:
                prompt = f"Approve task '{task_id}'"
                if message:
                    prompt += f" ({message})"
                answer = await asyncio.to_thread(input, prompt + " [y/N]: ")
                approved = answer.strip().lower() in {"y", "yes"}
            try:
                self._ctx.scheduler.respond_to_approval(task_id, approved, workflow_id=workflow_id)
            except ValidationError as e:
                log.warning("Approval response rejected", task_id=task_id, error=str(e))


async def run_workflow_headless(
    *,
    tasks_file: str = "",
    workflow_id: str = "",
    resume: bool = False,
    project: str = ".",
    config_path: str = "",
    max_concurrent: int = 0,
    max_retries: int | None = None,
    auto_approve: bool = False,
    quiet: bool = False,
    command_builder: CommandBuilder | None = None,
) -> dict[str, Any]:
    """Run (or resume) one workflow to completion.

    Returns:
        Dict with ``ok``, ``workflow_id``, ``status``, the completed, failed
        and cancelled task ids, ``results`` and ``error``.
    """
    cfg = Config.load(config_path or None)
    if max_concurrent:
        cfg.scheduler.max_concurrent = max_concurrent
    if max_retries is not None:
        cfg.scheduler.max_retries = max_retries
    configure_logging(cfg.logging)

    project_path = str(Path(project).expanduser().resolve())
    ctx = AppContext.create(cfg, command_builder=command_builder)
    ctx.pool.load_definitions(project_path)

    prompter = _ApprovalPrompter(ctx, auto_approve)
    unsubscribe_prompter = ctx.scheduler.subscribe(prompter)
    unsubscribe_printer = ctx.scheduler.subscribe((lambda e: None) if quiet else _print_event)
    prompter.start()
    ctx.start()

    result: dict[str, Any] = {"ok": False, "workflow_id": workflow_id, "error": ""}
    try:
        if resume:
            tasks = load_task_file(tasks_file)[0] if tasks_file else None
            await ctx.scheduler.resume_workflow(workflow_id, tasks)
        else:
            tasks, file_workflow_id = load_task_file(tasks_file)
            workflow_id = workflow_id or file_workflow_id or f"wf-{uuid.uuid4().hex[:8]}"
            result["workflow_id"] = workflow_id
            if not quiet:
                _print_status(f"Starting workflow {workflow_id} ({len(tasks)} tasks)")
            ctx.scheduler.start_workflow(workflow_id, project_path, tasks)
        state = await ctx.scheduler.wait_for_completion(workflow_id)
        result = _summarize(state)
    except ConductorError as e:
        log.error("Workflow run failed", workflow_id=workflow_id, error=str(e))
        result["error"] = str(e)
    finally:
        unsubscribe_prompter()
        unsubscribe_printer()
        await prompter.stop()
        await ctx.shutdown()
    return result


async def _list_agents(project: str, config_path: str = "") -> None:
    cfg = Config.load(config_path or None)
    ctx = AppContext.create(cfg)
    try:
        definitions = ctx.pool.load_definitions(str(Path(project).expanduser().resolve()))
    finally:
        await ctx.shutdown()
    if not definitions:
        print("No agent definitions found.")
        return
    print(f"{'Name':<30} {'Scope':<8} Description")
    print("-" * 70)
    for name in sorted(definitions):
        definition = definitions[name]
        print(f"{name:<30} {definition.scope:<8} {definition.description}")


async def _list_workflows(config_path: str = "") -> None:
    cfg = Config.load(config_path or None)
    ctx = AppContext.create(cfg)
    try:
        workflows = await ctx.checkpoints.list_workflows()
    finally:
        await ctx.shutdown()
    if not workflows:
        print("No checkpointed workflows found.")
        return
    print(f"{'Workflow':<40} {'Status':<10} Updated")
    print("-" * 80)
    for wf in workflows:
        print(f"{wf['workflow_id']:<40} {wf['status']:<10} {wf['updated_at']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="conductor",
        description="Run dependency-graph workflows on CLI agents.",
    )
    parser.add_argument("-c", "--config", default="", help="Path to config YAML.")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start a workflow from a task file.")
    run.add_argument("tasks_file", help="YAML or JSON task definitions.")
    run.add_argument("--project", default=".", help="Project directory the agents work in.")
    run.add_argument("--workflow-id", default="", help="Workflow id (generated if omitted).")
    run.add_argument("--max-concurrent", type=int, default=0, help="Max tasks running at once.")
    run.add_argument("--max-retries", type=int, default=None, help="Retries per failed task.")
    run.add_argument("--auto-approve", action="store_true", help="Approve every approval gate.")
    run.add_argument("-q", "--quiet", action="store_true", help="Suppress status output.")
    run.add_argument("--json", action="store_true", dest="json_output", help="Output result as JSON.")

    resume = sub.add_parser("resume", help="Resume a workflow from its checkpoint.")
    resume.add_argument("workflow_id")
    resume.add_argument("--tasks-file", default="", help="Updated task definitions.")
    resume.add_argument("--project", default=".", help="Project directory the agents work in.")
    resume.add_argument("--auto-approve", action="store_true", help="Approve every approval gate.")
    resume.add_argument("-q", "--quiet", action="store_true", help="Suppress status output.")
    resume.add_argument("--json", action="store_true", dest="json_output", help="Output result as JSON.")

    agents = sub.add_parser("agents", help="List agent definitions.")
    agents.add_argument("--project", default=".", help="Project directory.")

    sub.add_parser("workflows", help="List checkpointed workflows.")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for ``conductor``."""
    args = build_parser().parse_args(argv)

    if args.command == "agents":
        configure_logging()
        asyncio.run(_list_agents(args.project, args.config))
        return
    if args.command == "workflows":
        configure_logging()
        asyncio.run(_list_workflows(args.config))
        return

    if args.command == "run":
        result = asyncio.run(run_workflow_headless(
            tasks_file=args.tasks_file,
            workflow_id=args.workflow_id,
            project=args.project,
            config_path=args.config,
            max_concurrent=args.max_concurrent,
            max_retries=args.max_retries,
            auto_approve=args.auto_approve,
            quiet=args.quiet,
        ))
    else:
        result = asyncio.run(run_workflow_headless(
            tasks_file=args.tasks_file,
            workflow_id=args.workflow_id,
            resume=True,
            project=args.project,
            config_path=args.config,
            auto_approve=args.auto_approve,
            quiet=args.quiet,
        ))

    if args.json_output:
        print(json.dumps(result, ensure_ascii=False, indent=2, default=str))
    elif result.get("error"):
        sys.stderr.write(f"Error: {result['error']}\n")
    else:
        for task_id, output in result.get("results", {}).items():
            print(f"## {task_id}\n{output}\n")
    if not result.get("ok"):
        sys.exit(1)


if __name__ == "__main__":
    main()
