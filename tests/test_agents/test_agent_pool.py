from pathlib import Path

import pytest

from conductor.agent_definitions import (
    SCOPE_GLOBAL,
    SCOPE_PROJECT,
    AgentDefinition,
    AgentDefinitionLoader,
    parse_definition,
)
from conductor.agent_pool import BUSY, IDLE, AgentPool
from conductor.config import AgentsConfig
from conductor.exceptions import AgentNotFoundError


def _write_agent(directory: Path, filename: str, name: str, description: str, body: str = "") -> None:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / filename).write_text(
        f"---\nname: {name}\ndescription: {description}\n---\n{body}\n",
        encoding="utf-8",
    )


def _loader(tmp_path: Path) -> AgentDefinitionLoader:
    return AgentDefinitionLoader(AgentsConfig(
        project_dir="workflow/agents",
        global_dir=str(tmp_path / "home" / "agents"),
    ))


def test_parse_definition_reads_frontmatter_fields():
    definition = parse_definition(
        "---\n"
        "name: reviewer\n"
        "description: Reviews code\n"
        "allowedTools: [Read, Grep]\n"
        "permissions:\n"
        "  allowList: ['Bash(git diff:*)']\n"
        "  denyList: ['Bash(rm:*)']\n"
        "outputStyle: concise\n"
        "model: sonnet\n"
        "---\n"
        "Look for bugs.\n",
        file_path="reviewer.md",
    )

    assert definition.name == "reviewer"
    assert definition.allowed_tools == ["Read", "Grep"]
    assert definition.permissions.allow_list == ["Bash(git diff:*)"]
    assert definition.permissions.deny_list == ["Bash(rm:*)"]
    assert definition.output_style == "concise"
    assert definition.model == "sonnet"
    assert definition.instructions == "Look for bugs."


def test_parse_definition_requires_name_and_description():
    with pytest.raises(ValueError):
        parse_definition("---\nname: only-name\n---\nbody")
    with pytest.raises(ValueError):
        parse_definition("no frontmatter at all")


def test_project_definition_overrides_global(tmp_path):
    project = tmp_path / "project"
    _write_agent(tmp_path / "home" / "agents", "coder.md", "coder", "global coder")
    _write_agent(tmp_path / "home" / "agents", "writer.md", "writer", "global writer")
    _write_agent(project / "workflow" / "agents", "coder.md", "coder", "project coder")

    definitions = _loader(tmp_path).load_all(project)

    assert definitions["coder"].description == "project coder"
    assert definitions["coder"].scope == SCOPE_PROJECT
    assert definitions["writer"].scope == SCOPE_GLOBAL


def test_invalid_definition_files_are_skipped(tmp_path):
    project = tmp_path / "project"
    agents_dir = project / "workflow" / "agents"
    _write_agent(agents_dir, "good.md", "good", "works")
    (agents_dir / "broken.md").write_text("---\nname: [unclosed\n---\n", encoding="utf-8")
    (agents_dir / "nameless.md").write_text("---\ndescription: x\n---\n", encoding="utf-8")

    definitions = _loader(tmp_path).load_all(project)

    assert list(definitions) == ["good"]


def test_idle_busy_cycle(tmp_path):
    pool = AgentPool(_loader(tmp_path))
    pool.register_definition(AgentDefinition(name="coder", description="writes code"))

    instance = pool.find_idle("coder")
    assert instance is not None and instance.status == IDLE

    pool.mark_busy("coder", "task-1", "session-1")
    assert pool.find_idle("coder") is None
    assert pool.get_agent("coder").status == BUSY
    assert pool.get_agent("coder").current_task_id == "task-1"

    pool.mark_idle("coder", completed_task_id="task-1")
    assert pool.find_idle("coder") is not None
    assert pool.get_agent("coder").completed_tasks == ["task-1"]


def test_get_or_create_unknown_agent_raises(tmp_path):
    pool = AgentPool(_loader(tmp_path))

    with pytest.raises(AgentNotFoundError):
        pool.get_or_create("ghost")
    assert pool.find_idle("ghost") is None


def test_mark_idle_unknown_agent_is_noop(tmp_path):
    pool = AgentPool(_loader(tmp_path))

    pool.mark_idle("ghost")

    assert pool.size == 0


def test_mark_busy_unknown_agent_is_noop(tmp_path):
    pool = AgentPool(_loader(tmp_path))

    assert pool.mark_busy("ghost", "t1", "s1") is None

    assert pool.size == 0
    assert pool.get_agent("ghost") is None
    assert pool.get_pool_stats().busy == 0


def test_pool_stats(tmp_path):
    pool = AgentPool(_loader(tmp_path))
    pool.register_definition(AgentDefinition(name="a", description="a"))
    pool.register_definition(AgentDefinition(name="b", description="b"))
    pool.get_or_create("a")
    pool.get_or_create("b")
    pool.mark_busy("b", "t1")

    stats = pool.get_pool_stats()

    assert (stats.total, stats.idle, stats.busy) == (2, 1, 1)
    assert [a.name for a in stats.agents] == ["a", "b"]
    assert pool.get_agent_names() == ["a", "b"]

    pool.clear_instances()
    assert pool.get_pool_stats().total == 0


def test_load_definitions_replaces_registry(tmp_path):
    project = tmp_path / "project"
    _write_agent(project / "workflow" / "agents", "coder.md", "coder", "writes code")
    pool = AgentPool(_loader(tmp_path))
    pool.register_definition(AgentDefinition(name="stale", description="old"))

    pool.load_definitions(project)

    assert pool.has_definition("coder")
    assert not pool.has_definition("stale")

    _write_agent(project / "workflow" / "agents", "tester.md", "tester", "runs tests")
    pool.reload_definitions()
    assert pool.get_agent_names() == ["coder", "tester"]
