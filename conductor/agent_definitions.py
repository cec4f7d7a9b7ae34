"""Agent definitions stored as Markdown files with YAML frontmatter.

Example ``workflow/agents/reviewer.md``::

    ---
    name: reviewer
    description: Reviews pull requests
    allowedTools: [Read, Grep]
    permissions:
      allowList: ["Bash(git diff:*)"]
      denyList: ["Bash(rm:*)"]
    outputStyle: concise
    model: sonnet
    ---
    You review code changes and report problems.

Definitions come from two scopes: the project directory and the user's
global directory. A project definition replaces a global one of the same name.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from conductor.config import AgentsConfig
from conductor.logging import get_logger

log = get_logger(__name__)

SCOPE_PROJECT = "project"
SCOPE_GLOBAL = "global"


@dataclass
class AgentPermissions:
    allow_list: list[str] = field(default_factory=list)
    deny_list: list[str] = field(default_factory=list)


@dataclass
class AgentDefinition:
    name: str
    description: str
    instructions: str = ""
    allowed_tools: list[str] = field(default_factory=list)
    permissions: AgentPermissions = field(default_factory=AgentPermissions)
    output_style: str | None = None
    model: str | None = None
    mcp_config: str | None = None
    file_path: str = ""
    scope: str = SCOPE_PROJECT

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "allowed_tools": list(self.allowed_tools),
            "permissions": {
                "allow_list": list(self.permissions.allow_list),
                "deny_list": list(self.permissions.deny_list),
            },
            "output_style": self.output_style,
            "model": self.model,
            "mcp_config": self.mcp_config,
            "file_path": self.file_path,
            "scope": self.scope,
        }


def split_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Return ``(frontmatter, body)``. Malformed YAML raises ``ValueError``."""
    text = (content or "").replace("\r\n", "\n").replace("\r", "\n")
    if not text.startswith("---"):
        return {}, text.strip()
    end = text.find("\n---", 3)
    if end < 0:
        return {}, text.strip()
    block = text[4:end]
    body = text[end + 4:]
    try:
        parsed = yaml.safe_load(block)
    except yaml.YAMLError as e:
        raise ValueError(f"invalid frontmatter: {e}") from e
    if parsed is None:
        parsed = {}
    if not isinstance(parsed, dict):
        raise ValueError("frontmatter must be a mapping")
    return parsed, body.strip()


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


def parse_definition(content: str, file_path: str = "", scope: str = SCOPE_PROJECT) -> AgentDefinition:
    """Build a definition from file content. Missing name/description raise ``ValueError``."""
    meta, body = split_frontmatter(content)
    name = str(meta.get("name") or "").strip()
    description = str(meta.get("description") or "").strip()
    if not name:
        raise ValueError("missing required field 'name'")
    if not description:
        raise ValueError("missing required field 'description'")

    permissions_raw = meta.get("permissions")
    if not isinstance(permissions_raw, dict):
        permissions_raw = {}

    output_style = meta.get("outputStyle", meta.get("output_style"))
    model = meta.get("model")
    mcp_config = meta.get("mcpConfig", meta.get("mcp_config"))
    return AgentDefinition(
        name=name,
        description=description,
        instructions=body,
        allowed_tools=_str_list(meta.get("allowedTools", meta.get("tools"))),
        permissions=AgentPermissions(
            allow_list=_str_list(permissions_raw.get("allowList", permissions_raw.get("allow"))),
            deny_list=_str_list(permissions_raw.get("denyList", permissions_raw.get("deny"))),
        ),
        output_style=str(output_style) if output_style else None,
        model=str(model) if model else None,
        mcp_config=str(mcp_config) if mcp_config else None,
        file_path=file_path,
        scope=scope,
    )


class AgentDefinitionLoader:
    """Discover agent definitions in the project and global directories."""

    def __init__(self, config: AgentsConfig | None = None):
        self.config = config or AgentsConfig()

    def project_dir(self, project_path: str | Path) -> Path:
        return Path(project_path).expanduser() / self.config.project_dir

    def global_dir(self) -> Path:
        return Path(self.config.global_dir).expanduser()

    def load_all(self, project_path: str | Path | None = None) -> dict[str, AgentDefinition]:
        definitions: dict[str, AgentDefinition] = {}
        for definition in self.load_directory(self.global_dir(), SCOPE_GLOBAL):
            definitions[definition.name] = definition
        if project_path is not None:
            for definition in self.load_directory(self.project_dir(project_path), SCOPE_PROJECT):
                if definition.name in definitions:
                    log.debug("Project agent overrides global agent", agent=definition.name)
                definitions[definition.name] = definition
        log.info("Agent definitions loaded", count=len(definitions), project=str(project_path or ""))
        return definitions

    def load_directory(self, directory: Path, scope: str) -> list[AgentDefinition]:
        if not directory.is_dir():
            return []
        loaded: list[AgentDefinition] = []
        for path in sorted(directory.glob("*.md")):
            try:
                content = path.read_text(encoding="utf-8")
                loaded.append(parse_definition(content, file_path=str(path), scope=scope))
            except (OSError, UnicodeDecodeError, ValueError) as e:
                log.warning("Skipping invalid agent definition", path=str(path), error=str(e))
        return loaded
