"""Typed records decoded from the agent CLI's ``stream-json`` output.

The set of record kinds is closed: every decoded JSON object becomes exactly
one of the classes below, with :class:`UnknownRecord` as the catch-all, so
consumers can branch on type without inspecting raw dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


@dataclass
class StreamRecord:
    """Base class for every decoded record. ``raw`` keeps the original object."""

    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return str(self.raw.get("type", ""))

    def to_dict(self) -> dict[str, Any]:
        return dict(self.raw)


@dataclass
class SystemInit(StreamRecord):
    """``{"type": "system", "subtype": "init", ...}``."""

    session_id: str = ""
    cwd: str = ""
    model: str = ""
    tools: list[str] = field(default_factory=list)
    synthetic: bool = False


@dataclass
class ToolUse:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class AssistantMessage(StreamRecord):
    """Model output: text, thinking and tool-use content blocks."""

    content: list[dict[str, Any]] = field(default_factory=list)

    def text(self) -> str:
        parts = [
            str(block.get("text", ""))
            for block in self.content
            if block.get("type") == "text"
        ]
        return "".join(parts)

    def tool_uses(self) -> list[ToolUse]:
        uses: list[ToolUse] = []
        for block in self.content:
            if block.get("type") != "tool_use":
                continue
            uses.append(ToolUse(
                id=str(block.get("id", "")),
                name=str(block.get("name", "")),
                input=block.get("input") if isinstance(block.get("input"), dict) else {},
            ))
        return uses


@dataclass
class UserMessage(StreamRecord):
    """Tool results fed back to the model."""

    content: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    total_cost_usd: float = 0.0


@dataclass
class ResultRecord(StreamRecord):
    """Terminal record written by the CLI once the run finishes."""

    subtype: str = "success"
    is_error: bool = False
    result: str = ""
    session_id: str = ""
    duration_ms: int = 0
    num_turns: int = 0

    def usage(self) -> Usage:
        usage = self.raw.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        return Usage(
            input_tokens=_as_int(usage.get("input_tokens")),
            output_tokens=_as_int(usage.get("output_tokens")),
            cache_read_input_tokens=_as_int(usage.get("cache_read_input_tokens")),
            total_cost_usd=_as_float(self.raw.get("total_cost_usd")),
        )

    @property
    def succeeded(self) -> bool:
        return not self.is_error and self.subtype == "success"


@dataclass
class ErrorRecord(StreamRecord):
    """``{"type": "error", "error": {"type": ..., "message": ...}}``."""

    error_type: str = "execution_error"
    message: str = ""


@dataclass
class UnknownRecord(StreamRecord):
    """Any well-formed object whose type is not recognised."""

    pass


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


def _content_blocks(raw: dict[str, Any]) -> list[dict[str, Any]]:
    message = raw.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def parse_record(raw: dict[str, Any]) -> StreamRecord:
    """Classify a decoded JSON object. Checks run in order; the last arm is the default."""
    record_type = raw.get("type")

    if record_type == "system" and raw.get("subtype") == "init":
        tools = raw.get("tools")
        return SystemInit(
            raw=raw,
            session_id=str(raw.get("session_id", "")),
            cwd=str(raw.get("cwd", "")),
            model=str(raw.get("model", "")),
            tools=[str(t) for t in tools] if isinstance(tools, list) else [],
            synthetic=bool(raw.get("synthetic", False)),
        )
    if record_type == "assistant":
        return AssistantMessage(raw=raw, content=_content_blocks(raw))
    if record_type == "user":
        return UserMessage(raw=raw, content=_content_blocks(raw))
    if record_type == "result":
        subtype = str(raw.get("subtype", "success"))
        return ResultRecord(
            raw=raw,
            subtype=subtype,
            is_error=bool(raw.get("is_error", subtype != "success")),
            result=str(raw.get("result", "") or ""),
            session_id=str(raw.get("session_id", "")),
            duration_ms=_as_int(raw.get("duration_ms")),
            num_turns=_as_int(raw.get("num_turns")),
        )
    if record_type == "error":
        error = raw.get("error")
        if not isinstance(error, dict):
            error = {"message": str(error or "")}
        return ErrorRecord(
            raw=raw,
            error_type=str(error.get("type", "execution_error")),
            message=str(error.get("message", "")),
        )
    return UnknownRecord(raw=raw)


def is_terminal(record: StreamRecord) -> bool:
    return isinstance(record, (ResultRecord, ErrorRecord))


def make_init_record(session_id: str, project_path: str, model: str = "") -> SystemInit:
    """Synthetic init record emitted before the process produces any output."""
    raw = {
        "type": "system",
        "subtype": "init",
        "session_id": session_id,
        "cwd": project_path,
        "model": model,
        "synthetic": True,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    return parse_record(raw)  # type: ignore[return-value]


def make_error_record(message: str, error_type: str = "execution_error") -> ErrorRecord:
    raw = {
        "type": "error",
        "error": {"type": error_type, "message": message},
        "timestamp": datetime.now(UTC).isoformat(),
    }
    return parse_record(raw)  # type: ignore[return-value]
