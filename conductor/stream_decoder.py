"""Incremental decoder for newline-delimited JSON streams."""

from __future__ import annotations

import codecs
import json
import re
from typing import Any, Callable

from conductor.exceptions import StreamDecodeError
from conductor.logging import get_logger
from conductor.stream_events import StreamRecord, parse_record

log = get_logger(__name__)

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*(?:\x07|\x1b\\)")
_PREVIEW_CHARS = 100

ErrorCallback = Callable[[StreamDecodeError], None]


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE.sub("", text)


def _looks_incomplete(line: str) -> bool:
    return line.count("{") > line.count("}") or line.count("[") > line.count("]")


class StreamDecoder:
    """Turn arbitrarily split chunks of output into typed records.

    ``feed`` accepts bytes or text. Bytes go through an incremental UTF-8
    decoder so a multi-byte character split across two reads is rebuilt
    before the line is parsed. Every complete line yields at most one record;
    the trailing partial line is kept until the next ``feed`` or ``flush``.
    Lines that cannot be parsed are reported through ``on_error`` and
    skipped, so one bad line never stops the stream.
    """

    def __init__(
        self,
        on_error: ErrorCallback | None = None,
        max_buffer_bytes: int = 10 * 1024 * 1024,
    ):
        self._on_error = on_error
        self._max_buffer_bytes = max_buffer_bytes
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.records_emitted = 0
        self.errors_reported = 0

    @property
    def buffered(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[StreamRecord]:
        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = chunk
        if not text:
            return []

        self._buffer += text
        records: list[StreamRecord] = []
        if "\n" in self._buffer:
            *lines, self._buffer = self._buffer.split("\n")
            for line in lines:
                record = self._parse_line(line)
                if record is not None:
                    records.append(record)

        if len(self._buffer.encode("utf-8", errors="replace")) > self._max_buffer_bytes:
            size = len(self._buffer)
            self._buffer = ""
            self._report("buffer_overflow", f"discarded {size} buffered characters")
        return records

    def flush(self) -> list[StreamRecord]:
        """Parse whatever is left once the stream has ended."""
        tail = self._decoder.decode(b"", final=True)
        remaining = self._buffer + tail
        self._buffer = ""
        if not remaining.strip():
            return []
        records: list[StreamRecord] = []
        for line in remaining.split("\n"):
            record = self._parse_line(line)
            if record is not None:
                records.append(record)
        return records

    def reset(self) -> None:
        self._decoder.reset()
        self._buffer = ""

    def _parse_line(self, line: str) -> StreamRecord | None:
        cleaned = strip_ansi(line).strip()
        if not cleaned:
            return None

        if not cleaned.startswith("{"):
            # Plain text the CLI printed around the JSON stream.
            log.debug("Skipping non-JSON line", preview=cleaned[:_PREVIEW_CHARS])
            self._report("not_json", cleaned[:_PREVIEW_CHARS])
            return None

        try:
            data: Any = json.loads(cleaned)
        except json.JSONDecodeError:
            reason = "incomplete_json" if _looks_incomplete(cleaned) else "invalid_json"
            self._report(reason, cleaned[:_PREVIEW_CHARS])
            return None

        if not isinstance(data, dict):
            self._report("not_an_object", cleaned[:_PREVIEW_CHARS])
            return None

        self.records_emitted += 1
        return parse_record(data)

    def _report(self, reason: str, preview: str) -> None:
        self.errors_reported += 1
        error = StreamDecodeError(reason, preview)
        log.warning("Stream decode error", reason=reason, preview=preview)
        if self._on_error is not None:
            self._on_error(error)
