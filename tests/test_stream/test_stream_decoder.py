import json

from conductor.exceptions import StreamDecodeError
from conductor.stream_decoder import StreamDecoder
from conductor.stream_events import (
    AssistantMessage,
    ErrorRecord,
    ResultRecord,
    SystemInit,
    UnknownRecord,
    is_terminal,
)


def _line(obj: dict) -> str:
    return json.dumps(obj, ensure_ascii=False) + "\n"


def test_record_split_across_chunks_is_emitted_once():
    decoder = StreamDecoder()
    text = '{"type":"assistant","message":{"content":[{"type":"text","text":"hi"}]}}\n'

    first = decoder.feed(text[:10])
    second = decoder.feed(text[10:])

    assert first == []
    assert len(second) == 1
    assert isinstance(second[0], AssistantMessage)
    assert second[0].text() == "hi"


def test_partial_second_record_is_carried_over():
    decoder = StreamDecoder()

    records = decoder.feed('{"type":"user"}\n{"type":"res')
    assert [r.type for r in records] == ["user"]
    assert decoder.buffered == '{"type":"res'

    records = decoder.feed('ult","subtype":"success","result":"done"}\n')
    assert len(records) == 1
    assert isinstance(records[0], ResultRecord)
    assert records[0].result == "done"


def test_multibyte_character_split_between_byte_chunks():
    decoder = StreamDecoder()
    data = _line({"type": "assistant", "message": {"content": "héllo ✓"}}).encode("utf-8")
    split = data.index("✓".encode("utf-8")) + 1

    assert decoder.feed(data[:split]) == []
    records = decoder.feed(data[split:])

    assert len(records) == 1
    assert records[0].text() == "héllo ✓"


def test_invalid_line_is_reported_and_stream_continues():
    errors: list[StreamDecodeError] = []
    decoder = StreamDecoder(on_error=errors.append)

    records = decoder.feed('{"type":"user"}\n{not json}\nplain text\n{"type":"assistant"}\n')

    assert [r.type for r in records] == ["user", "assistant"]
    assert [e.reason for e in errors] == ["invalid_json", "not_json"]


def test_incomplete_json_is_classified():
    errors: list[StreamDecodeError] = []
    decoder = StreamDecoder(on_error=errors.append)

    decoder.feed('{"type": "assistant", "message": {\n')

    assert errors[0].reason == "incomplete_json"
    assert errors[0].preview.startswith('{"type"')


def test_ansi_escapes_and_blank_lines_are_ignored():
    decoder = StreamDecoder()

    records = decoder.feed('\x1b[32m{"type":"user"}\x1b[0m\n\n   \n')

    assert len(records) == 1
    assert records[0].type == "user"


def test_flush_parses_trailing_record_without_newline():
    decoder = StreamDecoder()
    assert decoder.feed('{"type":"result","subtype":"success","result":"ok"}') == []

    records = decoder.flush()

    assert len(records) == 1
    assert is_terminal(records[0])
    assert decoder.flush() == []


def test_buffer_overflow_discards_buffer():
    errors: list[StreamDecodeError] = []
    decoder = StreamDecoder(on_error=errors.append, max_buffer_bytes=1024)

    decoder.feed("x" * 2000)

    assert decoder.buffered == ""
    assert errors and errors[0].reason == "buffer_overflow"
    assert decoder.feed('{"type":"user"}\n')[0].type == "user"


def test_record_classification():
    decoder = StreamDecoder()
    records = decoder.feed(
        _line({"type": "system", "subtype": "init", "session_id": "cli-1", "tools": ["Read"]})
        + _line({"type": "error", "error": {"type": "overloaded", "message": "busy"}})
        + _line({"type": "stream_event", "payload": 1})
        + _line({
            "type": "assistant",
            "message": {"content": [
                {"type": "thinking", "thinking": "..."},
                {"type": "tool_use", "id": "t1", "name": "Read", "input": {"path": "a.py"}},
                {"type": "tool_use", "id": "t2", "name": "Grep", "input": {}},
            ]},
        })
    )

    init, error, unknown, assistant = records
    assert isinstance(init, SystemInit) and init.session_id == "cli-1" and init.tools == ["Read"]
    assert isinstance(error, ErrorRecord) and error.error_type == "overloaded" and error.message == "busy"
    assert isinstance(unknown, UnknownRecord)
    assert [u.name for u in assistant.tool_uses()] == ["Read", "Grep"]


def test_result_usage_and_error_flag():
    decoder = StreamDecoder()
    (record,) = decoder.feed(_line({
        "type": "result",
        "subtype": "error_max_turns",
        "total_cost_usd": 0.25,
        "usage": {"input_tokens": 10, "output_tokens": 5, "cache_read_input_tokens": 3},
    }))

    assert isinstance(record, ResultRecord)
    assert record.is_error
    assert not record.succeeded
    usage = record.usage()
    assert (usage.input_tokens, usage.output_tokens, usage.cache_read_input_tokens) == (10, 5, 3)
    assert usage.total_cost_usd == 0.25
