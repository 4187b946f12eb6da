import pytest

from agentloop.errors import ProtocolParseError
from agentloop.models import StreamEventType, ToolKind
from agentloop.parsers import (
    ClaudeCodeParser,
    CursorAgentParser,
    GeminiCliParser,
    LineBuffer,
    create_parser,
    decode_line,
)


def test_line_buffer_keeps_partial_line() -> None:
    buffer = LineBuffer()

    assert buffer.feed(b'{"a": 1}\n{"b"') == ['{"a": 1}']
    assert buffer.pending == b'{"b"'
    assert buffer.feed(b": 2}\r\n") == ['{"b": 2}']
    assert buffer.flush() == []


def test_line_buffer_flushes_unterminated_tail() -> None:
    buffer = LineBuffer()
    assert buffer.feed(b"tail") == []
    assert buffer.flush() == ["tail"]
    assert buffer.pending == b""


def test_line_buffer_handles_split_multibyte_characters() -> None:
    encoded = "café\n".encode()
    buffer = LineBuffer()

    assert buffer.feed(encoded[:4]) == []
    assert buffer.feed(encoded[4:]) == ["café"]


@pytest.mark.parametrize("line", ["not json", "[1, 2]", '{"no_type": true}', '{"type": 3}'])
def test_decode_line_rejects_malformed(line: str) -> None:
    with pytest.raises(ProtocolParseError):
        decode_line(line)


def test_create_parser_dispatch() -> None:
    assert isinstance(create_parser(ToolKind.CURSOR_AGENT), CursorAgentParser)
    assert isinstance(create_parser(ToolKind.CLAUDE_CODE), ClaudeCodeParser)
    assert isinstance(create_parser(ToolKind.GEMINI_CLI), GeminiCliParser)
    assert create_parser(ToolKind.CLAUDE_CODE) is not create_parser(ToolKind.CLAUDE_CODE)


def _assistant(text: str) -> dict:
    return {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}


def test_cursor_agent_snapshots_become_deltas() -> None:
    parser = CursorAgentParser()
    parser.process_line({"type": "system", "subtype": "init", "session_id": "abc"})

    first = parser.process_line(_assistant("Hel"))
    second = parser.process_line(_assistant("Hello"))
    repeat = parser.process_line(_assistant("Hello"))

    assert [e.message for e in first + second] == ["Hel", "lo"]
    assert repeat == []
    assert parser.result().text == "Hello"
    assert parser.result().session_id == "abc"
    assert not parser.is_completed()


def test_cursor_agent_tool_calls_and_result() -> None:
    parser = CursorAgentParser()

    started = parser.process_line(
        {
            "type": "tool_call",
            "subtype": "started",
            "tool_call": {"writeToolCall": {"args": {"path": "src/app.py"}}},
        }
    )
    parser.process_line(
        {
            "type": "tool_call",
            "subtype": "completed",
            "tool_call": {
                "writeToolCall": {"result": {"success": {"linesCreated": 3, "fileSize": 42}}}
            },
        }
    )
    done = parser.process_line({"type": "result", "subtype": "success", "duration_ms": 1200})

    assert started[0].type is StreamEventType.TOOL
    assert started[0].message == "Write to src/app.py"
    assert parser.result().tool_calls[0].describe() == (
        "Write to src/app.py -> Created 3 lines (42 bytes)"
    )
    assert done[0].type is StreamEventType.COMPLETION
    assert done[0].message == "Completed in 1200ms"
    assert parser.is_completed()
    assert parser.result().error is None


def test_cursor_agent_error_result() -> None:
    parser = CursorAgentParser()
    parser.process_line({"type": "result", "subtype": "error", "is_error": True, "result": "quota"})

    assert parser.is_completed()
    assert parser.result().error == "quota"


def test_claude_code_text_tools_and_results() -> None:
    parser = ClaudeCodeParser()

    events = parser.process_line(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": "Running tests."},
                    {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "pytest"}},
                    {"type": "tool_use", "id": "t2", "name": "Edit", "input": {"file_path": "a.py"}},
                ]
            },
        }
    )
    parser.process_line(
        {
            "type": "user",
            "message": {
                "content": [
                    {"type": "tool_result", "tool_use_id": "t1", "is_error": True, "content": "boom"},
                    {"type": "tool_result", "tool_use_id": "t2", "content": "ok"},
                ]
            },
        }
    )

    assert [e.type for e in events] == [
        StreamEventType.TEXT,
        StreamEventType.TOOL,
        StreamEventType.TOOL,
    ]
    calls = [call.describe() for call in parser.result().tool_calls]
    assert calls == ["Execute: pytest -> Error: boom", "Write to a.py -> ok"]
    assert not parser.is_completed()

    done = parser.process_line({"type": "result", "subtype": "success", "duration_ms": 5})
    assert done[0].message == "Completed in 5ms"
    assert parser.is_completed()
    assert parser.result().text == "Running tests."


def test_claude_code_error_subtype() -> None:
    parser = ClaudeCodeParser()
    parser.process_line({"type": "result", "subtype": "error_max_turns", "is_error": True})

    assert parser.is_completed()
    assert parser.result().error == "error_max_turns"


def test_gemini_cli_stream() -> None:
    parser = GeminiCliParser()
    parser.process_line({"type": "init", "session_id": "g-1", "model": "gemini"})
    parser.process_line({"type": "message", "role": "user", "content": "ignored"})
    text = parser.process_line({"type": "message", "role": "assistant", "content": "Reading."})
    tool = parser.process_line(
        {
            "type": "tool_use",
            "tool_name": "read_file",
            "tool_id": "r1",
            "parameters": {"file_path": "main.go"},
        }
    )
    parser.process_line({"type": "tool_result", "tool_id": "r1", "status": "success"})
    done = parser.process_line(
        {"type": "result", "status": "success", "stats": {"duration_ms": 900}}
    )

    assert text[0].message == "Reading."
    assert tool[0].message == "Read from main.go"
    assert parser.result().tool_calls[0].result == "ok"
    assert parser.result().text == "Reading."
    assert parser.result().session_id == "g-1"
    assert done[0].message == "Completed in 900ms"
    assert parser.is_completed()


def test_gemini_cli_error_uses_last_error_event() -> None:
    parser = GeminiCliParser()
    parser.process_line({"type": "error", "severity": "error", "message": "quota exceeded"})
    done = parser.process_line({"type": "result", "status": "error"})

    assert parser.result().error == "quota exceeded"
    assert done[0].message == "Agent finished with error: quota exceeded"


def test_cursor_agent_keeps_repeated_text() -> None:
    parser = CursorAgentParser()

    events = []
    for text in ("Done.", "Next.", "Done."):
        events += parser.process_line(_assistant(text))

    assert [e.message for e in events] == ["Done.", "Next.", "Done."]
    assert parser.result().text == "Done.Next.Done."
