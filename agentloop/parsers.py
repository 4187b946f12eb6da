"""
Stream parsers for the agent CLIs.

Every supported tool writes newline-delimited JSON on stdout when run in its
non-interactive streaming mode. Each tool has its own event vocabulary; the
parsers here translate it into the uniform ``StreamEvent`` model and report
when the tool's own end-of-turn marker has been seen.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import ProtocolParseError
from .models import StreamEvent, StreamEventType, ToolKind


@dataclass
class ToolCall:
    kind: str  # read, write, bash or other
    details: str
    result: str | None = None

    def describe(self) -> str:
        if self.result:
            return f"{self.details} -> {self.result}"
        return self.details


@dataclass
class ParsedOutput:
    """What a parser accumulated over one execution."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    session_id: str | None = None
    error: str | None = None


class StreamParser(Protocol):
    def process_line(self, event: dict[str, Any]) -> list[StreamEvent]:
        """Consume one decoded event and return the stream events it produced."""
        ...

    def is_completed(self) -> bool: ...

    def result(self) -> ParsedOutput: ...


class LineBuffer:
    """Newline framing over a byte stream.

    A trailing partial line is kept until the rest of it arrives.
    """

    def __init__(self) -> None:
        self._pending = b""

    def feed(self, chunk: bytes) -> list[str]:
        data = self._pending + chunk
        *complete, self._pending = data.split(b"\n")
        return [_decode(raw) for raw in complete]

    def flush(self) -> list[str]:
        """Return whatever is left once the stream has ended."""
        if not self._pending:
            return []
        rest, self._pending = self._pending, b""
        return [_decode(rest)]

    @property
    def pending(self) -> bytes:
        return self._pending


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r")


def decode_line(line: str) -> dict[str, Any]:
    """Decode one line of stream-json output into an event mapping."""
    try:
        event = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolParseError(line, f"invalid JSON ({e.msg})") from e
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise ProtocolParseError(line, "event without a type")
    return event


def _text_event(text: str) -> StreamEvent:
    return StreamEvent(type=StreamEventType.TEXT, message=text)


def _tool_event(call: ToolCall) -> StreamEvent:
    return StreamEvent(type=StreamEventType.TOOL, message=call.details)


def _completion_event(error: str | None, duration_ms: Any) -> StreamEvent:
    if error:
        return StreamEvent(type=StreamEventType.COMPLETION, message=f"Agent finished with error: {error}")
    if isinstance(duration_ms, (int, float)):
        return StreamEvent(type=StreamEventType.COMPLETION, message=f"Completed in {int(duration_ms)}ms")
    return StreamEvent(type=StreamEventType.COMPLETION, message="Completed")


class CursorAgentParser:
    """cursor-agent ``--output-format stream-json`` events.

    Types: system(init), user, assistant, tool_call(started|completed), result.
    With ``--stream-partial-output`` assistant events carry growing snapshots
    of the reply rather than deltas.
    """

    _TOOL_KEYS = {
        "writeToolCall": "write",
        "readToolCall": "read",
        "bashToolCall": "bash",
    }

    def __init__(self) -> None:
        self._output = ParsedOutput()
        self._completed = False

    def is_completed(self) -> bool:
        return self._completed

    def result(self) -> ParsedOutput:
        return self._output

    def process_line(self, event: dict[str, Any]) -> list[StreamEvent]:
        if isinstance(event.get("session_id"), str):
            self._output.session_id = event["session_id"]

        kind = event.get("type")
        if kind == "assistant":
            return self._handle_assistant(event)
        if kind == "tool_call":
            return self._handle_tool_call(event)
        if kind == "result":
            return self._handle_result(event)
        # system and user events only carry the session id
        return []

    def _handle_assistant(self, event: dict[str, Any]) -> list[StreamEvent]:
        content = (event.get("message") or {}).get("content") or []
        text = "".join(
            c.get("text", "") for c in content if isinstance(c, dict) and c.get("type") == "text"
        )
        current = self._output.text
        if not text or text == current:
            return []
        if text.startswith(current):
            delta = text[len(current) :]
            self._output.text = text
        else:
            delta = text
            self._output.text = current + text
        return [_text_event(delta)]

    def _handle_tool_call(self, event: dict[str, Any]) -> list[StreamEvent]:
        payload = event.get("tool_call") or {}
        subtype = event.get("subtype")
        for key, kind in self._TOOL_KEYS.items():
            call = payload.get(key)
            if not isinstance(call, dict):
                continue
            if subtype == "started":
                args = call.get("args") or {}
                tool_call = ToolCall(kind=kind, details=self._describe_start(kind, args))
                self._output.tool_calls.append(tool_call)
                return [_tool_event(tool_call)]
            if subtype == "completed" and self._output.tool_calls:
                self._output.tool_calls[-1].result = self._describe_result(
                    kind, call.get("result") or {}
                )
            return []
        return []

    @staticmethod
    def _describe_start(kind: str, args: dict[str, Any]) -> str:
        if kind == "write":
            return f"Write to {args.get('path', '?')}"
        if kind == "read":
            return f"Read from {args.get('path', '?')}"
        return f"Execute: {args.get('command', '?')}"

    @staticmethod
    def _describe_result(kind: str, result: dict[str, Any]) -> str:
        if result.get("error"):
            return f"Error: {result['error']}"
        success = result.get("success") or {}
        if kind == "write":
            return f"Created {success.get('linesCreated', 0)} lines ({success.get('fileSize', 0)} bytes)"
        if kind == "read":
            return f"Read {success.get('totalLines', 0)} lines"
        return f"Exit code {success.get('exitCode', '?')}"

    def _handle_result(self, event: dict[str, Any]) -> list[StreamEvent]:
        self._completed = True
        if event.get("is_error") or event.get("subtype") == "error":
            self._output.error = str(event.get("result") or "agent reported an error")
        elif not self._output.text and isinstance(event.get("result"), str):
            self._output.text = event["result"]
        return [_completion_event(self._output.error, event.get("duration_ms"))]


class ClaudeCodeParser:
    """``claude -p --output-format stream-json --verbose`` events.

    Types: system(init), assistant (text and tool_use blocks), user
    (tool_result blocks), result.
    """

    _TOOL_KINDS = {
        "Read": "read",
        "Write": "write",
        "Edit": "write",
        "MultiEdit": "write",
        "NotebookEdit": "write",
        "Bash": "bash",
    }

    def __init__(self) -> None:
        self._output = ParsedOutput()
        self._completed = False
        self._calls_by_id: dict[str, ToolCall] = {}

    def is_completed(self) -> bool:
        return self._completed

    def result(self) -> ParsedOutput:
        return self._output

    def process_line(self, event: dict[str, Any]) -> list[StreamEvent]:
        if isinstance(event.get("session_id"), str):
            self._output.session_id = event["session_id"]

        kind = event.get("type")
        if kind == "assistant":
            return self._handle_assistant(event)
        if kind == "user":
            self._handle_tool_results(event)
            return []
        if kind == "result":
            return self._handle_result(event)
        return []

    def _handle_assistant(self, event: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for block in (event.get("message") or {}).get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                self._output.text += block["text"]
                events.append(_text_event(block["text"]))
            elif block.get("type") == "tool_use":
                call = self._tool_call(block)
                self._output.tool_calls.append(call)
                if isinstance(block.get("id"), str):
                    self._calls_by_id[block["id"]] = call
                events.append(_tool_event(call))
        return events

    def _tool_call(self, block: dict[str, Any]) -> ToolCall:
        name = str(block.get("name", "tool"))
        args = block.get("input") or {}
        kind = self._TOOL_KINDS.get(name, "other")
        if kind == "read":
            details = f"Read from {args.get('file_path', '?')}"
        elif kind == "write":
            details = f"Write to {args.get('file_path') or args.get('notebook_path', '?')}"
        elif kind == "bash":
            details = f"Execute: {args.get('command', '?')}"
        else:
            details = name
        return ToolCall(kind=kind, details=details)

    def _handle_tool_results(self, event: dict[str, Any]) -> None:
        for block in (event.get("message") or {}).get("content") or []:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            call = self._calls_by_id.get(str(block.get("tool_use_id")))
            if call is None:
                continue
            if block.get("is_error"):
                content = block.get("content")
                call.result = f"Error: {content if isinstance(content, str) else 'tool failed'}"
            else:
                call.result = "ok"

    def _handle_result(self, event: dict[str, Any]) -> list[StreamEvent]:
        self._completed = True
        if event.get("is_error") or event.get("subtype") not in (None, "success"):
            self._output.error = str(event.get("result") or event.get("subtype") or "agent error")
        elif not self._output.text and isinstance(event.get("result"), str):
            self._output.text = event["result"]
        return [_completion_event(self._output.error, event.get("duration_ms"))]


class GeminiCliParser:
    """``gemini --output-format stream-json`` events.

    Types: init, message (role user|assistant, optionally delta), tool_use,
    tool_result, error, result.
    """

    _TOOL_KINDS = {
        "read_file": "read",
        "read_many_files": "read",
        "write_file": "write",
        "replace": "write",
        "run_shell_command": "bash",
    }

    def __init__(self) -> None:
        self._output = ParsedOutput()
        self._completed = False
        self._calls_by_id: dict[str, ToolCall] = {}
        self._last_error: str | None = None

    def is_completed(self) -> bool:
        return self._completed

    def result(self) -> ParsedOutput:
        return self._output

    def process_line(self, event: dict[str, Any]) -> list[StreamEvent]:
        if isinstance(event.get("session_id"), str):
            self._output.session_id = event["session_id"]

        kind = event.get("type")
        if kind == "message":
            if event.get("role") != "assistant" or not event.get("content"):
                return []
            content = str(event["content"])
            self._output.text += content
            return [_text_event(content)]
        if kind == "tool_use":
            call = self._tool_call(event)
            self._output.tool_calls.append(call)
            if event.get("tool_id") is not None:
                self._calls_by_id[str(event["tool_id"])] = call
            return [_tool_event(call)]
        if kind == "tool_result":
            call = self._calls_by_id.get(str(event.get("tool_id")))
            if call is not None:
                if event.get("status") == "error":
                    error = event.get("error") or {}
                    message = error.get("message") if isinstance(error, dict) else error
                    call.result = f"Error: {message or 'tool failed'}"
                else:
                    call.result = "ok"
            return []
        if kind == "error":
            self._last_error = str(event.get("message") or "error")
            return []
        if kind == "result":
            return self._handle_result(event)
        return []

    def _tool_call(self, event: dict[str, Any]) -> ToolCall:
        name = str(event.get("tool_name", "tool"))
        params = event.get("parameters") or {}
        kind = self._TOOL_KINDS.get(name, "other")
        if kind == "read":
            details = f"Read from {params.get('file_path') or params.get('absolute_path', '?')}"
        elif kind == "write":
            details = f"Write to {params.get('file_path', '?')}"
        elif kind == "bash":
            details = f"Execute: {params.get('command', '?')}"
        else:
            details = name
        return ToolCall(kind=kind, details=details)

    def _handle_result(self, event: dict[str, Any]) -> list[StreamEvent]:
        self._completed = True
        if event.get("status") not in (None, "success"):
            error = event.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            self._output.error = str(message or self._last_error or "agent error")
        stats = event.get("stats") or {}
        return [_completion_event(self._output.error, stats.get("duration_ms"))]


PARSERS: dict[ToolKind, type[StreamParser]] = {
    ToolKind.CURSOR_AGENT: CursorAgentParser,
    ToolKind.CLAUDE_CODE: ClaudeCodeParser,
    ToolKind.GEMINI_CLI: GeminiCliParser,
}


def create_parser(tool: ToolKind) -> StreamParser:
    """Fresh parser for one execution of ``tool``."""
    return PARSERS[tool]()
