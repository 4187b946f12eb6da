"""Shared test fixtures and configuration for pytest."""

import json
import shlex
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from agentloop.config import Settings, load_settings
from agentloop.models import WorkItem

FAKE_AGENT_TEMPLATE = """\
import sys
import time

if "--version" in sys.argv:
    print({version!r})
    sys.exit(0)

if {record_to!r}:
    with open({record_to!r}, "a", encoding="utf-8") as handle:
        handle.write(sys.argv[-1].replace("\\n", " ") + "\\n")

for line in {lines!r}:
    sys.stdout.write(line + "\\n")
    sys.stdout.flush()
    time.sleep({delay!r})

time.sleep({sleep_after!r})
sys.exit({exit_code!r})
"""


@pytest.fixture
def make_item() -> Callable[..., WorkItem]:
    """Factory for work items with sensible defaults."""

    def _make(item_id: str, description: str = "", **kwargs: Any) -> WorkItem:
        kwargs.setdefault("title", f"Item {item_id}")
        return WorkItem(id=item_id, description=description, **kwargs)

    return _make


@pytest.fixture
def fake_agent(tmp_path: Path) -> Callable[..., str]:
    """Write a script that behaves like an agent CLI and return its command.

    The script prints ``lines`` one per line (dicts are JSON encoded), then
    sleeps ``sleep_after`` seconds and exits with ``exit_code``.
    """
    counter = {"n": 0}

    def _make(
        lines: list[dict[str, Any] | str] | None = None,
        *,
        delay: float = 0.0,
        sleep_after: float = 0.0,
        exit_code: int = 0,
        version: str = "fake-agent 1.0.0",
        record_to: Path | None = None,
    ) -> str:
        counter["n"] += 1
        encoded = [line if isinstance(line, str) else json.dumps(line) for line in lines or []]
        script = tmp_path / f"fake_agent_{counter['n']}.py"
        script.write_text(
            FAKE_AGENT_TEMPLATE.format(
                version=version,
                record_to=str(record_to) if record_to else "",
                lines=encoded,
                delay=delay,
                sleep_after=sleep_after,
                exit_code=exit_code,
            ),
            encoding="utf-8",
        )
        return shlex.join([sys.executable, str(script)])

    return _make


@pytest.fixture
def settings_factory(tmp_path: Path) -> Callable[..., Settings]:
    """Settings rooted in a temporary state dir with unusable default commands."""

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "state_dir": tmp_path / "state",
            "cursor_agent_cmd": str(tmp_path / "missing-cursor-agent"),
            "claude_cmd": str(tmp_path / "missing-claude"),
            "gemini_cmd": str(tmp_path / "missing-gemini"),
            "grace_period_ms": 500,
        }
        values.update(overrides)
        return load_settings(**values)

    return _make


def _claude_stream(text: str = "Done.", *, error: bool = False) -> list[dict[str, Any]]:
    return [
        {"type": "system", "subtype": "init", "session_id": "sess-1"},
        {
            "type": "assistant",
            "session_id": "sess-1",
            "message": {"content": [{"type": "text", "text": text}]},
        },
        {
            "type": "result",
            "subtype": "error_during_execution" if error else "success",
            "is_error": error,
            "result": "agent blew up" if error else text,
            "duration_ms": 42,
            "session_id": "sess-1",
        },
    ]


@pytest.fixture
def claude_stream() -> Callable[..., list[dict[str, Any]]]:
    """A minimal claude stream-json conversation ending in a result event."""
    return _claude_stream
