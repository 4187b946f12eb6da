"""Data model for the agent loop: work items, stream events, results and records."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .errors import FailureKind


class ToolKind(StrEnum):
    """Supported agent binaries."""

    CURSOR_AGENT = "cursor-agent"
    CLAUDE_CODE = "claude-code"
    GEMINI_CLI = "gemini-cli"


class StreamEventType(StrEnum):
    TEXT = "text"
    TOOL = "tool"
    COMPLETION = "completion"


class BridgeState(StrEnum):
    """Lifecycle of one agent execution."""

    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETING = "completing"
    TERMINATED = "terminated"
    TIMED_OUT = "timed_out"


class IterationStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class WorkItem:
    """A unit of backlog work (user story or task)."""

    id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: int = 0
    passes: bool = False
    notes: str = ""

    def searchable_text(self) -> str:
        """Text scanned for item and file references."""
        return "\n".join([self.description, self.notes, *self.acceptance_criteria])

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItem:
        criteria = data.get("acceptanceCriteria", data.get("acceptance_criteria")) or []
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            description=str(data.get("description") or ""),
            acceptance_criteria=[str(c) for c in criteria],
            priority=int(data.get("priority", 0)),
            passes=bool(data.get("passes", False)),
            notes=str(data.get("notes") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "priority": self.priority,
            "passes": self.passes,
            "notes": self.notes,
        }


DependencyMap = dict[str, set[str]]
Batch = list[WorkItem]


@dataclass(frozen=True)
class StreamEvent:
    """One parsed unit of agent output."""

    type: StreamEventType
    message: str


@dataclass
class ExecutionResult:
    """Outcome of a single agent execution."""

    success: bool
    text: str = ""
    tool_calls: list[str] = field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0
    exit_code: int = 0
    failure: FailureKind | None = None
    session_id: str | None = None
    stderr: str = ""


@dataclass(frozen=True)
class ToolInfo:
    tool: ToolKind
    command: str
    available: bool = False
    version: str | None = None


@dataclass
class QualityChecks:
    """Quality gate booleans supplied by the quality collaborator."""

    type_check: bool = False
    lint: bool = False
    tests: bool = False
    coverage_met: bool = False

    @property
    def all_passed(self) -> bool:
        return self.type_check and self.lint and self.tests and self.coverage_met

    def failures(self) -> list[str]:
        names = {
            "type-check": self.type_check,
            "lint": self.lint,
            "tests": self.tests,
            "coverage": self.coverage_met,
        }
        return [name for name, passed in names.items() if not passed]

    def to_dict(self) -> dict[str, bool]:
        return {
            "type_check": self.type_check,
            "lint": self.lint,
            "tests": self.tests,
            "coverage_met": self.coverage_met,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> QualityChecks:
        data = data or {}
        return cls(
            type_check=bool(data.get("type_check", False)),
            lint=bool(data.get("lint", False)),
            tests=bool(data.get("tests", False)),
            coverage_met=bool(data.get("coverage_met", False)),
        )


@dataclass
class IterationRecord:
    """Persisted outcome of one loop iteration."""

    iteration: int
    task_id: str
    task_title: str
    started_at: str
    completed_at: str
    duration_ms: int
    status: IterationStatus
    quality_checks: QualityChecks = field(default_factory=QualityChecks)
    git_commit: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "iteration": self.iteration,
            "task_id": self.task_id,
            "task_title": self.task_title,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
            "status": self.status.value,
            "quality_checks": self.quality_checks.to_dict(),
        }
        if self.git_commit:
            data["git_commit"] = self.git_commit
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IterationRecord:
        return cls(
            iteration=int(data["iteration"]),
            task_id=str(data["task_id"]),
            task_title=str(data.get("task_title", "")),
            started_at=str(data.get("started_at", "")),
            completed_at=str(data.get("completed_at", "")),
            duration_ms=int(data.get("duration_ms") or 0),
            # Anything other than an explicit success (including legacy "partial") counts as failed.
            status=(
                IterationStatus.SUCCESS
                if data.get("status") == IterationStatus.SUCCESS.value
                else IterationStatus.FAILED
            ),
            quality_checks=QualityChecks.from_dict(data.get("quality_checks")),
            git_commit=data.get("git_commit"),
        )


@dataclass(frozen=True)
class MemorySnippet:
    title: str
    content: str
    tags: list[str] = field(default_factory=list)
