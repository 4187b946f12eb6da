"""
Iteration ledger - durable per-iteration history and the compressed context
fed back into later prompts.

Each iteration is stored as ``iteration-<n>.json`` in the history directory so
records can be read and written independently.
"""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from .models import (
    ExecutionResult,
    IterationRecord,
    IterationStatus,
    MemorySnippet,
    QualityChecks,
    WorkItem,
)

logger = logging.getLogger(__name__)

_FILENAME_RE = re.compile(r"^iteration-(\d+)\.json$")
_SNIPPET_CHARS = 300


class MemorySearch(Protocol):
    """External semantic memory service."""

    async def search(self, query: str, *, limit: int, mode: str) -> list[MemorySnippet]: ...


@dataclass
class IterationStatistics:
    total: int = 0
    success_count: int = 0
    failed_count: int = 0
    avg_duration_ms: int = 0
    success_rate: float = 0.0
    quality_breakdown: dict[str, int] = field(
        default_factory=lambda: {"type_check": 0, "lint": 0, "tests": 0, "coverage": 0}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "avg_duration_ms": self.avg_duration_ms,
            "success_rate": round(self.success_rate, 4),
            "quality_breakdown": dict(self.quality_breakdown),
        }


@dataclass
class TaskInsights:
    total: int = 0
    status_distribution: dict[str, int] = field(default_factory=dict)
    avg_duration_ms: int = 0
    quality_trend: list[float] = field(default_factory=list)


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


def build_record(
    iteration: int,
    item: WorkItem,
    result: ExecutionResult,
    quality: QualityChecks,
    *,
    started_at: str,
    git_commit: str | None = None,
) -> IterationRecord:
    """Turn an execution outcome into the record stored for ``iteration``."""
    return IterationRecord(
        iteration=iteration,
        task_id=item.id,
        task_title=item.title,
        started_at=started_at,
        completed_at=utc_now(),
        duration_ms=result.duration_ms,
        status=IterationStatus.SUCCESS if result.success else IterationStatus.FAILED,
        quality_checks=quality,
        git_commit=git_commit,
    )


def _flag(passed: bool) -> str:
    return "pass" if passed else "fail"


def format_summary_line(record: IterationRecord) -> str:
    """One-line rendering used for older iterations."""
    q = record.quality_checks
    return (
        f"- #{record.iteration} [{record.status.value}] {record.task_title} | "
        f"type:{_flag(q.type_check)} lint:{_flag(q.lint)} "
        f"tests:{_flag(q.tests)} coverage:{_flag(q.coverage_met)}"
    )


def format_detail_block(record: IterationRecord) -> str:
    """Full rendering used for recent iterations."""
    q = record.quality_checks
    lines = [
        f"### Iteration {record.iteration}: {record.task_id} - {record.task_title}",
        f"Status: {record.status.value}",
        (
            f"Quality: type-check={_flag(q.type_check)}, lint={_flag(q.lint)}, "
            f"tests={_flag(q.tests)}, coverage={_flag(q.coverage_met)}"
        ),
        f"Duration: {record.duration_ms}ms",
    ]
    if record.git_commit:
        lines.append(f"Commit: {record.git_commit}")
    return "\n".join(lines)


class IterationLedger:
    """Append-only store of iteration records."""

    def __init__(
        self,
        history_dir: Path,
        memory: MemorySearch | None = None,
        *,
        progress_file: Path | None = None,
        memory_snippets: int = 3,
    ) -> None:
        self.history_dir = Path(history_dir)
        self.progress_file = progress_file
        self._memory = memory
        self._memory_snippets = memory_snippets

    def path_for(self, iteration: int) -> Path:
        return self.history_dir / f"iteration-{iteration}.json"

    def _iteration_numbers(self) -> list[int]:
        if not self.history_dir.is_dir():
            return []
        numbers = []
        for path in self.history_dir.iterdir():
            match = _FILENAME_RE.match(path.name)
            if match:
                numbers.append(int(match.group(1)))
        return sorted(numbers, reverse=True)

    def next_iteration(self) -> int:
        numbers = self._iteration_numbers()
        return numbers[0] + 1 if numbers else 1

    def record(self, record: IterationRecord) -> Path:
        """Persist ``record``. Iteration numbers can never be written twice."""
        self.history_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(record.iteration)
        try:
            with path.open("x", encoding="utf-8") as handle:
                json.dump(record.to_dict(), handle, indent=2)
        except FileExistsError as e:
            raise ValueError(f"Iteration {record.iteration} is already recorded") from e

        if self.progress_file is not None:
            self._append_progress(record)
        logger.info(
            "Recorded iteration %d: %s - %s",
            record.iteration,
            record.task_id,
            record.status.value,
        )
        return path

    def _append_progress(self, record: IterationRecord) -> None:
        assert self.progress_file is not None
        q = record.quality_checks
        lines = [
            f"[Iteration {record.iteration}] {record.completed_at}",
            f"Task: {record.task_id} ({record.task_title})",
            f"Status: {record.status.value}",
            f"Duration: {record.duration_ms}ms",
            (
                f"Quality: type={_flag(q.type_check)}, lint={_flag(q.lint)}, "
                f"tests={_flag(q.tests)}, coverage={_flag(q.coverage_met)}"
            ),
        ]
        if record.git_commit:
            lines.append(f"Commit: {record.git_commit}")
        lines.append("---")
        self.progress_file.parent.mkdir(parents=True, exist_ok=True)
        with self.progress_file.open("a", encoding="utf-8") as handle:
            handle.write("\n".join(lines) + "\n\n")

    def get(self, iteration: int) -> IterationRecord | None:
        path = self.path_for(iteration)
        if not path.exists():
            return None
        try:
            return IterationRecord.from_dict(json.loads(path.read_text("utf-8")))
        except (OSError, ValueError, KeyError) as e:
            logger.error("Failed to read iteration %d: %s", iteration, e)
            return None

    def history(self, limit: int | None = None, task_id: str | None = None) -> list[IterationRecord]:
        """Records newest first, by stored iteration number."""
        records: list[IterationRecord] = []
        if limit is not None and limit <= 0:
            return records
        for number in self._iteration_numbers():
            path = self.path_for(number)
            try:
                record = IterationRecord.from_dict(json.loads(path.read_text("utf-8")))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Failed to read %s: %s", path.name, e)
                continue
            if task_id is not None and record.task_id != task_id:
                continue
            records.append(record)
            if limit is not None and len(records) >= limit:
                break
        return records

    def statistics(self) -> IterationStatistics:
        records = self.history()
        if not records:
            return IterationStatistics()

        successes = sum(1 for r in records if r.status is IterationStatus.SUCCESS)
        failures = sum(1 for r in records if r.status is IterationStatus.FAILED)
        total_duration = sum(r.duration_ms or 0 for r in records)
        return IterationStatistics(
            total=len(records),
            success_count=successes,
            failed_count=failures,
            avg_duration_ms=round(total_duration / len(records)),
            success_rate=successes / len(records),
            quality_breakdown={
                "type_check": sum(1 for r in records if r.quality_checks.type_check),
                "lint": sum(1 for r in records if r.quality_checks.lint),
                "tests": sum(1 for r in records if r.quality_checks.tests),
                "coverage": sum(1 for r in records if r.quality_checks.coverage_met),
            },
        )

    def learnings(self) -> list[str]:
        """Plain-text observations about past iterations."""
        learnings: list[str] = []
        for record in self.history():
            if record.status is IterationStatus.SUCCESS and record.quality_checks.all_passed:
                learnings.append(
                    f"Iteration {record.iteration}: full quality gate pass for "
                    f'"{record.task_title}"'
                )
            elif record.status is IterationStatus.FAILED:
                failures = record.quality_checks.failures()
                if failures:
                    learnings.append(
                        f"Iteration {record.iteration}: failed quality checks: "
                        f"{', '.join(failures)}"
                    )

        stats = self.statistics()
        if stats.total:
            learnings.append(
                f"Success rate: {stats.success_rate * 100:.1f}% "
                f"({stats.success_count}/{stats.total})"
            )
            learnings.append(f"Average iteration time: {stats.avg_duration_ms}ms")
        return learnings

    def task_insights(self, task_id: str) -> TaskInsights:
        records = self.history(task_id=task_id)
        if not records:
            return TaskInsights()

        records.sort(key=lambda r: r.iteration)
        trend = []
        for r in records:
            q = r.quality_checks
            passed = sum([q.type_check, q.lint, q.tests, q.coverage_met])
            trend.append(passed / 4 * 100)
        return TaskInsights(
            total=len(records),
            status_distribution=dict(Counter(r.status.value for r in records)),
            avg_duration_ms=round(sum(r.duration_ms or 0 for r in records) / len(records)),
            quality_trend=trend,
        )

    async def _memory_section(self, query: str) -> list[str]:
        if self._memory is None or not query or self._memory_snippets <= 0:
            return []
        try:
            snippets = await self._memory.search(
                query, limit=self._memory_snippets, mode="hybrid"
            )
        except Exception as e:
            # Memory is optional; the context is still useful without it.
            logger.warning("Memory search failed, omitting snippets: %s", e)
            return []
        lines = []
        for snippet in snippets[: self._memory_snippets]:
            content = " ".join(snippet.content.split())
            if len(content) > _SNIPPET_CHARS:
                content = content[: _SNIPPET_CHARS - 3] + "..."
            tags = f" [{', '.join(snippet.tags)}]" if snippet.tags else ""
            lines.append(f"- {snippet.title}{tags}: {content}")
        return lines

    async def build_compressed_context(
        self,
        recent_count: int = 3,
        threshold: int = 5,
        query: str | None = None,
    ) -> str:
        """Iteration history sized for a prompt.

        Below ``threshold`` iterations every record is rendered in full.
        From ``threshold`` on, the newest ``recent_count`` stay in full, the
        rest become one line each, and relevant memory snippets lead.
        """
        records = list(reversed(self.history()))  # oldest first
        if not records:
            return ""

        if len(records) < threshold:
            blocks = [format_detail_block(r) for r in records]
            return "## Iteration History\n\n" + "\n\n".join(blocks)

        split = max(0, len(records) - max(0, recent_count))
        older, recent = records[:split], records[split:]

        sections: list[str] = []
        memory_lines = await self._memory_section(query or records[-1].task_title)
        if memory_lines:
            sections.append("## Relevant Memory\n" + "\n".join(memory_lines))
        if older:
            sections.append(
                "## Earlier Iterations\n" + "\n".join(format_summary_line(r) for r in older)
            )
        if recent:
            sections.append(
                "## Recent Iterations\n\n" + "\n\n".join(format_detail_block(r) for r in recent)
            )
        return "\n\n".join(sections)
