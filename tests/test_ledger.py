import json

import pytest

from agentloop.ledger import IterationLedger, format_summary_line
from agentloop.models import IterationRecord, IterationStatus, MemorySnippet, QualityChecks


def _record(
    n: int,
    *,
    status=IterationStatus.SUCCESS,
    task_id=None,
    quality=None,
    duration_ms=None,
    git_commit=None,
):
    return IterationRecord(
        iteration=n,
        task_id=task_id or f"US-{n:03d}",
        task_title=f"Task {n}",
        started_at="2026-01-01T00:00:00+00:00",
        completed_at="2026-01-01T00:01:00+00:00",
        duration_ms=1000 * n if duration_ms is None else duration_ms,
        status=status,
        quality_checks=quality or QualityChecks(),
        git_commit=git_commit,
    )


def _fill(ledger: IterationLedger, count: int) -> None:
    for n in range(1, count + 1):
        ledger.record(_record(n))


class FakeMemory:
    def __init__(self, snippets=None, fail=False) -> None:
        self.snippets = snippets or []
        self.fail = fail
        self.queries: list[tuple[str, int, str]] = []

    async def search(self, query: str, *, limit: int, mode: str) -> list[MemorySnippet]:
        self.queries.append((query, limit, mode))
        if self.fail:
            raise ConnectionError("memory down")
        return self.snippets


@pytest.fixture
def ledger(tmp_path) -> IterationLedger:
    return IterationLedger(tmp_path / "history", progress_file=tmp_path / "progress.txt")


def test_record_then_history_returns_it(ledger) -> None:
    record = _record(1, git_commit="abc1234", quality=QualityChecks(tests=True))

    path = ledger.record(record)

    assert path.name == "iteration-1.json"
    assert ledger.history(1) == [record]
    assert ledger.get(1) == record
    assert ledger.get(2) is None


def test_record_file_layout(ledger) -> None:
    path = ledger.record(_record(3))
    data = json.loads(path.read_text())

    assert data["iteration"] == 3
    assert data["status"] == "success"
    assert data["quality_checks"] == {
        "type_check": False,
        "lint": False,
        "tests": False,
        "coverage_met": False,
    }
    assert "git_commit" not in data


def test_iteration_numbers_cannot_be_reused(ledger) -> None:
    ledger.record(_record(1))
    with pytest.raises(ValueError):
        ledger.record(_record(1, task_id="US-999"))
    assert ledger.get(1).task_id == "US-001"


def test_next_iteration(ledger) -> None:
    assert ledger.next_iteration() == 1
    ledger.record(_record(1))
    ledger.record(_record(7))
    assert ledger.next_iteration() == 8


def test_history_is_newest_first_by_number(ledger) -> None:
    for n in (2, 10, 1, 9):
        ledger.record(_record(n))

    assert [r.iteration for r in ledger.history()] == [10, 9, 2, 1]
    assert [r.iteration for r in ledger.history(limit=2)] == [10, 9]


def test_history_filters_by_task(ledger) -> None:
    ledger.record(_record(1, task_id="US-001"))
    ledger.record(_record(2, task_id="US-002"))
    ledger.record(_record(3, task_id="US-001"))

    assert [r.iteration for r in ledger.history(task_id="US-001")] == [3, 1]


def test_history_skips_unreadable_files(ledger) -> None:
    ledger.record(_record(1))
    (ledger.history_dir / "iteration-2.json").write_text("{not json")
    (ledger.history_dir / "notes.txt").write_text("ignored")

    assert [r.iteration for r in ledger.history()] == [1]


def test_legacy_partial_status_reads_as_failed(ledger) -> None:
    ledger.history_dir.mkdir(parents=True)
    (ledger.history_dir / "iteration-1.json").write_text(
        json.dumps({"iteration": 1, "task_id": "US-001", "status": "partial"})
    )

    assert ledger.get(1).status is IterationStatus.FAILED


def test_statistics_empty(ledger) -> None:
    stats = ledger.statistics()

    assert stats.total == 0
    assert stats.success_count == 0
    assert stats.failed_count == 0
    assert stats.avg_duration_ms == 0
    assert stats.success_rate == 0
    assert stats.quality_breakdown == {"type_check": 0, "lint": 0, "tests": 0, "coverage": 0}


def test_statistics(ledger) -> None:
    ledger.record(_record(1, duration_ms=1000, quality=QualityChecks(True, True, True, True)))
    ledger.record(_record(2, duration_ms=2000, status=IterationStatus.FAILED))
    ledger.record(_record(3, duration_ms=2001, quality=QualityChecks(tests=True)))

    stats = ledger.statistics()

    assert stats.total == 3
    assert stats.success_count == 2
    assert stats.failed_count == 1
    assert stats.avg_duration_ms == 1667
    assert stats.success_rate == pytest.approx(2 / 3)
    assert stats.quality_breakdown == {"type_check": 1, "lint": 1, "tests": 2, "coverage": 1}
    assert stats.to_dict()["success_rate"] == 0.6667


@pytest.mark.asyncio
async def test_context_below_threshold_is_uncompressed(ledger) -> None:
    _fill(ledger, 4)

    context = await ledger.build_compressed_context(recent_count=3, threshold=5)

    assert context.count("### Iteration") == 4
    assert "- #" not in context
    assert context.index("Iteration 1:") < context.index("Iteration 4:")


@pytest.mark.asyncio
async def test_context_compresses_older_iterations(ledger) -> None:
    _fill(ledger, 6)

    context = await ledger.build_compressed_context(recent_count=3, threshold=5)

    summaries = [line for line in context.splitlines() if line.startswith("- #")]
    assert summaries == [
        "- #1 [success] Task 1 | type:fail lint:fail tests:fail coverage:fail",
        "- #2 [success] Task 2 | type:fail lint:fail tests:fail coverage:fail",
        "- #3 [success] Task 3 | type:fail lint:fail tests:fail coverage:fail",
    ]
    assert context.count("### Iteration") == 3
    assert context.index("- #3") < context.index("### Iteration 4:")
    assert context.index("### Iteration 4:") < context.index("### Iteration 6:")
    assert "Relevant Memory" not in context


@pytest.mark.asyncio
async def test_context_on_empty_ledger(ledger) -> None:
    assert await ledger.build_compressed_context() == ""


@pytest.mark.asyncio
async def test_context_includes_memory_snippets(tmp_path) -> None:
    memory = FakeMemory(
        [
            MemorySnippet(title=f"Note {n}", content="use the repo pattern", tags=["db"])
            for n in range(5)
        ]
    )
    ledger = IterationLedger(tmp_path / "history", memory=memory)
    _fill(ledger, 5)

    context = await ledger.build_compressed_context()

    assert context.startswith("## Relevant Memory")
    assert context.count("use the repo pattern") == 3
    assert memory.queries == [("Task 5", 3, "hybrid")]


@pytest.mark.asyncio
async def test_context_uses_explicit_query(tmp_path) -> None:
    memory = FakeMemory()
    ledger = IterationLedger(tmp_path / "history", memory=memory)
    _fill(ledger, 5)

    await ledger.build_compressed_context(query="auth refactor")

    assert memory.queries[0][0] == "auth refactor"


@pytest.mark.asyncio
async def test_memory_failure_degrades(tmp_path) -> None:
    ledger = IterationLedger(tmp_path / "history", memory=FakeMemory(fail=True))
    _fill(ledger, 6)

    context = await ledger.build_compressed_context()

    assert "Relevant Memory" not in context
    assert context.count("### Iteration") == 3


def test_summary_line_format() -> None:
    record = _record(
        4, status=IterationStatus.FAILED, quality=QualityChecks(type_check=True, tests=True)
    )
    assert format_summary_line(record) == (
        "- #4 [failed] Task 4 | type:pass lint:fail tests:pass coverage:fail"
    )


def test_progress_file_is_appended(ledger, tmp_path) -> None:
    ledger.record(_record(1, git_commit="deadbee"))
    ledger.record(_record(2, status=IterationStatus.FAILED))

    progress = (tmp_path / "progress.txt").read_text()
    assert "[Iteration 1]" in progress
    assert "Commit: deadbee" in progress
    assert "Status: failed" in progress


def test_learnings(ledger) -> None:
    ledger.record(_record(1, quality=QualityChecks(True, True, True, True)))
    ledger.record(_record(2, status=IterationStatus.FAILED, quality=QualityChecks(lint=True)))

    learnings = ledger.learnings()

    assert learnings[0] == "Iteration 2: failed quality checks: type-check, tests, coverage"
    assert learnings[1] == 'Iteration 1: full quality gate pass for "Task 1"'
    assert "Success rate: 50.0% (1/2)" in learnings


def test_task_insights(ledger) -> None:
    ledger.record(
        _record(1, task_id="US-001", status=IterationStatus.FAILED, duration_ms=100)
    )
    ledger.record(_record(2, task_id="US-002"))
    ledger.record(
        _record(
            3,
            task_id="US-001",
            duration_ms=300,
            quality=QualityChecks(True, True, False, False),
        )
    )

    insights = ledger.task_insights("US-001")

    assert insights.total == 2
    assert insights.status_distribution == {"failed": 1, "success": 1}
    assert insights.avg_duration_ms == 200
    assert insights.quality_trend == [0.0, 50.0]
    assert ledger.task_insights("US-404").total == 0


def test_history_with_zero_limit_is_empty(ledger) -> None:
    _fill(ledger, 2)

    assert ledger.history(limit=0) == []
    assert len(ledger.history()) == 2
