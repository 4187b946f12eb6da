"""Quality gate inferred from the agent's own output."""

from __future__ import annotations

import re
from typing import Protocol

from .models import ExecutionResult, QualityChecks, WorkItem

COVERAGE_THRESHOLD = 95.0

TYPE_CHECK_KEYWORDS = ("type-check", "typecheck", "typescript", "tsc", "mypy", "pyright")
LINT_KEYWORDS = ("eslint", "lint", "ruff", "flake8")
TEST_KEYWORDS = ("test", "jest", "vitest", "mocha", "pytest")
PASS_KEYWORDS = ("pass", "passed", "✓", "all", "success", "100%")
FAILURE_KEYWORDS = ("error", "failed", "fail")
LINT_FAILURE_KEYWORDS = (*FAILURE_KEYWORDS, "warning", "problems")

PERCENT_PATTERN = re.compile(r"(\d+(?:\.\d+)?)%")
COMMIT_HASH_PATTERN = re.compile(r"\b[a-f0-9]{7,40}\b")
COMMIT_AFTER_KEYWORD_PATTERN = re.compile(r"commit\W{1,3}([a-f0-9]{7,40})\b", re.IGNORECASE)


class QualityGate(Protocol):
    """Supplies the four quality booleans for one iteration."""

    def evaluate(self, item: WorkItem, result: ExecutionResult) -> QualityChecks: ...


def _has_keyword(text: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)


def has_percentage_above(text: str, threshold: float = COVERAGE_THRESHOLD) -> bool:
    return any(float(m) >= threshold for m in PERCENT_PATTERN.findall(text))


def extract_quality_checks(output: str) -> QualityChecks:
    """Keyword heuristics over free-form agent output."""
    text = output.lower()
    failed = _has_keyword(text, FAILURE_KEYWORDS)

    return QualityChecks(
        type_check=_has_keyword(text, TYPE_CHECK_KEYWORDS) and not failed,
        lint=_has_keyword(text, LINT_KEYWORDS) and not _has_keyword(text, LINT_FAILURE_KEYWORDS),
        tests=(
            _has_keyword(text, TEST_KEYWORDS) and _has_keyword(text, PASS_KEYWORDS) and not failed
        ),
        coverage_met="coverage" in text and has_percentage_above(output),
    )


def extract_git_commit(output: str) -> str | None:
    """Commit hash mentioned in the output, if the output talks about a commit."""
    match = COMMIT_AFTER_KEYWORD_PATTERN.search(output)
    if match:
        return match.group(1)
    if "commit" not in output.lower():
        return None
    match = COMMIT_HASH_PATTERN.search(output)
    return match.group(0) if match else None


class OutputQualityGate:
    """Derives quality flags from the text and tool calls of a result.

    A failed execution never passes any check, whatever its text says.
    """

    def evaluate(self, item: WorkItem, result: ExecutionResult) -> QualityChecks:
        if not result.success:
            return QualityChecks()
        return extract_quality_checks("\n".join([result.text, *result.tool_calls]))

