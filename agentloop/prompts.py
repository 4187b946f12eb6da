"""Instruction text handed to the agent binary."""

from __future__ import annotations

from .models import ToolKind, WorkItem

_LEADS: dict[ToolKind, str] = {
    ToolKind.CURSOR_AGENT: "Implement task: {title}.",
    ToolKind.CLAUDE_CODE: "Implement the following task: {title}.",
    ToolKind.GEMINI_CLI: "Please implement this task: {title}.",
}


def _format_criteria(criteria: list[str]) -> str:
    if not criteria:
        return "(none)"
    return "\n".join(f"- {c}" for c in criteria)


def build_instruction(tool: ToolKind, item: WorkItem, context: str = "") -> str:
    """Build the complete instruction for ``item`` with optional iteration history."""
    sections = [
        f"{_LEADS[tool].format(title=item.title)} ({item.id})",
        f"Description: {item.description or '(none)'}",
        f"ACCEPTANCE CRITERIA:\n{_format_criteria(item.acceptance_criteria)}",
    ]
    if item.notes:
        sections.append(f"NOTES:\n{item.notes}")
    if context:
        sections.append(f"=== PREVIOUS ITERATIONS ===\n\n{context}\n\n=== END CONTEXT ===")
    sections.append(
        "Run the type check, lint and tests before finishing, report the coverage "
        "percentage, and commit your changes."
    )
    return "\n\n".join(sections)
