"""
Basic Loop Example

Plans a small backlog, runs it through the first installed agent CLI and
prints the compressed context the next iteration would receive. A toy memory
service shows how snippets are spliced into that context.

Usage:
    python examples/basic_loop.py [--dry-run]
"""

import asyncio
import sys

from rich.console import Console
from rich.table import Table

from agentloop import AgentLoop, MemorySnippet, WorkItem, load_settings

console = Console()


class KeywordMemory:
    """In-process stand-in for a semantic memory service."""

    def __init__(self, notes: list[MemorySnippet]) -> None:
        self.notes = notes

    async def search(self, query: str, *, limit: int, mode: str) -> list[MemorySnippet]:
        words = set(query.lower().split())
        ranked = sorted(
            self.notes,
            key=lambda note: len(words & set(note.content.lower().split())),
            reverse=True,
        )
        return ranked[:limit]


def build_backlog() -> list[WorkItem]:
    return [
        WorkItem(
            id="US-001",
            title="Add user model",
            description="Create src/models/user.py and src/db.py",
            acceptance_criteria=["User can be saved and loaded"],
            priority=1,
        ),
        WorkItem(
            id="US-002",
            title="Add signup endpoint",
            description="Expose the model from US-001 in src/api/signup.py",
            acceptance_criteria=["POST /signup returns 201"],
            priority=2,
        ),
        WorkItem(
            id="US-003",
            title="Write README",
            description="Document setup in docs/index.html",
            priority=3,
        ),
    ]


async def main(dry_run: bool) -> None:
    settings = load_settings()
    memory = KeywordMemory(
        [
            MemorySnippet("DB sessions", "open one session per request for the user model"),
            MemorySnippet("Signup", "signup must hash passwords before saving", ["auth"]),
        ]
    )
    agent_loop = AgentLoop(settings, memory=memory)
    backlog = build_backlog()

    plan = agent_loop.plan(backlog)
    table = Table(title="Batch Plan")
    table.add_column("Batch", style="cyan")
    table.add_column("Items")
    for index, batch in enumerate(plan, start=1):
        table.add_row(str(index), ", ".join(item.id for item in batch))
    console.print(table)

    report = await agent_loop.run(backlog, dry_run=dry_run, handle_signals=True)
    if not report.dry_run:
        console.print(f"[green]Completed:[/green] {', '.join(report.completed_ids) or '-'}")
        console.print(f"[red]Failed:[/red] {', '.join(report.failed_ids) or '-'}")

    context = await agent_loop.ledger.build_compressed_context(query="signup user model")
    console.print(context or "[dim]No iterations recorded yet.[/dim]")


if __name__ == "__main__":
    asyncio.run(main("--dry-run" in sys.argv))
