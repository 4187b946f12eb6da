"""Agent loop - runs planned batches through the bridge and records each iteration."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from pathlib import Path

from .backlog import pending_items
from .bridge import AgentBridge, EventSink
from .config import Settings
from .errors import ConfigurationError, FailureKind
from .ledger import IterationLedger, MemorySearch, build_record, utc_now
from .models import ExecutionResult, IterationRecord, ToolKind, WorkItem
from .prompts import build_instruction
from .quality import OutputQualityGate, QualityGate, extract_git_commit
from .scheduler import BatchPlan, plan_batches

logger = logging.getLogger(__name__)


@dataclass
class IterationOutcome:
    item: WorkItem
    result: ExecutionResult
    record: IterationRecord


@dataclass
class LoopReport:
    """What a loop run did."""

    plan: BatchPlan
    tool: ToolKind | None = None
    outcomes: list[IterationOutcome] = field(default_factory=list)
    dry_run: bool = False
    stopped: bool = False

    @property
    def records(self) -> list[IterationRecord]:
        return [outcome.record for outcome in self.outcomes]

    @property
    def completed_ids(self) -> list[str]:
        return [o.item.id for o in self.outcomes if o.result.success]

    @property
    def failed_ids(self) -> list[str]:
        return [o.item.id for o in self.outcomes if not o.result.success]

    @property
    def succeeded(self) -> bool:
        return not self.failed_ids and not self.stopped


class AgentLoop:
    """Drives backlog items through an agent CLI, batch by batch.

    Batches run one after another. Items inside a batch run concurrently and
    get their iteration numbers in the order they finish.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        bridge: AgentBridge | None = None,
        ledger: IterationLedger | None = None,
        quality_gate: QualityGate | None = None,
        memory: MemorySearch | None = None,
    ) -> None:
        self.settings = settings
        self.bridge = bridge or AgentBridge(settings)
        self.ledger = ledger or IterationLedger(
            settings.history_dir,
            memory=memory,
            progress_file=settings.progress_file,
            memory_snippets=settings.memory_snippets,
        )
        self.quality_gate: QualityGate = quality_gate or OutputQualityGate()
        self.stop_requested = False
        self._record_lock = asyncio.Lock()

    def stop(self) -> None:
        """Start nothing new and kill whatever is running."""
        if not self.stop_requested:
            logger.warning("Stop requested, terminating running agents")
        self.stop_requested = True
        killed = self.bridge.kill_all()
        if killed:
            logger.info("Killed %d running agent(s)", killed)

    async def select_tool(self, preferred: ToolKind | None = None) -> ToolKind:
        """Pick ``preferred`` if installed, else the first installed tool."""
        if preferred is not None:
            info = await self.bridge.probe(preferred)
            if not info.available:
                raise ConfigurationError(
                    f"{preferred.value} is not available (command: {info.command!r})"
                )
            return preferred

        for info in await self.bridge.detect_cli_tools():
            if info.available:
                return info.tool
        raise ConfigurationError(
            "No agent CLI found. Install cursor-agent, claude or gemini, "
            "or point AGENTLOOP_*_CMD at one."
        )

    def plan(self, items: list[WorkItem]) -> BatchPlan:
        return plan_batches(
            pending_items(items), self.settings.max_concurrency, self.settings.id_prefixes
        )

    async def run(
        self,
        items: list[WorkItem],
        *,
        tool: ToolKind | None = None,
        dry_run: bool = False,
        max_iterations: int | None = None,
        timeout_ms: int | None = None,
        cwd: Path | None = None,
        on_event: EventSink | None = None,
        handle_signals: bool = False,
    ) -> LoopReport:
        plan = self.plan(items)
        if dry_run:
            return LoopReport(plan=plan, tool=tool, dry_run=True)
        if not len(plan):
            logger.info("Nothing to do, every work item already passes")
            return LoopReport(plan=plan, tool=tool)

        selected = await self.select_tool(tool)
        report = LoopReport(plan=plan, tool=selected)
        budget = max_iterations if max_iterations is not None else self.settings.max_iterations
        self.stop_requested = False

        if handle_signals:
            self._install_signal_handlers()
        try:
            for index, batch in enumerate(plan, start=1):
                if self.stop_requested or budget <= 0:
                    break
                batch = batch[:budget]
                budget -= len(batch)
                logger.info(
                    "Batch %d/%d: %s", index, len(plan), ", ".join(item.id for item in batch)
                )
                outcomes = await asyncio.gather(
                    *(
                        self._run_item(selected, item, timeout_ms, cwd, on_event)
                        for item in batch
                    )
                )
                report.outcomes.extend(o for o in outcomes if o is not None)
        finally:
            if handle_signals:
                self._remove_signal_handlers()

        report.stopped = self.stop_requested
        return report

    async def _run_item(
        self,
        tool: ToolKind,
        item: WorkItem,
        timeout_ms: int | None,
        cwd: Path | None,
        on_event: EventSink | None,
    ) -> IterationOutcome | None:
        started_at = utc_now()
        context = await self.ledger.build_compressed_context(
            recent_count=self.settings.recent_count,
            threshold=self.settings.compression_threshold,
            query=item.title,
        )
        if self.stop_requested:
            # stop() may land while the context is being built; nothing is spawned then.
            logger.info("Skipping %s, stop requested", item.id)
            return None
        instruction = build_instruction(tool, item, context)
        result = await self.bridge.execute(
            tool, instruction, timeout_ms=timeout_ms, cwd=cwd, on_event=on_event
        )

        checks = self.quality_gate.evaluate(item, result)
        if result.success and self.settings.require_quality_gate and not checks.all_passed:
            result.success = False
            result.failure = FailureKind.QUALITY_GATE
            result.error = f"quality gate failed: {', '.join(checks.failures())}"

        commit = extract_git_commit(result.text) if result.text else None
        async with self._record_lock:
            record = build_record(
                self.ledger.next_iteration(),
                item,
                result,
                checks,
                started_at=started_at,
                git_commit=commit,
            )
            self.ledger.record(record)

        if result.success:
            item.passes = True
        else:
            logger.warning("%s failed: %s", item.id, result.error)
        return IterationOutcome(item=item, result=result, record=record)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not on the main thread, or the platform lacks support.
                logger.debug("Cannot install handler for %s", sig.name)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                pass
