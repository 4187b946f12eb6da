"""Agent process bridge - runs agent CLIs and interprets their streaming output."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .config import Settings
from .errors import ConfigurationError, FailureKind, ProtocolParseError
from .models import BridgeState, ExecutionResult, StreamEvent, ToolInfo, ToolKind
from .parsers import LineBuffer, StreamParser, create_parser, decode_line

logger = logging.getLogger(__name__)

EventSink = Callable[[StreamEvent], None]

_READ_SIZE = 64 * 1024
_STDERR_TAIL_LINES = 20

# Fixed invocation shape per tool. The parsers depend on these flags, so the
# configurable part is only the executable itself.
_TOOL_FLAGS: dict[ToolKind, tuple[str, ...]] = {
    ToolKind.CURSOR_AGENT: (
        "-p",
        "--force",
        "--approve-mcps",
        "--output-format",
        "stream-json",
        "--stream-partial-output",
    ),
    ToolKind.CLAUDE_CODE: (
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
        "--dangerously-skip-permissions",
    ),
    ToolKind.GEMINI_CLI: ("--output-format", "stream-json", "--yolo", "-p"),
}


def build_argv(tool: ToolKind, command: str, instruction: str) -> list[str]:
    """Full argv for running ``instruction`` through ``tool``."""
    head = shlex.split(command)
    if not head:
        raise ConfigurationError(f"No command configured for {tool.value}")
    return [*head, *_TOOL_FLAGS[tool], instruction]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@dataclass
class ProcessHandle:
    """One agent process in flight."""

    id: str
    tool: ToolKind
    process: asyncio.subprocess.Process
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    completed: bool = False
    state: BridgeState = BridgeState.CONNECTING
    terminated_by_bridge: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None


class AgentBridge:
    """Spawns one agent process per execution and tracks the ones in flight."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._active: dict[str, ProcessHandle] = {}
        # Executions run as concurrent tasks and kill_all may come from a
        # signal handler, so registry access is serialized.
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def active(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def _register(self, tool: ToolKind, process: asyncio.subprocess.Process) -> ProcessHandle:
        with self._lock:
            key = f"{tool.value}-{int(time.time() * 1000)}"
            suffix = 1
            while key in self._active:
                suffix += 1
                key = f"{tool.value}-{int(time.time() * 1000)}-{suffix}"
            handle = ProcessHandle(id=key, tool=tool, process=process)
            self._active[key] = handle
        logger.debug("Registered %s (pid %s)", key, process.pid)
        return handle

    def _unregister(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._active.pop(handle.id, None)

    def kill_all(self) -> int:
        """Force-terminate every registered process. Safe to call repeatedly."""
        with self._lock:
            handles = list(self._active.values())
            self._active.clear()

        killed = 0
        for handle in handles:
            if not handle.running:
                continue
            try:
                handle.process.kill()
            except ProcessLookupError:
                continue
            killed += 1
            logger.info("Killed process %s (pid %s)", handle.id, handle.pid)
        return killed

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        tool: ToolKind,
        instruction: str,
        *,
        timeout_ms: int | None = None,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        on_event: EventSink | None = None,
    ) -> ExecutionResult:
        """Run ``instruction`` through ``tool`` and wait for completion or timeout."""
        if timeout_ms is None:
            timeout_ms = self._settings.timeout_for(tool)
        argv = build_argv(tool, self._settings.command_for(tool), instruction)
        process_env = {**os.environ, **env} if env else None

        logger.info("Starting %s (timeout %dms)", tool.value, timeout_ms)
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=process_env,
            )
        except OSError as e:
            logger.error("Failed to start %s: %s", argv[0], e)
            missing = isinstance(e, FileNotFoundError)
            return ExecutionResult(
                success=False,
                error=f"Failed to start {argv[0]}: {e}",
                duration_ms=_elapsed_ms(started),
                exit_code=-1,
                failure=FailureKind.TOOL_UNAVAILABLE if missing else FailureKind.SPAWN_ERROR,
            )

        handle = self._register(tool, process)
        try:
            return await self._supervise(
                handle, create_parser(tool), timeout_ms, started, on_event
            )
        finally:
            if handle.running:
                self._force_kill(handle)
            self._unregister(handle)

    async def _supervise(
        self,
        handle: ProcessHandle,
        parser: StreamParser,
        timeout_ms: int,
        started: float,
        on_event: EventSink | None,
    ) -> ExecutionResult:
        loop = asyncio.get_running_loop()
        # Completion, end of output and the timer all race to settle this once.
        outcome: asyncio.Future[str] = loop.create_future()

        def settle(reason: str) -> None:
            if not outcome.done():
                outcome.set_result(reason)

        timer = loop.call_later(timeout_ms / 1000, settle, "timeout")
        stdout_task = asyncio.create_task(self._pump_stdout(handle, parser, settle, on_event))
        stderr_task = asyncio.create_task(self._drain_stderr(handle))

        try:
            reason = await outcome
            if reason == "exited":
                remaining = max(0.0, timeout_ms / 1000 - (time.monotonic() - started))
                try:
                    await asyncio.wait_for(handle.process.wait(), timeout=remaining)
                except TimeoutError:
                    reason = "timeout"
        finally:
            timer.cancel()

        if reason == "timeout":
            handle.state = BridgeState.TIMED_OUT
            logger.warning("%s timed out after %dms", handle.id, timeout_ms)
            self._force_kill(handle)
        elif reason == "completed":
            handle.state = BridgeState.COMPLETING
            await self._terminate(handle)

        exit_code = await handle.process.wait()
        grace = self._settings.grace_period_ms / 1000
        await self._settle_task(stdout_task, grace)
        await self._settle_task(stderr_task, grace)
        if handle.state is not BridgeState.TIMED_OUT:
            handle.state = BridgeState.TERMINATED

        return self._build_result(handle, parser, reason, exit_code, timeout_ms, started)

    async def _pump_stdout(
        self,
        handle: ProcessHandle,
        parser: StreamParser,
        settle: Callable[[str], None],
        on_event: EventSink | None,
    ) -> None:
        stream = handle.process.stdout
        assert stream is not None
        buffer = LineBuffer()
        try:
            while True:
                chunk = await stream.read(_READ_SIZE)
                if not chunk:
                    break
                if handle.state is BridgeState.CONNECTING:
                    handle.state = BridgeState.STREAMING
                for line in buffer.feed(chunk):
                    self._handle_line(handle, parser, line, settle, on_event)
            for line in buffer.flush():
                self._handle_line(handle, parser, line, settle, on_event)
        finally:
            settle("exited")

    def _handle_line(
        self,
        handle: ProcessHandle,
        parser: StreamParser,
        line: str,
        settle: Callable[[str], None],
        on_event: EventSink | None,
    ) -> None:
        if not line.strip():
            return
        handle.stdout.append(line)
        try:
            events = parser.process_line(decode_line(line))
        except ProtocolParseError as e:
            logger.warning("Dropping malformed %s output: %s", handle.tool.value, e)
            return
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Dropping unexpected %s event: %s", handle.tool.value, e)
            return

        for event in events:
            logger.debug("[%s] %s: %s", handle.id, event.type.value, event.message)
            if on_event is not None:
                try:
                    on_event(event)
                except Exception:
                    logger.exception("Event callback failed for %s", handle.id)

        if parser.is_completed() and not handle.completed:
            handle.completed = True
            settle("completed")

    async def _drain_stderr(self, handle: ProcessHandle) -> None:
        stream = handle.process.stderr
        assert stream is not None
        while True:
            raw = await stream.readline()
            if not raw:
                return
            handle.stderr.append(raw.decode("utf-8", errors="replace").rstrip())

    async def _terminate(self, handle: ProcessHandle) -> None:
        """SIGTERM, then SIGKILL if the process outlives the grace window."""
        if not handle.running:
            return
        handle.terminated_by_bridge = True
        try:
            handle.process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(
                handle.process.wait(), timeout=self._settings.grace_period_ms / 1000
            )
        except TimeoutError:
            logger.warning("%s ignored SIGTERM, killing", handle.id)
            self._force_kill(handle)

    @staticmethod
    def _force_kill(handle: ProcessHandle) -> None:
        if not handle.running:
            return
        handle.terminated_by_bridge = True
        try:
            handle.process.kill()
        except ProcessLookupError:
            pass

    @staticmethod
    async def _settle_task(task: asyncio.Task[None], timeout: float) -> None:
        # A grandchild holding the pipe open must not keep us waiting.
        try:
            await asyncio.wait_for(task, timeout=max(timeout, 0.05))
        except TimeoutError:
            pass

    @staticmethod
    def _build_result(
        handle: ProcessHandle,
        parser: StreamParser,
        reason: str,
        exit_code: int,
        timeout_ms: int,
        started: float,
    ) -> ExecutionResult:
        parsed = parser.result()
        result = ExecutionResult(
            success=False,
            text=parsed.text,
            tool_calls=[call.describe() for call in parsed.tool_calls],
            duration_ms=_elapsed_ms(started),
            exit_code=exit_code,
            session_id=parsed.session_id,
            stderr="\n".join(handle.stderr[-_STDERR_TAIL_LINES:]),
        )

        if reason == "timeout":
            result.error = f"timeout after {timeout_ms}ms"
            result.failure = FailureKind.TIMEOUT
        elif not handle.completed:
            result.error = f"process exited with code {exit_code} without a completion event"
            result.failure = FailureKind.NO_COMPLETION
        elif parsed.error:
            result.error = parsed.error
            result.failure = FailureKind.AGENT_ERROR
        elif exit_code != 0 and not handle.terminated_by_bridge:
            result.error = f"process exited with code {exit_code}"
            result.failure = FailureKind.AGENT_ERROR
        else:
            result.success = True

        if result.success:
            logger.info("%s completed in %dms", handle.id, result.duration_ms)
        else:
            logger.warning("%s failed: %s", handle.id, result.error)
        return result

    # ------------------------------------------------------------------
    # Capability probe
    # ------------------------------------------------------------------

    async def probe(self, tool: ToolKind) -> ToolInfo:
        """Run ``<command> --version`` to see whether ``tool`` is installed."""
        command = self._settings.command_for(tool)
        head = shlex.split(command)
        if not head:
            return ToolInfo(tool=tool, command=command)
        argv = [*head, "--version"]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.debug("CLI tool not available: %s (%s)", tool.value, e)
            return ToolInfo(tool=tool, command=command)

        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(), timeout=self._settings.probe_timeout_ms / 1000
            )
        except TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            logger.debug("CLI tool probe timed out: %s", tool.value)
            return ToolInfo(tool=tool, command=command)

        if process.returncode != 0:
            logger.debug("CLI tool %s exited with %s", tool.value, process.returncode)
            return ToolInfo(tool=tool, command=command)

        lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
        version = lines[0].strip() if lines else None
        logger.info("Detected CLI tool: %s (%s)", tool.value, version or "unknown version")
        return ToolInfo(tool=tool, command=command, available=True, version=version)

    async def detect_cli_tools(self) -> list[ToolInfo]:
        """Probe every supported tool; unavailable ones are marked, not raised."""
        return list(await asyncio.gather(*(self.probe(tool) for tool in ToolKind)))
