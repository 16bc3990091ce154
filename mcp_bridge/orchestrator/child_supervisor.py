"""ChildSupervisor - Manages the MCP server subprocess lifecycle."""

import asyncio
import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import psutil

from ..config.bridge_config import BridgeConfig
from ..ipc.line_framer import LineFramer
from ..ipc.messages import is_response
from ..ipc.stdio_bridge import StdioBridge, ChildNotRunningError
from .correlation_table import CorrelationTable

logger = logging.getLogger(__name__)

EXIT_DRAIN_REASON = "process exited"
SHUTDOWN_DRAIN_REASON = "bridge shutting down"

# Exit is detected from the process status, not from its pipes closing: a
# descendant that inherited stdout can hold the pipes open long after the
# server itself is gone.
EXIT_POLL_INTERVAL = 0.02


async def wait_for_exit(process: asyncio.subprocess.Process) -> int:
    """
    Wait until the process has exited and return its exit code.

    process.wait() alone can block until every pipe is closed (Python 3.11
    and older), so the exit status is also polled directly.
    """
    waiter = asyncio.ensure_future(process.wait())
    try:
        while process.returncode is None and not waiter.done():
            await asyncio.wait({waiter}, timeout=EXIT_POLL_INTERVAL)
    finally:
        if not waiter.done():
            waiter.cancel()
    return process.returncode


class SupervisorState(str, Enum):
    """Lifecycle states of the supervised MCP server."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"  # Waiting out the restart backoff


@dataclass(frozen=True)
class ChildProcessHandle:
    """One spawned MCP server. Replaced, never mutated, on restart."""
    process: asyncio.subprocess.Process
    generation: int
    started_at: float

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdin(self) -> Optional[asyncio.StreamWriter]:
        return self.process.stdin

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        return self.process.stdout

    @property
    def stderr(self) -> Optional[asyncio.StreamReader]:
        return self.process.stderr

    @property
    def is_alive(self) -> bool:
        return self.process.returncode is None


class ChildSupervisor:
    """
    Owns the single MCP server process.

    State machine:
        STOPPED -> STARTING -> RUNNING -> EXITED -> (backoff) -> STARTING ...
        any state -> STOPPED on shutdown() (no auto-restart afterwards)

    On every RUNNING transition the on_running hook (the handshake) is
    scheduled after a short boot delay. On unexpected exit the on_exit hook
    runs, every pending request is drained and a restart is scheduled after
    a fixed backoff. Only the process is retried, never individual requests.
    """

    def __init__(
        self,
        config: BridgeConfig,
        table: CorrelationTable,
        on_running: Optional[Callable[[], Awaitable[Any]]] = None,
        on_exit: Optional[Callable[[Optional[int]], None]] = None
    ):
        """
        Initialize ChildSupervisor.

        Args:
            config: BridgeConfig instance
            table: Correlation table that receives the server's responses
            on_running: Coroutine function run once per RUNNING transition
            on_exit: Called with the exit code when the server goes away
        """
        self.config = config
        self._table = table
        self._on_running = on_running
        self._on_exit = on_exit

        self._state = SupervisorState.STOPPED
        self._handle: Optional[ChildProcessHandle] = None
        self._generation = 0
        self._consecutive_failures = 0
        self._shutting_down = False

        self._tasks: Set[asyncio.Task] = set()
        self._boot_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Public Properties
    # =========================================================================

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def handle(self) -> Optional[ChildProcessHandle]:
        return self._handle

    @property
    def is_running(self) -> bool:
        """True while a live MCP server process is attached."""
        return self._handle is not None and self._handle.is_alive

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> bool:
        """
        Spawn the MCP server.

        Returns:
            True if a process is running afterwards. A failed spawn is
            logged and retried after the restart backoff.
        """
        self._shutting_down = False
        if self.is_running:
            return True
        return await self._spawn()

    def mark_healthy(self) -> None:
        """Reset the restart counter (called after a successful handshake)."""
        self._consecutive_failures = 0

    async def write(self, message: Dict[str, Any]) -> None:
        """
        Send one message to the MCP server's stdin.

        Args:
            message: JSON-RPC message dict

        Raises:
            ChildNotRunningError: If no MCP server is attached
            ChildCommunicationError: If the pipe is broken
        """
        handle = self._handle
        if handle is None or not handle.is_alive:
            raise ChildNotRunningError()
        await StdioBridge.send_message(handle.stdin, message)

    async def shutdown(self) -> None:
        """
        Terminate the MCP server and stop supervising.

        Pending requests fail with "bridge shutting down". No restart is
        scheduled afterwards.
        """
        self._shutting_down = True
        logger.info("Shutting down MCP server supervisor")

        for task in (self._restart_task, self._boot_task):
            if task is not None and not task.done():
                task.cancel()
        self._restart_task = None
        self._boot_task = None

        handle = self._handle
        self._handle = None
        if handle is not None:
            await self._terminate(handle)
            if self._on_exit:
                self._on_exit(handle.process.returncode)

        self._table.drain_all(SHUTDOWN_DRAIN_REASON)

        remaining = [task for task in self._tasks if not task.done()]
        for task in remaining:
            task.cancel()
        if remaining:
            await asyncio.gather(*remaining, return_exceptions=True)

        self._state = SupervisorState.STOPPED
        logger.info("MCP server supervisor stopped")

    # =========================================================================
    # Internals
    # =========================================================================

    async def _spawn(self) -> bool:
        self._state = SupervisorState.STARTING
        command = self.config.child_command
        logger.info(f"Starting MCP server: {' '.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start MCP server: {e}")
            self._state = SupervisorState.EXITED
            self._consecutive_failures += 1
            self._schedule_restart()
            return False

        if self._shutting_down:
            # shutdown() ran while we were spawning
            await self._terminate(ChildProcessHandle(process, self._generation + 1, time.monotonic()))
            return False

        self._generation += 1
        handle = ChildProcessHandle(
            process=process,
            generation=self._generation,
            started_at=time.monotonic()
        )
        self._handle = handle
        self._state = SupervisorState.RUNNING
        logger.info(f"MCP server started (PID: {handle.pid}, generation {handle.generation})")

        framer = LineFramer(max_line_bytes=self.config.max_line_bytes)
        stdout_task = self._create_task(
            StdioBridge.pump_stdout(handle.stdout, self._route_message, framer),
            name=f"mcp-stdout-{handle.generation}"
        )
        self._create_task(
            StdioBridge.pump_stderr(handle.stderr, logger),
            name=f"mcp-stderr-{handle.generation}"
        )
        self._create_task(
            self._watch_exit(handle, stdout_task),
            name=f"mcp-exit-{handle.generation}"
        )
        self._boot_task = self._create_task(
            self._after_boot_delay(handle),
            name=f"mcp-boot-{handle.generation}"
        )
        return True

    def _route_message(self, message: Dict[str, Any]) -> None:
        """Hand a parsed stdout document to the correlation table."""
        if not is_response(message):
            logger.debug(f"Discarding MCP message without id: {message.get('method', '<no method>')}")
            return
        if not self._table.complete(message["id"], message):
            logger.debug(f"Discarding MCP response for unknown id {message['id']!r}")

    async def _after_boot_delay(self, handle: ChildProcessHandle) -> None:
        await asyncio.sleep(self.config.boot_delay_seconds)
        if self._handle is not handle or not handle.is_alive:
            return
        if self._on_running is not None:
            await self._on_running()

    async def _watch_exit(self, handle: ChildProcessHandle, stdout_task: asyncio.Task) -> None:
        returncode = await wait_for_exit(handle.process)

        # One loop pass so the stdout pump routes lines it has already read
        await asyncio.sleep(0)
        self._handle_exit(handle, returncode)

        # Abandon this generation's stdout; whatever still holds the pipe
        # must not complete requests sent to the next server.
        if not stdout_task.done():
            stdout_task.cancel()
        if handle.stdin is not None:
            handle.stdin.close()

    def _handle_exit(self, handle: ChildProcessHandle, returncode: Optional[int]) -> None:
        if self._handle is not handle:
            # Already replaced or shut down
            return

        logger.warning(f"MCP exited with code {returncode} (PID: {handle.pid})")
        self._handle = None

        if self._boot_task is not None and not self._boot_task.done():
            self._boot_task.cancel()
        self._boot_task = None

        if self._on_exit:
            self._on_exit(returncode)

        self._table.drain_all(EXIT_DRAIN_REASON)

        if self._shutting_down:
            self._state = SupervisorState.STOPPED
            return

        self._state = SupervisorState.EXITED
        self._consecutive_failures += 1
        self._schedule_restart()

    def _schedule_restart(self) -> None:
        if self._shutting_down:
            self._state = SupervisorState.STOPPED
            return

        limit = self.config.max_restart_attempts
        if limit and self._consecutive_failures >= limit:
            logger.error(
                f"MCP server failed {self._consecutive_failures} times in a row, "
                f"giving up (max_restart_attempts={limit})"
            )
            self._state = SupervisorState.STOPPED
            return

        backoff = self.config.restart_backoff_seconds
        logger.info(f"Restarting MCP server in {backoff}s (attempt {self._consecutive_failures})")
        self._restart_task = self._create_task(self._restart_after_backoff(backoff), name="mcp-restart")

    async def _restart_after_backoff(self, backoff: float) -> None:
        await asyncio.sleep(backoff)
        if not self._shutting_down:
            await self._spawn()

    async def _terminate(self, handle: ChildProcessHandle) -> None:
        """
        Stop a server process and anything it spawned.

        Steps:
        1. Snapshot descendants (e.g. node started through a wrapper)
        2. Close stdin and SIGTERM the server
        3. Wait up to shutdown_grace_seconds, then SIGKILL
        4. Kill descendants that outlived their parent
        """
        process = handle.process
        if process.returncode is not None:
            return

        try:
            descendants = psutil.Process(process.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            descendants = []

        if process.stdin is not None:
            process.stdin.close()

        try:
            process.terminate()
        except ProcessLookupError:
            pass

        try:
            await asyncio.wait_for(wait_for_exit(process), timeout=self.config.shutdown_grace_seconds)
            logger.info(f"MCP server exited (PID: {handle.pid}, returncode: {process.returncode})")
        except asyncio.TimeoutError:
            logger.warning(f"MCP server did not exit gracefully, sending SIGKILL (PID: {handle.pid})")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await wait_for_exit(process)

        for child in descendants:
            try:
                if child.is_running():
                    logger.warning(f"Killing orphaned MCP subprocess pid={child.pid}")
                    child.kill()
            except psutil.NoSuchProcess:
                pass

    def _create_task(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Supervisor task {task.get_name()} failed: {error}", exc_info=error)
