"""
Serialized Request Dispatcher for the MCP bridge.

The MCP server is treated as a single-threaded consumer: at most one
request is in flight at any instant. Concurrent HTTP handlers enqueue
their calls here and a single worker task drains the queue in arrival
order.

Architecture:
- asyncio.Queue holds calls in FIFO order
- One worker task per dispatcher executes calls one after another
- Each call: assign id, register correlation, write, await completion
- A failed or timed-out call resolves its own future and the worker moves
  on, so one bad call never blocks or poisons the ones behind it

Thread Safety:
- Single event loop; dispatch() may be awaited from any number of tasks
"""

import asyncio
import time
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from ..ipc.stdio_bridge import BridgeError, BridgeNotReadyError, DispatcherClosedError
from .correlation_table import CorrelationTable, RequestIdAllocator

if TYPE_CHECKING:
    from .child_supervisor import ChildSupervisor

logger = logging.getLogger(__name__)


@dataclass
class QueuedCall:
    """A call waiting for its turn."""
    message: Dict[str, Any]
    timeout: float
    result: asyncio.Future
    requires_ready: bool = True
    enqueue_time: float = field(default_factory=time.monotonic)

    @property
    def wait_time_ms(self) -> float:
        """Time spent waiting in queue (milliseconds)."""
        return (time.monotonic() - self.enqueue_time) * 1000


class SerializedDispatcher:
    """
    FIFO, single-in-flight dispatcher over the MCP server's stdio.

    Usage:
        dispatcher = SerializedDispatcher(supervisor, table, ids, default_timeout=120)
        dispatcher.start()
        response = await dispatcher.dispatch({"jsonrpc": "2.0", "method": "tools/list"})
        await dispatcher.close()
    """

    def __init__(
        self,
        supervisor: 'ChildSupervisor',
        table: CorrelationTable,
        ids: RequestIdAllocator,
        default_timeout: float = 120.0,
        is_ready: Optional[Callable[[], bool]] = None
    ):
        """
        Initialize dispatcher.

        Args:
            supervisor: Supervisor that writes to the MCP server
            table: Correlation table for pending responses
            ids: Allocator for requests that arrive without an id
            default_timeout: Per-call timeout when dispatch() gets none
            is_ready: Readiness gate re-checked when a call's turn comes
        """
        self._supervisor = supervisor
        self._table = table
        self._ids = ids
        self.default_timeout = default_timeout
        self._is_ready = is_ready

        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Future] = None
        self._closed = False

        self.total_dispatched = 0
        self.total_failed = 0

    @property
    def queue_depth(self) -> int:
        """Calls waiting behind the one in flight."""
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the worker task. Must be called inside the running event loop."""
        if self.is_running:
            return
        self._closed = False
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="mcp-dispatcher")
        logger.info(f"Dispatcher started (default timeout: {self.default_timeout}s)")

    async def dispatch(
        self,
        message: Dict[str, Any],
        timeout: Optional[float] = None,
        requires_ready: bool = True
    ) -> Dict[str, Any]:
        """
        Queue a JSON-RPC request and wait for its response.

        The message is copied; an id is assigned when its turn comes if it
        has none. The timeout starts when the request is written, not while
        it waits in the queue.

        Args:
            message: JSON-RPC request dict
            timeout: Seconds to wait for the response (default_timeout if None)
            requires_ready: Fail with BridgeNotReadyError if the handshake is
                not complete when the call's turn comes

        Returns:
            Raw JSON-RPC response dict

        Raises:
            BridgeNotReadyError: Handshake incomplete at execution time
            ChildNotRunningError: No MCP server attached
            ChildCommunicationError: Write failed
            RequestTimeoutError: No response within the timeout
            ChildExitedError: MCP server exited while waiting
            DispatcherClosedError: Dispatcher shut down
        """
        if self._closed or self._queue is None:
            raise DispatcherClosedError()

        call = QueuedCall(
            message=dict(message),
            timeout=self.default_timeout if timeout is None else timeout,
            result=asyncio.get_running_loop().create_future(),
            requires_ready=requires_ready
        )
        self._queue.put_nowait(call)
        logger.debug(
            f"Queued {call.message.get('method', '<no method>')} "
            f"(depth={self._queue.qsize()})"
        )
        return await call.result

    async def close(self) -> int:
        """
        Stop the worker and fail every call still waiting.

        Returns:
            Number of queued calls that were cancelled
        """
        self._closed = True
        cancelled = 0

        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        if self._queue is not None:
            while not self._queue.empty():
                call = self._queue.get_nowait()
                if not call.result.done():
                    call.result.set_exception(DispatcherClosedError())
                    cancelled += 1

        if cancelled:
            logger.info(f"Cancelled {cancelled} queued request(s) during shutdown")
        return cancelled

    async def _run(self) -> None:
        """Worker loop: one call at a time, forever."""
        while True:
            call = await self._queue.get()
            try:
                if call.result.done():
                    # Caller went away (client disconnect) before its turn
                    continue
                response = await self._execute(call)
            except asyncio.CancelledError:
                if not call.result.done():
                    self._settle_on_close(call)
                raise
            except BridgeError as e:
                self.total_failed += 1
                if not call.result.done():
                    call.result.set_exception(e)
            except Exception as e:
                self.total_failed += 1
                logger.error(f"Unexpected dispatch error: {e}", exc_info=True)
                if not call.result.done():
                    call.result.set_exception(BridgeError(f"Dispatch failed: {e}"))
            else:
                if not call.result.done():
                    call.result.set_result(response)
            finally:
                self._in_flight = None
                self._queue.task_done()

    def _settle_on_close(self, call: QueuedCall) -> None:
        """
        Resolve the in-flight call when the worker is cancelled.

        A completion that was already settled (drained with the child's exit
        reason, answered, timed out) keeps its outcome; only a call still
        waiting on the server fails with DispatcherClosedError.
        """
        completion = self._in_flight
        if completion is None or not completion.done() or completion.cancelled():
            call.result.set_exception(DispatcherClosedError())
            return

        error = completion.exception()
        if error is not None:
            call.result.set_exception(error)
        else:
            call.result.set_result(completion.result())

    async def _execute(self, call: QueuedCall) -> Dict[str, Any]:
        if call.requires_ready and self._is_ready is not None and not self._is_ready():
            raise BridgeNotReadyError()

        message = call.message
        if message.get("id") is None:
            message["id"] = self._ids.next_id()
        request_id = message["id"]

        completion = self._table.register(request_id, call.timeout)
        self._in_flight = completion
        self.total_dispatched += 1
        logger.debug(
            f"[{request_id}] Dispatching {message.get('method', '<no method>')} "
            f"after {call.wait_time_ms:.0f}ms in queue"
        )

        try:
            await self._supervisor.write(message)
        except BridgeError as e:
            self._table.fail(request_id, e)

        return await completion
