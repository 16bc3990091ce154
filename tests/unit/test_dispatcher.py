"""
Unit tests for SerializedDispatcher.

A scripted supervisor stands in for the MCP server: every write is
recorded and answered (or not) through the real correlation table.
"""

import asyncio
import pytest

from mcp_bridge.orchestrator.correlation_table import CorrelationTable, RequestIdAllocator
from mcp_bridge.orchestrator.dispatcher import SerializedDispatcher
from mcp_bridge.ipc.stdio_bridge import (
    BridgeNotReadyError,
    ChildExitedError,
    ChildNotRunningError,
    DispatcherClosedError,
    RequestTimeoutError,
)


class ScriptedSupervisor:
    """Records writes and answers them after a short delay."""

    def __init__(self, table, delay=0.01):
        self.table = table
        self.delay = delay
        self.writes = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.fail_methods = set()
        self.silent_methods = set()

    async def write(self, message):
        self.writes.append(message)
        method = message.get("method")
        if method in self.fail_methods:
            raise ChildNotRunningError()
        if method in self.silent_methods:
            return
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        asyncio.get_running_loop().call_later(self.delay, self._answer, message)

    def _answer(self, message):
        self.in_flight -= 1
        self.table.complete(message["id"], {
            "jsonrpc": "2.0",
            "id": message["id"],
            "result": {"method": message["method"]}
        })


@pytest.fixture
def table():
    return CorrelationTable()


@pytest.fixture
def supervisor(table):
    return ScriptedSupervisor(table)


def make_dispatcher(supervisor, table, is_ready=None, default_timeout=5.0):
    dispatcher = SerializedDispatcher(
        supervisor,
        table,
        RequestIdAllocator(table),
        default_timeout=default_timeout,
        is_ready=is_ready
    )
    dispatcher.start()
    return dispatcher


def request(method):
    return {"jsonrpc": "2.0", "method": method}


class TestDispatch:
    """Basic request/response through the queue."""

    @pytest.mark.asyncio
    async def test_assigns_id_and_returns_response(self, supervisor, table):
        dispatcher = make_dispatcher(supervisor, table)
        try:
            message = request("tools/list")
            response = await dispatcher.dispatch(message)

            assert response["result"] == {"method": "tools/list"}
            assert supervisor.writes[0]["id"] == 1
            assert response["id"] == 1
            # Caller's dict is not mutated
            assert "id" not in message
        finally:
            await dispatcher.close()

    @pytest.mark.asyncio
    async def test_caller_id_kept(self, supervisor, table):
        dispatcher = make_dispatcher(supervisor, table)
        try:
            response = await dispatcher.dispatch({"jsonrpc": "2.0", "id": "custom-7", "method": "ping"})
            assert response["id"] == "custom-7"
            assert supervisor.writes[0]["id"] == "custom-7"
        finally:
            await dispatcher.close()

    @pytest.mark.asyncio
    async def test_fifo_and_single_in_flight(self, supervisor, table):
        """Concurrent callers are written in arrival order, one at a time."""
        dispatcher = make_dispatcher(supervisor, table)
        try:
            methods = [f"call-{i}" for i in range(6)]
            responses = await asyncio.gather(*(dispatcher.dispatch(request(m)) for m in methods))

            assert [w["method"] for w in supervisor.writes] == methods
            assert [r["result"]["method"] for r in responses] == methods
            assert supervisor.max_in_flight == 1
            assert dispatcher.queue_depth == 0
        finally:
            await dispatcher.close()


class TestFailureIsolation:
    """One bad call must not block or poison the calls behind it."""

    @pytest.mark.asyncio
    async def test_write_failure_isolated(self, supervisor, table):
        supervisor.fail_methods.add("broken")
        dispatcher = make_dispatcher(supervisor, table)
        try:
            results = await asyncio.gather(
                dispatcher.dispatch(request("broken")),
                dispatcher.dispatch(request("healthy")),
                return_exceptions=True
            )

            assert isinstance(results[0], ChildNotRunningError)
            assert results[1]["result"] == {"method": "healthy"}
            assert len(table) == 0
        finally:
            await dispatcher.close()

    @pytest.mark.asyncio
    async def test_timeout_isolated(self, supervisor, table):
        """A call that is never answered times out; the next one succeeds."""
        supervisor.silent_methods.add("never")
        dispatcher = make_dispatcher(supervisor, table)
        try:
            results = await asyncio.gather(
                dispatcher.dispatch(request("never"), timeout=0.05),
                dispatcher.dispatch(request("after")),
                return_exceptions=True
            )

            assert isinstance(results[0], RequestTimeoutError)
            assert results[1]["result"] == {"method": "after"}
        finally:
            await dispatcher.close()

    @pytest.mark.asyncio
    async def test_drain_fails_in_flight_call(self, supervisor, table):
        """A call waiting when the child exits gets the drain reason."""
        supervisor.silent_methods.add("never")
        dispatcher = make_dispatcher(supervisor, table)
        try:
            pending = asyncio.ensure_future(dispatcher.dispatch(request("never")))
            await asyncio.sleep(0.02)
            table.drain_all("process exited")

            with pytest.raises(ChildExitedError, match="process exited"):
                await pending

            # Worker keeps going
            response = await dispatcher.dispatch(request("next"))
            assert response["result"] == {"method": "next"}
        finally:
            await dispatcher.close()

    @pytest.mark.asyncio
    async def test_cancelled_caller_skipped(self, supervisor, table):
        """A caller that gives up while queued is never written."""
        supervisor.delay = 0.05
        dispatcher = make_dispatcher(supervisor, table)
        try:
            first = asyncio.ensure_future(dispatcher.dispatch(request("first")))
            abandoned = asyncio.ensure_future(dispatcher.dispatch(request("abandoned")))
            await asyncio.sleep(0.01)
            abandoned.cancel()

            await first
            await dispatcher.dispatch(request("last"))

            assert [w["method"] for w in supervisor.writes] == ["first", "last"]
        finally:
            await dispatcher.close()


class TestReadinessGate:
    """Tests for the is_ready gate."""

    @pytest.mark.asyncio
    async def test_not_ready_rejected(self, supervisor, table):
        dispatcher = make_dispatcher(supervisor, table, is_ready=lambda: False)
        try:
            with pytest.raises(BridgeNotReadyError):
                await dispatcher.dispatch(request("tools/list"))
            assert supervisor.writes == []
        finally:
            await dispatcher.close()

    @pytest.mark.asyncio
    async def test_handshake_bypasses_gate(self, supervisor, table):
        dispatcher = make_dispatcher(supervisor, table, is_ready=lambda: False)
        try:
            response = await dispatcher.dispatch(request("initialize"), requires_ready=False)
            assert response["result"] == {"method": "initialize"}
        finally:
            await dispatcher.close()


class TestClose:
    """Tests for dispatcher shutdown."""

    @pytest.mark.asyncio
    async def test_queued_calls_fail_on_close(self, supervisor, table):
        supervisor.silent_methods.add("never")
        dispatcher = make_dispatcher(supervisor, table)

        in_flight = asyncio.ensure_future(dispatcher.dispatch(request("never")))
        queued = asyncio.ensure_future(dispatcher.dispatch(request("queued")))
        await asyncio.sleep(0.02)

        await dispatcher.close()

        with pytest.raises(DispatcherClosedError):
            await in_flight
        with pytest.raises(DispatcherClosedError):
            await queued
        assert dispatcher.is_running is False
        table.drain_all("cleanup")

    @pytest.mark.asyncio
    async def test_close_right_after_drain_keeps_reason(self, supervisor, table):
        """Closing in the same tick as the drain keeps the drain reason."""
        supervisor.silent_methods.add("never")
        dispatcher = make_dispatcher(supervisor, table)

        in_flight = asyncio.ensure_future(dispatcher.dispatch(request("never")))
        await asyncio.sleep(0.02)

        table.drain_all("bridge shutting down")
        await dispatcher.close()

        with pytest.raises(ChildExitedError, match="bridge shutting down"):
            await in_flight
        assert dispatcher.is_running is False

    @pytest.mark.asyncio
    async def test_dispatch_after_close(self, supervisor, table):
        dispatcher = make_dispatcher(supervisor, table)
        await dispatcher.close()

        with pytest.raises(DispatcherClosedError, match="shutting down"):
            await dispatcher.dispatch(request("tools/list"))
