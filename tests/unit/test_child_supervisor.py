"""Unit tests for child_supervisor.wait_for_exit."""

import asyncio
import pytest

from mcp_bridge.orchestrator.child_supervisor import wait_for_exit


class HeldPipesProcess:
    """Stands in for a process whose wait() never returns because its pipes stay open."""

    def __init__(self):
        self.returncode = None
        self.wait_cancelled = False

    async def wait(self):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.wait_cancelled = True
            raise


class ExitedProcess:
    """wait() returns as soon as it is called."""

    def __init__(self, returncode):
        self.returncode = None
        self._exit_code = returncode

    async def wait(self):
        self.returncode = self._exit_code
        return self.returncode


class TestWaitForExit:
    """Tests for wait_for_exit()."""

    @pytest.mark.asyncio
    async def test_exit_status_seen_while_pipes_held(self):
        process = HeldPipesProcess()
        asyncio.get_running_loop().call_later(0.05, setattr, process, "returncode", 1)

        returncode = await asyncio.wait_for(wait_for_exit(process), timeout=1.0)

        assert returncode == 1
        await asyncio.sleep(0.01)
        assert process.wait_cancelled

    @pytest.mark.asyncio
    async def test_wait_returns_first(self):
        assert await asyncio.wait_for(wait_for_exit(ExitedProcess(3)), timeout=1.0) == 3

    @pytest.mark.asyncio
    async def test_already_exited(self):
        process = HeldPipesProcess()
        process.returncode = -9

        assert await wait_for_exit(process) == -9
