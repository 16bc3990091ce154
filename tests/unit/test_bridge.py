"""Unit tests for McpBridge request forwarding."""

import pytest
from unittest.mock import AsyncMock

from mcp_bridge.config.bridge_config import BridgeConfig
from mcp_bridge.orchestrator.bridge import McpBridge, is_forwardable_id
from mcp_bridge.ipc.stdio_bridge import BridgeNotReadyError


@pytest.fixture
def bridge(tmp_path):
    """McpBridge with its dispatcher stubbed out (no child is spawned)."""
    bridge = McpBridge(BridgeConfig(log_dir=str(tmp_path)))
    bridge.initialized = True
    bridge.dispatcher.dispatch = AsyncMock(return_value={"jsonrpc": "2.0", "id": 1, "result": {}})
    return bridge


def forwarded(bridge):
    return bridge.dispatcher.dispatch.await_args.args[0]


class TestForward:
    """Tests for McpBridge.forward id handling."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("caller_id", ["n8n-42", 7])
    async def test_usable_id_kept(self, bridge, caller_id):
        await bridge.forward({"id": caller_id, "method": "tools/list"})
        assert forwarded(bridge)["id"] == caller_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("caller_id", [True, False, 1.5, [1], {"n": 1}, 0, "", None])
    async def test_unusable_id_replaced(self, bridge, caller_id):
        """Ids the response router cannot match are cleared for the allocator."""
        await bridge.forward({"id": caller_id, "method": "tools/list"})

        message = forwarded(bridge)
        assert message["id"] is None
        assert message["jsonrpc"] == "2.0"

    @pytest.mark.asyncio
    async def test_caller_message_not_mutated(self, bridge):
        message = {"id": True, "method": "tools/list"}
        await bridge.forward(message)
        assert message == {"id": True, "method": "tools/list"}

    @pytest.mark.asyncio
    async def test_not_ready(self, bridge):
        bridge.initialized = False

        with pytest.raises(BridgeNotReadyError):
            await bridge.forward({"id": 1, "method": "tools/list"})
        bridge.dispatcher.dispatch.assert_not_awaited()


class TestIsForwardableId:
    """Tests for is_forwardable_id."""

    def test_bool_is_not_an_int(self):
        assert is_forwardable_id(True) is False
        assert is_forwardable_id(1) is True
