"""
MCP initialization handshake.

Runs once each time a fresh MCP server reaches RUNNING:
1. Send `initialize` (protocol version + client identity), long timeout
2. On a successful reply, send the `notifications/initialized` notification
3. Flip the bridge to ready

Until step 3 completes, application requests fail fast with
BridgeNotReadyError instead of queueing behind a slow or broken boot.
"""

import logging
from typing import TYPE_CHECKING, Callable, Optional

from pydantic import ValidationError

from ..config.bridge_config import BridgeConfig
from ..ipc.messages import (
    ClientInfo,
    InitializeParams,
    JsonRpcResponse,
    build_notification,
    build_request,
)
from ..ipc.stdio_bridge import BridgeError

if TYPE_CHECKING:
    from .child_supervisor import ChildSupervisor
    from .dispatcher import SerializedDispatcher

logger = logging.getLogger(__name__)

INITIALIZE_METHOD = "initialize"
INITIALIZED_NOTIFICATION = "notifications/initialized"


class HandshakeSequencer:
    """Drives the initialize/initialized exchange for one server generation."""

    def __init__(
        self,
        config: BridgeConfig,
        dispatcher: 'SerializedDispatcher',
        supervisor: 'ChildSupervisor',
        on_ready: Optional[Callable[[], None]] = None
    ):
        """
        Initialize handshake sequencer.

        Args:
            config: BridgeConfig (protocol version, client identity, timeout)
            dispatcher: Dispatcher used for the initialize request
            supervisor: Supervisor used for the fire-and-forget notification
            on_ready: Called once the handshake succeeded
        """
        self.config = config
        self._dispatcher = dispatcher
        self._supervisor = supervisor
        self._on_ready = on_ready

    def build_initialize_request(self) -> dict:
        """Initialize request with the configured identity (id assigned at dispatch)."""
        params = InitializeParams(
            protocolVersion=self.config.protocol_version,
            clientInfo=ClientInfo(
                name=self.config.client_name,
                version=self.config.client_version
            )
        )
        return build_request(INITIALIZE_METHOD, params.model_dump())

    async def run(self) -> bool:
        """
        Perform the handshake.

        Failures are logged, never raised: the bridge stays not-ready until
        the next server generation.

        Returns:
            True if the bridge is ready afterwards
        """
        if not self._supervisor.is_running:
            return False

        try:
            response = await self._dispatcher.dispatch(
                self.build_initialize_request(),
                timeout=self.config.initialize_timeout_seconds,
                requires_ready=False
            )
        except BridgeError as e:
            logger.error(f"Initialize failed: {e}")
            return False

        try:
            reply = JsonRpcResponse.model_validate(response)
        except ValidationError as e:
            logger.error(f"Initialize failed: malformed response ({e.error_count()} errors)")
            return False

        if reply.error is not None:
            logger.error(f"Initialize failed: {reply.error.message or 'MCP error'}")
            return False

        server_info = reply.result.get("serverInfo") if isinstance(reply.result, dict) else None
        logger.info(f"MCP initialize -> ok (server: {server_info or 'unknown'})")

        try:
            await self._supervisor.write(build_notification(INITIALIZED_NOTIFICATION))
        except BridgeError as e:
            logger.error(f"Failed to send {INITIALIZED_NOTIFICATION}: {e}")
            return False

        if self._on_ready is not None:
            self._on_ready()
        return True
