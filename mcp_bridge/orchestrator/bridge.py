"""McpBridge - Process-wide bridge state and the operations HTTP routes call."""

import logging
from typing import Any, Dict, Optional

from ..config.bridge_config import BridgeConfig
from ..ipc.messages import ToolCallParams, build_request
from ..ipc.stdio_bridge import BridgeNotReadyError
from .child_supervisor import ChildSupervisor
from .correlation_table import CorrelationTable, RequestIdAllocator
from .dispatcher import SerializedDispatcher
from .handshake import HandshakeSequencer
from .result_normalizer import KeywordFailureClassifier, NormalizedResult, normalize_result

logger = logging.getLogger(__name__)


class McpBridge:
    """
    Single owner of everything the bridge shares between requests.

    Holds the supervisor (child handle), the initialized flag, the request
    id counter, the correlation table and the dispatch queue. Created once
    at startup, started inside the event loop, torn down on shutdown.
    Nothing is persisted across restarts.
    """

    def __init__(self, config: BridgeConfig):
        """
        Initialize McpBridge.

        Args:
            config: BridgeConfig instance
        """
        self.config = config
        self.initialized = False

        self.table = CorrelationTable()
        self.ids = RequestIdAllocator(self.table, bound=config.max_request_id)
        self.classifier = KeywordFailureClassifier(config.failure_keywords)

        self.supervisor = ChildSupervisor(
            config,
            self.table,
            on_running=self._on_child_running,
            on_exit=self._on_child_exit
        )
        self.dispatcher = SerializedDispatcher(
            self.supervisor,
            self.table,
            self.ids,
            default_timeout=config.request_timeout_seconds,
            is_ready=lambda: self.initialized
        )
        self.handshake = HandshakeSequencer(
            config,
            self.dispatcher,
            self.supervisor,
            on_ready=self._on_handshake_complete
        )

    # =========================================================================
    # Status
    # =========================================================================

    @property
    def is_initialized(self) -> bool:
        return self.initialized

    @property
    def is_running(self) -> bool:
        return self.supervisor.is_running

    def get_status(self) -> Dict[str, Any]:
        """Snapshot for logging and diagnostics."""
        handle = self.supervisor.handle
        return {
            "initialized": self.initialized,
            "running": self.is_running,
            "state": self.supervisor.state.value,
            "pid": handle.pid if handle is not None else None,
            "queue_depth": self.dispatcher.queue_depth,
            "dispatched": self.dispatcher.total_dispatched,
            "failed": self.dispatcher.total_failed,
            "pending": self.table.get_stats(),
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the dispatcher and spawn the MCP server."""
        logger.info(
            f"Starting bridge (failure keywords: "
            f"{', '.join(self.classifier.keywords) if self.classifier.enabled else 'disabled'})"
        )
        self.dispatcher.start()
        await self.supervisor.start()

    async def shutdown(self) -> None:
        """Kill the MCP server, fail everything pending, stop the dispatcher."""
        logger.info(f"Shutting down bridge: {self.get_status()}")
        self.initialized = False
        await self.supervisor.shutdown()
        await self.dispatcher.close()
        logger.info("Bridge shutdown complete")

    def _on_child_running(self):
        return self.handshake.run()

    def _on_child_exit(self, returncode: Optional[int]) -> None:
        if self.initialized:
            logger.warning("MCP server gone, bridge no longer initialized")
        self.initialized = False

    def _on_handshake_complete(self) -> None:
        self.initialized = True
        self.supervisor.mark_healthy()
        logger.info("MCP bridge ready")

    # =========================================================================
    # Operations
    # =========================================================================

    def _require_ready(self) -> None:
        if not self.initialized:
            raise BridgeNotReadyError()

    async def request(self, message: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Send an application request and return the raw JSON-RPC response.

        Args:
            message: JSON-RPC request dict (id assigned if missing)
            timeout: Per-call timeout (config default if None)

        Returns:
            Raw JSON-RPC response dict

        Raises:
            BridgeNotReadyError: Handshake not complete (never queued)
            BridgeError: Any dispatch failure
        """
        self._require_ready()
        return await self.dispatcher.dispatch(message, timeout=timeout)

    async def list_tools(self) -> Dict[str, Any]:
        """Raw response to tools/list."""
        return await self.request(build_request("tools/list"))

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> NormalizedResult:
        """
        Call a tool and normalize its result.

        Args:
            name: Tool name
            arguments: Tool arguments object
            timeout: Per-call timeout (config default if None)

        Returns:
            NormalizedResult
        """
        params = ToolCallParams(name=name, arguments=arguments or {})
        response = await self.request(build_request("tools/call", params.model_dump()), timeout=timeout)
        return normalize_result(response, self.classifier)

    async def forward(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """
        Pass a caller-built JSON-RPC request through unchanged.

        A truthy string or integer caller id is kept. A missing or falsy id,
        or one of any other type (booleans included), is replaced by a fresh
        counter id so the response can be correlated.
        """
        outbound = dict(message)
        if not is_forwardable_id(outbound.get("id")):
            outbound["id"] = None
        outbound.setdefault("jsonrpc", "2.0")
        return await self.request(outbound)


def is_forwardable_id(request_id: Any) -> bool:
    """True for an id the response router can match: a non-empty str or a non-zero int."""
    if isinstance(request_id, bool):
        return False
    return isinstance(request_id, (int, str)) and bool(request_id)
