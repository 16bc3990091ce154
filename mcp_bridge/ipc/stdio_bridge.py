"""stdin/stdout JSON-RPC transport between the bridge and the MCP server."""

import json
import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from .line_framer import LineFramer, iter_lines, iter_messages

logger = logging.getLogger(__name__)


class BridgeError(Exception):
    """Base exception for bridge errors."""
    pass


class ChildNotRunningError(BridgeError):
    """No MCP server process is attached."""

    def __init__(self, message: str = "MCP server not running"):
        super().__init__(message)


class BridgeNotReadyError(BridgeError):
    """MCP server is attached but the initialize handshake has not completed."""

    def __init__(self, message: str = "MCP not initialized"):
        super().__init__(message)


class ChildCommunicationError(BridgeError):
    """Writing to the MCP server failed (broken pipe, closed stdin)."""
    pass


class RequestTimeoutError(BridgeError):
    """No response arrived before the request's deadline."""

    def __init__(self, request_id: Any = None, timeout: Optional[float] = None):
        self.request_id = request_id
        self.timeout = timeout
        super().__init__("Request timeout")


class ChildExitedError(BridgeError):
    """The MCP server went away while the request was outstanding."""

    def __init__(self, reason: str = "process exited"):
        self.reason = reason
        super().__init__(reason)


class DuplicateRequestIdError(BridgeError):
    """A request id was registered while another request still holds it."""

    def __init__(self, request_id: Any):
        self.request_id = request_id
        super().__init__(f"Request id {request_id!r} is already outstanding")


class DispatcherClosedError(BridgeError):
    """The dispatcher shut down before the call reached the MCP server."""

    def __init__(self, message: str = "Bridge is shutting down"):
        super().__init__(message)


class StdioBridge:
    """Reads and writes newline-delimited JSON-RPC on a child's standard streams."""

    @staticmethod
    def encode_message(message: Dict[str, Any]) -> bytes:
        """
        Serialize one message as a single UTF-8 line.

        json.dumps escapes control characters inside strings, so the only
        raw newline in the output is the terminator.
        """
        return (json.dumps(message, separators=(",", ":"), ensure_ascii=False) + "\n").encode("utf-8")

    @staticmethod
    async def send_message(stdin: Optional[asyncio.StreamWriter], message: Dict[str, Any]) -> None:
        """
        Write a message to the child's stdin.

        The whole line goes out in one write() call, so concurrent senders
        can never interleave inside a message.

        Args:
            stdin: Child stdin writer
            message: JSON-RPC message dict

        Raises:
            ChildNotRunningError: If stdin is missing or already closed
            ChildCommunicationError: If the write fails
        """
        if stdin is None or stdin.is_closing():
            raise ChildNotRunningError()

        data = StdioBridge.encode_message(message)
        try:
            stdin.write(data)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            raise ChildCommunicationError(f"Failed to send message to MCP server: {e}")

    @staticmethod
    async def pump_stdout(
        stream: asyncio.StreamReader,
        on_message: Callable[[Dict[str, Any]], None],
        framer: Optional[LineFramer] = None
    ) -> int:
        """
        Read the child's stdout until EOF, handing every JSON object to on_message.

        Malformed lines are logged and skipped. A failing handler is logged
        and does not stop the pump.

        Args:
            stream: Child stdout reader
            on_message: Callback for each parsed document
            framer: Framer carrying partial lines between reads

        Returns:
            Number of documents delivered
        """
        delivered = 0
        async for document in iter_messages(stream, framer):
            try:
                on_message(document)
                delivered += 1
            except Exception as e:
                logger.error(f"Failed to route MCP message: {e}", exc_info=True)
        return delivered

    @staticmethod
    async def pump_stderr(stream: asyncio.StreamReader, log: logging.Logger) -> None:
        """Log the child's stderr line by line. Never parsed for correlation."""
        async for text in iter_lines(stream, LineFramer()):
            log.info(f"MCP STDERR: {text}")
