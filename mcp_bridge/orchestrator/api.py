"""FastAPI application for the MCP HTTP bridge."""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Union

from fastapi import Body, FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..config.bridge_config import BridgeConfig
from ..ipc.stdio_bridge import BridgeNotReadyError
from .bridge import McpBridge

logger = logging.getLogger(__name__)

NOT_INITIALIZED = "MCP not initialized"
BODY_TOO_LARGE = "Request body too large"


# Request Models

class ToolCallRequest(BaseModel):
    """Body of POST /tools/call. `arguments` may be an object or a JSON string."""
    name: Optional[str] = None
    arguments: Optional[Union[Dict[str, Any], str]] = None


def parse_tool_arguments(arguments: Optional[Union[Dict[str, Any], str]]) -> Dict[str, Any]:
    """
    Coerce tool arguments to an object.

    Args:
        arguments: Object, JSON-encoded object string, or None

    Returns:
        Arguments dict ({} when absent)

    Raises:
        ValueError: If a string is not valid JSON or does not decode to an object
    """
    if arguments is None:
        return {}
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError:
            raise ValueError("Arguments must be valid JSON")
        if arguments is None:
            return {}
    if not isinstance(arguments, dict):
        raise ValueError("Arguments must be a JSON object")
    return arguments


# Body Size Limit

class RequestBodyTooLarge(HTTPException):
    """Raised while reading a body that outgrows max_body_bytes."""

    def __init__(self):
        super().__init__(status_code=413, detail=BODY_TOO_LARGE)


class BodySizeLimitMiddleware:
    """
    ASGI middleware capping request bodies at max_body_bytes.

    A declared Content-Length over the cap is rejected before the app runs.
    Bodies without one (chunked transfer encoding) are counted as they are
    received and fail with RequestBodyTooLarge once they pass the cap.
    """

    def __init__(self, app, max_body_bytes: int):
        self.app = app
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        content_length = dict(scope["headers"]).get(b"content-length")
        if content_length is not None:
            try:
                declared = int(content_length)
            except ValueError:
                response = JSONResponse(status_code=400, content={"error": "Invalid Content-Length"})
                await response(scope, receive, send)
                return
            if declared > self.max_body_bytes:
                logger.warning(f"Rejected {scope['path']}: body of {declared} bytes")
                response = JSONResponse(status_code=413, content={"error": BODY_TOO_LARGE})
                await response(scope, receive, send)
                return

        received = 0

        async def receive_limited():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_bytes:
                    logger.warning(f"Rejected {scope['path']}: streamed body over {self.max_body_bytes} bytes")
                    raise RequestBodyTooLarge()
            return message

        await self.app(scope, receive_limited, send)


# API Application

def create_app(config: BridgeConfig, bridge: McpBridge) -> FastAPI:
    """
    Create FastAPI application.

    The application lifespan starts the bridge (dispatcher + MCP server)
    and shuts it down when uvicorn stops.

    Args:
        config: Bridge configuration
        bridge: McpBridge instance

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await bridge.start()
        try:
            yield
        finally:
            await bridge.shutdown()

    app = FastAPI(
        title="MCP HTTP Bridge",
        description="HTTP/JSON front end for a stdio JSON-RPC MCP server",
        version="1.0.0",
        lifespan=lifespan
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(config.cors_origins),
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=config.max_body_bytes)

    @app.exception_handler(RequestBodyTooLarge)
    async def body_too_large_exception_handler(request, exc: RequestBodyTooLarge):
        return JSONResponse(status_code=413, content={"error": BODY_TOO_LARGE})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request, exc: RequestValidationError):
        """Render malformed bodies as 400 instead of FastAPI's 422."""
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request body") if errors else "Invalid request body"
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": f"Invalid request body: {detail}"}
        )

    @app.exception_handler(BridgeNotReadyError)
    async def not_ready_exception_handler(request, exc: BridgeNotReadyError):
        """Handshake incomplete - callers should retry later."""
        return JSONResponse(status_code=503, content={"error": NOT_INITIALIZED})

    # Health check
    @app.get("/health")
    async def health_check():
        """Liveness plus MCP server state. Never fails."""
        return {
            "status": "ok",
            "mcpInitialized": bridge.is_initialized,
            "mcpRunning": bridge.is_running
        }

    @app.get("/tools")
    async def list_tools():
        """List tools exposed by the MCP server (raw JSON-RPC response)."""
        if not bridge.is_initialized:
            raise BridgeNotReadyError()
        try:
            return await bridge.list_tools()
        except BridgeNotReadyError:
            raise
        except Exception as e:
            logger.error(f"tools/list failed: {e}")
            return JSONResponse(status_code=500, content={"error": str(e)})

    @app.post("/tools/call")
    async def call_tool(request: ToolCallRequest):
        """
        Call one tool.

        Body: {"name": "...", "arguments": {...} or "<json string>"}

        Returns:
            {success, result, error, toolCalled}
        """
        if not bridge.is_initialized:
            raise BridgeNotReadyError()

        if not request.name:
            return JSONResponse(status_code=400, content={"success": False, "error": "Tool name is required"})

        try:
            arguments = parse_tool_arguments(request.arguments)
        except ValueError as e:
            return JSONResponse(status_code=400, content={"success": False, "error": str(e)})

        try:
            result = await bridge.call_tool(request.name, arguments)
        except BridgeNotReadyError:
            raise
        except Exception as e:
            logger.error(f"Tool {request.name} failed: {e}")
            return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

        logger.info(f"Tool {request.name} -> {'ok' if result.success else 'failed'}")
        return {
            "success": result.success,
            "result": result.data,
            "error": result.error_message,
            "toolCalled": request.name
        }

    @app.post("/mcp")
    async def mcp_passthrough(message: Dict[str, Any] = Body(...)):
        """Generic JSON-RPC passthrough (raw response)."""
        if not bridge.is_initialized:
            raise BridgeNotReadyError()
        try:
            return await bridge.forward(message)
        except BridgeNotReadyError:
            raise
        except Exception as e:
            logger.error(f"MCP passthrough {message.get('method')} failed: {e}")
            return JSONResponse(status_code=500, content={"error": str(e)})

    return app
