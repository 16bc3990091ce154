"""JSON-RPC 2.0 message models for bridge ↔ MCP server communication."""

from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional, Literal, Union


JSONRPC_VERSION = "2.0"

RequestId = Union[int, str]


# Bridge → MCP Server Messages

class JsonRpcRequest(BaseModel):
    """Request expecting exactly one response with the same id."""
    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    method: str
    params: Optional[Dict[str, Any]] = None
    id: Optional[RequestId] = None  # Assigned by the dispatcher when absent


class JsonRpcNotification(BaseModel):
    """Fire-and-forget message. Carries no id and is never correlated."""
    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    method: str
    params: Optional[Dict[str, Any]] = None


class ClientInfo(BaseModel):
    """Identity the bridge announces during the handshake."""
    name: str
    version: str


class InitializeParams(BaseModel):
    """Params of the one-time `initialize` request."""
    protocolVersion: str
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    clientInfo: ClientInfo


class ToolCallParams(BaseModel):
    """Params of a `tools/call` request."""
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


# MCP Server → Bridge Messages

class JsonRpcError(BaseModel):
    """Error object of a failed response."""
    model_config = ConfigDict(extra="allow")

    code: Optional[int] = None
    message: Optional[str] = None
    data: Any = None


class JsonRpcResponse(BaseModel):
    """Response to a request. Carries result xor error."""
    model_config = ConfigDict(extra="allow")

    jsonrpc: Optional[str] = None
    id: Optional[RequestId] = None
    result: Any = None
    error: Optional[JsonRpcError] = None


def build_request(method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build a request dict without an id (the dispatcher assigns one)."""
    return JsonRpcRequest(method=method, params=params).model_dump(exclude_none=True)


def build_notification(method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build a notification dict (no id)."""
    return JsonRpcNotification(method=method, params=params).model_dump(exclude_none=True)


def is_response(message: Dict[str, Any]) -> bool:
    """True when the document carries a usable correlation id."""
    request_id = message.get("id")
    # bool is an int subclass; True must not match pending id 1
    return request_id is not None and not isinstance(request_id, bool)
