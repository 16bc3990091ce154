"""
Bridge Configuration

Settings for the MCP HTTP bridge: where the MCP server lives, how it is
launched, how long calls may take and how the child is restarted.

Every setting has a working default and can be overridden through an
environment variable, so the bridge runs with zero configuration on a
developer machine and is tuned per deployment without code changes.

Configuration:
- HTTP port: 3000 (PORT)
- MCP server: node build/index.js (REVIT_MCP_PATH / MCP_SERVER_PATH)
- Request timeout: 120s, initialize timeout: 20s
- Boot delay: 0.8s, restart backoff: 1.5s
"""

import os
import shlex
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple


logger = logging.getLogger(__name__)


# Words that mark a tool's text output as a failure. The CJK entries match
# the localized compiler messages produced by the Revit add-in
# ("compile", "type", "namespace").
DEFAULT_FAILURE_KEYWORDS: Tuple[str, ...] = (
    "error",
    "failed",
    "exception",
    "编译",
    "类型",
    "命名空间",
)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Comma-separated list. An empty (but set) variable yields an empty list."""
    raw = os.getenv(name)
    if raw is None:
        return tuple(default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass
class BridgeConfig:
    """
    Runtime configuration for the bridge.

    Build with BridgeConfig.from_env() in production; construct directly
    in tests to get deterministic values.
    """

    # Network
    host: str = "0.0.0.0"
    port: int = 3000

    # MCP server launch
    server_path: str = "build/index.js"
    launcher: str = "node"
    child_command: List[str] = field(default_factory=list)

    # Timeouts (seconds)
    request_timeout_seconds: float = 120.0
    initialize_timeout_seconds: float = 20.0
    shutdown_grace_seconds: float = 5.0

    # Supervision
    boot_delay_seconds: float = 0.8
    restart_backoff_seconds: float = 1.5
    max_restart_attempts: int = 0  # 0 = restart forever

    # Wire limits
    max_request_id: int = 1_000_000
    max_line_bytes: int = 10 * 1024 * 1024
    max_body_bytes: int = 2 * 1024 * 1024

    # HTTP
    cors_origins: Tuple[str, ...] = ("*",)

    # MCP handshake identity
    protocol_version: str = "2024-11-05"
    client_name: str = "n8n-bridge"
    client_version: str = "1.0.0"

    # Result normalization
    failure_keywords: Tuple[str, ...] = DEFAULT_FAILURE_KEYWORDS

    # Logging
    log_dir: str = "logs"
    log_level: str = "INFO"

    def __post_init__(self):
        if not self.child_command:
            self.child_command = self.build_child_command(self.launcher, self.server_path)

    @staticmethod
    def build_child_command(launcher: Optional[str], server_path: str) -> List[str]:
        """
        Build the argv used to spawn the MCP server.

        Args:
            launcher: Interpreter to run the server with (e.g. "node"),
                empty/None to execute server_path directly
            server_path: Path to the MCP server entry point

        Returns:
            Command list for asyncio.create_subprocess_exec
        """
        if launcher:
            return [launcher, server_path]
        return [server_path]

    @classmethod
    def from_env(cls) -> 'BridgeConfig':
        """
        Load configuration from defaults plus environment overrides.

        Environment variable overrides:
        - PORT / MCP_BRIDGE_PORT: HTTP listening port
        - MCP_BRIDGE_HOST: Bind address
        - REVIT_MCP_PATH / MCP_SERVER_PATH: MCP server entry point
        - MCP_BRIDGE_LAUNCHER: Interpreter for the server ("" = none)
        - MCP_BRIDGE_CHILD_COMMAND: Full command line, overrides the two above
        - MCP_BRIDGE_REQUEST_TIMEOUT / MCP_BRIDGE_INIT_TIMEOUT: Call timeouts
        - MCP_BRIDGE_BOOT_DELAY / MCP_BRIDGE_RESTART_BACKOFF: Supervision delays
        - MCP_BRIDGE_MAX_RESTARTS: Consecutive failed starts before giving up
        - MCP_BRIDGE_SHUTDOWN_GRACE: Seconds to wait for the child on shutdown
        - MCP_BRIDGE_MAX_LINE_BYTES / MCP_BRIDGE_MAX_BODY_BYTES: Size limits
        - MCP_BRIDGE_CORS_ORIGINS: Comma-separated allowed origins
        - MCP_BRIDGE_PROTOCOL_VERSION, MCP_BRIDGE_CLIENT_NAME,
          MCP_BRIDGE_CLIENT_VERSION: Handshake identity
        - MCP_BRIDGE_FAILURE_KEYWORDS: Comma-separated failure words ("" disables)
        - MCP_BRIDGE_LOG_DIR / MCP_BRIDGE_LOG_LEVEL: Logging

        Returns:
            BridgeConfig instance

        Raises:
            ValueError: If a numeric override cannot be parsed
        """
        defaults = cls()

        port = _env_int("PORT", _env_int("MCP_BRIDGE_PORT", defaults.port))
        server_path = os.getenv("REVIT_MCP_PATH") or os.getenv("MCP_SERVER_PATH") or defaults.server_path
        launcher = _env_str("MCP_BRIDGE_LAUNCHER", defaults.launcher)

        command_override = os.getenv("MCP_BRIDGE_CHILD_COMMAND", "").strip()
        if command_override:
            child_command = shlex.split(command_override, posix=(os.name != "nt"))
        else:
            child_command = cls.build_child_command(launcher, server_path)

        config = cls(
            host=_env_str("MCP_BRIDGE_HOST", defaults.host),
            port=port,
            server_path=server_path,
            launcher=launcher,
            child_command=child_command,
            request_timeout_seconds=_env_float("MCP_BRIDGE_REQUEST_TIMEOUT", defaults.request_timeout_seconds),
            initialize_timeout_seconds=_env_float("MCP_BRIDGE_INIT_TIMEOUT", defaults.initialize_timeout_seconds),
            shutdown_grace_seconds=_env_float("MCP_BRIDGE_SHUTDOWN_GRACE", defaults.shutdown_grace_seconds),
            boot_delay_seconds=_env_float("MCP_BRIDGE_BOOT_DELAY", defaults.boot_delay_seconds),
            restart_backoff_seconds=_env_float("MCP_BRIDGE_RESTART_BACKOFF", defaults.restart_backoff_seconds),
            max_restart_attempts=_env_int("MCP_BRIDGE_MAX_RESTARTS", defaults.max_restart_attempts),
            max_line_bytes=_env_int("MCP_BRIDGE_MAX_LINE_BYTES", defaults.max_line_bytes),
            max_body_bytes=_env_int("MCP_BRIDGE_MAX_BODY_BYTES", defaults.max_body_bytes),
            cors_origins=_env_list("MCP_BRIDGE_CORS_ORIGINS", defaults.cors_origins),
            protocol_version=_env_str("MCP_BRIDGE_PROTOCOL_VERSION", defaults.protocol_version),
            client_name=_env_str("MCP_BRIDGE_CLIENT_NAME", defaults.client_name),
            client_version=_env_str("MCP_BRIDGE_CLIENT_VERSION", defaults.client_version),
            failure_keywords=_env_list("MCP_BRIDGE_FAILURE_KEYWORDS", defaults.failure_keywords),
            log_dir=_env_str("MCP_BRIDGE_LOG_DIR", os.path.join(os.getcwd(), "logs")),
            log_level=_env_str("MCP_BRIDGE_LOG_LEVEL", defaults.log_level).upper(),
        )

        logger.info(f"MCP server command: {' '.join(config.child_command)}")
        logger.info(
            f"Timeouts: request={config.request_timeout_seconds}s, "
            f"initialize={config.initialize_timeout_seconds}s"
        )
        logger.info(
            f"Supervision: boot_delay={config.boot_delay_seconds}s, "
            f"restart_backoff={config.restart_backoff_seconds}s, "
            f"max_restarts={config.max_restart_attempts or 'unlimited'}"
        )

        return config

    def __str__(self) -> str:
        """Human-readable configuration display."""
        return f"""
MCP HTTP Bridge Configuration
===================================================
Network:
  Host:               {self.host}
  Port:               {self.port}
  CORS Origins:       {', '.join(self.cors_origins) or '(none)'}

MCP Server:
  Command:            {' '.join(self.child_command)}
  Protocol Version:   {self.protocol_version}
  Client:             {self.client_name} {self.client_version}

Timeouts:
  Request Timeout:    {self.request_timeout_seconds}s
  Init Timeout:       {self.initialize_timeout_seconds}s
  Boot Delay:         {self.boot_delay_seconds}s
  Restart Backoff:    {self.restart_backoff_seconds}s
  Max Restarts:       {self.max_restart_attempts or 'unlimited'}

Paths:
  Log Directory:      {self.log_dir}
===================================================
        """.strip()

    def to_dict(self) -> dict:
        """
        Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration
        """
        return {
            "host": self.host,
            "port": self.port,
            "server_path": self.server_path,
            "launcher": self.launcher,
            "child_command": list(self.child_command),
            "request_timeout_seconds": self.request_timeout_seconds,
            "initialize_timeout_seconds": self.initialize_timeout_seconds,
            "shutdown_grace_seconds": self.shutdown_grace_seconds,
            "boot_delay_seconds": self.boot_delay_seconds,
            "restart_backoff_seconds": self.restart_backoff_seconds,
            "max_restart_attempts": self.max_restart_attempts,
            "max_request_id": self.max_request_id,
            "max_line_bytes": self.max_line_bytes,
            "max_body_bytes": self.max_body_bytes,
            "cors_origins": list(self.cors_origins),
            "protocol_version": self.protocol_version,
            "client_name": self.client_name,
            "client_version": self.client_version,
            "failure_keywords": list(self.failure_keywords),
            "log_dir": self.log_dir,
            "log_level": self.log_level,
        }
