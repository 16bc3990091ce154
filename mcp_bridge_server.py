#!/usr/bin/env python3
"""
MCP HTTP Bridge - Main Entry Point

    n8n / LLM  <->  (HTTP)  <->  this bridge  <->  (stdin/stdout)  <->  MCP server

Exposes a small HTTP/JSON API and forwards each call as a line-delimited
JSON-RPC message to a single long-lived MCP server child process. The
child is restarted automatically if it exits.

Endpoints:
    GET  /health       - health & status
    GET  /tools        - list tools from MCP
    POST /tools/call   - call a tool: { "name": "...", "arguments": { ... } }
    POST /mcp          - generic JSON-RPC passthrough
"""

import sys
import logging
from pathlib import Path

import uvicorn
import setproctitle

from mcp_bridge.config.bridge_config import BridgeConfig
from mcp_bridge.orchestrator.bridge import McpBridge
from mcp_bridge.orchestrator.api import create_app


def setup_logging(config: BridgeConfig):
    """Configure logging."""
    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_dir / "mcp_bridge.log"),
            logging.StreamHandler()
        ],
        force=True
    )


def main():
    """Main entry point."""
    # Set process name for easy identification in ps/top
    setproctitle.setproctitle("mcp-bridge")

    try:
        config = BridgeConfig.from_env()
    except ValueError as e:
        logging.basicConfig(level=logging.ERROR)
        logging.getLogger(__name__).error(f"Invalid configuration: {e}")
        sys.exit(1)

    setup_logging(config)
    logger = logging.getLogger(__name__)

    logger.info("=" * 70)
    logger.info("MCP HTTP Bridge")
    logger.info("=" * 70)
    for line in str(config).splitlines():
        logger.info(line)
    logger.info("=" * 70)

    bridge = McpBridge(config)
    app = create_app(config, bridge)

    logger.info(f"MCP Bridge listening on http://localhost:{config.port}")
    logger.info("GET  /health")
    logger.info("GET  /tools")
    logger.info("POST /tools/call")
    logger.info("POST /mcp")

    # uvicorn handles SIGINT/SIGTERM; the app lifespan kills the MCP server
    try:
        uvicorn.run(
            app,
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower()
        )
    except Exception as e:
        logger.error(f"Server error: {e}", exc_info=True)
        sys.exit(1)

    logger.info("Shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    main()
