"""MCP Server entry point for MapKit token refresh.

Exposes 5 tools via the Model Context Protocol:
- start_refresh, task_status, submit_verification_code, cancel_task, retry_task

The refresh HTTP service (aiohttp on SERVER_PORT) is auto-started as part of
the MCP server lifecycle, no separate process needed.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from aiohttp.web import AppRunner, TCPSite
from mcp.server.fastmcp import FastMCP

from .config import SERVER_HOST, SERVER_PORT, ConfigError, ensure_dirs
from .tools.task_tools import (
    cancel_task,
    retry_task,
    start_refresh,
    submit_verification_code,
    task_status,
)

# Configure logging to stderr (stdout is reserved for MCP JSON-RPC)
logging.basicConfig(
    stream=sys.stderr,
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("mapkit-token-refresh")


# ── Lifespan: auto-start the refresh service ─────────────────────────────────


async def start_service(host: str = SERVER_HOST, port: int = SERVER_PORT) -> Optional[AppRunner]:
    """Serve the refresh API on host:port.

    Returns the runner to clean up later, or None when there is nothing to
    own: credentials are missing, or another process already holds the port.
    """
    from .session_manager.manager import create_app

    try:
        app = create_app()
    except ConfigError as e:
        logger.error(f"Refresh service not started: {e}")
        return None

    runner = AppRunner(app)
    await runner.setup()
    try:
        await TCPSite(runner, host, port).start()
    except OSError as e:
        logger.info(f"Port {port} busy ({e}), using the refresh service already running there")
        await runner.cleanup()
        return None

    logger.info(f"Refresh service listening on {host}:{port}")
    return runner


@asynccontextmanager
async def lifespan(server: FastMCP):
    """Run the refresh service for as long as the MCP server is up."""
    ensure_dirs()
    runner = await start_service()
    try:
        yield {"service_started": runner is not None}
    finally:
        if runner is not None:
            await runner.cleanup()
            logger.info("Refresh service stopped.")


# ── MCP Server ───────────────────────────────────────────────────────────────

mcp = FastMCP(
    "mapkit-token-refresh",
    lifespan=lifespan,
    instructions=(
        "MapKit Token Refresh - mint a new Apple MapKit server token. "
        "Call start_refresh to begin, then poll task_status. "
        "If the task is waiting_verification, ask the user for the 6-digit "
        "Apple ID code and pass it to submit_verification_code. "
        "Use cancel_task to abort and retry_task to start over after a failure."
    ),
)


@mcp.tool()
async def tool_start_refresh() -> str:
    """Start a MapKit token refresh.

    Signs in to the Apple Developer console in a headless browser and
    creates a new server token. Returns a task id to poll.
    """
    return await start_refresh()


@mcp.tool()
async def tool_task_status(task_id: str) -> str:
    """Check a refresh task.

    Returns the token once completed, or asks for the verification code
    when the task is waiting for one.

    Args:
        task_id: Id returned by start_refresh or retry_task.
    """
    return await task_status(task_id)


@mcp.tool()
async def tool_submit_verification_code(task_id: str, code: str) -> str:
    """Submit the 6-digit Apple ID two-factor code for a waiting task.

    Args:
        task_id: The waiting task.
        code: Exactly 6 digits.
    """
    return await submit_verification_code(task_id, code)


@mcp.tool()
async def tool_cancel_task(task_id: str) -> str:
    """Cancel a refresh task that has not finished yet."""
    return await cancel_task(task_id)


@mcp.tool()
async def tool_retry_task(task_id: str) -> str:
    """Start over after a task timed out, failed or was cancelled."""
    return await retry_task(task_id)


# ── Entry Point ──────────────────────────────────────────────────────────────


def main():
    """Run the MCP server on STDIO transport."""
    logger.info("Starting MapKit token refresh MCP server...")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
