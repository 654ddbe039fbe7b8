"""FastMCP server bootstrap for Switchboard."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .bridge import Bridge
from .config import SwitchboardSettings, configure_logging, get_settings
from .directory import DirectoryError
from .tools import register_tools

logger = logging.getLogger(__name__)


def build_status(bridge: Bridge, settings: SwitchboardSettings) -> dict[str, Any]:
    """Summarize runtime state for the status resource."""

    payload = bridge.status()
    payload.update(
        {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "generation": {
                "enabled": settings.generation_enabled,
                "command": settings.generation_path or settings.generation_command,
                "timeout": settings.generation_timeout,
                "rate_limit": {
                    "max_requests": settings.rate_limit_max_requests,
                    "window": settings.rate_limit_window,
                },
            },
            "storage": {
                "backend": settings.directory_backend,
                "path": str(settings.chroma_persist_path),
                "collection": settings.directory_collection,
            },
        }
    )
    return payload


def create_server(
    settings: Optional[SwitchboardSettings] = None,
    bridge: Bridge | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server around a bridge."""

    settings = settings or get_settings()
    bridge = bridge or Bridge.from_settings(settings)

    server = FastMCP(
        name="Switchboard MCP",
        version=__version__,
        instructions=(
            "Switchboard supervises one messaging worker per tenant and keeps them "
            "reconciled with the session directory. Use the provided tools to inspect "
            "processes, request sessions, and run recovery."
        ),
    )

    handles = register_tools(server, bridge=bridge)

    @server.resource(
        "resource://switchboard/status",
        name="switchboard_status",
        title="Switchboard Status",
        description="Provides the current runtime status for the Switchboard supervisor.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing supervisor state."""

        payload = build_status(bridge, settings)
        payload["request_id"] = getattr(context, "request_id", None)
        return json.dumps(payload)

    setattr(server, "bridge", bridge)
    setattr(server, "tool_handles", handles)
    return server


async def _serve(server: FastMCP, bridge: Bridge) -> None:
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, task.cancel)

    try:
        await bridge.start()
        await server.run_async()
    except asyncio.CancelledError:
        logger.info("Shutdown requested")
    finally:
        await bridge.cleanup()


def main() -> None:
    """Entry point for running the Switchboard MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    bridge: Bridge = getattr(server, "bridge")
    logger.info(
        "Launching Switchboard MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "directory_backend": settings.directory_backend,
            "worker_command": list(settings.worker_command),
        },
    )
    try:
        asyncio.run(_serve(server, bridge))
    except DirectoryError as exc:
        logger.error("Bridge failed to start", extra={"error": str(exc)})
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
