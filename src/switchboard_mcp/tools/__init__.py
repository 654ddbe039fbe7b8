"""Tool registration for the Switchboard MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastmcp import Context, FastMCP

from ..bridge import Bridge
from ..directory import RemoteSessionState, SessionNotFoundError, SessionStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    list_processes: Any
    request_session: Any
    destroy_session: Any
    recover_sessions: Any
    session_state: Any


def register_tools(server: FastMCP, *, bridge: Bridge) -> ToolHandles:
    """Register supervisor control tools on ``server``."""

    supervisor = bridge.supervisor
    directory = bridge.directory

    def _list_processes(context: Context | None = None) -> list[dict[str, Any]]:
        """List supervised worker processes."""

        records = [record.as_dict() for record in supervisor.list_all()]
        _emit_log(context, "debug", "Listing worker processes", extra={"count": len(records)})
        return records

    async def _request_session(tenant_id: str, context: Context | None = None) -> dict[str, Any]:
        """Ask the reconciler to (re)create the tenant's worker."""

        tenant_id = tenant_id.strip()
        if not tenant_id:
            raise ValueError("tenant_id must not be empty")
        now = datetime.now(timezone.utc)
        try:
            state = await directory.update(
                tenant_id, status=SessionStatus.CREATE_REQUESTED, requested_at=now.isoformat()
            )
        except SessionNotFoundError:
            state = await directory.put(
                RemoteSessionState(
                    tenant_id=tenant_id,
                    status=SessionStatus.CREATE_REQUESTED,
                    created_at=now,
                    data={"requested_at": now.isoformat()},
                )
            )
        _emit_log(context, "info", "Session requested", extra={"tenant_id": tenant_id})
        return state.model_dump(mode="json")

    async def _destroy_session(tenant_id: str, context: Context | None = None) -> dict[str, Any]:
        destroyed = await supervisor.destroy_process(tenant_id, wait=True)
        _emit_log(
            context,
            "info",
            "Destroy session",
            extra={"tenant_id": tenant_id, "destroyed": destroyed},
        )
        return {"tenant_id": tenant_id, "destroyed": destroyed}

    async def _recover_sessions(context: Context | None = None) -> dict[str, Any]:
        outcomes = await bridge.reconciler.recover()
        _emit_log(context, "info", "Recovery pass finished", extra={"count": len(outcomes)})
        return {"outcomes": [outcome.as_dict() for outcome in outcomes]}

    async def _session_state(tenant_id: str, context: Context | None = None) -> dict[str, Any]:
        state = await directory.get(tenant_id)
        record = supervisor.get_record(tenant_id)
        _emit_log(context, "debug", "Session state", extra={"tenant_id": tenant_id})
        return {
            "tenant_id": tenant_id,
            "directory": state.model_dump(mode="json") if state is not None else None,
            "process": record.as_dict() if record is not None else None,
        }

    tool_list = server.tool(
        name="list_processes",
        description="List the worker processes currently supervised, one per tenant.",
    )(_list_processes)

    tool_request = server.tool(
        name="request_session",
        description=(
            "Mark a tenant as create_requested in the directory. The reconciler replaces "
            "any existing worker with a fresh one."
        ),
    )(_request_session)

    tool_destroy = server.tool(
        name="destroy_session",
        description="Stop a tenant's worker process, escalating to a kill after the grace period.",
        annotations={
            "safety": {
                "level": "caution",
                "notes": "The tenant stays offline until a new session is requested",
            }
        },
    )(_destroy_session)

    tool_recover = server.tool(
        name="recover_sessions",
        description="Run a recovery pass over tenants the directory reports as live.",
    )(_recover_sessions)

    tool_state = server.tool(
        name="session_state",
        description="Show the directory record and the local process record for a tenant.",
    )(_session_state)

    return ToolHandles(
        list_processes=tool_list,
        request_session=tool_request,
        destroy_session=tool_destroy,
        recover_sessions=tool_recover,
        session_state=tool_state,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when one is attached, else the module logger."""

    payload = extra or {}
    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        log_method = getattr(ctx_logger, level, None) if ctx_logger is not None else None
        if callable(log_method):
            log_method(message, extra=payload)
            return
    getattr(logger, level, logger.info)(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
