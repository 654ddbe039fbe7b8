"""Reconcile remote tenant state with local worker processes."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal

from .directory import (
    ChangeEvent,
    DirectoryService,
    LocalSessionEvidence,
    RECOVERABLE_STATUSES,
    RemoteSessionState,
    SessionStatus,
    Subscription,
)
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

RecoveryAction = Literal["created", "already_active", "demoted", "failed"]


@dataclass(slots=True)
class RecoveryOutcome:
    tenant_id: str
    action: RecoveryAction
    previous_status: str
    error: str | None = None
    attempted_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "action": self.action,
            "previous_status": self.previous_status,
            "error": self.error,
            "attempted_at": self.attempted_at,
        }


class SessionReconciler:
    """Keep worker processes consistent with the directory and local credentials.

    Startup recovery walks tenants the directory believes are live and recreates
    workers only where local credentials exist. Afterwards a watch on
    ``create_requested`` (re)creates workers on demand. A failure for one tenant
    is recorded against that tenant and never stops the others.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        directory: DirectoryService,
        evidence: LocalSessionEvidence,
        *,
        recovery_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._supervisor = supervisor
        self._directory = directory
        self._evidence = evidence
        self._recovery_delay = recovery_delay
        self._sleep = sleep
        self._subscription: Subscription | None = None
        self._listener: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self.recovery_actions: list[RecoveryOutcome] = []

    @property
    def listening(self) -> bool:
        return self._listener is not None and not self._listener.done()

    async def recover(self) -> list[RecoveryOutcome]:
        """Recreate workers for tenants that were live before a supervisor restart."""

        try:
            candidates = await self._directory.query(RECOVERABLE_STATUSES)
        except Exception as exc:
            logger.error("Unable to query sessions for recovery", extra={"error": str(exc)})
            return []

        if not candidates:
            logger.info("No active sessions found - starting fresh")
            return []

        logger.info("Recovering active sessions", extra={"count": len(candidates)})
        outcomes: list[RecoveryOutcome] = []
        # One tenant at a time, pausing between spawns.
        for index, state in enumerate(candidates):
            if index:
                await self._sleep(self._recovery_delay)
            outcome = await self._recover_tenant(state)
            outcomes.append(outcome)
            self.recovery_actions.append(outcome)
        return outcomes

    async def _recover_tenant(self, state: RemoteSessionState) -> RecoveryOutcome:
        tenant_id = state.tenant_id
        previous = state.status.value
        try:
            has_session = await asyncio.to_thread(self._evidence.has_local_session, tenant_id)
            if not has_session:
                logger.warning(
                    "No local session found, marking tenant disconnected",
                    extra={"tenant_id": tenant_id, "status": previous},
                )
                await self._mark(
                    tenant_id,
                    SessionStatus.DISCONNECTED,
                    reason="Local session not found after restart",
                    disconnected_at=datetime.now(timezone.utc).isoformat(),
                )
                return RecoveryOutcome(tenant_id, "demoted", previous)

            if self._supervisor.is_active(tenant_id):
                logger.info("Process already active", extra={"tenant_id": tenant_id})
                return RecoveryOutcome(tenant_id, "already_active", previous)

            await self._supervisor.create_process(tenant_id)
            logger.info("Recovered session", extra={"tenant_id": tenant_id})
            return RecoveryOutcome(tenant_id, "created", previous)
        except Exception as exc:
            logger.error("Failed to recover session", extra={"tenant_id": tenant_id, "error": str(exc)})
            await self._mark(
                tenant_id,
                SessionStatus.ERROR,
                error=f"Recovery failed: {exc}",
                error_at=datetime.now(timezone.utc).isoformat(),
            )
            return RecoveryOutcome(tenant_id, "failed", previous, error=str(exc))

    async def handle_create_request(self, tenant_id: str) -> bool:
        """Replace the tenant's worker with a fresh one. Returns False on failure."""

        try:
            if self._supervisor.is_active(tenant_id):
                logger.warning(
                    "Process already exists for tenant, destroying old one",
                    extra={"tenant_id": tenant_id},
                )
                await self._supervisor.destroy_process(tenant_id, wait=True)
            await self._supervisor.create_process(tenant_id)
            logger.info("Process created for connection request", extra={"tenant_id": tenant_id})
            return True
        except Exception as exc:
            logger.error(
                "Error processing connection request",
                extra={"tenant_id": tenant_id, "error": str(exc)},
            )
            await self._mark(
                tenant_id,
                SessionStatus.ERROR,
                error=str(exc),
                error_at=datetime.now(timezone.utc).isoformat(),
            )
            return False

    async def start(self) -> None:
        """Begin watching for ``create_requested`` tenants."""

        if self.listening:
            return
        self._subscription = self._directory.watch(SessionStatus.CREATE_REQUESTED)
        self._listener = asyncio.create_task(self._listen(self._subscription), name="reconciler-listen")
        logger.info("Listening for create_requested sessions")

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        inflight = list(self._inflight)
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)

    async def _listen(self, subscription: Subscription) -> None:
        async for event in subscription:
            if not self._should_handle(event):
                continue
            logger.info("New connection request", extra={"tenant_id": event.tenant_id})
            task = asyncio.create_task(
                self.handle_create_request(event.tenant_id), name=f"create-request-{event.tenant_id}"
            )
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    @staticmethod
    def _should_handle(event: ChangeEvent) -> bool:
        return event.change_type in {"added", "modified"} and event.status is SessionStatus.CREATE_REQUESTED

    async def _mark(self, tenant_id: str, status: SessionStatus, **fields: Any) -> None:
        try:
            await self._directory.update(tenant_id, status=status, **fields)
        except Exception as exc:
            logger.error(
                "Failed to update session status",
                extra={"tenant_id": tenant_id, "status": status.value, "error": str(exc)},
            )


__all__ = ["RecoveryOutcome", "SessionReconciler"]
