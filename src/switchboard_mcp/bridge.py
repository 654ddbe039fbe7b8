"""Supervisor runtime tying processes, directory and recovery together."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from . import __version__
from .config import SwitchboardSettings, get_settings
from .directory import (
    DirectoryError,
    DirectoryService,
    LocalSessionEvidence,
    build_directory,
)
from .reconciler import SessionReconciler
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class Bridge:
    """Own the supervisor and keep it reconciled with the directory."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        directory: DirectoryService,
        evidence: LocalSessionEvidence,
        reconciler: SessionReconciler | None = None,
        *,
        settings: SwitchboardSettings | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.directory = directory
        self.evidence = evidence
        self.reconciler = reconciler or SessionReconciler(supervisor, directory, evidence)
        self._settings = settings
        self._started_at: datetime | None = None
        self._directory_error: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: SwitchboardSettings | None = None,
        *,
        directory: DirectoryService | None = None,
    ) -> "Bridge":
        settings = settings or get_settings()
        if directory is None:
            directory = build_directory(
                settings.directory_backend,
                chroma_path=settings.chroma_persist_path,
                collection_name=settings.directory_collection,
                poll_interval=settings.watch_poll_interval,
            )
        supervisor = ProcessSupervisor(
            settings.worker_command,
            tenant_env_var=settings.tenant_env_var,
            grace_period=settings.graceful_shutdown_timeout,
        )
        evidence = LocalSessionEvidence(settings.auth_dir, legacy_prefix=settings.legacy_session_prefix)
        reconciler = SessionReconciler(
            supervisor,
            directory,
            evidence,
            recovery_delay=settings.recovery_delay,
        )
        return cls(supervisor, directory, evidence, reconciler, settings=settings)

    @property
    def started(self) -> bool:
        return self._started_at is not None

    async def start(self) -> None:
        """Check the directory, listen for create requests, then recover live tenants."""

        logger.info("Starting bridge", extra={"version": __version__})
        try:
            await self.directory.ping()
        except DirectoryError as exc:
            self._directory_error = str(exc)
            logger.error("Directory unavailable", extra={"error": str(exc)})
            raise

        await self.reconciler.start()
        await self.reconciler.recover()
        self._started_at = datetime.now(timezone.utc)

        records = self.supervisor.list_all()
        logger.info("Bridge started", extra={"active_processes": len(records)})
        for record in records:
            logger.info(
                "Active process",
                extra={"tenant_id": record.tenant_id, "pid": record.pid, "status": record.status.value},
            )

    async def cleanup(self) -> None:
        logger.info("Cleaning up bridge")
        await self.reconciler.stop()
        await self.supervisor.cleanup_all()
        self._started_at = None
        logger.info("Bridge cleanup completed")

    def status(self) -> dict[str, Any]:
        records = [record.as_dict() for record in self.supervisor.list_all()]
        by_status: dict[str, int] = {}
        for record in records:
            status = str(record["status"])
            by_status[status] = by_status.get(status, 0) + 1

        recent = [outcome.as_dict() for outcome in self.reconciler.recovery_actions[-5:]]
        recovery_counts: dict[str, int] = {}
        for outcome in self.reconciler.recovery_actions:
            recovery_counts[outcome.action] = recovery_counts.get(outcome.action, 0) + 1

        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "listening": self.reconciler.listening,
            "directory": {
                "backend": type(self.directory).__name__,
                "error": self._directory_error,
            },
            "processes": {
                "count": len(records),
                "by_status": by_status,
                "records": records,
            },
            "recovery": {
                "attempts": len(self.reconciler.recovery_actions),
                "by_action": recovery_counts,
                "recent": recent,
            },
        }
        if self._settings is not None:
            payload["auth_dir"] = str(self._settings.auth_dir)
            payload["worker_command"] = list(self._settings.worker_command)
        return payload


__all__ = ["Bridge"]
