"""Per-tenant worker process supervision."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Mapping, Protocol, Sequence

from .environment import tenant_environment

logger = logging.getLogger(__name__)


class SupervisorError(RuntimeError):
    """Base class for process supervisor errors."""


class ProcessSpawnError(SupervisorError):
    """Raised when a worker process cannot be started."""

    def __init__(self, tenant_id: str, message: str) -> None:
        super().__init__(message)
        self.tenant_id = tenant_id


class ProcessStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    ERRORED = "errored"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ProcessRecord:
    """Bookkeeping for one tenant's worker process."""

    tenant_id: str
    pid: int | None
    status: ProcessStatus = ProcessStatus.STARTING
    start_time: datetime = field(default_factory=_now)
    last_update: datetime = field(default_factory=_now)
    restart_count: int = 0
    returncode: int | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "pid": self.pid,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "last_update": self.last_update.isoformat(),
            "restart_count": self.restart_count,
            "returncode": self.returncode,
        }


class ProcessObserver(Protocol):
    """Receives output and exit notifications for supervised processes."""

    def on_output(self, tenant_id: str, stream: str, line: str) -> None:
        ...

    def on_exit(self, tenant_id: str, record: ProcessRecord) -> None:
        ...


class ProcessSupervisor:
    """Own at most one worker process per tenant.

    The supervisor never restarts a worker on its own; deciding whether a tenant
    needs a new process belongs to the reconciler.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        tenant_env_var: str = "SWITCHBOARD_TENANT_ID",
        grace_period: float = 5.0,
        extra_env: Mapping[str, str] | None = None,
        observers: Sequence[ProcessObserver] | None = None,
    ) -> None:
        if not command:
            raise ValueError("worker command must not be empty")
        self._command = tuple(command)
        self._tenant_env_var = tenant_env_var
        self._grace_period = grace_period
        self._extra_env = dict(extra_env or {})
        self._observers = list(observers or [])
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._records: dict[str, ProcessRecord] = {}
        self._dispatchers: dict[str, asyncio.Task[None]] = {}
        self._terminations: dict[str, asyncio.Task[int | None]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def command(self) -> tuple[str, ...]:
        return self._command

    @property
    def grace_period(self) -> float:
        return self._grace_period

    @asynccontextmanager
    async def _tenant_lock(self, tenant_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        self._lock_users[tenant_id] = self._lock_users.get(tenant_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Drop the lock once no caller holds or waits on it.
            remaining = self._lock_users[tenant_id] - 1
            if remaining:
                self._lock_users[tenant_id] = remaining
            else:
                del self._lock_users[tenant_id]
                del self._locks[tenant_id]

    async def create_process(self, tenant_id: str) -> asyncio.subprocess.Process:
        """Spawn a fresh worker for ``tenant_id``, replacing any existing one."""

        async with self._tenant_lock(tenant_id):
            return await self._create_locked(tenant_id)

    async def _create_locked(self, tenant_id: str) -> asyncio.subprocess.Process:
        restart_count = 0
        previous = self._records.get(tenant_id)
        if previous is not None:
            restart_count = previous.restart_count + 1
            logger.info("Destroying existing process before respawn", extra={"tenant_id": tenant_id})
            await self._destroy_locked(tenant_id, wait=True)

        pending = self._terminations.get(tenant_id)
        if pending is not None:
            await asyncio.shield(pending)

        env = tenant_environment(self._tenant_env_var, tenant_id, self._extra_env)
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            logger.error(
                "Failed to spawn worker process",
                extra={"tenant_id": tenant_id, "command": list(self._command), "error": str(exc)},
            )
            raise ProcessSpawnError(tenant_id, f"Could not spawn worker for {tenant_id}: {exc}") from exc

        record = ProcessRecord(tenant_id=tenant_id, pid=process.pid, restart_count=restart_count)
        self._processes[tenant_id] = process
        self._records[tenant_id] = record
        self._dispatchers[tenant_id] = asyncio.create_task(
            self._dispatch(tenant_id, process, record), name=f"worker-dispatch-{tenant_id}"
        )

        logger.info("Worker process created", extra={"tenant_id": tenant_id, "pid": process.pid})
        return process

    async def destroy_process(self, tenant_id: str, *, wait: bool = False) -> bool:
        """Terminate the tenant's worker and drop its record immediately.

        A forced kill follows if the process outlives the grace period. With
        ``wait=True`` this coroutine returns only once the process is gone.
        Returns False when no process was active for the tenant.
        """

        async with self._tenant_lock(tenant_id):
            return await self._destroy_locked(tenant_id, wait=wait)

    async def _destroy_locked(self, tenant_id: str, *, wait: bool) -> bool:
        process = self._processes.pop(tenant_id, None)
        self._records.pop(tenant_id, None)
        if process is None:
            pending = self._terminations.get(tenant_id)
            if wait and pending is not None:
                await asyncio.shield(pending)
            return False

        logger.info("Destroying worker process", extra={"tenant_id": tenant_id, "pid": process.pid})
        try:
            process.terminate()
        except ProcessLookupError:
            pass

        termination = asyncio.create_task(
            self._reap(tenant_id, process), name=f"worker-reap-{tenant_id}"
        )
        self._terminations[tenant_id] = termination
        termination.add_done_callback(lambda task: self._forget_termination(tenant_id, task))

        if wait:
            await asyncio.shield(termination)
        return True

    def _forget_termination(self, tenant_id: str, task: asyncio.Task[int | None]) -> None:
        if self._terminations.get(tenant_id) is task:
            del self._terminations[tenant_id]

    async def _reap(self, tenant_id: str, process: asyncio.subprocess.Process) -> int | None:
        try:
            return await asyncio.wait_for(process.wait(), timeout=self._grace_period)
        except asyncio.TimeoutError:
            logger.warning(
                "Worker ignored SIGTERM, force killing",
                extra={"tenant_id": tenant_id, "pid": process.pid},
            )
            try:
                process.kill()
            except ProcessLookupError:
                pass
            return await process.wait()

    def is_active(self, tenant_id: str) -> bool:
        return tenant_id in self._processes

    def get_record(self, tenant_id: str) -> ProcessRecord | None:
        record = self._records.get(tenant_id)
        return replace(record) if record is not None else None

    def list_all(self) -> list[ProcessRecord]:
        return [replace(record) for record in self._records.values()]

    async def cleanup_all(self) -> None:
        """Destroy every active worker concurrently and wait for all of them to exit."""

        tenants = list(self._processes.keys())
        logger.info("Cleaning up worker processes", extra={"count": len(tenants)})
        await asyncio.gather(*(self.destroy_process(tenant_id, wait=True) for tenant_id in tenants))
        pending = list(self._terminations.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        dispatchers = list(self._dispatchers.values())
        if dispatchers:
            await asyncio.gather(*dispatchers, return_exceptions=True)

    async def _dispatch(
        self,
        tenant_id: str,
        process: asyncio.subprocess.Process,
        record: ProcessRecord,
    ) -> None:
        try:
            await asyncio.gather(
                self._pump(tenant_id, process, record, process.stdout, "stdout"),
                self._pump(tenant_id, process, record, process.stderr, "stderr"),
            )
            returncode = await process.wait()
        except Exception as exc:
            logger.error("Worker process error", extra={"tenant_id": tenant_id, "error": str(exc)})
            record.status = ProcessStatus.ERRORED
            returncode = process.returncode
        else:
            record.status = ProcessStatus.EXITED if returncode == 0 else ProcessStatus.ERRORED
        finally:
            if self._dispatchers.get(tenant_id) is asyncio.current_task():
                del self._dispatchers[tenant_id]

        record.returncode = returncode
        record.last_update = _now()
        log = logger.info if returncode == 0 else logger.warning
        log(
            "Worker process exited",
            extra={"tenant_id": tenant_id, "pid": process.pid, "returncode": returncode},
        )

        # A replacement may already be installed for this tenant.
        if self._processes.get(tenant_id) is process:
            del self._processes[tenant_id]
            self._records.pop(tenant_id, None)

        for observer in self._observers:
            observer.on_exit(tenant_id, replace(record))

    async def _pump(
        self,
        tenant_id: str,
        process: asyncio.subprocess.Process,
        record: ProcessRecord,
        stream: asyncio.StreamReader | None,
        name: str,
    ) -> None:
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if record.status is ProcessStatus.STARTING:
                record.status = ProcessStatus.RUNNING
            record.last_update = _now()
            if not line:
                continue
            if name == "stderr":
                logger.error("[%s] %s", tenant_id, line)
            else:
                logger.info("[%s] %s", tenant_id, line)
            for observer in self._observers:
                observer.on_output(tenant_id, name, line)


__all__ = [
    "ProcessObserver",
    "ProcessRecord",
    "ProcessSpawnError",
    "ProcessStatus",
    "ProcessSupervisor",
    "SupervisorError",
]
