"""Worker process supervision."""

from .backoff import BackoffPolicy
from .process import (
    ProcessObserver,
    ProcessRecord,
    ProcessSpawnError,
    ProcessStatus,
    ProcessSupervisor,
    SupervisorError,
)

__all__ = [
    "BackoffPolicy",
    "ProcessObserver",
    "ProcessRecord",
    "ProcessSpawnError",
    "ProcessStatus",
    "ProcessSupervisor",
    "SupervisorError",
]
