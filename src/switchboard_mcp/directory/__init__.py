"""Directory service adapters and tenant session models."""

from pathlib import Path

from .base import (
    DirectoryError,
    DirectoryService,
    DirectoryUnavailableError,
    SessionNotFoundError,
    Subscription,
)
from .chroma import ChromaDirectory
from .evidence import LocalSessionEvidence
from .memory import InMemoryDirectory
from .models import ChangeEvent, RECOVERABLE_STATUSES, RemoteSessionState, SessionStatus


def build_directory(
    backend: str,
    *,
    chroma_path: Path,
    collection_name: str = "tenant_sessions",
    poll_interval: float = 1.0,
) -> DirectoryService:
    """Construct the configured directory backend."""

    if backend == "memory":
        return InMemoryDirectory()
    if backend == "chroma":
        return ChromaDirectory(chroma_path, collection_name=collection_name, poll_interval=poll_interval)
    raise ValueError(f"Unknown directory backend '{backend}'")


__all__ = [
    "ChangeEvent",
    "ChromaDirectory",
    "DirectoryError",
    "DirectoryService",
    "DirectoryUnavailableError",
    "InMemoryDirectory",
    "LocalSessionEvidence",
    "RECOVERABLE_STATUSES",
    "RemoteSessionState",
    "SessionNotFoundError",
    "SessionStatus",
    "Subscription",
    "build_directory",
]
