"""Directory service interface and watch subscriptions."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterable, Protocol

from .models import ChangeEvent, RemoteSessionState, SessionStatus


class DirectoryError(RuntimeError):
    """Base class for directory service errors."""


class DirectoryUnavailableError(DirectoryError):
    """Raised when the backing store cannot be reached or constructed."""


class SessionNotFoundError(DirectoryError):
    """Raised when updating a tenant that has no stored state."""


_CLOSED = object()


class Subscription:
    """Channel of change events for one watch; iterate with ``async for``."""

    def __init__(self, status: SessionStatus, *, on_cancel: Callable[["Subscription"], None] | None = None) -> None:
        self.status = status
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._on_cancel = on_cancel
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def publish(self, event: ChangeEvent) -> None:
        if not self._cancelled:
            self._queue.put_nowait(event)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._queue.put_nowait(_CLOSED)
        if self._on_cancel is not None:
            self._on_cancel(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class DirectoryService(Protocol):
    """Watchable document store holding each tenant's session state."""

    async def ping(self) -> bool:
        ...

    async def get(self, tenant_id: str) -> RemoteSessionState | None:
        ...

    async def put(self, state: RemoteSessionState) -> RemoteSessionState:
        ...

    async def update(self, tenant_id: str, **fields: Any) -> RemoteSessionState:
        ...

    async def query(self, statuses: Iterable[SessionStatus | str]) -> list[RemoteSessionState]:
        ...

    def watch(self, status: SessionStatus | str) -> Subscription:
        ...


def normalize_statuses(statuses: Iterable[SessionStatus | str]) -> set[SessionStatus]:
    return {SessionStatus(status) for status in statuses}


__all__ = [
    "DirectoryError",
    "DirectoryService",
    "DirectoryUnavailableError",
    "SessionNotFoundError",
    "Subscription",
    "normalize_statuses",
]
