"""In-process directory service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from .base import SessionNotFoundError, Subscription, normalize_statuses
from .models import ChangeEvent, ChangeType, RemoteSessionState, SessionStatus


class InMemoryDirectory:
    """Directory service kept in a dict.

    Only visible to the process that owns it, so it suits tests and a
    single-process development setup. Watches behave like a snapshot listener:
    matching documents are delivered as ``added`` when the watch starts.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._states: dict[str, RemoteSessionState] = {}
        self._subscriptions: list[Subscription] = []

    async def ping(self) -> bool:
        return True

    async def get(self, tenant_id: str) -> RemoteSessionState | None:
        state = self._states.get(tenant_id)
        return state.model_copy(deep=True) if state is not None else None

    async def put(self, state: RemoteSessionState) -> RemoteSessionState:
        now = self._clock()
        existing = self._states.get(state.tenant_id)
        stored = state.model_copy(
            update={
                "created_at": state.created_at or (existing.created_at if existing else now),
                "updated_at": now,
            },
            deep=True,
        )
        self._states[stored.tenant_id] = stored
        self._notify("modified" if existing else "added", stored)
        return stored.model_copy(deep=True)

    async def update(self, tenant_id: str, **fields: Any) -> RemoteSessionState:
        existing = self._states.get(tenant_id)
        if existing is None:
            raise SessionNotFoundError(f"No session state stored for tenant '{tenant_id}'")
        stored = existing.with_updates(fields, now=self._clock())
        self._states[tenant_id] = stored
        self._notify("modified", stored)
        return stored.model_copy(deep=True)

    async def delete(self, tenant_id: str) -> bool:
        existing = self._states.pop(tenant_id, None)
        if existing is None:
            return False
        self._notify("removed", existing)
        return True

    async def query(self, statuses: Iterable[SessionStatus | str]) -> list[RemoteSessionState]:
        wanted = normalize_statuses(statuses)
        return [
            state.model_copy(deep=True)
            for state in self._states.values()
            if state.status in wanted
        ]

    def watch(self, status: SessionStatus | str) -> Subscription:
        target = SessionStatus(status)
        subscription = Subscription(target, on_cancel=self._subscriptions.remove)
        for state in self._states.values():
            if state.status is target:
                subscription.publish(
                    ChangeEvent(
                        tenant_id=state.tenant_id,
                        status=state.status,
                        change_type="added",
                        state=state.model_copy(deep=True),
                    )
                )
        self._subscriptions.append(subscription)
        return subscription

    def _notify(self, change_type: ChangeType, state: RemoteSessionState) -> None:
        for subscription in list(self._subscriptions):
            if subscription.status is state.status:
                subscription.publish(
                    ChangeEvent(
                        tenant_id=state.tenant_id,
                        status=state.status,
                        change_type=change_type,
                        state=state.model_copy(deep=True),
                    )
                )


__all__ = ["InMemoryDirectory"]
