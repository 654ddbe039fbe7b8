"""Chroma-backed directory service."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from pydantic import ValidationError

from .base import DirectoryUnavailableError, SessionNotFoundError, Subscription, normalize_statuses
from .models import ChangeEvent, ChangeType, RemoteSessionState, SessionStatus

logger = logging.getLogger(__name__)

# Records are looked up by id and metadata only, never by similarity.
_PLACEHOLDER_EMBEDDING = [1.0]


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by Switchboard."""

    def upsert(
        self,
        *,
        ids: Iterable[str],
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        embeddings: Iterable[list[float]],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...

    def delete(self, *, ids: Iterable[str]) -> None:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by Switchboard."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


class ChromaDirectory:
    """Persist tenant session state in a ChromaDB collection.

    Chroma has no change feed, so ``watch`` polls the collection and diffs
    successive snapshots by ``updated_at``.
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "tenant_sessions",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._poll_interval = poll_interval
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._pollers: dict[Subscription, asyncio.Task[None]] = {}

    @property
    def path(self) -> Path:
        return self._path

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise DirectoryUnavailableError(
                "chromadb package is not installed; install switchboard with persistence extras"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            try:
                client = self._client or self._client_factory()
                self._client = client
                self._collection = client.get_or_create_collection(self._collection_name)
            except DirectoryUnavailableError:
                raise
            except Exception as exc:
                raise DirectoryUnavailableError(f"Unable to open Chroma collection: {exc}") from exc
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[RemoteSessionState]:
        states: list[RemoteSessionState] = []
        for record_id, document in zip(result.get("ids", []), result.get("documents", [])):
            try:
                states.append(RemoteSessionState.model_validate(json.loads(document)))
            except (ValueError, ValidationError) as exc:
                logger.warning(
                    "Skipping unreadable session document",
                    extra={"record_id": record_id, "error": str(exc)},
                )
        states.sort(key=lambda state: state.tenant_id)
        return states

    def _write(self, state: RemoteSessionState) -> None:
        collection = self._ensure_collection()
        collection.upsert(
            ids=[state.tenant_id],
            documents=[state.model_dump_json()],
            metadatas=[
                {
                    "tenant_id": state.tenant_id,
                    "status": state.status.value,
                    "updated_at": state.updated_at.isoformat() if state.updated_at else "",
                }
            ],
            embeddings=[_PLACEHOLDER_EMBEDDING],
        )

    def _get_sync(self, tenant_id: str) -> RemoteSessionState | None:
        collection = self._ensure_collection()
        states = self._convert_result(collection.get(ids=[tenant_id]))
        return states[0] if states else None

    def _put_sync(self, state: RemoteSessionState) -> RemoteSessionState:
        now = self._clock()
        existing = self._get_sync(state.tenant_id)
        stored = state.model_copy(
            update={
                "created_at": state.created_at or (existing.created_at if existing else now),
                "updated_at": now,
            }
        )
        self._write(stored)
        return stored

    def _update_sync(self, tenant_id: str, fields: dict[str, Any]) -> RemoteSessionState:
        existing = self._get_sync(tenant_id)
        if existing is None:
            raise SessionNotFoundError(f"No session state stored for tenant '{tenant_id}'")
        stored = existing.with_updates(fields, now=self._clock())
        self._write(stored)
        return stored

    def _query_sync(self, statuses: set[SessionStatus]) -> list[RemoteSessionState]:
        collection = self._ensure_collection()
        values = sorted(status.value for status in statuses)
        if not values:
            return []
        where = {"status": values[0]} if len(values) == 1 else {"status": {"$in": values}}
        return self._convert_result(collection.get(where=where))

    def _delete_sync(self, tenant_id: str) -> bool:
        if self._get_sync(tenant_id) is None:
            return False
        self._ensure_collection().delete(ids=[tenant_id])
        return True

    async def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        await asyncio.to_thread(self._ensure_collection)
        return True

    async def get(self, tenant_id: str) -> RemoteSessionState | None:
        return await asyncio.to_thread(self._get_sync, tenant_id)

    async def put(self, state: RemoteSessionState) -> RemoteSessionState:
        return await asyncio.to_thread(self._put_sync, state)

    async def update(self, tenant_id: str, **fields: Any) -> RemoteSessionState:
        return await asyncio.to_thread(self._update_sync, tenant_id, fields)

    async def delete(self, tenant_id: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, tenant_id)

    async def query(self, statuses: Iterable[SessionStatus | str]) -> list[RemoteSessionState]:
        return await asyncio.to_thread(self._query_sync, normalize_statuses(statuses))

    def watch(self, status: SessionStatus | str) -> Subscription:
        target = SessionStatus(status)
        subscription = Subscription(target, on_cancel=self._stop_polling)
        self._pollers[subscription] = asyncio.create_task(
            self._poll(subscription), name=f"chroma-watch-{target.value}"
        )
        return subscription

    def _stop_polling(self, subscription: Subscription) -> None:
        task = self._pollers.pop(subscription, None)
        if task is not None:
            task.cancel()

    async def _poll(self, subscription: Subscription) -> None:
        seen: dict[str, RemoteSessionState] = {}
        while not subscription.cancelled:
            try:
                current = {
                    state.tenant_id: state for state in await self.query([subscription.status])
                }
            except Exception as exc:
                logger.warning(
                    "Directory watch poll failed",
                    extra={"status": subscription.status.value, "error": str(exc)},
                )
            else:
                for tenant_id, state in current.items():
                    previous = seen.get(tenant_id)
                    if previous is None:
                        self._publish(subscription, "added", state)
                    elif previous.updated_at != state.updated_at:
                        self._publish(subscription, "modified", state)
                for tenant_id in seen.keys() - current.keys():
                    self._publish(subscription, "removed", seen[tenant_id])
                seen = current
            await asyncio.sleep(self._poll_interval)

    @staticmethod
    def _publish(subscription: Subscription, change_type: ChangeType, state: RemoteSessionState) -> None:
        subscription.publish(
            ChangeEvent(
                tenant_id=state.tenant_id,
                status=state.status,
                change_type=change_type,
                state=state,
            )
        )


__all__ = ["ChromaDirectory", "ClientProtocol", "CollectionProtocol"]
