from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from switchboard_mcp.directory import (
    ChromaDirectory,
    DirectoryUnavailableError,
    InMemoryDirectory,
    LocalSessionEvidence,
    RECOVERABLE_STATUSES,
    RemoteSessionState,
    SessionNotFoundError,
    SessionStatus,
    build_directory,
)


class StubCollection:
    def __init__(self) -> None:
        self.records: dict[str, tuple[str, dict[str, Any]]] = {}
        self.embeddings: dict[str, list[float]] = {}

    def upsert(self, *, ids, documents, metadatas, embeddings) -> None:
        for record_id, document, metadata, embedding in zip(ids, documents, metadatas, embeddings):
            self.records[record_id] = (document, dict(metadata))
            self.embeddings[record_id] = embedding

    def get(self, *, ids=None, where=None, limit=None):
        items = list(self.records.items())
        if ids is not None:
            wanted = set(ids)
            items = [item for item in items if item[0] in wanted]
        if where:
            for key, condition in where.items():
                if isinstance(condition, dict):
                    allowed = set(condition["$in"])
                    items = [item for item in items if item[1][1].get(key) in allowed]
                else:
                    items = [item for item in items if item[1][1].get(key) == condition]
        if limit is not None:
            items = items[:limit]
        return {
            "ids": [record_id for record_id, _ in items],
            "documents": [document for _, (document, _) in items],
            "metadatas": [metadata for _, (_, metadata) in items],
        }

    def delete(self, *, ids) -> None:
        for record_id in ids:
            self.records.pop(record_id, None)


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


class TickingClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def _state(tenant_id: str, status: SessionStatus) -> RemoteSessionState:
    return RemoteSessionState(tenant_id=tenant_id, status=status)


def test_memory_put_update_and_query() -> None:
    directory = InMemoryDirectory(clock=TickingClock())

    async def scenario():
        created = await directory.put(_state("t1", SessionStatus.CONNECTED))
        await directory.put(_state("t2", SessionStatus.DISCONNECTED))
        await directory.put(_state("t3", SessionStatus.QR_GENERATED))
        updated = await directory.update("t1", status=SessionStatus.ERROR, error="boom", extra_field=7)
        live = await directory.query(RECOVERABLE_STATUSES)
        return created, updated, live

    created, updated, live = asyncio.run(scenario())

    assert created.created_at is not None
    assert updated.created_at == created.created_at
    assert updated.updated_at > created.updated_at
    assert updated.status is SessionStatus.ERROR
    assert updated.error == "boom"
    assert updated.data == {"extra_field": 7}
    assert [state.tenant_id for state in live] == ["t3"]


def test_memory_update_missing_tenant_raises() -> None:
    directory = InMemoryDirectory()

    async def scenario():
        await directory.update("ghost", status=SessionStatus.ERROR)

    with pytest.raises(SessionNotFoundError):
        asyncio.run(scenario())


def test_memory_watch_delivers_existing_and_new_matches() -> None:
    directory = InMemoryDirectory()

    async def scenario():
        await directory.put(_state("existing", SessionStatus.CREATE_REQUESTED))
        await directory.put(_state("other", SessionStatus.CONNECTED))
        subscription = directory.watch(SessionStatus.CREATE_REQUESTED)
        await directory.put(_state("fresh", SessionStatus.CREATE_REQUESTED))
        await directory.update("existing", status=SessionStatus.CREATE_REQUESTED, attempt=2)
        await directory.update("other", status=SessionStatus.DISCONNECTED)
        subscription.cancel()
        return [(event.tenant_id, event.change_type) async for event in subscription]

    events = asyncio.run(scenario())

    assert events == [("existing", "added"), ("fresh", "added"), ("existing", "modified")]


def test_chroma_round_trip_with_stub_client(tmp_path: Path) -> None:
    client = StubClient()
    directory = ChromaDirectory(tmp_path, client_factory=lambda: client, clock=TickingClock())

    async def scenario():
        assert await directory.ping()
        await directory.put(_state("t1", SessionStatus.CONNECTED))
        await directory.put(_state("t2", SessionStatus.NEEDS_QR))
        await directory.put(_state("t3", SessionStatus.AUTH_FAILED))
        await directory.update("t2", reason="waiting", qr_code="data")
        fetched = await directory.get("t2")
        live = await directory.query(RECOVERABLE_STATUSES)
        single = await directory.query([SessionStatus.AUTH_FAILED])
        deleted = await directory.delete("t3")
        return fetched, live, single, deleted

    fetched, live, single, deleted = asyncio.run(scenario())

    assert fetched is not None
    assert fetched.reason == "waiting"
    assert fetched.data["qr_code"] == "data"
    assert [state.tenant_id for state in live] == ["t1", "t2"]
    assert [state.tenant_id for state in single] == ["t3"]
    assert deleted is True
    collection = client.collections["tenant_sessions"]
    assert "t3" not in collection.records
    assert collection.records["t1"][1]["status"] == "connected"


def test_chroma_skips_unreadable_documents(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    client = StubClient()
    client.collections["tenant_sessions"].records["bad"] = ("not json", {"status": "connected"})
    directory = ChromaDirectory(tmp_path, client_factory=lambda: client)

    states = asyncio.run(directory.query([SessionStatus.CONNECTED]))

    assert states == []
    assert "Skipping unreadable session document" in caplog.text


def test_chroma_unavailable_when_client_fails(tmp_path: Path) -> None:
    def broken_factory():
        raise RuntimeError("disk on fire")

    directory = ChromaDirectory(tmp_path, client_factory=broken_factory)

    with pytest.raises(DirectoryUnavailableError):
        asyncio.run(directory.ping())


def test_chroma_watch_polls_for_changes(tmp_path: Path) -> None:
    client = StubClient()
    directory = ChromaDirectory(
        tmp_path, client_factory=lambda: client, clock=TickingClock(), poll_interval=0.01
    )

    async def scenario():
        await directory.put(_state("early", SessionStatus.CREATE_REQUESTED))
        subscription = directory.watch(SessionStatus.CREATE_REQUESTED)
        first = await asyncio.wait_for(subscription.__anext__(), timeout=2)
        await directory.put(_state("late", SessionStatus.CREATE_REQUESTED))
        second = await asyncio.wait_for(subscription.__anext__(), timeout=2)
        await directory.update("early", status=SessionStatus.CONNECTED)
        third = await asyncio.wait_for(subscription.__anext__(), timeout=2)
        subscription.cancel()
        return first, second, third

    first, second, third = asyncio.run(scenario())

    assert (first.tenant_id, first.change_type) == ("early", "added")
    assert (second.tenant_id, second.change_type) == ("late", "added")
    assert (third.tenant_id, third.change_type) == ("early", "removed")


def test_build_directory_rejects_unknown_backend(tmp_path: Path) -> None:
    assert isinstance(build_directory("memory", chroma_path=tmp_path), InMemoryDirectory)
    with pytest.raises(ValueError):
        build_directory("firestore", chroma_path=tmp_path)


def test_local_evidence_requires_non_empty_directory(tmp_path: Path) -> None:
    evidence = LocalSessionEvidence(tmp_path, legacy_prefix="bridge")
    (tmp_path / "session-empty").mkdir()
    current = tmp_path / "session-current"
    current.mkdir()
    (current / "Default").mkdir()
    legacy = tmp_path / "session-bridge-legacy"
    legacy.mkdir()
    (legacy / "cookies").write_text("x", encoding="utf-8")

    assert evidence.has_local_session("current")
    assert evidence.has_local_session("legacy")
    assert not evidence.has_local_session("empty")
    assert not evidence.has_local_session("absent")
    assert not evidence.has_local_session("../etc")
