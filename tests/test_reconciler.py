from __future__ import annotations

import asyncio
from pathlib import Path

from switchboard_mcp.directory import (
    InMemoryDirectory,
    LocalSessionEvidence,
    RemoteSessionState,
    SessionStatus,
)
from switchboard_mcp.reconciler import SessionReconciler
from switchboard_mcp.supervisor import ProcessSpawnError


class StubSupervisor:
    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.active: set[str] = set()
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.failing = failing or set()

    def is_active(self, tenant_id: str) -> bool:
        return tenant_id in self.active

    async def create_process(self, tenant_id: str):
        if tenant_id in self.failing:
            raise ProcessSpawnError(tenant_id, f"cannot start {tenant_id}")
        self.created.append(tenant_id)
        self.active.add(tenant_id)

    async def destroy_process(self, tenant_id: str, *, wait: bool = False) -> bool:
        self.destroyed.append(tenant_id)
        was_active = tenant_id in self.active
        self.active.discard(tenant_id)
        return was_active


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


def _with_evidence(tmp_path: Path, *tenants: str) -> LocalSessionEvidence:
    for tenant_id in tenants:
        path = tmp_path / f"session-{tenant_id}"
        path.mkdir()
        (path / "state").write_text("ok", encoding="utf-8")
    return LocalSessionEvidence(tmp_path)


async def _seed(directory: InMemoryDirectory, **statuses: SessionStatus) -> None:
    for tenant_id, status in statuses.items():
        await directory.put(RemoteSessionState(tenant_id=tenant_id, status=status))


def test_connected_without_evidence_is_demoted(tmp_path: Path) -> None:
    directory = InMemoryDirectory()
    supervisor = StubSupervisor()
    reconciler = SessionReconciler(supervisor, directory, LocalSessionEvidence(tmp_path), sleep=RecordingSleep())

    async def scenario():
        await _seed(directory, alice=SessionStatus.CONNECTED)
        outcomes = await reconciler.recover()
        return outcomes, await directory.get("alice")

    outcomes, state = asyncio.run(scenario())

    assert supervisor.created == []
    assert [outcome.action for outcome in outcomes] == ["demoted"]
    assert state.status is SessionStatus.DISCONNECTED
    assert state.reason == "Local session not found after restart"
    assert "disconnected_at" in state.data


def test_connected_with_evidence_gets_one_process(tmp_path: Path) -> None:
    directory = InMemoryDirectory()
    supervisor = StubSupervisor()
    sleep = RecordingSleep()
    evidence = _with_evidence(tmp_path, "alice", "bob")
    reconciler = SessionReconciler(supervisor, directory, evidence, recovery_delay=2.0, sleep=sleep)

    async def scenario():
        await _seed(
            directory,
            alice=SessionStatus.CONNECTED,
            bob=SessionStatus.NEEDS_QR,
            carol=SessionStatus.DISCONNECTED,
        )
        supervisor.active.add("bob")
        return await reconciler.recover()

    outcomes = asyncio.run(scenario())

    assert supervisor.created == ["alice"]
    assert {outcome.tenant_id: outcome.action for outcome in outcomes} == {
        "alice": "created",
        "bob": "already_active",
    }
    # Pause between tenants, not before the first one.
    assert sleep.calls == [2.0]
    assert len(reconciler.recovery_actions) == 2


def test_recovery_failure_marks_error_and_continues(tmp_path: Path) -> None:
    directory = InMemoryDirectory()
    supervisor = StubSupervisor(failing={"alice"})
    evidence = _with_evidence(tmp_path, "alice", "bob")
    reconciler = SessionReconciler(supervisor, directory, evidence, sleep=RecordingSleep())

    async def scenario():
        await _seed(directory, alice=SessionStatus.CONNECTED, bob=SessionStatus.QR_GENERATED)
        outcomes = await reconciler.recover()
        return outcomes, await directory.get("alice")

    outcomes, alice = asyncio.run(scenario())

    assert supervisor.created == ["bob"]
    failed = [outcome for outcome in outcomes if outcome.action == "failed"]
    assert failed and failed[0].tenant_id == "alice"
    assert alice.status is SessionStatus.ERROR
    assert alice.error.startswith("Recovery failed:")


def test_handle_create_request_replaces_existing_process(tmp_path: Path) -> None:
    directory = InMemoryDirectory()
    supervisor = StubSupervisor()
    reconciler = SessionReconciler(supervisor, directory, LocalSessionEvidence(tmp_path))
    supervisor.active.add("alice")

    assert asyncio.run(reconciler.handle_create_request("alice")) is True
    assert supervisor.destroyed == ["alice"]
    assert supervisor.created == ["alice"]


def test_handle_create_request_failure_marks_error(tmp_path: Path) -> None:
    directory = InMemoryDirectory()
    supervisor = StubSupervisor(failing={"alice"})
    reconciler = SessionReconciler(supervisor, directory, LocalSessionEvidence(tmp_path))

    async def scenario():
        await _seed(directory, alice=SessionStatus.CREATE_REQUESTED)
        result = await reconciler.handle_create_request("alice")
        return result, await directory.get("alice")

    result, state = asyncio.run(scenario())

    assert result is False
    assert state.status is SessionStatus.ERROR
    assert "cannot start alice" in state.error


def test_watch_creates_process_for_requests(tmp_path: Path) -> None:
    directory = InMemoryDirectory()
    supervisor = StubSupervisor()
    reconciler = SessionReconciler(supervisor, directory, LocalSessionEvidence(tmp_path))

    async def scenario():
        await _seed(directory, pending=SessionStatus.CREATE_REQUESTED, idle=SessionStatus.CONNECTED)
        await reconciler.start()
        await _seed(directory, fresh=SessionStatus.CREATE_REQUESTED)
        for _ in range(50):
            if len(supervisor.created) >= 2:
                break
            await asyncio.sleep(0.01)
        listening = reconciler.listening
        await reconciler.stop()
        return listening

    listening = asyncio.run(scenario())

    assert listening is True
    assert sorted(supervisor.created) == ["fresh", "pending"]
    assert reconciler.listening is False


def test_recover_with_unreachable_directory_returns_empty(tmp_path: Path) -> None:
    class BrokenDirectory(InMemoryDirectory):
        async def query(self, statuses):
            raise RuntimeError("offline")

    reconciler = SessionReconciler(StubSupervisor(), BrokenDirectory(), LocalSessionEvidence(tmp_path))

    assert asyncio.run(reconciler.recover()) == []
