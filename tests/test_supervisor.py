from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import pytest

from switchboard_mcp.supervisor import (
    ProcessRecord,
    ProcessSpawnError,
    ProcessStatus,
    ProcessSupervisor,
)
from switchboard_mcp.supervisor.environment import sanitize_environment, tenant_environment


def _script(tmp_path: Path, name: str, body: str) -> Path:
    script = tmp_path / name
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


async def _until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class RecordingObserver:
    def __init__(self) -> None:
        self.lines: list[tuple[str, str, str]] = []
        self.exits: list[ProcessRecord] = []

    def on_output(self, tenant_id: str, stream: str, line: str) -> None:
        self.lines.append((tenant_id, stream, line))

    def on_exit(self, tenant_id: str, record: ProcessRecord) -> None:
        self.exits.append(record)


def test_create_twice_leaves_single_process(tmp_path: Path) -> None:
    script = _script(tmp_path, "worker", "echo started\nexec sleep 30\n")
    supervisor = ProcessSupervisor([str(script)], grace_period=1.0)

    async def scenario():
        first = await supervisor.create_process("tenant-a")
        second = await supervisor.create_process("tenant-a")
        records = supervisor.list_all()
        first_code = first.returncode
        await supervisor.cleanup_all()
        return first, second, records, first_code

    first, second, records, first_code = asyncio.run(scenario())

    assert first.pid != second.pid
    assert first_code is not None
    assert len(records) == 1
    assert records[0].pid == second.pid
    assert records[0].restart_count == 1


def test_concurrent_creates_spawn_one_live_process(tmp_path: Path) -> None:
    script = _script(tmp_path, "worker", "exec sleep 30\n")
    supervisor = ProcessSupervisor([str(script)], grace_period=1.0)

    async def scenario():
        processes = await asyncio.gather(
            supervisor.create_process("tenant-a"), supervisor.create_process("tenant-a")
        )
        live = [process for process in processes if process.returncode is None]
        records = supervisor.list_all()
        await supervisor.cleanup_all()
        return live, records

    live, records = asyncio.run(scenario())

    assert len(live) == 1
    assert [record.pid for record in records] == [live[0].pid]
    assert supervisor._locks == {}
    assert supervisor._lock_users == {}


def test_tenant_id_is_passed_through_environment(tmp_path: Path) -> None:
    script = _script(tmp_path, "worker", 'echo "tenant=$SWITCHBOARD_TENANT_ID"\nexec sleep 30\n')
    observer = RecordingObserver()
    supervisor = ProcessSupervisor([str(script)], observers=[observer])

    async def scenario():
        await supervisor.create_process("tenant-env")
        await _until(lambda: observer.lines)
        record = supervisor.get_record("tenant-env")
        await supervisor.cleanup_all()
        return record

    record = asyncio.run(scenario())

    assert observer.lines[0] == ("tenant-env", "stdout", "tenant=tenant-env")
    assert record is not None
    assert record.status is ProcessStatus.RUNNING


def test_destroy_removes_record_immediately(tmp_path: Path) -> None:
    script = _script(tmp_path, "worker", "exec sleep 30\n")
    supervisor = ProcessSupervisor([str(script)], grace_period=1.0)

    async def scenario():
        process = await supervisor.create_process("tenant-a")
        destroyed = await supervisor.destroy_process("tenant-a")
        active_after = supervisor.is_active("tenant-a")
        replacement = await supervisor.create_process("tenant-a")
        old_code = process.returncode
        records = supervisor.list_all()
        missing = await supervisor.destroy_process("tenant-b")
        await supervisor.cleanup_all()
        return destroyed, active_after, process, replacement, old_code, records, missing

    destroyed, active_after, process, replacement, old_code, records, missing = asyncio.run(scenario())

    assert destroyed is True
    assert active_after is False
    # The replacement waits for the previous process to finish terminating.
    assert old_code == -signal.SIGTERM
    assert [record.pid for record in records] == [replacement.pid]
    assert records[0].restart_count == 0
    assert missing is False


def test_force_kill_after_grace_period(tmp_path: Path) -> None:
    script = _script(tmp_path, "stubborn", "trap '' TERM\necho ready\nexec sleep 30\n")
    observer = RecordingObserver()
    supervisor = ProcessSupervisor([str(script)], grace_period=0.3, observers=[observer])

    async def scenario():
        process = await supervisor.create_process("tenant-a")
        await _until(lambda: observer.lines)
        await supervisor.destroy_process("tenant-a", wait=True)
        return process

    process = asyncio.run(scenario())

    assert process.returncode == -signal.SIGKILL


def test_spawn_failure_raises_and_records_nothing(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor([str(tmp_path / "missing-worker")])

    async def scenario():
        with pytest.raises(ProcessSpawnError) as excinfo:
            await supervisor.create_process("tenant-a")
        return excinfo.value

    error = asyncio.run(scenario())

    assert error.tenant_id == "tenant-a"
    assert not supervisor.is_active("tenant-a")
    assert supervisor.list_all() == []


def test_exit_is_reported_and_record_dropped(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    script = _script(tmp_path, "worker", "echo hello\necho oops >&2\nexit 3\n")
    observer = RecordingObserver()
    supervisor = ProcessSupervisor([str(script)], observers=[observer])
    caplog.set_level("INFO", logger="switchboard_mcp.supervisor.process")

    async def scenario():
        await supervisor.create_process("tenant-a")
        await _until(lambda: observer.exits)

    asyncio.run(scenario())

    record = observer.exits[0]
    assert record.status is ProcessStatus.ERRORED
    assert record.returncode == 3
    assert not supervisor.is_active("tenant-a")
    assert ("tenant-a", "stderr", "oops") in observer.lines
    assert "[tenant-a] hello" in caplog.text


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIRTUAL_ENV", "/venv")
    env = sanitize_environment({"EXTRA": "1"})

    assert "VIRTUAL_ENV" not in env
    assert env["EXTRA"] == "1"


def test_tenant_variable_wins_over_extra_environment() -> None:
    env = tenant_environment(
        "SWITCHBOARD_TENANT_ID",
        "tenant-a",
        {"SWITCHBOARD_TENANT_ID": "someone-else", "EXTRA": "1"},
    )

    assert env["SWITCHBOARD_TENANT_ID"] == "tenant-a"
    assert env["EXTRA"] == "1"
