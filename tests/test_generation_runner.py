from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from switchboard_mcp.generation import (
    FakeGenerationRunner,
    GenerationNotFoundError,
    GenerationResult,
    GenerationRunner,
    GenerationTimeoutError,
)


def _script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "generate"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


def test_run_once_writes_prompt_to_stdin(tmp_path: Path) -> None:
    script = _script(tmp_path, 'echo "flag=$1"\necho "tenant=$TENANT"\ncat\n')
    runner = GenerationRunner(script)

    result = asyncio.run(runner.run_once("hello there", env={"TENANT": "acme"}))

    assert result.ok
    assert result.stdout.splitlines() == ["flag=--print", "tenant=acme", "hello there"]
    assert runner.active_invocations == 0


def test_run_once_reports_failure(tmp_path: Path) -> None:
    script = _script(tmp_path, "echo 'bad things' >&2\nexit 2\n")
    runner = GenerationRunner(script)

    result = asyncio.run(runner.run_once("prompt"))

    assert not result.ok
    assert result.returncode == 2
    assert "bad things" in result.stderr


def test_run_once_timeout_kills_process(tmp_path: Path) -> None:
    script = _script(tmp_path, "exec sleep 30\n")
    runner = GenerationRunner(script)

    with pytest.raises(GenerationTimeoutError):
        asyncio.run(runner.run_once("prompt", timeout=0.3))
    assert runner.active_invocations == 0


def test_runner_not_found(tmp_path: Path) -> None:
    with pytest.raises(GenerationNotFoundError):
        GenerationRunner(tmp_path / "missing")
    with pytest.raises(GenerationNotFoundError):
        GenerationRunner(command="definitely-not-a-real-generation-cli")


def test_spawn_interactive_pipes_all_streams(tmp_path: Path) -> None:
    script = _script(tmp_path, 'read line\necho "got $line"\n')
    runner = GenerationRunner(script)

    async def scenario():
        process = await runner.spawn_interactive()
        stdout, _ = await process.communicate(b"ping\n")
        return stdout

    assert asyncio.run(scenario()) == b"got ping\n"


def test_fake_runner_records_prompts() -> None:
    fake = FakeGenerationRunner(
        [GenerationResult(args=("--print",), returncode=0, stdout=" hi \n", stderr="")]
    )

    result = asyncio.run(fake.run_once("question"))

    assert result.text == "hi"
    assert fake.prompts == ["question"]
    assert fake.invocations == [("--print",)]
