"""Async runner for the text-generation CLI."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from ..supervisor.environment import sanitize_environment


class GenerationError(RuntimeError):
    """Base class for generation CLI errors."""


class GenerationNotFoundError(GenerationError):
    """Raised when the generation CLI executable cannot be located."""


class GenerationSpawnError(GenerationError):
    """Raised when the generation CLI process cannot be started."""


class GenerationTimeoutError(GenerationError):
    """Raised when a single-shot invocation exceeds its time budget."""


class GenerationFailedError(GenerationError):
    """Raised when a single-shot invocation exits with a nonzero status."""

    def __init__(self, result: "GenerationResult") -> None:
        super().__init__(
            f"Generation CLI failed with code {result.returncode}: {result.stderr.strip()}"
        )
        self.result = result


@dataclass(slots=True)
class GenerationResult:
    """Holds the outcome of a generation CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def text(self) -> str:
        return self.stdout.strip()


class GenerationRunner:
    """Execute the generation CLI asynchronously."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        command: str = "claude",
        print_flag: str = "--print",
    ) -> None:
        self._executable_path = self._resolve_executable(executable, command)
        self._print_flag = print_flag
        self._active: set[asyncio.subprocess.Process] = set()

    @staticmethod
    def _resolve_executable(explicit: Path | None, command: str) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GenerationNotFoundError(f"Generation CLI executable not found at {candidate}")

        binary = shutil.which(command)
        if binary is None:
            raise GenerationNotFoundError(f"Generation CLI '{command}' not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    @property
    def active_invocations(self) -> int:
        """Number of single-shot processes currently running."""

        return len(self._active)

    async def version(self) -> GenerationResult:
        return await self._invoke("--version", timeout=30.0)

    async def run_once(
        self,
        prompt: str,
        *,
        env: Mapping[str, str] | None = None,
        timeout: float = 120.0,
        cwd: Path | None = None,
    ) -> GenerationResult:
        """Write ``prompt`` to a non-interactive invocation and collect its full output."""

        return await self._invoke(
            self._print_flag, input_text=prompt, env=env, timeout=timeout, cwd=cwd
        )

    async def spawn_interactive(
        self,
        *,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> asyncio.subprocess.Process:
        """Start a resident CLI process with all three standard streams piped."""

        cmd = [str(self._executable_path), *args]
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(env),
                cwd=str(cwd) if cwd else None,
            )
        except OSError as exc:
            raise GenerationSpawnError(f"Unable to start generation CLI: {exc}") from exc

    async def _invoke(
        self,
        *args: str,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        cwd: Path | None = None,
    ) -> GenerationResult:
        cmd = [str(self._executable_path), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(env),
                cwd=str(cwd) if cwd else None,
            )
        except OSError as exc:
            raise GenerationSpawnError(f"Unable to start generation CLI: {exc}") from exc

        self._active.add(process)
        try:
            payload = input_text.encode("utf-8") if input_text is not None else None
            try:
                stdout_bytes, stderr_bytes = await asyncio.wait_for(
                    process.communicate(payload), timeout=timeout
                )
            except asyncio.TimeoutError:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
                raise GenerationTimeoutError(
                    f"Generation CLI timed out after {timeout}s"
                ) from None
        finally:
            self._active.discard(process)

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return GenerationResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeGenerationRunner(GenerationRunner):
    """Test double that simulates generation CLI responses."""

    def __init__(self, responses: Iterable[GenerationResult | BaseException] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, ...]] = []
        self._prompts: list[str] = []
        self._environments: list[dict[str, str]] = []
        self._executable_path = Path("/tmp/fake-generation-cli")
        self._print_flag = "--print"
        self._active = set()

    async def _invoke(  # type: ignore[override]
        self,
        *args: str,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        **_: object,
    ) -> GenerationResult:
        self._invocations.append(tuple(args))
        self._environments.append(dict(env or {}))
        if input_text is not None:
            self._prompts.append(input_text)
        if self._responses:
            response = self._responses.pop(0)
            if isinstance(response, BaseException):
                raise response
            return response
        return GenerationResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations

    @property
    def prompts(self) -> list[str]:
        return self._prompts

    @property
    def environments(self) -> list[dict[str, str]]:
        return self._environments


__all__ = [
    "FakeGenerationRunner",
    "GenerationError",
    "GenerationFailedError",
    "GenerationNotFoundError",
    "GenerationResult",
    "GenerationRunner",
    "GenerationSpawnError",
    "GenerationTimeoutError",
]
