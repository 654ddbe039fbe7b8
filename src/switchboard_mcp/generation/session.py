"""Per-tenant conversation session over the generation CLI.

Two request paths are offered. ``process_message`` runs one non-interactive
invocation per message and is what workers use. ``send`` talks to a resident
interactive process whose responses are framed heuristically; it serves one
request at a time and queues the rest in arrival order.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Sequence

from ..ratelimit import RateLimiter
from ..supervisor.backoff import BackoffPolicy
from .framing import HeuristicBoundaryDetector, ResponseBoundaryDetector, is_context_limit
from .history import ConversationHistory
from .prompts import PromptProfile
from .runner import (
    GenerationError,
    GenerationFailedError,
    GenerationNotFoundError,
    GenerationRunner,
    GenerationSpawnError,
)

if TYPE_CHECKING:
    from ..config import SwitchboardSettings

logger = logging.getLogger(__name__)


class SessionClosedError(GenerationError):
    """Raised when a cleaned-up session is used."""


class SessionQueueFullError(GenerationError):
    """Raised when too many messages are waiting for the interactive process."""


class SessionRestartExhaustedError(GenerationError):
    """Raised for queued messages once automatic restarts are used up."""


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    READY = "ready"
    PROCESSING = "processing"
    RESTARTING = "restarting"
    CLEANED_UP = "cleaned_up"


RequestKind = Literal["user", "priming", "summary"]


@dataclass(slots=True)
class _Request:
    message: str
    future: asyncio.Future[str] | None = None
    kind: RequestKind = "user"
    retried: bool = False


class ConversationSession:
    """Serialize one tenant's traffic to the generation CLI."""

    def __init__(
        self,
        tenant_id: str,
        runner: GenerationRunner | None,
        *,
        prompts: PromptProfile | None = None,
        rate_limiter: RateLimiter | None = None,
        history_limit: int = 10,
        max_queue: int = 32,
        timeout: float = 120.0,
        warmup: float = 8.0,
        backoff: BackoffPolicy | None = None,
        boundary: ResponseBoundaryDetector | None = None,
        scratch_root: Path | None = None,
        shutdown_grace: float = 1.0,
        tenant_env_var: str = "SWITCHBOARD_TENANT_ID",
    ) -> None:
        self._tenant_id = tenant_id
        self._runner = runner
        self._prompts = prompts or PromptProfile()
        self._rate_limiter = rate_limiter or RateLimiter()
        self._history = ConversationHistory(history_limit)
        self._max_queue = max_queue
        self._timeout = timeout
        self._warmup = warmup
        self._backoff = backoff or BackoffPolicy()
        self._boundary = boundary or HeuristicBoundaryDetector()
        self._scratch_root = Path(scratch_root) if scratch_root else Path("/tmp")
        self._shutdown_grace = shutdown_grace
        self._tenant_env_var = tenant_env_var

        self._state = SessionState.UNINITIALIZED
        self._process: asyncio.subprocess.Process | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._warmup_task: asyncio.Task[None] | None = None
        self._restart_task: asyncio.Task[None] | None = None
        self._queue: deque[_Request] = deque()
        self._pending: _Request | None = None
        self._buffer = ""
        self._limit_reported = False
        self._summary = ""
        self._restart_attempts = 0
        self._session_id: str | None = None
        self._directories_ready = False

    @classmethod
    def from_settings(
        cls,
        tenant_id: str,
        settings: "SwitchboardSettings",
        *,
        runner: GenerationRunner | None,
        prompts: PromptProfile | None = None,
    ) -> "ConversationSession":
        return cls(
            tenant_id,
            runner,
            prompts=prompts,
            rate_limiter=RateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window),
            history_limit=settings.history_limit,
            max_queue=settings.max_queue,
            timeout=settings.generation_timeout,
            warmup=settings.generation_warmup,
            backoff=BackoffPolicy(
                base_delay=settings.restart_delay,
                max_attempts=settings.max_restart_attempts,
            ),
            scratch_root=settings.scratch_root,
            tenant_env_var=settings.tenant_env_var,
        )

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def summary(self) -> str:
        return self._summary

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    def scratch_directories(self) -> dict[str, Path]:
        root = self._scratch_root
        return {
            "work": root / f"switchboard_{self._tenant_id}",
            "config": root / f"switchboard_config_{self._tenant_id}",
            "home": root / f"switchboard_home_{self._tenant_id}",
        }

    def _prepare_directories(self) -> dict[str, Path]:
        directories = self.scratch_directories()
        if not self._directories_ready:
            for path in directories.values():
                path.mkdir(parents=True, exist_ok=True)
            self._directories_ready = True
        return directories

    async def _directories(self) -> dict[str, Path]:
        try:
            return await asyncio.to_thread(self._prepare_directories)
        except OSError as exc:
            raise GenerationSpawnError(f"Unable to prepare scratch directories: {exc}") from exc

    def _ensure_open(self) -> None:
        if self._state is SessionState.CLEANED_UP:
            raise SessionClosedError(f"Conversation session for {self._tenant_id} has been cleaned up")

    # Single-shot path

    async def process_message(self, message: str, attachments: Sequence[str] = ()) -> str:
        """Answer ``message`` with one non-interactive CLI invocation."""

        self._ensure_open()
        replies = self._prompts.replies
        if not self._rate_limiter.admit():
            logger.warning("Rate limit exceeded", extra={"tenant_id": self._tenant_id})
            return replies.rate_limited
        if self._runner is None:
            logger.error("Generation CLI not available", extra={"tenant_id": self._tenant_id})
            return replies.unavailable
        if not message or not message.strip():
            logger.warning("Empty message received", extra={"tenant_id": self._tenant_id})
            return replies.empty_message

        answer = await self._generate(message, attachments)
        if is_context_limit(answer) and len(self._history):
            logger.warning("Context limit reached, summarizing", extra={"tenant_id": self._tenant_id})
            await self._summarize_history()
            answer = await self._generate(message, attachments)

        self._history.append_exchange(message, answer)
        logger.info(
            "Generated response",
            extra={"tenant_id": self._tenant_id, "length": len(answer), "history": len(self._history)},
        )
        return answer

    async def _generate(self, message: str, attachments: Sequence[str]) -> str:
        assert self._runner is not None
        directories = await self._directories()
        prompt = self._prompts.render_request(
            tenant_id=self._tenant_id,
            message=message,
            history=self._history.render(self._prompts.history_window),
            summary=self._summary,
            attachments=attachments,
        )
        result = await self._runner.run_once(prompt, env=self._single_shot_env(directories), timeout=self._timeout)
        if not result.ok:
            raise GenerationFailedError(result)
        return result.text

    def _single_shot_env(self, directories: dict[str, Path]) -> dict[str, str]:
        return {"TMPDIR": str(directories["work"]), self._tenant_env_var: self._tenant_id}

    async def _summarize_history(self) -> None:
        assert self._runner is not None
        directories = await self._directories()
        prompt = self._prompts.render_summary_request(self._history.render())
        try:
            result = await self._runner.run_once(prompt, env=self._single_shot_env(directories), timeout=self._timeout)
        except GenerationError as exc:
            logger.warning("Summary generation failed", extra={"tenant_id": self._tenant_id, "error": str(exc)})
            result = None
        if result is not None and result.ok and result.text:
            self._summary = result.text
        else:
            self._summary = ""
        self._history.clear()

    # Interactive path

    async def start(self) -> None:
        """Spawn the interactive CLI; it becomes ready after the warm-up delay."""

        self._ensure_open()
        if self._state in {SessionState.STARTING, SessionState.READY, SessionState.PROCESSING}:
            return
        if self._runner is None:
            raise GenerationNotFoundError("Generation CLI is not available")

        self._state = SessionState.STARTING
        try:
            directories = await self._directories()
            self._session_id = f"session_{self._tenant_id}_{int(time.time() * 1000)}"
            env = {
                "TERM": "xterm-256color",
                "TMPDIR": str(directories["work"]),
                "HOME": str(directories["home"]),
                "GENERATION_CLI_CONFIG_DIR": str(directories["config"]),
                "SWITCHBOARD_SESSION_ID": self._session_id,
                self._tenant_env_var: self._tenant_id,
                "SHLVL": "1",
            }
            process = await self._runner.spawn_interactive(env=env, cwd=directories["work"])
        except GenerationError:
            if self._state is SessionState.STARTING:
                self._state = SessionState.UNINITIALIZED
            raise

        if self._state is not SessionState.STARTING:
            # Cleaned up while spawning.
            await self._terminate(process)
            self._ensure_open()
            return

        self._process = process
        self._buffer = ""
        self._limit_reported = False
        self._pump_task = asyncio.create_task(self._pump(process), name=f"generation-pump-{self._tenant_id}")
        self._warmup_task = asyncio.create_task(
            self._warm_up(process), name=f"generation-warmup-{self._tenant_id}"
        )
        logger.info(
            "Interactive generation CLI spawned",
            extra={"tenant_id": self._tenant_id, "pid": process.pid, "session_id": self._session_id},
        )

    async def send(self, message: str) -> str:
        """Send ``message`` through the interactive process and await its response."""

        self._ensure_open()
        replies = self._prompts.replies
        if not self._rate_limiter.admit():
            logger.warning("Rate limit exceeded", extra={"tenant_id": self._tenant_id})
            return replies.rate_limited
        if self._runner is None:
            return replies.unavailable
        if not message or not message.strip():
            return replies.empty_message
        if len(self._queue) >= self._max_queue:
            raise SessionQueueFullError(
                f"{len(self._queue)} messages already waiting for {self._tenant_id}"
            )

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        request = _Request(message=message.strip(), future=future)
        self._queue.append(request)
        if self._state is SessionState.UNINITIALIZED:
            try:
                await self.start()
            except GenerationError:
                if request in self._queue:
                    self._queue.remove(request)
                raise
        else:
            self._drain()
        return await future

    async def _warm_up(self, process: asyncio.subprocess.Process) -> None:
        await asyncio.sleep(self._warmup)
        if self._process is not process or self._state is not SessionState.STARTING:
            return
        self._state = SessionState.READY
        logger.info("Interactive generation CLI ready", extra={"tenant_id": self._tenant_id})
        if self._summary:
            self._queue.appendleft(_Request(self._prompts.render_priming(self._summary), kind="priming"))
        self._drain()

    def _drain(self) -> None:
        while self._state is SessionState.READY and self._pending is None and self._queue:
            request = self._queue.popleft()
            if request.future is not None and request.future.done():
                continue
            self._write(request)

    def _write(self, request: _Request) -> None:
        process = self._process
        if process is None or process.stdin is None:
            self._queue.appendleft(request)
            return
        self._pending = request
        self._state = SessionState.PROCESSING
        self._buffer = ""
        try:
            # The CLI submits on newline.
            line = " ".join(request.message.splitlines())
            process.stdin.write((line + "\n").encode("utf-8"))
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("Generation CLI stdin closed", extra={"tenant_id": self._tenant_id, "error": str(exc)})
            # The exit handler requeues the pending request and restarts.

    async def _pump(self, process: asyncio.subprocess.Process) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stderr_task = asyncio.create_task(self._watch_stderr(process))
        try:
            assert process.stdout is not None
            while True:
                chunk = await process.stdout.read(4096)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    self._on_stdout(process, text)
            returncode = await process.wait()
        finally:
            await asyncio.gather(stderr_task, return_exceptions=True)
        self._on_exit(process, returncode)

    async def _watch_stderr(self, process: asyncio.subprocess.Process) -> None:
        if process.stderr is None:
            return
        while True:
            raw = await process.stderr.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            logger.warning("Generation CLI stderr: %s", line, extra={"tenant_id": self._tenant_id})
            if process is self._process and is_context_limit(line):
                self._limit_reported = True

    def _on_stdout(self, process: asyncio.subprocess.Process, text: str) -> None:
        if process is not self._process:
            return
        self._buffer += text
        if not self._boundary.is_complete(text, self._buffer):
            return
        response = self._buffer.strip()
        self._buffer = ""
        request = self._pending
        if request is None:
            logger.debug("Discarding unsolicited output", extra={"tenant_id": self._tenant_id})
            return
        self._complete(request, response)

    def _complete(self, request: _Request, response: str) -> None:
        self._pending = None

        if request.kind == "summary":
            self._summary = response
            self._history.clear()
            logger.info("Conversation summary generated", extra={"tenant_id": self._tenant_id})
            self._state = SessionState.RESTARTING
            self._restart_task = asyncio.create_task(self._restart(self._process, delay=0.0))
            return

        limit_reached = self._limit_reported or is_context_limit(response)
        self._limit_reported = False
        if request.kind == "user" and limit_reached and not request.retried:
            logger.warning("Context limit reached, requesting summary", extra={"tenant_id": self._tenant_id})
            request.retried = True
            self._queue.appendleft(request)
            self._state = SessionState.READY
            self._write(_Request(self._prompts.summary_prompt, kind="summary"))
            return

        self._restart_attempts = 0
        self._state = SessionState.READY
        if request.kind == "user":
            self._history.append_exchange(request.message, response)
            if request.future is not None and not request.future.done():
                request.future.set_result(response)
        self._drain()

    def _on_exit(self, process: asyncio.subprocess.Process, returncode: int) -> None:
        if process is not self._process:
            return
        self._process = None
        self._buffer = ""
        if self._warmup_task is not None:
            self._warmup_task.cancel()

        pending, self._pending = self._pending, None
        if pending is not None and pending.kind == "user":
            self._queue.appendleft(pending)

        if self._state is SessionState.CLEANED_UP:
            return
        self._state = SessionState.UNINITIALIZED
        log = logger.info if returncode == 0 else logger.error
        log(
            "Interactive generation CLI closed",
            extra={"tenant_id": self._tenant_id, "pid": process.pid, "returncode": returncode},
        )
        if returncode != 0 or self._queue:
            self._schedule_restart()

    def _schedule_restart(self) -> None:
        attempt = self._restart_attempts + 1
        if not self._backoff.allows(attempt):
            logger.error(
                "Generation CLI restart attempts exhausted",
                extra={"tenant_id": self._tenant_id, "attempts": self._restart_attempts},
            )
            self._state = SessionState.UNINITIALIZED
            self._fail_all(
                SessionRestartExhaustedError(
                    f"Generation CLI for {self._tenant_id} failed after {self._restart_attempts} restarts"
                )
            )
            return
        self._restart_attempts = attempt
        delay = self._backoff.delay_for(attempt)
        logger.warning(
            "Scheduling generation CLI restart",
            extra={"tenant_id": self._tenant_id, "attempt": attempt, "delay": delay},
        )
        self._restart_task = asyncio.create_task(self._restart(None, delay=delay))

    async def _restart(self, process: asyncio.subprocess.Process | None, *, delay: float) -> None:
        self._state = SessionState.RESTARTING
        if process is not None and process is self._process:
            self._process = None
            if self._warmup_task is not None:
                self._warmup_task.cancel()
            await self._terminate(process)
        if delay:
            await asyncio.sleep(delay)
        if self._state is not SessionState.RESTARTING:
            return
        self._state = SessionState.UNINITIALIZED
        try:
            await self.start()
        except SessionClosedError:
            return
        except GenerationError as exc:
            logger.error("Generation CLI restart failed", extra={"tenant_id": self._tenant_id, "error": str(exc)})
            self._schedule_restart()

    async def _terminate(self, process: asyncio.subprocess.Process, grace: float | None = None) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=grace if grace is not None else self._shutdown_grace)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    def _fail_all(self, exc: BaseException) -> None:
        requests = list(self._queue)
        if self._pending is not None:
            requests.append(self._pending)
        self._queue.clear()
        self._pending = None
        for request in requests:
            if request.future is not None and not request.future.done():
                request.future.set_exception(exc)

    async def cleanup(self) -> None:
        """Stop any live process and reset state. The session cannot be reused."""

        if self._state is SessionState.CLEANED_UP:
            return
        logger.info("Cleaning up conversation session", extra={"tenant_id": self._tenant_id})
        self._state = SessionState.CLEANED_UP
        process, self._process = self._process, None
        current = asyncio.current_task()
        for task in (self._warmup_task, self._restart_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        if process is not None:
            try:
                await self._terminate(process, grace=self._shutdown_grace)
            except OSError as exc:
                logger.warning("Error stopping generation CLI", extra={"tenant_id": self._tenant_id, "error": str(exc)})
        if self._pump_task is not None and self._pump_task is not current:
            await asyncio.gather(self._pump_task, return_exceptions=True)

        self._fail_all(SessionClosedError(f"Conversation session for {self._tenant_id} was cleaned up"))
        self._buffer = ""
        self._limit_reported = False
        self._pump_task = self._warmup_task = self._restart_task = None
        logger.info("Conversation session cleanup completed", extra={"tenant_id": self._tenant_id})

    def stats(self) -> dict[str, Any]:
        return {
            "tenant_id": self._tenant_id,
            "state": self._state.value,
            "available": self._runner is not None,
            "process_ready": self._state in {SessionState.READY, SessionState.PROCESSING},
            "has_process": self._process is not None,
            "pid": self._process.pid if self._process is not None else None,
            "queue_length": len(self._queue),
            "pending": self._pending is not None,
            "history_length": len(self._history),
            "has_summary": bool(self._summary),
            "restart_attempts": self._restart_attempts,
            "rate_limit": self._rate_limiter.stats(),
        }


__all__ = [
    "ConversationSession",
    "SessionClosedError",
    "SessionQueueFullError",
    "SessionRestartExhaustedError",
    "SessionState",
]
