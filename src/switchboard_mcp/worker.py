"""Tenant worker process: one messaging connection plus its conversation session.

The supervisor launches this module once per tenant with the tenant id in the
environment. The messaging connection itself is provided by a pluggable
transport named in ``SWITCHBOARD_TRANSPORT`` as ``module:callable``; it saves
downloaded media under ``TenantWorker.media_dir``.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from .config import SwitchboardSettings, configure_logging, get_settings
from .directory import (
    DirectoryError,
    DirectoryService,
    RemoteSessionState,
    SessionNotFoundError,
    SessionStatus,
    build_directory,
)
from .generation import (
    ConversationSession,
    GenerationError,
    GenerationNotFoundError,
    GenerationRunner,
    PromptProfile,
    load_prompt_profile,
)

logger = logging.getLogger(__name__)

BROADCAST_SENDER = "status@broadcast"


@dataclass(slots=True)
class Attachment:
    path: Path
    mime_type: str = "application/octet-stream"
    filename: str | None = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def display_name(self) -> str:
        return self.filename or self.path.name


@dataclass(slots=True)
class InboundMessage:
    """A message delivered by the transport, with media already saved to disk."""

    sender: str
    body: str = ""
    attachments: list[Attachment] = field(default_factory=list)
    media_failed: bool = False
    message_id: str | None = None


class MessagingTransport(Protocol):
    async def start(self, worker: "TenantWorker") -> None:
        ...

    async def reply(self, message: InboundMessage, text: str) -> None:
        ...

    async def stop(self) -> None:
        ...


SessionFactory = Callable[[], ConversationSession]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TenantWorker:
    """Bridge one tenant's messaging connection to the directory and the generation CLI."""

    def __init__(
        self,
        tenant_id: str,
        directory: DirectoryService,
        transport: MessagingTransport,
        session_factory: SessionFactory,
        *,
        prompts: PromptProfile | None = None,
        media_dir: Path | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.media_dir = media_dir
        self._directory = directory
        self._transport = transport
        self._session_factory = session_factory
        self._prompts = prompts or PromptProfile()
        self._session: ConversationSession | None = None
        self._stopping = asyncio.Event()
        self._closed = False
        self.ready = False

    @property
    def session(self) -> ConversationSession | None:
        return self._session

    async def run(self) -> None:
        logger.info("Worker starting", extra={"tenant_id": self.tenant_id, "pid": os.getpid()})
        if self.media_dir is not None:
            await asyncio.to_thread(self.media_dir.mkdir, parents=True, exist_ok=True)
        try:
            await self._transport.start(self)
            logger.info("Worker initialized", extra={"tenant_id": self.tenant_id})
            await self._stopping.wait()
        finally:
            await self.shutdown()

    def request_shutdown(self) -> None:
        self._stopping.set()

    async def _set_status(self, status: SessionStatus, **fields: Any) -> None:
        try:
            try:
                await self._directory.update(self.tenant_id, status=status, **fields)
            except SessionNotFoundError:
                state = RemoteSessionState(tenant_id=self.tenant_id, status=status)
                await self._directory.put(state.with_updates(fields, now=datetime.now(timezone.utc)))
        except DirectoryError as exc:
            logger.error(
                "Failed to update session status",
                extra={"tenant_id": self.tenant_id, "status": status.value, "error": str(exc)},
            )

    async def on_qr(self, payload: str) -> None:
        logger.info("Pairing code generated", extra={"tenant_id": self.tenant_id})
        await self._set_status(SessionStatus.NEEDS_QR, qr_code=payload, generated_at=_now_iso())

    async def on_ready(self, info: Mapping[str, Any] | None = None) -> None:
        self.ready = True
        logger.info("Messaging connection ready", extra={"tenant_id": self.tenant_id})
        await self._set_status(
            SessionStatus.CONNECTED,
            qr_code=None,
            connected_at=_now_iso(),
            transport_info=dict(info or {}),
            process_id=os.getpid(),
        )

    async def on_auth_failure(self, message: str) -> None:
        logger.error("Authentication failed", extra={"tenant_id": self.tenant_id, "error": message})
        await self._set_status(SessionStatus.AUTH_FAILED, error=message)

    async def on_disconnected(self, reason: str) -> None:
        logger.warning("Messaging connection lost", extra={"tenant_id": self.tenant_id, "reason": reason})
        self.ready = False
        await self._close_session()
        await self._set_status(SessionStatus.DISCONNECTED, reason=reason, disconnected_at=_now_iso())

    async def handle_message(self, message: InboundMessage) -> str | None:
        """Answer one inbound message. Returns the reply sent, if any."""

        if message.sender == BROADCAST_SENDER:
            return None

        replies = self._prompts.replies
        text = message.body or ""
        if message.attachments and not text.strip():
            has_image = any(attachment.is_image for attachment in message.attachments)
            kind = replies.media_kind_image if has_image else replies.media_kind_other
            text = replies.media_only.format(kind=kind)
        if message.media_failed:
            text = f"{text} {replies.media_error}".strip()

        logger.info(
            "Message received",
            extra={
                "tenant_id": self.tenant_id,
                "sender": message.sender,
                "message_id": message.message_id,
                "attachments": len(message.attachments),
            },
        )

        try:
            if self._session is None:
                logger.info("First message, creating conversation session", extra={"tenant_id": self.tenant_id})
                self._session = self._session_factory()
            response = await self._session.process_message(
                text, [attachment.display_name for attachment in message.attachments]
            )
        except GenerationError as exc:
            logger.error("Message handling failed", extra={"tenant_id": self.tenant_id, "error": str(exc)})
            response = replies.error
        finally:
            await asyncio.to_thread(_remove_attachments, message.attachments)

        if not response:
            return None
        try:
            await self._transport.reply(message, response)
        except Exception as exc:
            logger.error("Failed to send reply", extra={"tenant_id": self.tenant_id, "error": str(exc)})
            return None
        return response

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.cleanup()

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("Worker shutting down", extra={"tenant_id": self.tenant_id})
        await self._close_session()
        try:
            await self._transport.stop()
        except Exception as exc:
            logger.warning("Error stopping transport", extra={"tenant_id": self.tenant_id, "error": str(exc)})
        self._stopping.set()


def _remove_attachments(attachments: list[Attachment]) -> None:
    for attachment in attachments:
        try:
            attachment.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove attachment", extra={"path": str(attachment.path), "error": str(exc)})


def resolve_transport_factory(spec: str) -> Callable[..., MessagingTransport]:
    """Resolve ``package.module:callable`` to the transport factory it names."""

    module_name, sep, attribute = spec.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Transport factory must look like 'module:callable', got '{spec}'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ValueError(f"'{spec}' does not name a callable")
    return factory


def build_runner(settings: SwitchboardSettings) -> GenerationRunner | None:
    if not settings.generation_enabled:
        logger.info("Generation CLI disabled")
        return None
    try:
        return GenerationRunner(
            Path(settings.generation_path) if settings.generation_path else None,
            command=settings.generation_command,
            print_flag=settings.generation_print_flag,
        )
    except GenerationNotFoundError as exc:
        logger.warning("Generation CLI unavailable", extra={"error": str(exc)})
        return None


def build_worker(
    tenant_id: str,
    settings: SwitchboardSettings,
    transport: MessagingTransport,
    *,
    directory: DirectoryService | None = None,
) -> TenantWorker:
    if directory is None:
        directory = build_directory(
            settings.directory_backend,
            chroma_path=settings.chroma_persist_path,
            collection_name=settings.directory_collection,
            poll_interval=settings.watch_poll_interval,
        )
    prompts = load_prompt_profile(settings.prompt_profile_path)
    runner = build_runner(settings)

    def session_factory() -> ConversationSession:
        return ConversationSession.from_settings(tenant_id, settings, runner=runner, prompts=prompts)

    return TenantWorker(
        tenant_id,
        directory,
        transport,
        session_factory,
        prompts=prompts,
        media_dir=settings.media_dir / tenant_id,
    )


async def _run_worker(tenant_id: str, settings: SwitchboardSettings) -> None:
    factory = resolve_transport_factory(settings.transport_factory or "")
    transport = factory(tenant_id=tenant_id, settings=settings)
    worker = build_worker(tenant_id, settings, transport)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, worker.request_shutdown)
    await worker.run()


def main() -> None:
    """Entry point for a tenant worker process."""

    settings = get_settings()
    configure_logging(settings.log_level)

    tenant_id = os.environ.get(settings.tenant_env_var, "").strip()
    if not tenant_id:
        logger.error("%s environment variable is required", settings.tenant_env_var)
        sys.exit(1)
    if not settings.transport_factory:
        logger.error("No messaging transport configured; set SWITCHBOARD_TRANSPORT")
        sys.exit(2)

    try:
        asyncio.run(_run_worker(tenant_id, settings))
    except (ValueError, ImportError) as exc:
        logger.error("Unable to load messaging transport", extra={"tenant_id": tenant_id, "error": str(exc)})
        sys.exit(2)
    logger.info("Worker exited", extra={"tenant_id": tenant_id})


__all__ = [
    "Attachment",
    "BROADCAST_SENDER",
    "InboundMessage",
    "MessagingTransport",
    "TenantWorker",
    "build_runner",
    "build_worker",
    "main",
    "resolve_transport_factory",
]


if __name__ == "__main__":
    main()
