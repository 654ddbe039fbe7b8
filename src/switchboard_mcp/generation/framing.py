"""Response framing for the interactive generation CLI."""

from __future__ import annotations

from typing import Protocol

CONTEXT_LIMIT_INDICATORS: tuple[str, ...] = (
    "context limit",
    "too long",
    "maximum context",
    "context window",
    "token limit",
    "conversation too long",
)


def is_context_limit(text: str) -> bool:
    """Return True if ``text`` reports that the CLI's context is exhausted."""

    lowered = text.lower()
    return any(indicator in lowered for indicator in CONTEXT_LIMIT_INDICATORS)


class ResponseBoundaryDetector(Protocol):
    """Decides when accumulated stdout forms a complete response."""

    def is_complete(self, chunk: str, buffer: str) -> bool:
        ...


class HeuristicBoundaryDetector:
    """Best-effort end-of-response detection for a CLI without structured framing.

    A response ends when the latest chunk contains a blank line, shows the
    ``"> "`` prompt token, or ends with a newline.
    """

    prompt_token = "> "

    def is_complete(self, chunk: str, buffer: str) -> bool:
        if not buffer.strip():
            return False
        return "\n\n" in chunk or self.prompt_token in chunk or chunk.endswith("\n")


__all__ = [
    "CONTEXT_LIMIT_INDICATORS",
    "HeuristicBoundaryDetector",
    "ResponseBoundaryDetector",
    "is_context_limit",
]
