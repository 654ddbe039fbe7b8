"""Conversation sessions backed by the generation CLI."""

from .framing import (
    CONTEXT_LIMIT_INDICATORS,
    HeuristicBoundaryDetector,
    ResponseBoundaryDetector,
    is_context_limit,
)
from .history import ConversationHistory, HistoryEntry
from .prompts import CannedReplies, PromptProfile, PromptProfileError, load_prompt_profile
from .runner import (
    FakeGenerationRunner,
    GenerationError,
    GenerationFailedError,
    GenerationNotFoundError,
    GenerationResult,
    GenerationRunner,
    GenerationSpawnError,
    GenerationTimeoutError,
)
from .session import (
    ConversationSession,
    SessionClosedError,
    SessionQueueFullError,
    SessionRestartExhaustedError,
    SessionState,
)

__all__ = [
    "CONTEXT_LIMIT_INDICATORS",
    "CannedReplies",
    "ConversationHistory",
    "ConversationSession",
    "FakeGenerationRunner",
    "GenerationError",
    "GenerationFailedError",
    "GenerationNotFoundError",
    "GenerationResult",
    "GenerationRunner",
    "GenerationSpawnError",
    "GenerationTimeoutError",
    "HeuristicBoundaryDetector",
    "HistoryEntry",
    "PromptProfile",
    "PromptProfileError",
    "ResponseBoundaryDetector",
    "SessionClosedError",
    "SessionQueueFullError",
    "SessionRestartExhaustedError",
    "SessionState",
    "is_context_limit",
    "load_prompt_profile",
]
