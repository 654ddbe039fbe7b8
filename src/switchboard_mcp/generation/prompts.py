"""Prompt profiles for conversation sessions."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator


class PromptProfileError(RuntimeError):
    """Raised when a prompt profile file cannot be parsed."""


class CannedReplies(BaseModel):
    """Fixed replies returned without consulting the generation CLI."""

    rate_limited: str = Field(
        default="Too many requests. Please wait a moment before trying again.",
    )
    empty_message: str = Field(default="Hello! How can I help you today?")
    unavailable: str = Field(default="Sorry, the assistant is not available right now.")
    error: str = Field(default="Sorry, something went wrong while processing your message. Please try again.")
    media_only: str = Field(
        default="The user sent {kind}. Please analyse its content.",
        description="Text used when a message carries media but no body; ``{kind}`` is substituted.",
    )
    media_kind_image: str = Field(default="an image")
    media_kind_other: str = Field(default="a media file")
    media_error: str = Field(default="[Error processing the attached media]")


class PromptProfile(BaseModel):
    """Text used to frame every request sent to the generation CLI."""

    id: str = Field(default="default", description="Identifier for the profile.")
    preamble: str = Field(
        default=(
            "You are chatting with user {tenant_id} through a messaging app. "
            "Keep a friendly tone and answer helpfully."
        ),
        description="Opening instructions; ``{tenant_id}`` is substituted.",
    )
    summary_heading: str = Field(default="CONVERSATION SUMMARY:")
    history_heading: str = Field(default="PREVIOUS CONVERSATION:")
    message_heading: str = Field(default="NEW MESSAGE:")
    attachments_heading: str = Field(default="Attachments:")
    summary_prompt: str = Field(
        default=(
            "Please write a concise summary of this conversation, keeping the main points "
            "and the current context. Limit it to 3-4 paragraphs."
        ),
    )
    summary_priming: str = Field(
        default="Context from the previous conversation:\n{summary}\n\nContinue from this context.",
        description="Message sent to a fresh interactive process; ``{summary}`` is substituted.",
    )
    history_window: int = Field(
        default=6,
        description="How many history entries to include in single-shot prompts.",
    )
    replies: CannedReplies = Field(default_factory=CannedReplies)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Prompt profile id must not be empty")
        return normalized

    @field_validator("history_window")
    @classmethod
    def _validate_window(cls, value: int) -> int:
        if value < 0:
            raise ValueError("history_window must be >= 0")
        return value

    def render_request(
        self,
        *,
        tenant_id: str,
        message: str,
        history: str = "",
        summary: str = "",
        attachments: Iterable[str] = (),
    ) -> str:
        """Assemble the full prompt for one single-shot invocation."""

        sections = [self.preamble.format(tenant_id=tenant_id).strip()]
        if summary:
            sections.append(f"{self.summary_heading}\n{summary.strip()}")
        if history:
            sections.append(f"{self.history_heading}\n{history}")
        request = f"{self.message_heading}\nUser: {message.strip()}"
        names = [name for name in attachments if name]
        if names:
            request += f"\n\n{self.attachments_heading} " + " ".join(names)
        sections.append(request)
        return "\n\n".join(sections)

    def render_summary_request(self, history: str) -> str:
        if not history:
            return self.summary_prompt
        return f"{self.history_heading}\n{history}\n\n{self.summary_prompt}"

    def render_priming(self, summary: str) -> str:
        return self.summary_priming.format(summary=summary.strip())


def load_prompt_profile(path: Path | None = None) -> PromptProfile:
    """Load a prompt profile from YAML, or return the built-in profile."""

    if path is None:
        return PromptProfile()

    path = Path(path)
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise PromptProfileError(f"Unable to read prompt profile {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise PromptProfileError(f"Failed to parse YAML in {path}: {exc}") from exc

    if document is None:
        return PromptProfile()

    try:
        return PromptProfile.model_validate(document)
    except ValidationError as exc:
        raise PromptProfileError(f"Prompt profile validation error in {path}: {exc}") from exc


__all__ = ["CannedReplies", "PromptProfile", "PromptProfileError", "load_prompt_profile"]
