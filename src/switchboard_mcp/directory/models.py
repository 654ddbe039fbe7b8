"""Tenant session state as stored in the directory service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class SessionStatus(str, Enum):
    CREATE_REQUESTED = "create_requested"
    NEEDS_QR = "needs_qr"
    QR_GENERATED = "qr_generated"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    AUTH_FAILED = "auth_failed"


RECOVERABLE_STATUSES: frozenset[SessionStatus] = frozenset(
    {SessionStatus.CONNECTED, SessionStatus.NEEDS_QR, SessionStatus.QR_GENERATED}
)

ChangeType = Literal["added", "modified", "removed"]


class RemoteSessionState(BaseModel):
    """Desired/observed state for one tenant, shared across supervisor restarts."""

    tenant_id: str = Field(..., description="Opaque account identifier.")
    status: SessionStatus = Field(..., description="Current lifecycle status.")
    created_at: datetime | None = Field(default=None)
    updated_at: datetime | None = Field(default=None)
    error: str | None = Field(default=None, description="Last error message, if any.")
    reason: str | None = Field(default=None, description="Why the status last changed.")
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Fields written by workers that the supervisor does not interpret.",
    )

    @field_validator("tenant_id")
    @classmethod
    def _normalize_tenant_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("tenant_id must not be empty")
        return normalized

    def with_updates(self, fields: dict[str, Any], *, now: datetime) -> "RemoteSessionState":
        """Return a copy with ``fields`` merged in; unknown keys land in ``data``."""

        known = set(type(self).model_fields) - {"tenant_id", "data"}
        payload = self.model_dump()
        data = dict(payload.pop("data"))
        for key, value in fields.items():
            if key in known:
                payload[key] = value
            else:
                data[key] = value
        payload["data"] = data
        payload["updated_at"] = now
        return type(self).model_validate(payload)


@dataclass(slots=True)
class ChangeEvent:
    """A document change delivered by a directory watch."""

    tenant_id: str
    status: SessionStatus
    change_type: ChangeType
    state: RemoteSessionState

    @property
    def data(self) -> dict[str, Any]:
        return self.state.data


__all__ = [
    "ChangeEvent",
    "ChangeType",
    "RECOVERABLE_STATUSES",
    "RemoteSessionState",
    "SessionStatus",
]
