"""On-disk evidence that a tenant's transport session can be resumed."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class LocalSessionEvidence:
    """Check for a tenant's credential directory under the auth root.

    Two naming schemes are recognised: ``session-<tenant>`` and the legacy
    ``session-<prefix>-<tenant>``. Either counts when it holds at least one entry.
    """

    def __init__(self, auth_dir: Path, *, legacy_prefix: str = "switchboard") -> None:
        self._auth_dir = Path(auth_dir)
        self._legacy_prefix = legacy_prefix

    @property
    def auth_dir(self) -> Path:
        return self._auth_dir

    def candidate_paths(self, tenant_id: str) -> list[Path]:
        return [
            self._auth_dir / f"session-{tenant_id}",
            self._auth_dir / f"session-{self._legacy_prefix}-{tenant_id}",
        ]

    def has_local_session(self, tenant_id: str) -> bool:
        if not tenant_id or "/" in tenant_id or "\\" in tenant_id or tenant_id in {".", ".."}:
            logger.warning("Refusing to look up credentials for unsafe tenant id", extra={"tenant_id": tenant_id})
            return False

        for path in self.candidate_paths(tenant_id):
            try:
                if path.is_dir() and any(path.iterdir()):
                    return True
            except OSError as exc:
                logger.warning(
                    "Error checking local session",
                    extra={"tenant_id": tenant_id, "path": str(path), "error": str(exc)},
                )
        return False


__all__ = ["LocalSessionEvidence"]
