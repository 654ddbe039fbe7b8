"""Environment helpers for spawned processes."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a copy of the current environment suitable for a child process."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def tenant_environment(env_var: str, tenant_id: str, extra: Mapping[str, str] | None = None) -> dict[str, str]:
    """Build the environment for a tenant-scoped worker process."""

    additional = dict(extra or {})
    additional[env_var] = tenant_id
    return sanitize_environment(additional)


__all__ = ["sanitize_environment", "tenant_environment"]
