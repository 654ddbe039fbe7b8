"""Switchboard diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json

from switchboard_mcp.config import SwitchboardSettings
from switchboard_mcp.directory import (
    DirectoryService,
    DirectoryUnavailableError,
    LocalSessionEvidence,
    RemoteSessionState,
    SessionStatus,
    build_directory,
)


def load_directory(settings: SwitchboardSettings) -> DirectoryService:
    return build_directory(
        settings.directory_backend,
        chroma_path=settings.chroma_persist_path,
        collection_name=settings.directory_collection,
        poll_interval=settings.watch_poll_interval,
    )


def fetch_states(settings: SwitchboardSettings) -> list[RemoteSessionState]:
    directory = load_directory(settings)
    try:
        return asyncio.run(directory.query(list(SessionStatus)))
    except DirectoryUnavailableError as exc:
        print(f"Directory unavailable: {exc}")
        raise SystemExit(1)


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = SwitchboardSettings()
    states = fetch_states(settings)
    if args.status:
        states = [state for state in states if state.status.value == args.status]

    status_counts: dict[str, int] = {}
    for state in states:
        status_counts[state.status.value] = status_counts.get(state.status.value, 0) + 1

    if args.json:
        payload = {
            "total": len(states),
            "status_counts": status_counts,
            "sessions": [state.model_dump(mode="json") for state in states],
        }
        print(json.dumps(payload, indent=2))
        return

    for state in states:
        updated = state.updated_at.isoformat() if state.updated_at else "-"
        detail = state.error or state.reason or ""
        print(f"{state.tenant_id} [{state.status.value}] updated {updated} {detail}".rstrip())
    print(f"Total: {len(states)}")
    for status, count in sorted(status_counts.items()):
        print(f"  {status}: {count}")


def cmd_evidence(args: argparse.Namespace) -> None:
    settings = SwitchboardSettings()
    evidence = LocalSessionEvidence(settings.auth_dir, legacy_prefix=settings.legacy_session_prefix)
    tenants = list(args.tenant or [])
    if not tenants:
        tenants = [state.tenant_id for state in fetch_states(settings)]

    report = [
        {
            "tenant_id": tenant_id,
            "has_local_session": evidence.has_local_session(tenant_id),
            "candidates": [str(path) for path in evidence.candidate_paths(tenant_id)],
        }
        for tenant_id in tenants
    ]
    if args.json:
        print(json.dumps(report, indent=2))
        return
    for entry in report:
        marker = "yes" if entry["has_local_session"] else "no"
        print(f"{entry['tenant_id']}: {marker}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Switchboard diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List tenant session states from the directory")
    p_sessions.add_argument("--status", choices=[status.value for status in SessionStatus])
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_evidence = sub.add_parser("evidence", help="Report which tenants have local credentials")
    p_evidence.add_argument(
        "--tenant",
        action="append",
        help="Tenant id to check; repeatable. Defaults to every tenant in the directory.",
    )
    p_evidence.add_argument("--json", action="store_true", help="Output JSON")
    p_evidence.set_defaults(func=cmd_evidence)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
