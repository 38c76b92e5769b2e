#!/usr/bin/env python3
"""Operator tasks for AuthCore accounts.

Usage:
    python scripts/manage_accounts.py init-db
    python scripts/manage_accounts.py create-user --email user@example.com --password 'S3cure!pass' --verified
    python scripts/manage_accounts.py lock-status --email user@example.com
    python scripts/manage_accounts.py unlock --email user@example.com
    python scripts/manage_accounts.py cleanup-sessions
    python scripts/manage_accounts.py cleanup-security-log [--retention-days 90]

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET / MFA_ENCRYPTION_KEY: key material (required)
    USE_MEMORY_STORE: run against the in-process store (for trying commands out)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_user(runtime, email: str, password: str, verified: bool) -> Dict[str, Any]:
    from authcore.service.passwords import password_problems

    problems = password_problems(password)
    if problems:
        return {"status": "rejected", "problems": problems}
    existing = runtime.store.get_user_by_email(email)
    if existing:
        return {"status": "exists", "user_id": existing.id, "email": existing.email}
    user = runtime.store.create_user(email, email_verified=verified)
    runtime.passwords.set_password(user.id, password)
    if not verified:
        await runtime.email_verification.send_verification(user.id)
    return {"status": "created", "user": user.summary()}


async def lock_status(runtime, email: str) -> Dict[str, Any]:
    status = await runtime.guard.get_account_lock_status(email)
    recent = await runtime.guard.recent_failed_attempts(email)
    return {
        "email": email,
        "is_locked": status.is_locked,
        "locked_until": status.locked_until.isoformat() if status.locked_until else None,
        "failed_attempts": status.failed_attempts,
        "remaining_attempts": status.remaining_attempts,
        "failed_attempts_last_hour": recent,
    }


async def unlock(runtime, email: str) -> Dict[str, Any]:
    unlocked = await runtime.guard.unlock_account(email)
    return {"email": email, "status": "unlocked" if unlocked else "not_found"}


async def cleanup_sessions(runtime) -> Dict[str, Any]:
    return {"removed": await runtime.sessions.cleanup_expired()}


async def cleanup_security_log(runtime, retention_days: int) -> Dict[str, Any]:
    removed = runtime.security_log.cleanup(retention_days)
    return {"removed": removed, "retention_days": retention_days}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage AuthCore accounts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Apply sql/001_auth_core.sql to DATABASE_URL")

    create = commands.add_parser("create-user", help="Create a user with a password")
    create.add_argument("--email", required=True)
    create.add_argument("--password", required=True)
    create.add_argument(
        "--verified", action="store_true", help="Mark the email address as already verified"
    )

    status = commands.add_parser("lock-status", help="Show lockout state for an account")
    status.add_argument("--email", required=True)

    unlock_cmd = commands.add_parser("unlock", help="Clear a lock and the failure counter")
    unlock_cmd.add_argument("--email", required=True)

    commands.add_parser("cleanup-sessions", help="Delete expired sessions")

    prune = commands.add_parser("cleanup-security-log", help="Prune old security events")
    prune.add_argument("--retention-days", type=int, default=None)
    return parser


async def run(args: argparse.Namespace) -> Dict[str, Any]:
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if args.command == "create-user":
            return await create_user(runtime, args.email, args.password, args.verified)
        if args.command == "lock-status":
            return await lock_status(runtime, args.email)
        if args.command == "unlock":
            return await unlock(runtime, args.email)
        if args.command == "cleanup-sessions":
            return await cleanup_sessions(runtime)
        if args.command == "cleanup-security-log":
            days = args.retention_days or runtime.settings.security_log_retention_days
            return await cleanup_security_log(runtime, days)
        raise ValueError(f"unknown command: {args.command}")
    finally:
        runtime.close()


def main() -> None:
    args = build_parser().parse_args()

    try:
        if args.command == "init-db":
            from authcore.config import get_settings
            from authcore.storage.postgres import PostgresStore

            PostgresStore.apply_schema(get_settings().database_url)
            result: Dict[str, Any] = {"status": "schema_applied"}
        else:
            result = asyncio.run(run(args))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))
    if result.get("status") in {"rejected", "not_found"}:
        sys.exit(2)


if __name__ == "__main__":
    main()
