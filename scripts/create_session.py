from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta
import sys

from codegravity.persistence.db import SessionLocal
from codegravity.persistence.repos import auth_sessions as auth_sessions_repo
from codegravity.services.auth.session_tokens import generate_session_token


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create a session token for local use")
    parser.add_argument("--user-id", required=True, help="User id to create or reuse")
    parser.add_argument("--email", default=None, help="Optional user email")
    parser.add_argument("--name", default=None, help="Optional display name")
    parser.add_argument("--ttl-days", type=int, default=30, help="Session lifetime in days")
    return parser


async def _create_session(args: argparse.Namespace) -> int:
    if args.ttl_days < 1:
        raise ValueError("--ttl-days must be at least 1")
    raw_token, token_hash, expires_at = generate_session_token(ttl=timedelta(days=args.ttl_days))

    async with SessionLocal() as session:
        # Flush the user row before inserting the session to satisfy FK constraints.
        user = await auth_sessions_repo.ensure_user(
            session, args.user_id, email=args.email, name=args.name
        )
        await auth_sessions_repo.create_session(
            session, user_id=user.id, token_hash=token_hash, expires_at=expires_at
        )
        await session.commit()

    print("Session created:")
    print(f"  user_id: {args.user_id}")
    print(f"  expires_at: {expires_at.isoformat()}")
    print("  token: ")
    print(f"    {raw_token}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_session(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_session failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
