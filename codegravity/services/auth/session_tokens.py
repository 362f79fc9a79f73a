from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import secrets


DEFAULT_SESSION_TTL = timedelta(days=30)


def hash_session_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_session_token(
    *, ttl: timedelta = DEFAULT_SESSION_TTL, now: datetime | None = None
) -> tuple[str, str, datetime]:
    # Return the raw token once; only the hash is persisted.
    raw_token = secrets.token_urlsafe(32)
    issued_at = now or datetime.now(timezone.utc)
    return raw_token, hash_session_token(raw_token), issued_at + ttl
