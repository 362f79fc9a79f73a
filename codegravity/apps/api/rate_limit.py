from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import time
from typing import Callable

from fastapi import HTTPException, Request, Response, status
from redis.asyncio import Redis

from codegravity.core.config import Settings, get_settings
from codegravity.core.errors import RateLimitedError, StoreUnavailableError
from codegravity.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

CATEGORY_AI = "ai"
CATEGORY_AUTH = "auth"
CATEGORY_DEFAULT = "default"


@dataclass(frozen=True)
class WindowConfig:
    limit: int
    window_s: int


@dataclass(frozen=True)
class RateLimitDecision:
    # Capture the outcome and header values for one counted request.
    allowed: bool
    category: str
    limit: int
    remaining: int
    retry_after_s: int = 0
    degraded: bool = False


# Check, increment and first-hit expiry run as one script so concurrent
# requests cannot interleave between the read and the write.
_FIXED_WINDOW_LUA = r"""
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local current = tonumber(redis.call("GET", KEYS[1]) or "0")

if current >= limit then
  local ttl = redis.call("TTL", KEYS[1])
  if ttl < 0 then
    redis.call("EXPIRE", KEYS[1], window)
    ttl = window
  end
  return {0, current, ttl}
end

local count = redis.call("INCR", KEYS[1])
if count == 1 then
  redis.call("EXPIRE", KEYS[1], window)
end
local ttl = redis.call("TTL", KEYS[1])
return {1, count, ttl}
"""


def category_for_path(path: str) -> str:
    # Map request paths onto the fixed limit categories.
    if path.startswith("/api/ai"):
        return CATEGORY_AI
    if path.startswith("/api/auth"):
        return CATEGORY_AUTH
    return CATEGORY_DEFAULT


def limits_for_category(category: str, settings: Settings | None = None) -> WindowConfig:
    settings = settings or get_settings()
    if category == CATEGORY_AI:
        return WindowConfig(settings.rl_ai_limit, settings.rl_ai_window_s)
    if category == CATEGORY_AUTH:
        return WindowConfig(settings.rl_auth_limit, settings.rl_auth_window_s)
    return WindowConfig(settings.rl_default_limit, settings.rl_default_window_s)


class RateLimiter:
    """Fixed-window request counter keyed by principal and category.

    Windows are not sliding: a burst at the end of one window and another at
    the start of the next can admit up to twice the limit in a short span.
    Without a Redis client the counters live in process memory, which is only
    suitable for single-instance dev and tests.
    """

    def __init__(
        self,
        *,
        redis: Redis | None = None,
        settings: Settings | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._settings = settings or get_settings()
        # Allow injecting time for deterministic tests of the local store.
        self._time_provider = time_provider or time.time
        self._local_windows: dict[str, tuple[int, float]] = {}

    def _key(self, principal_key: str, category: str) -> str:
        return f"{self._settings.rl_redis_prefix}:{principal_key}:{category}"

    async def _hit_redis(self, key: str, window: WindowConfig) -> tuple[bool, int, int]:
        assert self._redis is not None
        result = await self._redis.eval(_FIXED_WINDOW_LUA, 1, key, window.limit, window.window_s)
        return int(result[0]) == 1, int(result[1]), int(result[2])

    def _prune_local(self, now: float) -> None:
        # Drop elapsed windows so idle principals do not accumulate.
        expired = [key for key, (_, expires_at) in self._local_windows.items() if expires_at <= now]
        for key in expired:
            del self._local_windows[key]

    def _hit_local(self, key: str, window: WindowConfig) -> tuple[bool, int, int]:
        # No awaits between read and write, so this is atomic on the event loop.
        now = self._time_provider()
        self._prune_local(now)
        count, expires_at = self._local_windows.get(key, (0, 0.0))
        if count >= window.limit:
            return False, count, int(math.ceil(expires_at - now))
        count += 1
        if count == 1:
            expires_at = now + window.window_s
        self._local_windows[key] = (count, expires_at)
        return True, count, int(math.ceil(expires_at - now))

    async def check_and_increment(self, principal_key: str, category: str) -> RateLimitDecision:
        window = limits_for_category(category, self._settings)
        key = self._key(principal_key, category)
        try:
            if self._redis is None:
                allowed, count, ttl = self._hit_local(key, window)
            else:
                allowed, count, ttl = await self._hit_redis(key, window)
        except Exception as exc:  # noqa: BLE001 - any store failure takes the fail-mode path
            if self._settings.rl_fail_mode.lower() == "closed":
                raise StoreUnavailableError("Rate limit store unavailable") from exc
            increment_counter("rate_limit_degraded_total")
            logger.warning(
                "rate_limit_degraded category=%s error=%s", category, type(exc).__name__
            )
            return RateLimitDecision(
                allowed=True,
                category=category,
                limit=window.limit,
                remaining=window.limit,
                degraded=True,
            )

        if not allowed:
            increment_counter(f"rate_limited_total.{category}")
            return RateLimitDecision(
                allowed=False,
                category=category,
                limit=window.limit,
                remaining=0,
                retry_after_s=max(1, min(ttl, window.window_s)),
            )
        return RateLimitDecision(
            allowed=True,
            category=category,
            limit=window.limit,
            remaining=max(window.limit - count, 0),
        )


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    # Informational headers attached to every counted request.
    if decision.degraded:
        return {"X-RateLimit-Status": "degraded"}
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
    }
    if not decision.allowed:
        headers["Retry-After"] = str(decision.retry_after_s)
    return headers


def rate_limited_error(decision: RateLimitDecision) -> RateLimitedError:
    return RateLimitedError(
        f"Too many requests. Please wait {decision.retry_after_s} seconds.",
        retry_after_s=decision.retry_after_s,
        limit=decision.limit,
        remaining=decision.remaining,
        category=decision.category,
    )


def throttle_exception(exc: RateLimitedError) -> HTTPException:
    # Construct a stable 429 response with retry hints.
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMIT_EXCEEDED",
            "message": str(exc),
            "retryAfter": exc.retry_after_s,
            "category": exc.category,
        },
        headers={
            "Retry-After": str(exc.retry_after_s),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": str(exc.remaining),
        },
    )


def unavailable_exception() -> HTTPException:
    # Return a stable 503 when the store is down and the fail mode is closed.
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
    )


async def enforce_rate_limit(
    *,
    request: Request,
    response: Response,
    limiter: RateLimiter,
    principal_key: str,
    settings: Settings | None = None,
) -> RateLimitDecision | None:
    # Count one request against the path's category and decorate the response.
    settings = settings or get_settings()
    if not settings.rate_limit_enabled:
        return None
    category = category_for_path(request.url.path)
    try:
        decision = await limiter.check_and_increment(principal_key, category)
    except StoreUnavailableError as exc:
        raise unavailable_exception() from exc
    if not decision.allowed:
        raise throttle_exception(rate_limited_error(decision))
    response.headers.update(rate_limit_headers(decision))
    return decision
