from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from codegravity.apps.api.rate_limit import enforce_rate_limit
from codegravity.apps.api.state import AppServices
from codegravity.persistence.repos import auth_sessions as auth_sessions_repo
from codegravity.services.auth.session_tokens import hash_session_token


_BEARER_PREFIX = "bearer "


def get_services(request: Request) -> AppServices:
    return request.app.state.services


async def get_db(services: AppServices = Depends(get_services)) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with services.session_factory() as session:
        yield session


class Principal(BaseModel):
    # The authenticated user every gateway call is scoped to.
    user_id: str
    auth_method: str = "session"


def _auth_error(message: str, *, code: str = "UNAUTHORIZED") -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _extract_token(request: Request, services: AppServices) -> str | None:
    settings = services.settings
    header_value = request.headers.get(settings.auth_api_key_header)
    if header_value:
        if header_value.lower().startswith(_BEARER_PREFIX):
            return header_value[len(_BEARER_PREFIX):].strip() or None
        return header_value.strip() or None
    return request.cookies.get(settings.auth_cookie_name)


async def _principal_from_dev_headers(request: Request, db: AsyncSession) -> Principal | None:
    # Allow header-selected principals only when explicitly enabled for local dev.
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        return None
    await auth_sessions_repo.ensure_user(db, user_id)
    await db.commit()
    return Principal(user_id=user_id, auth_method="dev_bypass")


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: AppServices = Depends(get_services),
) -> Principal:
    if services.settings.auth_dev_bypass:
        principal = await _principal_from_dev_headers(request, db)
        if principal is not None:
            return principal

    token = _extract_token(request, services)
    if not token:
        raise _auth_error("Missing session token")
    auth_session = await auth_sessions_repo.get_by_token_hash(db, hash_session_token(token))
    if auth_session is None:
        raise _auth_error("Invalid session token")
    if auth_sessions_repo.is_expired(auth_session):
        raise _auth_error("Session expired", code="SESSION_EXPIRED")
    request.state.principal_id = auth_session.user_id
    return Principal(user_id=auth_session.user_id)


async def rate_limited_principal(
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    services: AppServices = Depends(get_services),
) -> Principal:
    # Count one request against the path's category before the handler runs.
    await enforce_rate_limit(
        request=request,
        response=response,
        limiter=services.limiter,
        principal_key=principal.user_id,
        settings=services.settings,
    )
    return principal
