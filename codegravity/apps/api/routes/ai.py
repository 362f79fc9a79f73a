from __future__ import annotations

from contextlib import aclosing
import json
import logging
from typing import Any, AsyncGenerator, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from codegravity.apps.api.deps import (
    Principal,
    get_current_principal,
    get_db,
    get_services,
    rate_limited_principal,
)
from codegravity.apps.api.rate_limit import (
    rate_limit_headers,
    throttle_exception,
    unavailable_exception,
)
from codegravity.apps.api.state import AppServices
from codegravity.core.errors import (
    ContextTooLargeError,
    CredentialDecryptError,
    GravityError,
    NoCredentialError,
    RateLimitedError,
    StoreUnavailableError,
    UnknownProviderError,
    UpstreamError,
)
from codegravity.domain.messages import AssistMode
from codegravity.persistence.repos import ai_history as ai_history_repo
from codegravity.services.ai.composer import (
    ChatPayload,
    ComposedRequest,
    ExplainPayload,
    FixErrorPayload,
    InlineEditPayload,
    compose,
)
from codegravity.services.ai.gateway import AIGateway, GatewayRequest


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ai", tags=["ai"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "text/event-stream",
    "Connection": "keep-alive",
}


class _CamelModel(BaseModel):
    # Editor clients send camelCase; snake_case is accepted for scripts.
    model_config = ConfigDict(populate_by_name=True)


class ChatMessageIn(_CamelModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(_CamelModel):
    messages: list[ChatMessageIn]
    project_id: str | None = Field(default=None, alias="projectId")
    stream: bool = True


class EditContext(_CamelModel):
    file_path: str = Field(alias="filePath")
    project_id: str | None = Field(default=None, alias="projectId")
    surrounding_code: str | None = Field(default=None, alias="surroundingCode")


class EditRequest(_CamelModel):
    code: str
    instruction: str
    language: str
    context: EditContext


class ExplainRequest(_CamelModel):
    code: str
    language: str
    project_id: str | None = Field(default=None, alias="projectId")


class FixErrorRequest(_CamelModel):
    error: str
    code: str | None = None
    file_path: str | None = Field(default=None, alias="filePath")
    project_id: str | None = Field(default=None, alias="projectId")


def _sse_message(payload: dict[str, Any]) -> str:
    # One compact JSON object per data line; clients split frames on blank lines.
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"data: {data}\n\n"


def _gateway_http_error(exc: GravityError) -> HTTPException:
    # Map gateway failures that happen before any bytes are sent to stable codes.
    if isinstance(exc, RateLimitedError):
        return throttle_exception(exc)
    if isinstance(exc, StoreUnavailableError):
        return unavailable_exception()
    if isinstance(exc, NoCredentialError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "NO_API_KEY", "message": str(exc)},
        )
    if isinstance(exc, ContextTooLargeError):
        return HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail={"code": "CONTEXT_TOO_LARGE", "message": str(exc)},
        )
    if isinstance(exc, (UnknownProviderError, CredentialDecryptError)):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "code": "PROVIDER_CONFIG_INVALID",
                "message": "Your AI provider configuration is invalid. Update it in Settings.",
            },
        )
    if isinstance(exc, UpstreamError):
        details: dict[str, Any] = {"code": "AI_ERROR", "message": str(exc)}
        if exc.status_code is not None:
            details["upstreamStatus"] = exc.status_code
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=details)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "INTERNAL_ERROR", "message": "AI request failed."},
    )


async def _event_stream(
    gateway: AIGateway, gw_request: GatewayRequest, http_request: Request
) -> AsyncGenerator[str, None]:
    # Closing the gateway stream cancels the upstream read and records the partial reply.
    async with aclosing(gateway.stream(gw_request)) as events:
        async for event in events:
            if await http_request.is_disconnected():
                logger.info(
                    "ai_client_disconnected principal=%s mode=%s",
                    gw_request.principal_id,
                    gw_request.mode.value,
                )
                return
            yield _sse_message(event.to_payload())


async def _run_assist(
    *,
    mode: AssistMode,
    composed: ComposedRequest,
    principal: Principal,
    services: AppServices,
    http_request: Request,
    project_id: str | None,
    stream_requested: bool = True,
) -> StreamingResponse | JSONResponse:
    gateway = services.gateway
    try:
        gw_request = await gateway.prepare(
            principal.user_id, mode, composed, project_id=project_id
        )
    except GravityError as exc:
        raise _gateway_http_error(exc) from exc

    headers = rate_limit_headers(gw_request.decision) if gw_request.decision else {}
    if stream_requested and gw_request.streaming_enabled:
        return StreamingResponse(
            _event_stream(gateway, gw_request, http_request),
            headers={**_SSE_HEADERS, **headers},
            media_type="text/event-stream",
        )

    try:
        content = await gateway.complete(gw_request)
    except UpstreamError as exc:
        raise _gateway_http_error(exc) from exc
    return JSONResponse(content={"content": content}, headers=headers)


@router.post("/chat", response_model=None)
async def chat(
    payload: ChatRequest,
    http_request: Request,
    principal: Principal = Depends(get_current_principal),
    services: AppServices = Depends(get_services),
) -> StreamingResponse | JSONResponse:
    composed = compose(
        AssistMode.CHAT,
        ChatPayload(messages=[{"role": m.role, "content": m.content} for m in payload.messages]),
    )
    return await _run_assist(
        mode=AssistMode.CHAT,
        composed=composed,
        principal=principal,
        services=services,
        http_request=http_request,
        project_id=payload.project_id,
        stream_requested=payload.stream,
    )


@router.post("/edit", response_model=None)
async def inline_edit(
    payload: EditRequest,
    http_request: Request,
    principal: Principal = Depends(get_current_principal),
    services: AppServices = Depends(get_services),
) -> StreamingResponse | JSONResponse:
    composed = compose(
        AssistMode.INLINE_EDIT,
        InlineEditPayload(
            code=payload.code,
            instruction=payload.instruction,
            language=payload.language,
            file_path=payload.context.file_path,
            surrounding_code=payload.context.surrounding_code,
        ),
    )
    return await _run_assist(
        mode=AssistMode.INLINE_EDIT,
        composed=composed,
        principal=principal,
        services=services,
        http_request=http_request,
        project_id=payload.context.project_id,
    )


@router.post("/explain", response_model=None)
async def explain(
    payload: ExplainRequest,
    http_request: Request,
    principal: Principal = Depends(get_current_principal),
    services: AppServices = Depends(get_services),
) -> StreamingResponse | JSONResponse:
    composed = compose(
        AssistMode.EXPLAIN,
        ExplainPayload(code=payload.code, language=payload.language),
    )
    return await _run_assist(
        mode=AssistMode.EXPLAIN,
        composed=composed,
        principal=principal,
        services=services,
        http_request=http_request,
        project_id=payload.project_id,
    )


@router.post("/fix-error", response_model=None)
async def fix_error(
    payload: FixErrorRequest,
    http_request: Request,
    principal: Principal = Depends(get_current_principal),
    services: AppServices = Depends(get_services),
) -> StreamingResponse | JSONResponse:
    composed = compose(
        AssistMode.FIX_ERROR,
        FixErrorPayload(error=payload.error, code=payload.code, file_path=payload.file_path),
    )
    return await _run_assist(
        mode=AssistMode.FIX_ERROR,
        composed=composed,
        principal=principal,
        services=services,
        http_request=http_request,
        project_id=payload.project_id,
    )


@router.get("/history")
async def history(
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(rate_limited_principal),
    services: AppServices = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    settings = services.settings
    effective = min(limit or settings.history_default_limit, settings.history_max_limit)
    rows = await ai_history_repo.list_history(db, principal.user_id, limit=effective)
    return {
        "history": [
            {
                "id": row.id,
                "projectId": row.project_id,
                "actionType": row.action_type,
                "prompt": row.prompt,
                "response": row.response,
                "tokensUsed": row.tokens_used,
                "modelUsed": row.model_used,
                "provider": row.provider,
                "durationMs": row.duration_ms,
                "status": row.status,
                "createdAt": row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        ]
    }
