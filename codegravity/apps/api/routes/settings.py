from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from codegravity.apps.api.deps import Principal, get_db, get_services, rate_limited_principal
from codegravity.apps.api.state import AppServices
from codegravity.core.errors import CredentialDecryptError, UnknownProviderError, UpstreamError
from codegravity.domain.models import AISettings
from codegravity.persistence.repos import ai_settings as ai_settings_repo
from codegravity.services.crypto.credentials import mask_key


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/settings", tags=["settings"])


class AISettingsUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: str | None = None
    api_key: str | None = Field(default=None, alias="apiKey", min_length=1)
    model: str | None = Field(default=None, max_length=100)
    enable_streaming: bool | None = Field(default=None, alias="enableStreaming")
    max_context_tokens: int | None = Field(
        default=None, alias="maxContextTokens", ge=256, le=1_000_000
    )


class AIKeyTestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: str
    # Omitted keys fall back to the stored credential.
    api_key: str | None = Field(default=None, alias="apiKey")


def _bad_provider(provider: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "INVALID_PROVIDER", "message": f"Unknown AI provider: {provider}"},
    )


def _serialize(row: AISettings | None, services: AppServices, principal_id: str) -> dict[str, Any]:
    # Never return the key itself; a masked hint is enough for the settings UI.
    if row is None:
        return {
            "provider": "openai",
            "model": None,
            "enableStreaming": True,
            "maxContextTokens": 4096,
            "hasApiKey": False,
            "keyHint": None,
        }
    key_hint = None
    if row.api_key_encrypted:
        try:
            key_hint = mask_key(services.cipher.decrypt(principal_id, row.api_key_encrypted))
        except CredentialDecryptError:
            logger.error("credential_decrypt_failed principal=%s", principal_id)
    return {
        "provider": row.provider,
        "model": row.model,
        "enableStreaming": row.enable_streaming,
        "maxContextTokens": row.max_context_tokens,
        "hasApiKey": bool(row.api_key_encrypted),
        "keyHint": key_hint,
    }


@router.get("/ai")
async def get_ai_settings(
    principal: Principal = Depends(rate_limited_principal),
    services: AppServices = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await ai_settings_repo.get_ai_settings(db, principal.user_id)
    return _serialize(row, services, principal.user_id)


@router.put("/ai")
async def update_ai_settings(
    payload: AISettingsUpdate,
    principal: Principal = Depends(rate_limited_principal),
    services: AppServices = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    values: dict[str, Any] = {}
    if payload.provider is not None:
        if payload.provider.lower() not in services.catalog:
            raise _bad_provider(payload.provider)
        values["provider"] = payload.provider.lower()
    if payload.api_key is not None:
        values["api_key_encrypted"] = services.cipher.encrypt(principal.user_id, payload.api_key)
    if payload.model is not None:
        values["model"] = payload.model
    if payload.enable_streaming is not None:
        values["enable_streaming"] = payload.enable_streaming
    if payload.max_context_tokens is not None:
        values["max_context_tokens"] = payload.max_context_tokens

    row = await ai_settings_repo.upsert_ai_settings(db, principal.user_id, **values)
    await db.commit()
    logger.info(
        "ai_settings_updated principal=%s fields=%s",
        principal.user_id,
        ",".join(sorted(values)),
    )
    return _serialize(row, services, principal.user_id)


@router.delete("/ai/credential")
async def delete_ai_credential(
    principal: Principal = Depends(rate_limited_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    removed = await ai_settings_repo.clear_credential(db, principal.user_id)
    await db.commit()
    return {"removed": removed}


@router.post("/ai/test")
async def test_ai_key(
    payload: AIKeyTestRequest,
    principal: Principal = Depends(rate_limited_principal),
    services: AppServices = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        config = services.catalog.resolve(payload.provider)
    except UnknownProviderError as exc:
        raise _bad_provider(payload.provider) from exc

    api_key = payload.api_key
    if not api_key:
        row = await ai_settings_repo.get_ai_settings(db, principal.user_id)
        if row is None or not row.api_key_encrypted:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "NO_API_KEY", "message": "No API key to test"},
            )
        try:
            api_key = services.cipher.decrypt(principal.user_id, row.api_key_encrypted)
        except CredentialDecryptError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "code": "PROVIDER_CONFIG_INVALID",
                    "message": "Stored API key could not be read. Save it again.",
                },
            ) from exc

    try:
        valid, message = await services.relay.probe(config, api_key)
    except UpstreamError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "AI_ERROR", "message": str(exc)},
        ) from exc
    if not valid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_KEY", "message": message or "API key is invalid"},
        )
    return {"valid": True, "message": "API key is valid"}
