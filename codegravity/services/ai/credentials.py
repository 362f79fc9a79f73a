from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from codegravity.core.errors import CredentialDecryptError
from codegravity.persistence.repos import ai_settings as ai_settings_repo
from codegravity.services.crypto.credentials import CredentialCipher


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedAISettings:
    principal_id: str
    provider: str
    credential: str
    model: str | None
    enable_streaming: bool
    max_context_tokens: int

    def __repr__(self) -> str:
        # Keep decrypted keys out of logs and tracebacks.
        return (
            f"ResolvedAISettings(principal_id={self.principal_id!r}, provider={self.provider!r}, "
            f"model={self.model!r}, credential='****')"
        )


class CredentialStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: CredentialCipher | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher or CredentialCipher()

    async def get(self, principal_id: str) -> ResolvedAISettings | None:
        async with self._session_factory() as session:
            row = await ai_settings_repo.get_ai_settings(session, principal_id)
        if row is None or not row.api_key_encrypted:
            return None
        try:
            credential = self._cipher.decrypt(principal_id, row.api_key_encrypted)
        except CredentialDecryptError:
            logger.error("credential_decrypt_failed principal=%s", principal_id)
            raise
        return ResolvedAISettings(
            principal_id=principal_id,
            provider=row.provider,
            credential=credential,
            model=row.model,
            enable_streaming=bool(row.enable_streaming),
            max_context_tokens=int(row.max_context_tokens),
        )
