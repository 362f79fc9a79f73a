"""Encryption at rest for provider API keys.

Keys are sealed with AES-256-GCM under a per-principal key derived from the
configured master key, and the principal id is bound in as associated data so
a ciphertext copied onto another user's row fails to open.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from codegravity.core.config import get_settings
from codegravity.core.errors import CredentialDecryptError


_VERSION_PREFIX = "v1:"
_NONCE_BYTES = 12


def _decode_key_material(value: str) -> bytes:
    stripped = value.strip()
    if not stripped:
        raise ValueError("key material is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("key material must be base64 or hex") from exc


def _load_master_key() -> bytes:
    settings = get_settings()
    if settings.credential_encryption_key:
        raw = _decode_key_material(settings.credential_encryption_key)
        return raw if len(raw) == 32 else hashlib.sha256(raw).digest()
    # Deterministic fallback keeps local dev working without extra setup.
    return hashlib.sha256(f"{settings.app_name}-credentials".encode("utf-8")).digest()


class CredentialCipher:
    def __init__(self, master_key: bytes | None = None) -> None:
        self._master_key = master_key or _load_master_key()

    def _derive_key(self, principal_id: str) -> bytes:
        return hmac.new(self._master_key, principal_id.encode("utf-8"), hashlib.sha256).digest()

    def encrypt(self, principal_id: str, plaintext: str) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        aesgcm = AESGCM(self._derive_key(principal_id))
        sealed = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), principal_id.encode("utf-8"))
        return _VERSION_PREFIX + base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, principal_id: str, token: str) -> str:
        if not token.startswith(_VERSION_PREFIX):
            raise CredentialDecryptError("unrecognized credential format")
        try:
            payload = base64.b64decode(token[len(_VERSION_PREFIX):].encode("ascii"), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CredentialDecryptError("credential payload is not valid base64") from exc
        if len(payload) <= _NONCE_BYTES:
            raise CredentialDecryptError("credential payload is truncated")
        nonce, sealed = payload[:_NONCE_BYTES], payload[_NONCE_BYTES:]
        aesgcm = AESGCM(self._derive_key(principal_id))
        try:
            plaintext = aesgcm.decrypt(nonce, sealed, principal_id.encode("utf-8"))
        except InvalidTag as exc:
            raise CredentialDecryptError("credential failed integrity check") from exc
        return plaintext.decode("utf-8")


def mask_key(api_key: str) -> str:
    # Show only the tail so the settings UI can tell keys apart.
    if len(api_key) <= 8:
        return "****"
    return f"****{api_key[-4:]}"
